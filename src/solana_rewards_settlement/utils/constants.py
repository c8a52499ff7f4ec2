"""Shared constants for the rewards settlement layer."""

from datetime import datetime, timezone

from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID

# Utility function to get timezone-aware UTC datetime
def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def unix_now() -> int:
    return int(utc_now().timestamp())


LAMPORTS_PER_SOL = 1_000_000_000
BPS_DENOMINATOR = 10_000

U64_MAX = (1 << 64) - 1
U128_MAX = (1 << 128) - 1

SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
SYSVAR_RENT_ID = Pubkey.from_string("SysvarRent111111111111111111111111111111111")

# Loyalty tier thresholds in points, highest first.
LOYALTY_TIER_THRESHOLDS: tuple[tuple[str, int], ...] = (
    ("diamond", 50_000),
    ("platinum", 20_000),
    ("gold", 5_000),
    ("silver", 1_000),
)

__all__ = [
    "utc_now",
    "unix_now",
    "LAMPORTS_PER_SOL",
    "BPS_DENOMINATOR",
    "U64_MAX",
    "U128_MAX",
    "SYSTEM_PROGRAM_ID",
    "SYSVAR_RENT_ID",
    "TOKEN_PROGRAM_ID",
    "LOYALTY_TIER_THRESHOLDS",
]
