"""Checks that the local authority may act for an on-chain configuration."""

from __future__ import annotations

from typing import Optional

from solders.pubkey import Pubkey

from ..errors import AuthorityMismatch, MissingAuthority
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .wallet import Wallet

logger = get_logger(__name__)


def assert_authority(expected: Pubkey, actual: Pubkey, *, context: str = "authority") -> None:
    """Raise :class:`AuthorityMismatch` unless ``actual`` is the on-chain ``expected`` key."""

    if expected != actual:
        METRICS.increment(f"authority.mismatch.{context}")
        logger.warning(
            "Authority mismatch for %s",
            context,
            extra={"expected": str(expected), "actual": str(actual)},
        )
        raise AuthorityMismatch(expected, actual, context=context)


def require_authority(wallet: Optional[Wallet], *, action: str) -> Wallet:
    if wallet is None:
        raise MissingAuthority(f"An authority keypair is required to build {action} transactions")
    return wallet


__all__ = ["assert_authority", "require_authority"]
