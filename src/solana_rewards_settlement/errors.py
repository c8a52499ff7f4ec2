"""Error taxonomy shared by the derivation, accounting and transaction layers."""

from __future__ import annotations

import re
from typing import Optional

from solders.pubkey import Pubkey


class RewardsError(RuntimeError):
    """Base class for every failure raised by the settlement layer."""

    retryable: bool = False
    status_code: int = 500

    @property
    def kind(self) -> str:
        return type(self).__name__


class InvalidAddress(RewardsError, ValueError):
    """Raised when a base58 public key cannot be parsed."""

    status_code = 400

    def __init__(self, field: str, value: object) -> None:
        super().__init__(f"Invalid public key for {field}: {value!r}")
        self.field = field
        self.value = value


class InvalidAmount(RewardsError, ValueError):
    """Raised for non-positive, malformed, or unbacked token amounts."""

    status_code = 400


class ConfigurationError(RewardsError):
    """Raised when program metadata, keys, or settings are unusable."""

    status_code = 500


class AddressDerivationError(ConfigurationError):
    """Raised when no bump seed yields an off-curve program address."""


class AuthorityMismatch(RewardsError):
    """Raised when the local authority differs from the on-chain authority."""

    status_code = 403

    def __init__(self, expected: Pubkey, actual: Pubkey, *, context: str = "authority") -> None:
        super().__init__(
            f"Configured authority {actual} does not match {context} authority {expected}"
        )
        self.expected = expected
        self.actual = actual
        self.context = context


class MissingAuthority(RewardsError):
    """Raised when a privileged transaction is requested without an authority key."""

    status_code = 503


class AccountNotFound(RewardsError):
    """Raised on write paths when a required account does not exist."""

    status_code = 404

    def __init__(self, account: str, address: Pubkey) -> None:
        super().__init__(f"{account} account {address} was not found")
        self.account = account
        self.address = address


class AccountMismatch(RewardsError):
    """Raised when fetched accounts disagree with each other or with derived addresses."""

    status_code = 409


class InvalidListingState(RewardsError):
    """Raised when a listing or its escrow cannot be settled."""

    status_code = 409


class AccountDecodeError(RewardsError):
    """Raised when account bytes do not match the expected owner or layout."""

    status_code = 422


class NetworkError(RewardsError):
    """Raised for RPC timeouts and transport failures. Callers may retry."""

    retryable = True
    status_code = 502


class ArithmeticOverflow(RewardsError):
    """Raised when reward or amount math leaves its integer range."""

    status_code = 422


_DECIMAL_RE = re.compile(r"[0-9]+")


def parse_pubkey(value: object, field: str) -> Pubkey:
    """Parse a base58 public key, raising :class:`InvalidAddress` on failure."""

    if isinstance(value, Pubkey):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidAddress(field, value)
    try:
        return Pubkey.from_string(value.strip())
    except (TypeError, ValueError) as exc:
        raise InvalidAddress(field, value) from exc


def parse_optional_pubkey(value: object, field: str) -> Optional[Pubkey]:
    if value is None or value == "":
        return None
    return parse_pubkey(value, field)


def parse_amount(value: object, field: str = "amount", *, allow_zero: bool = False) -> int:
    """Parse an integer amount from a decimal string without touching floats."""

    if isinstance(value, bool):
        raise InvalidAmount(f"{field} must be a decimal integer string")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and _DECIMAL_RE.fullmatch(value.strip()):
        amount = int(value.strip())
    else:
        raise InvalidAmount(f"{field} must be a decimal integer string, got {value!r}")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmount(f"{field} must be greater than zero")
    return amount


__all__ = [
    "AccountDecodeError",
    "AccountMismatch",
    "AccountNotFound",
    "AddressDerivationError",
    "ArithmeticOverflow",
    "AuthorityMismatch",
    "ConfigurationError",
    "InvalidAddress",
    "InvalidAmount",
    "InvalidListingState",
    "MissingAuthority",
    "NetworkError",
    "RewardsError",
    "parse_amount",
    "parse_optional_pubkey",
    "parse_pubkey",
]
