"""Typed views of the on-chain accounts and the requests built from them."""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

from solders.pubkey import Pubkey

from .utils.constants import LOYALTY_TIER_THRESHOLDS

T = TypeVar("T")


class ListingStatus(str, Enum):
    ACTIVE = "active"
    PENDING_SETTLEMENT = "pending_settlement"
    SETTLED = "settled"
    CANCELLED = "cancelled"


class LoyaltyTier(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"

    @classmethod
    def for_points(cls, points: int) -> "LoyaltyTier":
        for name, threshold in LOYALTY_TIER_THRESHOLDS:
            if points >= threshold:
                return cls(name)
        return cls.BRONZE


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _json_value(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, Enum):
        return value.value
    return str(value)


class _AccountModel:
    """Mixin converting between decoded field mappings and dataclasses."""

    __slots__ = ()

    @classmethod
    def from_fields(cls: Type[T], data: Mapping[str, Any]) -> T:
        kwargs = {item.name: data[item.name] for item in fields(cls)}  # type: ignore[arg-type]
        return cls(**kwargs)

    def to_json(self) -> Dict[str, Any]:
        """camelCase payload with keys as base58 and integers as decimal strings."""

        return {_camel(name): _json_value(value) for name, value in self.to_fields().items()}

    def to_fields(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for item in fields(self):  # type: ignore[arg-type]
            value = getattr(self, item.name)
            payload[item.name] = value.value if isinstance(value, Enum) else value
        return payload


@dataclass(slots=True)
class StakingPool(_AccountModel):
    bump: int
    vault_bump: int
    signer_bump: int
    authority: Pubkey
    reward_vault: Pubkey
    reward_mint: Pubkey
    stake_mint: Pubkey
    reward_rate: int
    total_staked: int
    reward_per_token_stored: int
    last_update_ts: int


@dataclass(slots=True)
class StakePosition(_AccountModel):
    bump: int
    owner: Pubkey
    pool: Pubkey
    amount: int
    reward_per_token_paid: int
    pending_rewards: int
    last_stake_ts: int


@dataclass(slots=True)
class VaultConfig(_AccountModel):
    config_bump: int
    signer_bump: int
    authority: Pubkey
    reward_mint: Pubkey
    emission_rate: int


@dataclass(slots=True)
class Listing(_AccountModel):
    bump: int
    escrow_bump: int
    seller: Pubkey
    buyer: Optional[Pubkey]
    mint: Pubkey
    listing_id: int
    price_lamports: int
    creation_ts: int
    expiration_ts: Optional[int]
    sale_ts: Optional[int]
    settlement_ts: Optional[int]
    status: ListingStatus
    royalty_bps: int
    royalty_destination: Pubkey
    treasury_bps: int
    marketplace_fee_bps: int

    def __post_init__(self) -> None:
        self.status = ListingStatus(self.status)


@dataclass(slots=True)
class EscrowVault(_AccountModel):
    bump: int
    listing: Pubkey
    total_deposited: int


@dataclass(slots=True)
class SaleReceipt(_AccountModel):
    bump: int
    listing: Pubkey
    buyer: Pubkey
    seller: Pubkey
    amount_paid: int
    seller_proceeds: int
    royalty_paid: int
    treasury_paid: int
    marketplace_fee_paid: int
    rewards_minted: int
    loyalty_points_awarded: int
    timestamp: int


@dataclass(slots=True)
class LoyaltyProfile(_AccountModel):
    bump: int
    owner: Pubkey
    total_volume: int
    points: int
    tier: LoyaltyTier
    last_activity_ts: int
    delegate: Optional[Pubkey]

    def __post_init__(self) -> None:
        self.tier = LoyaltyTier(self.tier)


@dataclass(slots=True)
class RegistryConfig(_AccountModel):
    bump: int
    authority: Pubkey
    points_per_sol: int
    total_profiles: int
    last_updated_ts: int


@dataclass(slots=True)
class SaleContext:
    """Inputs for a marketplace settlement. Escrow, receipt and loyalty PDAs are derived."""

    listing: Pubkey
    seller: Pubkey
    buyer: Pubkey
    reward_mint: Pubkey
    reward_amount: int = 0
    loyalty_bonus_points: int = 0
    treasury_destination: Optional[Pubkey] = None
    marketplace_fee_destination: Optional[Pubkey] = None
    buyer_reward_account: Optional[Pubkey] = None


@dataclass(slots=True)
class SettlementQuote:
    """Lamport split the escrow program will perform for a listing."""

    price_lamports: int
    royalty_lamports: int
    treasury_lamports: int
    marketplace_fee_lamports: int
    seller_proceeds: int

    def to_dict(self) -> Dict[str, str]:
        return {
            "priceLamports": str(self.price_lamports),
            "royaltyLamports": str(self.royalty_lamports),
            "treasuryLamports": str(self.treasury_lamports),
            "marketplaceFeeLamports": str(self.marketplace_fee_lamports),
            "sellerProceeds": str(self.seller_proceeds),
        }


@dataclass(slots=True)
class LoyaltyProjection:
    """Profile state after a recordActivity instruction lands."""

    points_awarded: int
    total_points: int
    total_volume: int
    tier: LoyaltyTier


__all__ = [
    "EscrowVault",
    "Listing",
    "ListingStatus",
    "LoyaltyProfile",
    "LoyaltyProjection",
    "LoyaltyTier",
    "RegistryConfig",
    "SaleContext",
    "SaleReceipt",
    "SettlementQuote",
    "StakePosition",
    "StakingPool",
    "VaultConfig",
]
