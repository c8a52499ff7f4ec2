"""Escrow payout split and loyalty point projections."""

from __future__ import annotations

from ..errors import ArithmeticOverflow, InvalidListingState
from ..schemas import Listing, LoyaltyProfile, LoyaltyProjection, LoyaltyTier, RegistryConfig, SettlementQuote
from ..utils.constants import BPS_DENOMINATOR, LAMPORTS_PER_SOL, U64_MAX


def compute_fee(price_lamports: int, bps: int) -> int:
    scaled = price_lamports * bps
    if scaled > U64_MAX:
        raise ArithmeticOverflow(f"fee on {price_lamports} lamports at {bps} bps exceeds u64")
    return scaled // BPS_DENOMINATOR


def quote_settlement(listing: Listing) -> SettlementQuote:
    """Split a listing's price the way ``settle_sale`` disburses it."""

    price = listing.price_lamports
    royalty = compute_fee(price, listing.royalty_bps)
    treasury = compute_fee(price, listing.treasury_bps)
    marketplace = compute_fee(price, listing.marketplace_fee_bps)
    total_fees = royalty + treasury + marketplace
    if total_fees > price:
        raise InvalidListingState(
            f"Listing fees ({total_fees} lamports) exceed the price ({price} lamports)"
        )
    return SettlementQuote(
        price_lamports=price,
        royalty_lamports=royalty,
        treasury_lamports=treasury,
        marketplace_fee_lamports=marketplace,
        seller_proceeds=price - total_fees,
    )


def project_loyalty(
    profile: LoyaltyProfile,
    config: RegistryConfig,
    volume_lamports: int,
    bonus_points: int,
) -> LoyaltyProjection:
    """Profile totals after ``record_activity`` with the given volume and bonus."""

    weighted = volume_lamports * config.points_per_sol
    if weighted > U64_MAX:
        raise ArithmeticOverflow(f"loyalty volume weighting exceeds u64: {weighted}")
    awarded = weighted // LAMPORTS_PER_SOL + bonus_points
    total_points = profile.points + awarded
    total_volume = profile.total_volume + volume_lamports
    for label, value in (("points", total_points), ("volume", total_volume), ("awarded", awarded)):
        if value > U64_MAX:
            raise ArithmeticOverflow(f"loyalty {label} exceeds u64: {value}")
    return LoyaltyProjection(
        points_awarded=awarded,
        total_points=total_points,
        total_volume=total_volume,
        tier=LoyaltyTier.for_points(total_points),
    )


__all__ = ["compute_fee", "project_loyalty", "quote_settlement"]
