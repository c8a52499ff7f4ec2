from __future__ import annotations

import asyncio
import base64

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from solana_rewards_settlement.config.settings import SettlementConfig
from solana_rewards_settlement.errors import (
    AccountMismatch,
    AccountNotFound,
    ArithmeticOverflow,
    AuthorityMismatch,
    ConfigurationError,
    InvalidAmount,
    InvalidListingState,
    MissingAuthority,
    NetworkError,
)
from solana_rewards_settlement.execution.transaction_builder import TransactionComposer
from solana_rewards_settlement.execution.wallet import Wallet
from solana_rewards_settlement.monitoring.metrics import METRICS
from solana_rewards_settlement.programs.addresses import associated_token_account
from solana_rewards_settlement.schemas import ListingStatus, LoyaltyTier, SaleContext
from solana_rewards_settlement.utils.constants import U64_MAX


def _sale(world, **overrides) -> SaleContext:
    values = dict(
        listing=world.listing_address,
        seller=world.seller,
        buyer=world.buyer,
        reward_mint=world.reward_mint,
        reward_amount=25,
        loyalty_bonus_points=10,
    )
    values.update(overrides)
    return SaleContext(**values)


def test_stake_references_derived_accounts_with_staker_as_fee_payer(world) -> None:
    world.pool()
    composer = world.composer(with_authority=False)

    built = asyncio.run(composer.build_stake(world.stake_mint, world.staker, 1_000))

    addresses = world.deriver.staking_addresses(world.stake_mint, world.staker)
    message = built.transaction.message
    assert message.account_keys[0] == world.staker
    assert built.fee_payer == world.staker
    instruction = message.instructions[0]
    keys = [message.account_keys[index] for index in instruction.accounts]
    assert keys[:5] == [
        addresses.pool,
        addresses.pool_vault,
        addresses.position,
        world.staker,
        associated_token_account(world.staker, world.stake_mint),
    ]
    assert built.partial_signers == []
    assert [slot.role for slot in built.pending_signers] == ["staker"]
    assert METRICS.get("transactions.built.stake") == 1


def test_stake_rejects_bad_amounts_before_touching_the_chain(world) -> None:
    composer = world.composer(with_authority=False)
    with pytest.raises(InvalidAmount):
        asyncio.run(composer.build_stake(world.stake_mint, world.staker, 0))
    with pytest.raises(ArithmeticOverflow):
        asyncio.run(composer.build_stake(world.stake_mint, world.staker, U64_MAX + 1))
    assert world.chain.calls == 0
    assert METRICS.get("transactions.rejected.stake.InvalidAmount") == 1


def test_stake_requires_an_existing_pool(world) -> None:
    with pytest.raises(AccountNotFound):
        asyncio.run(world.composer().build_stake(world.stake_mint, world.staker, 10))


def test_stake_uses_explicit_token_account(world) -> None:
    world.pool()
    token_account = Pubkey.new_unique()
    built = asyncio.run(world.composer().build_stake(world.stake_mint, world.staker, 5, token_account))
    assert token_account in built.transaction.message.account_keys


def test_unstake_without_position_is_not_found(world) -> None:
    world.pool()
    with pytest.raises(AccountNotFound):
        asyncio.run(world.composer().build_unstake(world.stake_mint, world.staker, 10))


def test_unstake_cannot_exceed_position(world) -> None:
    world.pool()
    world.position(amount=100)
    composer = world.composer(with_authority=False)

    with pytest.raises(InvalidAmount):
        asyncio.run(composer.build_unstake(world.stake_mint, world.staker, 101))

    built = asyncio.run(composer.build_unstake(world.stake_mint, world.staker, 100))
    addresses = world.deriver.staking_addresses(world.stake_mint, world.staker)
    assert addresses.pool_signer in built.transaction.message.account_keys


def test_harvest_without_authority_makes_no_rpc_calls(world) -> None:
    world.pool()
    world.position()
    composer = world.composer(with_authority=False)

    with pytest.raises(MissingAuthority):
        asyncio.run(composer.build_harvest(world.stake_mint, world.staker))
    assert world.chain.calls == 0


def test_harvest_is_partially_signed_by_authority(world) -> None:
    world.pool()
    world.position()
    world.vault()

    built = asyncio.run(world.composer().build_harvest(world.stake_mint, world.staker))

    message = built.transaction.message
    required = message.account_keys[: message.header.num_required_signatures]
    assert set(required) == {world.staker, world.authority.public_key}
    assert built.partial_signers == ["authority"]
    assert [(slot.role, slot.public_key) for slot in built.pending_signers] == [("staker", world.staker)]
    signatures = dict(zip(required, built.transaction.signatures))
    assert signatures[world.authority.public_key] != Signature.default()
    assert signatures[world.staker] == Signature.default()

    decoded = Transaction.from_bytes(base64.b64decode(built.to_base64()))
    assert decoded.message == message


def test_harvest_rejects_foreign_vault_authority(world) -> None:
    world.pool()
    world.position()
    world.vault(authority=Pubkey.new_unique())

    with pytest.raises(AuthorityMismatch):
        asyncio.run(world.composer().build_harvest(world.stake_mint, world.staker))
    assert world.chain.blockhash_calls == 0
    assert METRICS.get("authority.mismatch.reward vault") == 1


def test_harvest_rejects_pool_pointing_at_another_vault(world) -> None:
    world.pool(reward_vault=Pubkey.new_unique())
    world.position()
    world.vault()
    with pytest.raises(AccountMismatch):
        asyncio.run(world.composer().build_harvest(world.stake_mint, world.staker))


def test_settlement_builds_one_partially_signed_transaction(world) -> None:
    world.settlement_ready()

    built = asyncio.run(world.composer().build_settlement(_sale(world)))

    assert built.fee_payer == world.seller
    assert built.quote is not None
    assert built.quote.royalty_lamports == 100_000_000
    assert built.quote.treasury_lamports == 40_000_000
    assert built.quote.marketplace_fee_lamports == 50_000_000
    assert built.quote.seller_proceeds == 1_810_000_000
    keys = built.transaction.message.account_keys
    assert world.treasury in keys
    assert world.marketplace in keys
    assert world.royalty in keys
    assert [slot.role for slot in built.pending_signers] == ["seller"]
    response = built.to_response()
    assert response["settlement"]["sellerProceeds"] == "1810000000"
    assert response["partialSigners"] == ["authority"]
    assert built.loyalty is not None
    assert built.loyalty.points_awarded == 210
    assert built.loyalty.tier is LoyaltyTier.SILVER


def test_settlement_with_foreign_vault_authority_builds_nothing(world) -> None:
    world.settlement_ready()
    world.vault(authority=Pubkey.new_unique())

    with pytest.raises(AuthorityMismatch):
        asyncio.run(world.composer().build_settlement(_sale(world)))
    assert world.chain.blockhash_calls == 0


def test_settlement_with_different_local_authority_is_rejected(world) -> None:
    world.settlement_ready()
    stranger = Wallet(Keypair())
    with pytest.raises(AuthorityMismatch):
        asyncio.run(world.composer(authority=stranger).build_settlement(_sale(world)))


def test_settlement_reward_mint_mismatch(world) -> None:
    world.settlement_ready()
    world.vault(reward_mint=Pubkey.new_unique())
    with pytest.raises(AccountMismatch):
        asyncio.run(world.composer().build_settlement(_sale(world)))
    assert world.chain.blockhash_calls == 0


def test_settlement_requires_pending_listing(world) -> None:
    world.settlement_ready()
    world.listing(status=ListingStatus.ACTIVE)
    with pytest.raises(InvalidListingState):
        asyncio.run(world.composer().build_settlement(_sale(world)))


def test_settlement_rejects_wrong_buyer_and_short_escrow(world) -> None:
    world.settlement_ready()
    with pytest.raises(InvalidListingState):
        asyncio.run(world.composer().build_settlement(_sale(world, buyer=Pubkey.new_unique())))

    world.escrow(total_deposited=1)
    with pytest.raises(InvalidListingState):
        asyncio.run(world.composer().build_settlement(_sale(world)))


def test_settlement_needs_destinations(world) -> None:
    world.settlement_ready()
    composer = TransactionComposer(
        registry=world.registry,
        reader=world.chain,
        authority=world.authority,
        settlement_config=SettlementConfig(marketplace_fee_destination=str(world.marketplace)),
    )
    with pytest.raises(ConfigurationError):
        asyncio.run(composer.build_settlement(_sale(world)))

    treasury = Pubkey.new_unique()
    built = asyncio.run(composer.build_settlement(_sale(world, treasury_destination=treasury)))
    assert treasury in built.transaction.message.account_keys


def test_settlement_without_authority_is_rejected_offline(world) -> None:
    with pytest.raises(MissingAuthority):
        asyncio.run(world.composer(with_authority=False).build_settlement(_sale(world)))
    assert world.chain.calls == 0


def test_record_loyalty_projects_points(world) -> None:
    world.registry_config(points_per_sol=100)
    world.profile(points=900)

    built = asyncio.run(world.composer().build_record_loyalty(world.buyer, 2_000_000_000, 5))

    assert built.loyalty is not None
    assert built.loyalty.points_awarded == 205
    assert built.loyalty.total_points == 1_105
    assert built.loyalty.tier is LoyaltyTier.SILVER
    assert built.fee_payer == world.buyer
    assert built.to_response()["loyalty"]["tier"] == "silver"


def test_record_loyalty_requires_some_activity(world) -> None:
    with pytest.raises(InvalidAmount):
        asyncio.run(world.composer().build_record_loyalty(world.buyer, 0, 0))


def test_record_loyalty_rejects_registry_authority_mismatch(world) -> None:
    world.registry_config(authority=Pubkey.new_unique())
    world.profile()
    with pytest.raises(AuthorityMismatch):
        asyncio.run(world.composer().build_record_loyalty(world.buyer, 1, 0))


def test_staking_snapshot_reports_pending_rewards(world) -> None:
    world.pool()
    world.position(amount=500)

    snapshot = asyncio.run(world.composer().staking_snapshot(world.stake_mint, world.staker))

    assert snapshot.pending_rewards == 500
    payload = snapshot.to_dict()
    assert payload["pendingRewards"] == "500"
    assert payload["pool"]["totalStaked"] == "1000"
    assert payload["position"]["owner"] == str(world.staker)


def test_staking_snapshot_for_missing_pool(world) -> None:
    snapshot = asyncio.run(world.composer().staking_snapshot(world.stake_mint))
    assert snapshot.pool is None
    assert snapshot.pending_rewards is None
    assert snapshot.to_dict()["derived"]["position"] is None


def test_stake_surfaces_blockhash_failure_without_a_result(world) -> None:
    world.pool()
    world.chain.failing.add("get_latest_blockhash")

    with pytest.raises(NetworkError):
        asyncio.run(world.composer().build_stake(world.stake_mint, world.staker, 10))
    assert METRICS.get("transactions.built.stake") == 0
    assert METRICS.get("transactions.rejected.stake.NetworkError") == 1


def test_harvest_surfaces_account_fetch_failure(world) -> None:
    world.pool()
    world.position()
    world.vault()
    world.chain.failing.add("get_account")

    with pytest.raises(NetworkError):
        asyncio.run(world.composer().build_harvest(world.stake_mint, world.staker))
    assert world.chain.blockhash_calls == 0
    assert METRICS.get("transactions.built.harvest") == 0


def test_harvest_of_empty_position_is_rejected(world) -> None:
    world.pool()
    world.vault()
    world.position(amount=0, pending_rewards=0)
    with pytest.raises(InvalidAmount):
        asyncio.run(world.composer().build_harvest(world.stake_mint, world.staker))
    assert world.chain.blockhash_calls == 0

    world.position(amount=0, pending_rewards=5)
    built = asyncio.run(world.composer().build_harvest(world.stake_mint, world.staker))
    assert built.partial_signers == ["authority"]


def test_settlement_fee_overflow_builds_nothing(world) -> None:
    world.settlement_ready()
    world.listing(price_lamports=U64_MAX // 100)
    world.escrow(total_deposited=U64_MAX // 100)

    with pytest.raises(ArithmeticOverflow):
        asyncio.run(world.composer().build_settlement(_sale(world)))
    assert world.chain.blockhash_calls == 0
    assert METRICS.get("transactions.rejected.settlement.ArithmeticOverflow") == 1


def test_settlement_loyalty_overflow_builds_nothing(world) -> None:
    world.settlement_ready()
    world.profile(points=U64_MAX)

    with pytest.raises(ArithmeticOverflow):
        asyncio.run(world.composer().build_settlement(_sale(world)))
    assert world.chain.blockhash_calls == 0
