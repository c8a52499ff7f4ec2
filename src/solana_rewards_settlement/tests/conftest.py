from __future__ import annotations

from typing import Dict, Optional, Set

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from solana_rewards_settlement.config.settings import ProgramsConfig, SettlementConfig
from solana_rewards_settlement.errors import AccountDecodeError, NetworkError
from solana_rewards_settlement.execution.rpc import AccountSnapshot
from solana_rewards_settlement.execution.transaction_builder import TransactionComposer
from solana_rewards_settlement.execution.wallet import Wallet
from solana_rewards_settlement.monitoring.metrics import METRICS
from solana_rewards_settlement.programs.addresses import AddressDeriver
from solana_rewards_settlement.programs.registry import (
    CLOUT_STAKING,
    LOYALTY_REGISTRY,
    MARKET_ESCROW,
    REWARDS_VAULT,
    ProgramRegistry,
)
from solana_rewards_settlement.schemas import (
    EscrowVault,
    Listing,
    ListingStatus,
    LoyaltyProfile,
    LoyaltyTier,
    RegistryConfig,
    StakePosition,
    StakingPool,
    VaultConfig,
)

NOW = 1_700_000_000


class FakeChainReader:
    """In-memory accounts keyed by address, counting every RPC call.

    Add a method name to ``failing`` to make that call raise :class:`NetworkError`.
    """

    def __init__(self) -> None:
        self.accounts: Dict[Pubkey, AccountSnapshot] = {}
        self.account_calls = 0
        self.blockhash_calls = 0
        self.failing: Set[str] = set()

    def put(self, address: Pubkey, owner: Pubkey, data: bytes) -> None:
        self.accounts[address] = AccountSnapshot(address=address, owner=owner, lamports=1_000_000, data=data)

    @property
    def calls(self) -> int:
        return self.account_calls + self.blockhash_calls

    async def get_account(
        self, address: Pubkey, *, expected_owner: Optional[Pubkey] = None
    ) -> Optional[AccountSnapshot]:
        self.account_calls += 1
        if "get_account" in self.failing:
            raise NetworkError(f"getAccountInfo for {address} timed out")
        snapshot = self.accounts.get(address)
        if snapshot is None:
            return None
        if expected_owner is not None and snapshot.owner != expected_owner:
            raise AccountDecodeError(f"{address} is owned by {snapshot.owner}")
        return snapshot

    async def get_latest_blockhash(self) -> Hash:
        self.blockhash_calls += 1
        if "get_latest_blockhash" in self.failing:
            raise NetworkError("getLatestBlockhash timed out")
        return Hash.default()


class RewardsWorld:
    """Seeds a consistent set of program accounts into a fake chain."""

    def __init__(self) -> None:
        self.chain = FakeChainReader()
        self.registry = ProgramRegistry(ProgramsConfig(), reader=self.chain)
        self.deriver = AddressDeriver(self.registry.program_ids)
        self.authority = Wallet(Keypair())
        self.stake_mint = Pubkey.new_unique()
        self.reward_mint = Pubkey.new_unique()
        self.staker = Pubkey.new_unique()
        self.seller = Pubkey.new_unique()
        self.buyer = Pubkey.new_unique()
        self.treasury = Pubkey.new_unique()
        self.marketplace = Pubkey.new_unique()
        self.royalty = Pubkey.new_unique()
        self.nft_mint = Pubkey.new_unique()
        self.listing_address = self.deriver.listing(self.seller, self.nft_mint, 7)[0]

    def _store(self, program: str, account: str, address: Pubkey, model) -> None:
        handle = self.registry.load_program(program)
        data = handle.account_coder(account).encode(model.to_fields())
        self.chain.put(address, handle.program_id, data)

    def composer(self, *, authority: Optional[Wallet] = None, with_authority: bool = True) -> TransactionComposer:
        return TransactionComposer(
            registry=self.registry,
            reader=self.chain,
            authority=(authority or self.authority) if with_authority else None,
            deriver=self.deriver,
            settlement_config=SettlementConfig(
                treasury_destination=str(self.treasury),
                marketplace_fee_destination=str(self.marketplace),
            ),
            clock=lambda: NOW,
        )

    # staking
    def pool(self, **overrides) -> StakingPool:
        values = dict(
            bump=255,
            vault_bump=254,
            signer_bump=253,
            authority=self.authority.public_key,
            reward_vault=self.deriver.vault_config(self.reward_mint)[0],
            reward_mint=self.reward_mint,
            stake_mint=self.stake_mint,
            reward_rate=100,
            total_staked=1_000,
            reward_per_token_stored=0,
            last_update_ts=NOW - 10,
        )
        values.update(overrides)
        pool = StakingPool(**values)
        self._store(CLOUT_STAKING, "staking_pool", self.deriver.pool(self.stake_mint)[0], pool)
        return pool

    def position(self, owner: Optional[Pubkey] = None, **overrides) -> StakePosition:
        owner = owner or self.staker
        pool_address = self.deriver.pool(self.stake_mint)[0]
        values = dict(
            bump=250,
            owner=owner,
            pool=pool_address,
            amount=1_000,
            reward_per_token_paid=0,
            pending_rewards=0,
            last_stake_ts=NOW - 100,
        )
        values.update(overrides)
        position = StakePosition(**values)
        self._store(CLOUT_STAKING, "stake_position", self.deriver.position(pool_address, owner)[0], position)
        return position

    # reward vault
    def vault(self, **overrides) -> VaultConfig:
        values = dict(
            config_bump=255,
            signer_bump=254,
            authority=self.authority.public_key,
            reward_mint=self.reward_mint,
            emission_rate=10,
        )
        values.update(overrides)
        vault = VaultConfig(**values)
        self._store(REWARDS_VAULT, "vault_config", self.deriver.vault_config(self.reward_mint)[0], vault)
        return vault

    # loyalty
    def registry_config(self, **overrides) -> RegistryConfig:
        values = dict(
            bump=255,
            authority=self.authority.public_key,
            points_per_sol=100,
            total_profiles=2,
            last_updated_ts=NOW - 1_000,
        )
        values.update(overrides)
        config = RegistryConfig(**values)
        self._store(LOYALTY_REGISTRY, "registry_config", self.deriver.registry_config()[0], config)
        return config

    def profile(self, user: Optional[Pubkey] = None, **overrides) -> LoyaltyProfile:
        user = user or self.buyer
        values = dict(
            bump=252,
            owner=user,
            total_volume=0,
            points=900,
            tier=LoyaltyTier.BRONZE,
            last_activity_ts=NOW - 5_000,
            delegate=None,
        )
        values.update(overrides)
        profile = LoyaltyProfile(**values)
        self._store(LOYALTY_REGISTRY, "loyalty_profile", self.deriver.loyalty_profile(user)[0], profile)
        return profile

    # escrow
    def listing(self, **overrides) -> Listing:
        values = dict(
            bump=255,
            escrow_bump=254,
            seller=self.seller,
            buyer=self.buyer,
            mint=self.nft_mint,
            listing_id=7,
            price_lamports=2_000_000_000,
            creation_ts=NOW - 3_600,
            expiration_ts=None,
            sale_ts=NOW - 60,
            settlement_ts=None,
            status=ListingStatus.PENDING_SETTLEMENT,
            royalty_bps=500,
            royalty_destination=self.royalty,
            treasury_bps=200,
            marketplace_fee_bps=250,
        )
        values.update(overrides)
        listing = Listing(**values)
        self._store(MARKET_ESCROW, "listing", self.listing_address, listing)
        return listing

    def escrow(self, **overrides) -> EscrowVault:
        values = dict(bump=254, listing=self.listing_address, total_deposited=2_000_000_000)
        values.update(overrides)
        escrow = EscrowVault(**values)
        self._store(MARKET_ESCROW, "escrow_vault", self.deriver.escrow_vault(self.listing_address)[0], escrow)
        return escrow

    def settlement_ready(self) -> None:
        self.vault()
        self.registry_config()
        self.listing()
        self.escrow()
        self.profile()


@pytest.fixture(autouse=True)
def reset_metrics() -> None:
    METRICS.reset()


@pytest.fixture
def world() -> RewardsWorld:
    return RewardsWorld()
