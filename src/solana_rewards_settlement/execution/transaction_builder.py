"""Builds partially signed staking, harvest, loyalty and settlement transactions."""

from __future__ import annotations

import base64
import functools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Type, TypeVar

from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from ..accounting.settlement import project_loyalty, quote_settlement
from ..accounting.staking import StakingAccountant
from ..config.settings import AppConfig, SettlementConfig, get_app_config
from ..errors import (
    AccountMismatch,
    AccountNotFound,
    ArithmeticOverflow,
    ConfigurationError,
    InvalidAmount,
    InvalidListingState,
    RewardsError,
)
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..programs.addresses import AddressDeriver, StakingAddresses, associated_token_account
from ..programs.registry import (
    CLOUT_STAKING,
    LOYALTY_REGISTRY,
    MARKET_ESCROW,
    REWARDS_VAULT,
    ProgramHandle,
    ProgramRegistry,
)
from ..schemas import (
    EscrowVault,
    Listing,
    ListingStatus,
    LoyaltyProfile,
    LoyaltyProjection,
    RegistryConfig,
    SaleContext,
    SettlementQuote,
    StakePosition,
    StakingPool,
    VaultConfig,
)
from ..utils.constants import U64_MAX, unix_now
from .accounts import (
    HarvestAccounts,
    RecordActivityAccounts,
    SettleSaleAccounts,
    StakeAccounts,
    UnstakeAccounts,
)
from .authority import assert_authority, require_authority
from .rpc import ChainReader, RpcGateway
from .wallet import Wallet, load_authority

M = TypeVar("M")
F = TypeVar("F", bound=Callable[..., Awaitable["BuiltTransaction"]])

AUTHORITY_ROLE = "authority"


@dataclass(frozen=True, slots=True)
class SignerSlot:
    role: str
    public_key: Pubkey

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "publicKey": str(self.public_key)}


@dataclass(slots=True)
class BuiltTransaction:
    """A transaction ready for the remaining signers."""

    action: str
    transaction: Transaction
    fee_payer: Pubkey
    recent_blockhash: Hash
    partial_signers: List[str] = field(default_factory=list)
    pending_signers: List[SignerSlot] = field(default_factory=list)
    quote: Optional[SettlementQuote] = None
    loyalty: Optional[LoyaltyProjection] = None

    def to_base64(self) -> str:
        """Wire encoding with unfilled signature slots left zeroed."""

        return base64.b64encode(bytes(self.transaction)).decode("ascii")

    def to_response(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "transaction": self.to_base64(),
            "partialSigners": list(self.partial_signers),
            "pendingSigners": [slot.to_dict() for slot in self.pending_signers],
        }
        if self.quote is not None:
            payload["settlement"] = self.quote.to_dict()
        if self.loyalty is not None:
            payload["loyalty"] = {
                "pointsAwarded": str(self.loyalty.points_awarded),
                "totalPoints": str(self.loyalty.total_points),
                "tier": self.loyalty.tier.value,
            }
        return payload


@dataclass(slots=True)
class StakingSnapshot:
    """Pool state, derived addresses, and the owner's position if one exists."""

    addresses: StakingAddresses
    pool: Optional[StakingPool]
    position: Optional[StakePosition]
    pending_rewards: Optional[int]
    observed_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pool": self.pool.to_json() if self.pool is not None else None,
            "derived": self.addresses.to_dict(),
            "position": self.position.to_json() if self.position is not None else None,
            "pendingRewards": str(self.pending_rewards) if self.pending_rewards is not None else None,
            "observedAt": self.observed_at,
        }


def _instrumented(action: str) -> Callable[[F], F]:
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(self: "TransactionComposer", *args: Any, **kwargs: Any) -> BuiltTransaction:
            try:
                return await func(self, *args, **kwargs)
            except RewardsError as exc:
                METRICS.increment(f"transactions.rejected.{action}.{exc.kind}")
                raise

        return wrapper  # type: ignore[return-value]

    return decorator


def _check_u64(value: int, field_name: str, *, allow_zero: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"{field_name} must be an integer")
    if value < 0 or (value == 0 and not allow_zero):
        raise InvalidAmount(f"{field_name} must be greater than zero")
    if value > U64_MAX:
        raise ArithmeticOverflow(f"{field_name} exceeds u64: {value}")
    return value


class TransactionComposer:
    """Derives addresses, validates on-chain state, and assembles transactions.

    The user is always the fee payer. Privileged instructions are partially
    signed with the local authority; every other signature is left for the
    caller to add before submission.
    """

    def __init__(
        self,
        *,
        registry: ProgramRegistry,
        reader: ChainReader,
        authority: Optional[Wallet] = None,
        deriver: Optional[AddressDeriver] = None,
        accountant: Optional[StakingAccountant] = None,
        settlement_config: Optional[SettlementConfig] = None,
        clock: Callable[[], int] = unix_now,
    ) -> None:
        self._registry = registry
        self._reader = reader
        self._authority = authority
        self._deriver = deriver or AddressDeriver(registry.program_ids)
        self._accountant = accountant or StakingAccountant()
        self._settlement_config = settlement_config or SettlementConfig()
        self._clock = clock
        self._logger = get_logger(__name__)

    async def aclose(self) -> None:
        if isinstance(self._reader, RpcGateway):
            await self._reader.close()

    @property
    def deriver(self) -> AddressDeriver:
        return self._deriver

    @property
    def authority(self) -> Optional[Wallet]:
        return self._authority

    # ------------------------------------------------------------------ reads
    async def fetch_staking_pool(self, stake_mint: Pubkey) -> Optional[StakingPool]:
        pool_address, _ = self._deriver.pool(stake_mint)
        return await self._fetch(CLOUT_STAKING, "staking_pool", pool_address, StakingPool)

    async def fetch_stake_position(self, stake_mint: Pubkey, owner: Pubkey) -> Optional[StakePosition]:
        pool_address, _ = self._deriver.pool(stake_mint)
        position_address, _ = self._deriver.position(pool_address, owner)
        return await self._fetch(CLOUT_STAKING, "stake_position", position_address, StakePosition)

    async def staking_snapshot(self, stake_mint: Pubkey, owner: Optional[Pubkey] = None) -> StakingSnapshot:
        addresses = self._deriver.staking_addresses(stake_mint, owner)
        now = self._clock()
        pool = await self._fetch(CLOUT_STAKING, "staking_pool", addresses.pool, StakingPool)
        position = None
        if addresses.position is not None:
            position = await self._fetch(CLOUT_STAKING, "stake_position", addresses.position, StakePosition)
        pending = None
        if pool is not None and owner is not None:
            pending = self._accountant.pending_rewards(pool, position, now)
        return StakingSnapshot(
            addresses=addresses,
            pool=pool,
            position=position,
            pending_rewards=pending,
            observed_at=now,
        )

    # ---------------------------------------------------------------- staking
    @_instrumented("stake")
    async def build_stake(
        self,
        stake_mint: Pubkey,
        staker: Pubkey,
        amount: int,
        staker_token_account: Optional[Pubkey] = None,
    ) -> BuiltTransaction:
        amount = _check_u64(amount, "amount")
        addresses = self._deriver.staking_addresses(stake_mint, staker)
        pool = await self._require(CLOUT_STAKING, "staking_pool", addresses.pool, StakingPool)
        self._check_stake_mint(pool, stake_mint)

        staking = self._program(CLOUT_STAKING)
        instruction = staking.client.instruction(
            "stake",
            StakeAccounts(
                pool=addresses.pool,
                pool_vault=addresses.pool_vault,
                position=addresses.position,
                staker=staker,
                staker_token=staker_token_account or associated_token_account(staker, stake_mint),
            ),
            {"amount": amount},
        )
        return await self._finalize("stake", [instruction], fee_payer=staker, payer_role="staker")

    @_instrumented("unstake")
    async def build_unstake(
        self,
        stake_mint: Pubkey,
        staker: Pubkey,
        amount: int,
        destination_token_account: Optional[Pubkey] = None,
    ) -> BuiltTransaction:
        amount = _check_u64(amount, "amount")
        addresses = self._deriver.staking_addresses(stake_mint, staker)
        pool = await self._require(CLOUT_STAKING, "staking_pool", addresses.pool, StakingPool)
        self._check_stake_mint(pool, stake_mint)
        position = await self._require(CLOUT_STAKING, "stake_position", addresses.position, StakePosition)
        if amount > position.amount:
            raise InvalidAmount(f"Cannot unstake {amount}; position holds {position.amount}")

        staking = self._program(CLOUT_STAKING)
        instruction = staking.client.instruction(
            "unstake",
            UnstakeAccounts(
                pool=addresses.pool,
                pool_vault=addresses.pool_vault,
                position=addresses.position,
                staker=staker,
                destination_token=destination_token_account or associated_token_account(staker, stake_mint),
                pool_signer=addresses.pool_signer,
            ),
            {"amount": amount},
        )
        return await self._finalize("unstake", [instruction], fee_payer=staker, payer_role="staker")

    @_instrumented("harvest")
    async def build_harvest(
        self,
        stake_mint: Pubkey,
        staker: Pubkey,
        recipient_token_account: Optional[Pubkey] = None,
    ) -> BuiltTransaction:
        wallet = require_authority(self._authority, action="harvest")
        addresses = self._deriver.staking_addresses(stake_mint, staker)
        pool = await self._require(CLOUT_STAKING, "staking_pool", addresses.pool, StakingPool)
        self._check_stake_mint(pool, stake_mint)
        position = await self._require(CLOUT_STAKING, "stake_position", addresses.position, StakePosition)
        if position.amount == 0 and position.pending_rewards == 0:
            raise InvalidAmount(f"Position {addresses.position} has no stake and no pending rewards")

        vault_address, _ = self._deriver.vault_config(pool.reward_mint)
        if pool.reward_vault != vault_address:
            raise AccountMismatch(
                f"Pool reward vault {pool.reward_vault} is not the vault config {vault_address} "
                f"for reward mint {pool.reward_mint}"
            )
        vault = await self._require(REWARDS_VAULT, "vault_config", vault_address, VaultConfig)
        if vault.reward_mint != pool.reward_mint:
            raise AccountMismatch(f"Vault mints {vault.reward_mint} but pool pays {pool.reward_mint}")
        assert_authority(vault.authority, wallet.public_key, context="reward vault")
        assert_authority(pool.authority, wallet.public_key, context="staking pool")

        pending = self._accountant.pending_rewards(pool, position, self._clock())
        staking = self._program(CLOUT_STAKING)
        instruction = staking.client.instruction(
            "harvest",
            HarvestAccounts(
                pool=addresses.pool,
                position=addresses.position,
                staker=staker,
                reward_vault=vault_address,
                vault_signer=self._deriver.vault_signer(pool.reward_mint)[0],
                reward_mint=pool.reward_mint,
                recipient_token=recipient_token_account or associated_token_account(staker, pool.reward_mint),
                pool_authority=wallet.public_key,
                pool_signer=addresses.pool_signer,
                rewards_vault_program=self._registry.program_ids.rewards_vault,
            ),
        )
        return await self._finalize(
            "harvest",
            [instruction],
            fee_payer=staker,
            payer_role="staker",
            authority=wallet,
            log_extra={"projected_rewards": pending},
        )

    # ---------------------------------------------------------------- loyalty
    @_instrumented("record_loyalty")
    async def build_record_loyalty(
        self,
        actor: Pubkey,
        volume_lamports: int,
        bonus_points: int = 0,
    ) -> BuiltTransaction:
        wallet = require_authority(self._authority, action="loyalty")
        volume_lamports = _check_u64(volume_lamports, "volume_lamports", allow_zero=True)
        bonus_points = _check_u64(bonus_points, "bonus_points", allow_zero=True)
        if volume_lamports == 0 and bonus_points == 0:
            raise InvalidAmount("Either volume_lamports or bonus_points must be positive")

        registry_address, _ = self._deriver.registry_config()
        config = await self._require(LOYALTY_REGISTRY, "registry_config", registry_address, RegistryConfig)
        assert_authority(config.authority, wallet.public_key, context="loyalty registry")
        profile_address, _ = self._deriver.loyalty_profile(actor)
        profile = await self._require(LOYALTY_REGISTRY, "loyalty_profile", profile_address, LoyaltyProfile)
        if profile.owner != actor:
            raise AccountMismatch(f"Loyalty profile {profile_address} belongs to {profile.owner}, not {actor}")
        projection = project_loyalty(profile, config, volume_lamports, bonus_points)

        loyalty = self._program(LOYALTY_REGISTRY)
        instruction = loyalty.client.instruction(
            "record_activity",
            RecordActivityAccounts(
                profile=profile_address,
                registry_config=registry_address,
                authority=wallet.public_key,
                actor=actor,
            ),
            {"volume_lamports": volume_lamports, "bonus_points": bonus_points},
        )
        built = await self._finalize(
            "record_loyalty",
            [instruction],
            fee_payer=actor,
            payer_role="actor",
            authority=wallet,
            log_extra={"points_awarded": projection.points_awarded},
        )
        built.loyalty = projection
        return built

    # ------------------------------------------------------------- settlement
    @_instrumented("settlement")
    async def build_settlement(self, sale: SaleContext) -> BuiltTransaction:
        """Settle a pending sale: payouts, buyer rewards and loyalty in one transaction.

        Every account is fetched and checked before any instruction is built,
        so an inconsistent sale produces no transaction at all.
        """

        wallet = require_authority(self._authority, action="settlement")
        reward_amount = _check_u64(sale.reward_amount, "reward_amount", allow_zero=True)
        bonus_points = _check_u64(sale.loyalty_bonus_points, "loyalty_bonus_points", allow_zero=True)
        treasury = sale.treasury_destination or self._configured_destination("treasury_destination")
        marketplace = sale.marketplace_fee_destination or self._configured_destination(
            "marketplace_fee_destination"
        )

        vault_address, _ = self._deriver.vault_config(sale.reward_mint)
        vault = await self._require(REWARDS_VAULT, "vault_config", vault_address, VaultConfig)
        if vault.reward_mint != sale.reward_mint:
            raise AccountMismatch(f"Vault {vault_address} mints {vault.reward_mint}, not {sale.reward_mint}")
        assert_authority(vault.authority, wallet.public_key, context="reward vault")

        registry_address, _ = self._deriver.registry_config()
        config = await self._require(LOYALTY_REGISTRY, "registry_config", registry_address, RegistryConfig)
        assert_authority(config.authority, wallet.public_key, context="loyalty registry")

        listing = await self._require(MARKET_ESCROW, "listing", sale.listing, Listing)
        self._check_listing(listing, sale)
        quote = quote_settlement(listing)

        escrow_address, _ = self._deriver.escrow_vault(sale.listing)
        escrow = await self._require(MARKET_ESCROW, "escrow_vault", escrow_address, EscrowVault)
        if escrow.listing != sale.listing:
            raise AccountMismatch(f"Escrow {escrow_address} belongs to listing {escrow.listing}")
        if escrow.total_deposited == 0 or escrow.total_deposited < listing.price_lamports:
            raise InvalidListingState(
                f"Escrow holds {escrow.total_deposited} lamports; listing price is {listing.price_lamports}"
            )

        profile_address, _ = self._deriver.loyalty_profile(sale.buyer)
        profile = await self._require(LOYALTY_REGISTRY, "loyalty_profile", profile_address, LoyaltyProfile)
        if profile.owner != sale.buyer:
            raise AccountMismatch(f"Loyalty profile {profile_address} belongs to {profile.owner}")
        # settle_sale records the sale price as loyalty volume
        loyalty = project_loyalty(profile, config, listing.price_lamports, bonus_points)

        escrow_program = self._program(MARKET_ESCROW)
        program_ids = self._registry.program_ids
        instruction = escrow_program.client.instruction(
            "settle_sale",
            SettleSaleAccounts(
                listing=sale.listing,
                escrow_vault=escrow_address,
                seller=sale.seller,
                buyer=sale.buyer,
                treasury_destination=treasury,
                marketplace_fee_destination=marketplace,
                royalty_destination=listing.royalty_destination,
                receipt=self._deriver.receipt(sale.listing, sale.buyer)[0],
                reward_vault=vault_address,
                vault_signer=self._deriver.vault_signer(sale.reward_mint)[0],
                reward_mint=sale.reward_mint,
                buyer_reward_account=sale.buyer_reward_account
                or associated_token_account(sale.buyer, sale.reward_mint),
                reward_authority=wallet.public_key,
                loyalty_profile=profile_address,
                loyalty_registry_config=registry_address,
                loyalty_authority=wallet.public_key,
                rewards_vault_program=program_ids.rewards_vault,
                loyalty_program=program_ids.loyalty_registry,
            ),
            {"reward_amount": reward_amount, "loyalty_bonus_points": bonus_points},
        )
        built = await self._finalize(
            "settlement",
            [instruction],
            fee_payer=sale.seller,
            payer_role="seller",
            authority=wallet,
            log_extra={"listing": str(sale.listing), "price_lamports": listing.price_lamports},
        )
        built.quote = quote
        built.loyalty = loyalty
        return built

    # ---------------------------------------------------------------- helpers
    def _program(self, name: str) -> ProgramHandle:
        return self._registry.load_program(name)

    async def _fetch(self, program: str, account: str, address: Pubkey, model: Type[M]) -> Optional[M]:
        return await self._program(program).client.fetch_model(account, address, model)

    async def _require(self, program: str, account: str, address: Pubkey, model: Type[M]) -> M:
        value = await self._fetch(program, account, address, model)
        if value is None:
            raise AccountNotFound(model.__name__, address)
        return value

    def _check_stake_mint(self, pool: StakingPool, stake_mint: Pubkey) -> None:
        if pool.stake_mint != stake_mint:
            raise AccountMismatch(f"Pool stakes {pool.stake_mint}, not {stake_mint}")

    def _check_listing(self, listing: Listing, sale: SaleContext) -> None:
        if listing.status is not ListingStatus.PENDING_SETTLEMENT:
            raise InvalidListingState(f"Listing {sale.listing} is {listing.status.value}, not pending settlement")
        if listing.buyer is None:
            raise InvalidListingState(f"Listing {sale.listing} has no recorded buyer")
        if listing.buyer != sale.buyer:
            raise InvalidListingState(f"Listing buyer {listing.buyer} does not match {sale.buyer}")
        if listing.seller != sale.seller:
            raise InvalidListingState(f"Listing seller {listing.seller} does not match {sale.seller}")

    def _configured_destination(self, name: str) -> Pubkey:
        value = getattr(self._settlement_config, name)
        if not value:
            raise ConfigurationError(f"settlement.{name} is not configured and was not supplied")
        return Pubkey.from_string(value)

    async def _finalize(
        self,
        action: str,
        instructions: Sequence[Instruction],
        *,
        fee_payer: Pubkey,
        payer_role: str,
        authority: Optional[Wallet] = None,
        log_extra: Optional[Dict[str, Any]] = None,
    ) -> BuiltTransaction:
        blockhash = await self._reader.get_latest_blockhash()
        message = Message.new_with_blockhash(list(instructions), fee_payer, blockhash)
        transaction = Transaction.new_unsigned(message)
        partial_signers: List[str] = []
        if authority is not None:
            transaction.partial_sign([authority.keypair], blockhash)
            partial_signers.append(AUTHORITY_ROLE)

        roles = {fee_payer: payer_role}
        if authority is not None:
            roles.setdefault(authority.public_key, AUTHORITY_ROLE)
        required = message.header.num_required_signatures
        pending = [
            SignerSlot(role=roles.get(key, "signer"), public_key=key)
            for key, signature in zip(message.account_keys[:required], transaction.signatures)
            if signature == Signature.default()
        ]

        METRICS.increment(f"transactions.built.{action}")
        self._logger.info(
            "Built %s transaction",
            action,
            extra={
                "fee_payer": str(fee_payer),
                "pending_signers": [slot.role for slot in pending],
                **(log_extra or {}),
            },
        )
        return BuiltTransaction(
            action=action,
            transaction=transaction,
            fee_payer=fee_payer,
            recent_blockhash=blockhash,
            partial_signers=partial_signers,
            pending_signers=pending,
        )


def create_composer(
    config: Optional[AppConfig] = None,
    *,
    reader: Optional[ChainReader] = None,
    authority: Optional[Wallet] = None,
) -> TransactionComposer:
    """Wire a composer from application settings."""

    app_config = config or get_app_config()
    chain = reader or RpcGateway(app_config.rpc)
    registry = ProgramRegistry(app_config.programs, reader=chain)
    return TransactionComposer(
        registry=registry,
        reader=chain,
        authority=authority if authority is not None else load_authority(app_config.authority),
        settlement_config=app_config.settlement,
    )


__all__ = [
    "BuiltTransaction",
    "SignerSlot",
    "StakingSnapshot",
    "TransactionComposer",
    "create_composer",
]
