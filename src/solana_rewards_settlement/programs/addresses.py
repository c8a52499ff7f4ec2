"""Deterministic program-derived address helpers for the four reward programs."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional, Sequence

from cachetools import LRUCache, cached
from cachetools.keys import hashkey
from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from ..config.settings import ProgramsConfig, get_app_config
from ..errors import AddressDerivationError, InvalidAmount
from ..utils.constants import U64_MAX

SEED_POOL = b"pool"
SEED_POOL_VAULT = b"pool-vault"
SEED_POOL_SIGNER = b"pool-signer"
SEED_POSITION = b"position"
SEED_VAULT_SIGNER = b"vault-signer"
SEED_VAULT_CONFIG = b"vault-config"
SEED_LISTING = b"listing"
SEED_ESCROW = b"escrow"
SEED_RECEIPT = b"receipt"
SEED_PROFILE = b"profile"
SEED_REGISTRY_CONFIG = b"registry-config"

MAX_SEEDS = 16
MAX_SEED_LEN = 32


@cached(
    cache=LRUCache(maxsize=4096),
    key=lambda seeds, program_id: hashkey(tuple(bytes(seed) for seed in seeds), program_id),
)
def derive(seeds: Sequence[bytes], program_id: Pubkey) -> tuple[Pubkey, int]:
    """Return ``(address, bump)`` for ``seeds`` under ``program_id``.

    The bump is searched from 255 downwards, so the result is the canonical
    address the on-chain program expects.
    """

    seed_list = [bytes(seed) for seed in seeds]
    if len(seed_list) >= MAX_SEEDS:
        raise AddressDerivationError(f"At most {MAX_SEEDS - 1} seeds are allowed, got {len(seed_list)}")
    for seed in seed_list:
        if len(seed) > MAX_SEED_LEN:
            raise AddressDerivationError(f"Seed {seed[:8]!r}... exceeds {MAX_SEED_LEN} bytes")
    try:
        return Pubkey.find_program_address(seed_list, program_id)
    except (TypeError, ValueError) as exc:
        raise AddressDerivationError(f"No viable bump for seeds under {program_id}") from exc


@dataclass(frozen=True, slots=True)
class ProgramIds:
    """Program identifiers the derivations are scoped to."""

    rewards_vault: Pubkey
    clout_staking: Pubkey
    market_escrow: Pubkey
    loyalty_registry: Pubkey

    @classmethod
    def from_config(cls, config: Optional[ProgramsConfig] = None) -> "ProgramIds":
        cfg = config or get_app_config().programs
        return cls(
            rewards_vault=Pubkey.from_string(cfg.rewards_vault),
            clout_staking=Pubkey.from_string(cfg.clout_staking),
            market_escrow=Pubkey.from_string(cfg.market_escrow),
            loyalty_registry=Pubkey.from_string(cfg.loyalty_registry),
        )


@dataclass(frozen=True, slots=True)
class StakingAddresses:
    """Every address a staking action touches for one stake mint."""

    pool: Pubkey
    pool_vault: Pubkey
    pool_signer: Pubkey
    position: Optional[Pubkey] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "pool": str(self.pool),
            "poolVault": str(self.pool_vault),
            "poolSigner": str(self.pool_signer),
            "position": str(self.position) if self.position is not None else None,
        }


class AddressDeriver:
    """Named derivations bound to a set of program ids."""

    def __init__(self, program_ids: Optional[ProgramIds] = None) -> None:
        self._ids = program_ids or ProgramIds.from_config()

    @property
    def program_ids(self) -> ProgramIds:
        return self._ids

    # staking program
    def pool(self, stake_mint: Pubkey) -> tuple[Pubkey, int]:
        return derive([SEED_POOL, bytes(stake_mint)], self._ids.clout_staking)

    def pool_vault(self, stake_mint: Pubkey) -> tuple[Pubkey, int]:
        return derive([SEED_POOL_VAULT, bytes(stake_mint)], self._ids.clout_staking)

    def pool_signer(self, stake_mint: Pubkey) -> tuple[Pubkey, int]:
        return derive([SEED_POOL_SIGNER, bytes(stake_mint)], self._ids.clout_staking)

    def position(self, pool: Pubkey, owner: Pubkey) -> tuple[Pubkey, int]:
        return derive([SEED_POSITION, bytes(pool), bytes(owner)], self._ids.clout_staking)

    # reward vault program
    def vault_signer(self, reward_mint: Pubkey) -> tuple[Pubkey, int]:
        return derive([SEED_VAULT_SIGNER, bytes(reward_mint)], self._ids.rewards_vault)

    def vault_config(self, reward_mint: Pubkey) -> tuple[Pubkey, int]:
        return derive([SEED_VAULT_CONFIG, bytes(reward_mint)], self._ids.rewards_vault)

    # escrow program
    def listing(self, seller: Pubkey, nft_mint: Pubkey, listing_id: int) -> tuple[Pubkey, int]:
        if not 0 <= listing_id <= U64_MAX:
            raise InvalidAmount(f"listing_id {listing_id} does not fit in u64")
        id_bytes = struct.pack("<Q", listing_id)
        return derive([SEED_LISTING, bytes(seller), bytes(nft_mint), id_bytes], self._ids.market_escrow)

    def escrow_vault(self, listing: Pubkey) -> tuple[Pubkey, int]:
        return derive([SEED_ESCROW, bytes(listing)], self._ids.market_escrow)

    def receipt(self, listing: Pubkey, buyer: Pubkey) -> tuple[Pubkey, int]:
        return derive([SEED_RECEIPT, bytes(listing), bytes(buyer)], self._ids.market_escrow)

    # loyalty program
    def loyalty_profile(self, user: Pubkey) -> tuple[Pubkey, int]:
        return derive([SEED_PROFILE, bytes(user)], self._ids.loyalty_registry)

    def registry_config(self) -> tuple[Pubkey, int]:
        return derive([SEED_REGISTRY_CONFIG], self._ids.loyalty_registry)

    def staking_addresses(self, stake_mint: Pubkey, owner: Optional[Pubkey] = None) -> StakingAddresses:
        pool, _ = self.pool(stake_mint)
        position = self.position(pool, owner)[0] if owner is not None else None
        return StakingAddresses(
            pool=pool,
            pool_vault=self.pool_vault(stake_mint)[0],
            pool_signer=self.pool_signer(stake_mint)[0],
            position=position,
        )


def associated_token_account(owner: Pubkey, mint: Pubkey) -> Pubkey:
    """Default token account for ``owner`` when the caller supplies none."""

    return get_associated_token_address(owner, mint)


__all__ = [
    "AddressDeriver",
    "ProgramIds",
    "StakingAddresses",
    "associated_token_account",
    "derive",
]
