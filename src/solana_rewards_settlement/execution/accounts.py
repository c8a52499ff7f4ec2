"""Account sets for each instruction the composer emits.

Field names match the IDL account names in snake_case. The IDL decides the
order of the account metas, not the field order here.
"""

from __future__ import annotations

from dataclasses import dataclass

from solders.pubkey import Pubkey

from ..utils.constants import SYSTEM_PROGRAM_ID, SYSVAR_RENT_ID, TOKEN_PROGRAM_ID


@dataclass(frozen=True, slots=True)
class StakeAccounts:
    pool: Pubkey
    pool_vault: Pubkey
    position: Pubkey
    staker: Pubkey
    staker_token: Pubkey
    token_program: Pubkey = TOKEN_PROGRAM_ID
    system_program: Pubkey = SYSTEM_PROGRAM_ID
    rent: Pubkey = SYSVAR_RENT_ID


@dataclass(frozen=True, slots=True)
class UnstakeAccounts:
    pool: Pubkey
    pool_vault: Pubkey
    position: Pubkey
    staker: Pubkey
    destination_token: Pubkey
    pool_signer: Pubkey
    token_program: Pubkey = TOKEN_PROGRAM_ID


@dataclass(frozen=True, slots=True)
class HarvestAccounts:
    pool: Pubkey
    position: Pubkey
    staker: Pubkey
    reward_vault: Pubkey
    vault_signer: Pubkey
    reward_mint: Pubkey
    recipient_token: Pubkey
    pool_authority: Pubkey
    pool_signer: Pubkey
    rewards_vault_program: Pubkey
    token_program: Pubkey = TOKEN_PROGRAM_ID


@dataclass(frozen=True, slots=True)
class RecordActivityAccounts:
    profile: Pubkey
    registry_config: Pubkey
    authority: Pubkey
    actor: Pubkey


@dataclass(frozen=True, slots=True)
class SettleSaleAccounts:
    listing: Pubkey
    escrow_vault: Pubkey
    seller: Pubkey
    buyer: Pubkey
    treasury_destination: Pubkey
    marketplace_fee_destination: Pubkey
    royalty_destination: Pubkey
    receipt: Pubkey
    reward_vault: Pubkey
    vault_signer: Pubkey
    reward_mint: Pubkey
    buyer_reward_account: Pubkey
    reward_authority: Pubkey
    loyalty_profile: Pubkey
    loyalty_registry_config: Pubkey
    loyalty_authority: Pubkey
    rewards_vault_program: Pubkey
    loyalty_program: Pubkey
    token_program: Pubkey = TOKEN_PROGRAM_ID
    system_program: Pubkey = SYSTEM_PROGRAM_ID


__all__ = [
    "HarvestAccounts",
    "RecordActivityAccounts",
    "SettleSaleAccounts",
    "StakeAccounts",
    "UnstakeAccounts",
]
