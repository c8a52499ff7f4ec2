"""Lazily loaded, injectable registry of the four reward programs."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, fields, is_dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Type, TypeVar, Union

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from ..config.settings import ProgramsConfig, get_app_config
from ..errors import AccountDecodeError, ConfigurationError
from ..execution.rpc import ChainReader
from ..monitoring.logger import get_logger
from .addresses import ProgramIds
from .layouts import AccountCoder, InstructionCoder, ProgramError, ProgramLayout, build_program_layout

REWARDS_VAULT = "rewards_vault"
CLOUT_STAKING = "clout_staking"
MARKET_ESCROW = "market_escrow"
LOYALTY_REGISTRY = "loyalty_registry"
PROGRAM_NAMES = (REWARDS_VAULT, CLOUT_STAKING, MARKET_ESCROW, LOYALTY_REGISTRY)

DEFAULT_IDL_DIR = Path(__file__).with_name("idl")

IdlLoader = Callable[[str], Mapping[str, Any]]
M = TypeVar("M")


def load_idl_file(name: str, idl_dir: Optional[Path] = None) -> Dict[str, Any]:
    path = Path(idl_dir or DEFAULT_IDL_DIR) / f"{name}.json"
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except OSError as exc:
        raise ConfigurationError(f"IDL for {name} is unavailable at {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"IDL for {name} at {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"IDL for {name} at {path} must be a JSON object")
    return payload


def _account_mapping(accounts: Union[Mapping[str, Pubkey], Any]) -> Dict[str, Pubkey]:
    if is_dataclass(accounts):
        return {item.name: getattr(accounts, item.name) for item in fields(accounts)}
    return dict(accounts)


class ProgramClient:
    """Builds instructions for one program and fetches its accounts."""

    def __init__(self, program_id: Pubkey, layout: ProgramLayout, reader: Optional[ChainReader]) -> None:
        self.program_id = program_id
        self._layout = layout
        self._reader = reader

    def instruction(
        self,
        name: str,
        accounts: Union[Mapping[str, Pubkey], Any],
        args: Optional[Mapping[str, Any]] = None,
    ) -> Instruction:
        coder = self.instruction_coder(name)
        mapping = _account_mapping(accounts)
        known = {meta.name for meta in coder.accounts}
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ConfigurationError(f"{self._layout.name}.{name} has no accounts named {', '.join(unknown)}")

        metas = []
        for meta in coder.accounts:
            key = mapping.get(meta.name)
            if key is None:
                key = meta.address
            if key is None:
                raise ConfigurationError(f"{self._layout.name}.{name} requires account {meta.name}")
            metas.append(AccountMeta(pubkey=key, is_signer=meta.signer, is_writable=meta.writable))
        return Instruction(self.program_id, coder.encode(args or {}), metas)

    async def fetch(self, account_name: str, address: Pubkey) -> Optional[Dict[str, Any]]:
        """Decoded fields of ``address``, or ``None`` when the account does not exist."""

        coder = self.account_coder(account_name)
        if self._reader is None:
            raise ConfigurationError(f"{self._layout.name} client has no RPC reader attached")
        snapshot = await self._reader.get_account(address, expected_owner=self.program_id)
        if snapshot is None:
            return None
        return coder.decode(snapshot.data)

    async def fetch_model(self, account_name: str, address: Pubkey, model: Type[M]) -> Optional[M]:
        fields_ = await self.fetch(account_name, address)
        if fields_ is None:
            return None
        try:
            return model.from_fields(fields_)  # type: ignore[attr-defined]
        except KeyError as exc:
            raise AccountDecodeError(f"{account_name} layout is missing field {exc}") from exc

    def instruction_coder(self, name: str) -> InstructionCoder:
        try:
            return self._layout.instructions[name]
        except KeyError as exc:
            raise ConfigurationError(f"{self._layout.name} has no instruction {name!r}") from exc

    def account_coder(self, name: str) -> AccountCoder:
        try:
            return self._layout.accounts[name]
        except KeyError as exc:
            raise ConfigurationError(f"{self._layout.name} has no account type {name!r}") from exc


@dataclass(slots=True)
class ProgramHandle:
    """Program id, IDL, compiled layouts, error table and bound client."""

    name: str
    program_id: Pubkey
    idl: Mapping[str, Any]
    layout: ProgramLayout
    client: ProgramClient

    def account_coder(self, account_name: str) -> AccountCoder:
        return self.client.account_coder(account_name)

    def instruction_layout(self, instruction_name: str) -> InstructionCoder:
        return self.client.instruction_coder(instruction_name)

    def error_for(self, code: int) -> Optional[ProgramError]:
        return self.layout.errors.get(code)


class ProgramRegistry:
    """Loads all program handles together on first use and caches them.

    Construct one per process and pass it to the components that need it.
    """

    def __init__(
        self,
        config: Optional[ProgramsConfig] = None,
        *,
        reader: Optional[ChainReader] = None,
        loader: Optional[IdlLoader] = None,
    ) -> None:
        self._config = config or get_app_config().programs
        self._program_ids = ProgramIds.from_config(self._config)
        self._loader: IdlLoader = loader or partial(load_idl_file, idl_dir=self._config.idl_dir)
        self._reader = reader
        self._handles: Dict[str, ProgramHandle] = {}
        self._lock = threading.Lock()
        self._logger = get_logger(__name__)

    @property
    def program_ids(self) -> ProgramIds:
        return self._program_ids

    def load_program(self, name: str) -> ProgramHandle:
        if name not in PROGRAM_NAMES:
            raise ConfigurationError(f"Unknown program {name!r}; expected one of {', '.join(PROGRAM_NAMES)}")
        handle = self._handles.get(name)
        if handle is not None:
            return handle
        with self._lock:
            if not self._handles:
                self._handles = self._load_all()
        return self._handles[name]

    def _load_all(self) -> Dict[str, ProgramHandle]:
        handles: Dict[str, ProgramHandle] = {}
        for name in PROGRAM_NAMES:
            idl = self._loader(name)
            layout = build_program_layout(idl)
            program_id: Pubkey = getattr(self._program_ids, name)
            if program_id != layout.address:
                self._logger.info(
                    "Using configured program id for %s instead of IDL address",
                    name,
                    extra={"program_id": str(program_id), "idl_address": str(layout.address)},
                )
            handles[name] = ProgramHandle(
                name=name,
                program_id=program_id,
                idl=idl,
                layout=layout,
                client=ProgramClient(program_id, layout, self._reader),
            )
        self._logger.debug("Loaded %d program handles", len(handles))
        return handles


__all__ = [
    "CLOUT_STAKING",
    "DEFAULT_IDL_DIR",
    "LOYALTY_REGISTRY",
    "MARKET_ESCROW",
    "PROGRAM_NAMES",
    "REWARDS_VAULT",
    "ProgramClient",
    "ProgramHandle",
    "ProgramRegistry",
    "load_idl_file",
]
