"""Translate Anchor IDL documents into Borsh layouts and account/instruction coders."""

from __future__ import annotations

import hashlib
import io
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from borsh_construct import (
    Bool,
    CStruct,
    I8,
    I16,
    I32,
    I64,
    I128,
    Option,
    String,
    U8,
    U16,
    U32,
    U64,
    U128,
    Vec,
)
from construct import Adapter, Bytes, Construct, ConstructError, MappingError
from solders.pubkey import Pubkey

from ..errors import AccountDecodeError, ConfigurationError

DISCRIMINATOR_SIZE = 8

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")

_PRIMITIVES: Dict[str, Construct] = {
    "u8": U8,
    "u16": U16,
    "u32": U32,
    "u64": U64,
    "u128": U128,
    "i8": I8,
    "i16": I16,
    "i32": I32,
    "i64": I64,
    "i128": I128,
    "bool": Bool,
    "string": String,
}


def snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY_RE.sub(r"_\1", name).lower()


def pascal_case(name: str) -> str:
    return name[:1].upper() + name[1:]


def sighash(namespace: str, name: str) -> bytes:
    """Anchor discriminator: first 8 bytes of ``sha256("<namespace>:<name>")``."""

    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


class PubkeyAdapter(Adapter):
    """32 raw bytes on the wire, :class:`Pubkey` in Python."""

    def _decode(self, obj: bytes, context: Any, path: Any) -> Pubkey:
        return Pubkey.from_bytes(bytes(obj))

    def _encode(self, obj: Pubkey, context: Any, path: Any) -> bytes:
        return bytes(obj)


BorshPubkey = PubkeyAdapter(Bytes(32))


class UnitEnumAdapter(Adapter):
    """Fieldless Borsh enum: a u8 variant index mapped to a snake_case name."""

    def __init__(self, name: str, variants: Tuple[str, ...]) -> None:
        super().__init__(U8)
        self.enum_name = name
        self.variants = variants

    def _decode(self, obj: int, context: Any, path: Any) -> str:
        if obj >= len(self.variants):
            raise MappingError(f"{self.enum_name} has no variant {obj}", path=path)
        return self.variants[obj]

    def _encode(self, obj: Any, context: Any, path: Any) -> int:
        value = getattr(obj, "value", obj)
        try:
            return self.variants.index(value)
        except ValueError as exc:
            raise MappingError(f"{self.enum_name} has no variant {value!r}", path=path) from exc


def _plain(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items() if not str(key).startswith("_")}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


class _TypeResolver:
    def __init__(self, idl_types: Mapping[str, Mapping[str, Any]]) -> None:
        self._types = idl_types
        self._cache: Dict[str, Construct] = {}

    def resolve(self, idl_type: Any) -> Construct:
        if isinstance(idl_type, str):
            if idl_type in ("pubkey", "publicKey"):
                return BorshPubkey
            if idl_type in _PRIMITIVES:
                return _PRIMITIVES[idl_type]
            raise ConfigurationError(f"Unsupported IDL type {idl_type!r}")
        if isinstance(idl_type, dict):
            if "option" in idl_type:
                return Option(self.resolve(idl_type["option"]))
            if "vec" in idl_type:
                return Vec(self.resolve(idl_type["vec"]))
            if "array" in idl_type:
                inner, length = idl_type["array"]
                return self.resolve(inner)[int(length)]
            if "defined" in idl_type:
                defined = idl_type["defined"]
                name = defined["name"] if isinstance(defined, dict) else defined
                return self.defined(name)
        raise ConfigurationError(f"Unsupported IDL type {idl_type!r}")

    def defined(self, name: str) -> Construct:
        if name in self._cache:
            return self._cache[name]
        entry = self._types.get(name)
        if entry is None:
            raise ConfigurationError(f"IDL references undefined type {name!r}")
        kind = entry.get("type", {}).get("kind")
        if kind == "struct":
            construct = self.struct(entry["type"].get("fields", []))
        elif kind == "enum":
            variants = entry["type"].get("variants", [])
            if any(variant.get("fields") for variant in variants):
                raise ConfigurationError(f"Enum {name!r} carries variant data, which is unsupported")
            construct = UnitEnumAdapter(name, tuple(snake_case(variant["name"]) for variant in variants))
        else:
            raise ConfigurationError(f"Unsupported kind {kind!r} for IDL type {name!r}")
        self._cache[name] = construct
        return construct

    def struct(self, fields: Any) -> Construct:
        members = []
        for item in fields:
            if not isinstance(item, dict) or "name" not in item:
                raise ConfigurationError("IDL struct fields must be named")
            members.append(snake_case(item["name"]) / self.resolve(item["type"]))
        return CStruct(*members)


@dataclass(frozen=True, slots=True)
class AccountCoder:
    """Encode and decode one Anchor account type."""

    name: str
    discriminator: bytes
    layout: Construct

    def split(self, data: bytes) -> Tuple[Dict[str, Any], bytes]:
        """Decode ``data`` and also return the unparsed trailing bytes."""

        raw = bytes(data)
        if len(raw) < DISCRIMINATOR_SIZE:
            raise AccountDecodeError(f"{self.name} data is shorter than its discriminator")
        if raw[:DISCRIMINATOR_SIZE] != self.discriminator:
            raise AccountDecodeError(f"Account data is not a {self.name}: discriminator mismatch")
        stream = io.BytesIO(raw[DISCRIMINATOR_SIZE:])
        try:
            parsed = self.layout.parse_stream(stream)
        except ConstructError as exc:
            raise AccountDecodeError(f"Unable to decode {self.name}: {exc}") from exc
        return _plain(parsed), stream.read()

    def decode(self, data: bytes) -> Dict[str, Any]:
        fields, _ = self.split(data)
        return fields

    def encode(self, fields: Mapping[str, Any], tail: bytes = b"") -> bytes:
        try:
            body = self.layout.build(dict(fields))
        except ConstructError as exc:
            raise AccountDecodeError(f"Unable to encode {self.name}: {exc}") from exc
        return self.discriminator + body + bytes(tail)


@dataclass(frozen=True, slots=True)
class IdlAccountMeta:
    name: str
    writable: bool
    signer: bool
    address: Optional[Pubkey] = None
    optional: bool = False


@dataclass(frozen=True, slots=True)
class InstructionCoder:
    """Instruction discriminator, argument layout, and ordered account list."""

    name: str
    discriminator: bytes
    args: Construct
    arg_names: Tuple[str, ...]
    accounts: Tuple[IdlAccountMeta, ...]

    def encode(self, args: Mapping[str, Any]) -> bytes:
        missing = [name for name in self.arg_names if name not in args]
        if missing:
            raise ConfigurationError(f"Instruction {self.name} missing arguments: {', '.join(missing)}")
        try:
            return self.discriminator + self.args.build({name: args[name] for name in self.arg_names})
        except ConstructError as exc:
            raise ConfigurationError(f"Unable to encode {self.name} arguments: {exc}") from exc

    def decode(self, data: bytes) -> Dict[str, Any]:
        raw = bytes(data)
        if raw[:DISCRIMINATOR_SIZE] != self.discriminator:
            raise AccountDecodeError(f"Instruction data is not {self.name}")
        try:
            return _plain(self.args.parse(raw[DISCRIMINATOR_SIZE:]))
        except ConstructError as exc:
            raise AccountDecodeError(f"Unable to decode {self.name} arguments: {exc}") from exc


@dataclass(frozen=True, slots=True)
class ProgramError:
    code: int
    name: str
    message: str


@dataclass(slots=True)
class ProgramLayout:
    """Everything derived from one IDL document."""

    name: str
    address: Pubkey
    accounts: Dict[str, AccountCoder] = field(default_factory=dict)
    instructions: Dict[str, InstructionCoder] = field(default_factory=dict)
    errors: Dict[int, ProgramError] = field(default_factory=dict)


def _discriminator(entry: Mapping[str, Any], namespace: str, anchor_name: str, owner: str) -> bytes:
    raw = entry.get("discriminator")
    if not isinstance(raw, list) or len(raw) != DISCRIMINATOR_SIZE:
        raise ConfigurationError(f"{owner}: {anchor_name} has no 8-byte discriminator")
    value = bytes(raw)
    if value != sighash(namespace, anchor_name):
        raise ConfigurationError(f"{owner}: discriminator for {anchor_name} does not match its name")
    return value


def build_program_layout(idl: Mapping[str, Any]) -> ProgramLayout:
    """Compile an Anchor IDL (format 0.1.0 JSON) into coders."""

    try:
        name = snake_case(idl["metadata"]["name"])
        address = Pubkey.from_string(idl["address"])
        instructions = idl["instructions"]
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Malformed IDL: {exc}") from exc

    try:
        return _compile_entries(idl, ProgramLayout(name=name, address=address), instructions)
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Malformed IDL for {name}: {exc!r}") from exc


def _compile_entries(idl: Mapping[str, Any], layout: ProgramLayout, instructions: Any) -> ProgramLayout:
    name = layout.name
    types = {entry["name"]: entry for entry in idl.get("types", []) if isinstance(entry, dict) and "name" in entry}
    resolver = _TypeResolver(types)

    for entry in idl.get("accounts", []):
        account_name = pascal_case(entry["name"])
        layout.accounts[snake_case(entry["name"])] = AccountCoder(
            name=account_name,
            discriminator=_discriminator(entry, "account", account_name, name),
            layout=resolver.defined(entry["name"]),
        )

    for entry in instructions:
        ix_name = snake_case(entry["name"])
        metas = []
        for account in entry.get("accounts", []):
            if "accounts" in account:
                raise ConfigurationError(f"{name}.{ix_name}: nested account groups are unsupported")
            address_value = account.get("address")
            metas.append(
                IdlAccountMeta(
                    name=snake_case(account["name"]),
                    writable=bool(account.get("writable", False)),
                    signer=bool(account.get("signer", False)),
                    address=Pubkey.from_string(address_value) if address_value else None,
                    optional=bool(account.get("optional", False)),
                )
            )
        args = entry.get("args", [])
        layout.instructions[ix_name] = InstructionCoder(
            name=ix_name,
            discriminator=_discriminator(entry, "global", ix_name, name),
            args=resolver.struct(args),
            arg_names=tuple(snake_case(arg["name"]) for arg in args),
            accounts=tuple(metas),
        )

    for entry in idl.get("errors", []):
        code = int(entry["code"])
        layout.errors[code] = ProgramError(code=code, name=entry["name"], message=entry.get("msg", ""))

    return layout


__all__ = [
    "AccountCoder",
    "BorshPubkey",
    "DISCRIMINATOR_SIZE",
    "IdlAccountMeta",
    "InstructionCoder",
    "ProgramError",
    "ProgramLayout",
    "PubkeyAdapter",
    "UnitEnumAdapter",
    "build_program_layout",
    "pascal_case",
    "sighash",
    "snake_case",
]
