"""Configuration management for the rewards settlement service."""

from __future__ import annotations

import os
import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, cast

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from solders.pubkey import Pubkey


DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "REWARDS_CONFIG_FILE"
PROFILE_ENV_VAR = "REWARDS_PROFILE"
ADMIN_KEYPAIR_ENV_VAR = "SOLANA_ADMIN_KEYPAIR"

# Flat environment names used by existing deployments.
_LEGACY_ENV_ALIASES: Dict[str, Tuple[str, str]] = {
    "SOLANA_RPC_URL": ("rpc", "primary_url"),
    "REWARDS_VAULT_PROGRAM_ID": ("programs", "rewards_vault"),
    "CLOUT_STAKING_PROGRAM_ID": ("programs", "clout_staking"),
    "MARKET_ESCROW_PROGRAM_ID": ("programs", "market_escrow"),
    "LOYALTY_REGISTRY_PROGRAM_ID": ("programs", "loyalty_registry"),
}


class Cluster(str, Enum):
    """Solana clusters the service can target."""

    DEVNET = "devnet"
    TESTNET = "testnet"
    MAINNET = "mainnet"
    LOCALNET = "localnet"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return {}
    base_section = cast(Dict[str, Any], data.get("default", {}))
    requested = os.getenv(PROFILE_ENV_VAR)
    if not requested:
        mode_section = base_section.get("mode")
        if isinstance(mode_section, dict):
            requested = cast(Optional[str], mode_section.get("cluster"))
        elif isinstance(mode_section, str):
            requested = mode_section
    requested = (requested or Cluster.DEVNET.value).lower()

    if requested in data and requested != "default":
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested]))
    if base_section:
        return base_section
    return data


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    merged = _select_profile(payload)
    merged = dict(merged)
    mode_section = merged.get("mode")
    if isinstance(mode_section, dict):
        mode_section = dict(mode_section)
        mode_section.setdefault("config_file", str(path))
        merged["mode"] = mode_section
    else:
        merged["mode"] = {"config_file": str(path)}
    return merged, path


def _legacy_env_settings() -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for env_name, (section, key) in _LEGACY_ENV_ALIASES.items():
        value = os.getenv(env_name)
        if value:
            payload.setdefault(section, {})[key] = value.strip()
    keypair_path = os.getenv(ADMIN_KEYPAIR_ENV_VAR)
    if keypair_path:
        payload.setdefault("authority", {})["keypair_path"] = keypair_path.strip()
    return payload


def _validate_pubkey(value: Optional[str], field: str) -> Optional[str]:
    if value is None or value == "":
        return None
    try:
        Pubkey.from_string(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field} must be a base58 public key") from exc
    return value


class RPCConfig(BaseModel):
    """RPC configuration for the Solana endpoint."""

    primary_url: AnyHttpUrl = Field(default="https://api.devnet.solana.com")
    request_timeout: float = Field(default=12.0, ge=1.0, le=60.0)
    commitment: str = Field(default="confirmed")

    @field_validator("request_timeout", mode="before")
    @classmethod
    def _parse_request_timeout(cls, value: Any) -> Any:
        if isinstance(value, str):
            return float(value)
        return value


class ProgramsConfig(BaseModel):
    """Deployed program identifiers and IDL location."""

    rewards_vault: str = Field(default="YBSSnuhAgYq6SN1yofjNt8XyLW7B3mQQQFUBF8gwH6J")
    clout_staking: str = Field(default="4mUWjVdfVWP9TT5wT9x2P2Uhd8NQgzWXXMGKM8xxmM9E")
    market_escrow: str = Field(default="8um9wXkGXVuxs9jVCpt3DrzkmMAiLDKrKkaHSLyPqPcX")
    loyalty_registry: str = Field(default="GgfPQkNHuNbSw6cyDpzHeTLbTxSA2ZPUa2F1ZascnJur")
    idl_dir: Optional[Path] = None

    @field_validator("rewards_vault", "clout_staking", "market_escrow", "loyalty_registry")
    @classmethod
    def _check_program_id(cls, value: str, info: Any) -> str:
        checked = _validate_pubkey(value, info.field_name)
        if checked is None:
            raise ValueError(f"{info.field_name} program id is required")
        return checked


class AuthorityConfig(BaseModel):
    """Signer used to partially sign privileged transactions."""

    private_key: Optional[str] = None
    keypair_path: Optional[Path] = None
    public_key: Optional[str] = None

    @field_validator("public_key")
    @classmethod
    def _check_public_key(cls, value: Optional[str]) -> Optional[str]:
        return _validate_pubkey(value, "authority.public_key")


class SettlementConfig(BaseModel):
    """Default payout destinations for marketplace settlements."""

    treasury_destination: Optional[str] = None
    marketplace_fee_destination: Optional[str] = None

    @field_validator("treasury_destination", "marketplace_fee_destination")
    @classmethod
    def _check_destination(cls, value: Optional[str], info: Any) -> Optional[str]:
        return _validate_pubkey(value, info.field_name)


class MonitoringConfig(BaseModel):
    """Logging configuration."""

    log_level: str = Field(default="INFO")


class APIConfig(BaseModel):
    """HTTP boundary settings."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)
    allowed_origins: List[str] = Field(default_factory=list)


class ModeConfig(BaseModel):
    """Cluster selection and the config file that produced it."""

    cluster: Cluster = Field(default=Cluster.DEVNET)
    config_file: Optional[Path] = None


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    mode: ModeConfig = Field(default_factory=ModeConfig)
    rpc: RPCConfig = Field(default_factory=RPCConfig)
    programs: ProgramsConfig = Field(default_factory=ProgramsConfig)
    authority: AuthorityConfig = Field(default_factory=AuthorityConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, _ = _load_toml_config()
            return payload

        def legacy_env_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            return _legacy_env_settings()

        # Runtime environment variables win over static config file defaults.
        return (
            init_settings,
            env_settings,
            legacy_env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _check_authority_source(self) -> "AppConfig":
        if self.authority.private_key and self.authority.keypair_path:
            raise ValueError("authority.private_key and authority.keypair_path are mutually exclusive")
        return self


def env_path() -> Path:
    """Return the default path for the `.env` file."""

    return Path.cwd() / ".env"


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "APIConfig",
    "AppConfig",
    "AuthorityConfig",
    "Cluster",
    "ModeConfig",
    "MonitoringConfig",
    "ProgramsConfig",
    "RPCConfig",
    "SettlementConfig",
    "env_path",
    "get_app_config",
]
