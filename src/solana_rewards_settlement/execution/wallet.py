"""Loading the authority keypair used to co-sign privileged transactions."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from ..config.settings import AuthorityConfig, get_app_config
from ..errors import ConfigurationError


@dataclass(slots=True)
class Wallet:
    """Wrapper around a Solana keypair."""

    keypair: Keypair

    @property
    def public_key(self) -> Pubkey:
        return self.keypair.pubkey()


def _read_keypair_file(path: Path) -> bytes:
    try:
        with path.expanduser().open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except OSError as exc:
        raise ConfigurationError(f"Authority keypair file {path} is unreadable: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Authority keypair file {path} is not JSON: {exc}") from exc
    if not isinstance(data, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) and 0 <= item <= 255 for item in data
    ):
        raise ConfigurationError(f"Authority keypair file {path} must hold a JSON byte array")
    return bytes(data)


def load_authority(config: Optional[AuthorityConfig] = None) -> Optional[Wallet]:
    """Return the configured authority, or ``None`` when no key is configured."""

    cfg = config or get_app_config().authority
    if cfg.private_key:
        try:
            secret_key = base58.b58decode(cfg.private_key.strip())
        except ValueError as exc:
            raise ConfigurationError("Authority private key is not valid base58") from exc
    elif cfg.keypair_path:
        secret_key = _read_keypair_file(Path(cfg.keypair_path))
    else:
        return None

    try:
        keypair = Keypair.from_bytes(secret_key)
    except ValueError as exc:
        raise ConfigurationError("Authority secret key must be 64 bytes") from exc

    wallet = Wallet(keypair=keypair)
    if cfg.public_key and str(wallet.public_key) != cfg.public_key:
        raise ConfigurationError(
            f"Authority key {wallet.public_key} does not match configured public key {cfg.public_key}"
        )
    return wallet


__all__ = ["Wallet", "load_authority"]
