from __future__ import annotations

import json
from pathlib import Path

import base58
import pytest
from solders.keypair import Keypair

from solana_rewards_settlement.config.settings import AuthorityConfig
from solana_rewards_settlement.errors import AuthorityMismatch, ConfigurationError, MissingAuthority
from solana_rewards_settlement.execution.authority import assert_authority, require_authority
from solana_rewards_settlement.execution.wallet import load_authority
from solana_rewards_settlement.monitoring.metrics import METRICS


def test_no_authority_configured_returns_none() -> None:
    wallet = load_authority(AuthorityConfig())
    assert wallet is None
    with pytest.raises(MissingAuthority):
        require_authority(wallet, action="harvest")


def test_loads_base58_private_key() -> None:
    keypair = Keypair()
    encoded = base58.b58encode(bytes(keypair)).decode()
    wallet = load_authority(AuthorityConfig(private_key=encoded, public_key=str(keypair.pubkey())))
    assert wallet is not None
    assert wallet.public_key == keypair.pubkey()
    assert require_authority(wallet, action="harvest") is wallet


def test_loads_json_keypair_file(tmp_path: Path) -> None:
    keypair = Keypair()
    path = tmp_path / "authority.json"
    path.write_text(json.dumps(list(bytes(keypair))))
    wallet = load_authority(AuthorityConfig(keypair_path=path))
    assert wallet is not None
    assert wallet.public_key == keypair.pubkey()


def test_public_key_mismatch_is_a_configuration_error() -> None:
    encoded = base58.b58encode(bytes(Keypair())).decode()
    other = str(Keypair().pubkey())
    with pytest.raises(ConfigurationError):
        load_authority(AuthorityConfig(private_key=encoded, public_key=other))


def test_bad_key_material_is_a_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_authority(AuthorityConfig(private_key="0OIl"))
    with pytest.raises(ConfigurationError):
        load_authority(AuthorityConfig(private_key=base58.b58encode(b"short").decode()))

    path = tmp_path / "broken.json"
    path.write_text('{"secret": 1}')
    with pytest.raises(ConfigurationError):
        load_authority(AuthorityConfig(keypair_path=path))
    with pytest.raises(ConfigurationError):
        load_authority(AuthorityConfig(keypair_path=tmp_path / "missing.json"))


def test_assert_authority_reports_context() -> None:
    expected, actual = Keypair().pubkey(), Keypair().pubkey()
    assert_authority(expected, expected, context="loyalty registry")
    with pytest.raises(AuthorityMismatch) as excinfo:
        assert_authority(expected, actual, context="loyalty registry")
    assert excinfo.value.expected == expected
    assert excinfo.value.actual == actual
    assert excinfo.value.status_code == 403
    assert METRICS.get("authority.mismatch.loyalty registry") == 1


def test_keypair_file_with_out_of_range_bytes_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "authority.json"
    path.write_text(json.dumps([256] + list(bytes(Keypair()))[1:]))
    with pytest.raises(ConfigurationError):
        load_authority(AuthorityConfig(keypair_path=path))
