from __future__ import annotations

import json

import pytest
from solders.pubkey import Pubkey
from tenacity import wait_none

from solana_rewards_settlement import main as cli
from solana_rewards_settlement.errors import NetworkError


class FlakySnapshotComposer:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self.closed = 0

    async def staking_snapshot(self, stake_mint, owner=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise NetworkError("getAccountInfo timed out")
        return _Snapshot(stake_mint)

    async def aclose(self) -> None:
        self.closed += 1


class _Snapshot:
    def __init__(self, stake_mint: Pubkey) -> None:
        self.stake_mint = stake_mint

    def to_dict(self):
        return {"pool": None, "stakeMint": str(self.stake_mint)}


@pytest.fixture(autouse=True)
def quiet_cli(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "bootstrap_observability", lambda **_: None)
    monkeypatch.setattr(cli, "fetch_pool_snapshot", cli.fetch_pool_snapshot.retry_with(wait=wait_none()))


def test_addresses_command_prints_derived_pdas(capsys: pytest.CaptureFixture[str]) -> None:
    stake_mint, owner = Pubkey.new_unique(), Pubkey.new_unique()

    assert cli.main(["addresses", str(stake_mint), "--owner", str(owner)]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert set(payload) == {"pool", "poolVault", "poolSigner", "position"}
    assert payload["position"] is not None


def test_invalid_mint_exits_non_zero(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["addresses", "not-a-key"]) == 1
    assert json.loads(capsys.readouterr().err.strip().splitlines()[-1])["kind"] == "InvalidAddress"


def test_pool_command_retries_network_errors(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    composer = FlakySnapshotComposer(failures=2)
    monkeypatch.setattr(cli, "create_composer", lambda authority=None: composer)
    stake_mint = Pubkey.new_unique()

    assert cli.main(["pool", str(stake_mint)]) == 0

    assert composer.calls == 3
    assert composer.closed == 3
    assert json.loads(capsys.readouterr().out)["stakeMint"] == str(stake_mint)


def test_pool_command_gives_up_after_retries(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    composer = FlakySnapshotComposer(failures=10)
    monkeypatch.setattr(cli, "create_composer", lambda authority=None: composer)

    assert cli.main(["pool", str(Pubkey.new_unique())]) == 1
    assert composer.calls == cli.RETRY_ATTEMPTS
    assert json.loads(capsys.readouterr().err.strip().splitlines()[-1])["kind"] == "NetworkError"
