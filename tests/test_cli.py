from __future__ import annotations

import json
import threading

import pytest

from scripts import run_validator_daemon, sync_validator_slots
from trustless_fee_attribution.errors import ConfigurationError
from trustless_fee_attribution.models import WatcherStatus

from conftest import CURVE, MINT, VAULT, FakeRpc, FakeSettlementClient


class FakeDaemon:
    def __init__(self, accepted: int = 1) -> None:
        self.accepted = accepted
        self.started_with: list = []
        self.stopped = False

    def start(self, watches) -> int:
        self.started_with = list(watches)
        return self.accepted

    def pending_totals(self):
        return {}

    def stop(self) -> None:
        self.stopped = True


@pytest.fixture
def token_file(tmp_path):
    path = tmp_path / "test.json"
    path.write_text(
        json.dumps(
            {
                "mint": MINT,
                "bondingCurve": CURVE,
                "creatorVault": VAULT,
                "validatorState": "Va1idatorState11111",
                "tokenStats": "TokenStats111111",
                "symbol": "TEST",
            }
        )
    )
    return path


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    monkeypatch.setenv("SOLANA_RPC_URL", "http://rpc.local")
    monkeypatch.setattr(run_validator_daemon.signal, "signal", lambda *args: None)


def _stopped_event() -> threading.Event:
    event = threading.Event()
    event.set()
    return event


def test_daemon_cli_runs_until_stopped(token_file):
    daemon = FakeDaemon()
    captured = {}

    def _factory(config):
        captured["config"] = config
        return daemon

    code = run_validator_daemon.main(
        [str(token_file), "--interval", "12"], daemon_factory=_factory, stop_event=_stopped_event()
    )

    assert code == 0
    assert daemon.stopped
    assert [watch.label for watch in daemon.started_with] == ["TEST"]
    assert captured["config"].flush_interval == 12


def test_daemon_cli_fails_when_nothing_is_accepted(token_file):
    daemon = FakeDaemon(accepted=0)

    code = run_validator_daemon.main([str(token_file)], daemon_factory=lambda config: daemon, stop_event=_stopped_event())

    assert code == 1
    assert daemon.stopped


def test_daemon_cli_reports_startup_errors(token_file):
    def _factory(config):
        raise ConfigurationError("Cannot reach RPC endpoint at startup")

    assert run_validator_daemon.main([str(token_file)], daemon_factory=_factory, stop_event=_stopped_event()) == 1


def test_daemon_cli_requires_rpc_url(token_file, monkeypatch):
    monkeypatch.setattr(run_validator_daemon, "load_config", _raise_config_error)

    assert run_validator_daemon.main([str(token_file)], daemon_factory=lambda config: FakeDaemon()) == 2


def test_daemon_cli_without_readable_tokens(tmp_path):
    missing = tmp_path / "missing.json"

    assert run_validator_daemon.main([str(missing)], daemon_factory=lambda config: FakeDaemon()) == 1


def test_format_pending_skips_empty_ledgers():
    statuses = {
        "a": WatcherStatus("a", "AAA", 1_500_000_000, 3, 100, 140),
        "b": WatcherStatus("b", "BBB", 0, 0, 100, 100),
    }

    assert run_validator_daemon.format_pending(statuses) == ["AAA: 1.500000 SOL (3 TXs, slots 100-140)"]


def _raise_config_error(*args, **kwargs):
    raise ConfigurationError("Set SOLANA_RPC_URL before starting the validator daemon.")


def test_sync_cli_reports_and_syncs_stale_tokens(token_file, capsys):
    rpc = FakeRpc(current=5_000)
    rpc.last_settled[MINT] = 100
    client = FakeSettlementClient(rpc)

    code = sync_validator_slots.main([str(token_file), "--sync", "--json"], rpc=rpc, client=client)

    assert code == 0
    report = json.loads(capsys.readouterr().out)
    assert report[0]["lag"] == 4_900
    assert report[0]["stale"] is True
    assert report[0]["sync_tx"] == "sync-tx-1"


def test_sync_cli_flags_uninitialised_tokens(token_file, capsys):
    rpc = FakeRpc(current=5_000)

    code = sync_validator_slots.main([str(token_file)], rpc=rpc)

    assert code == 1
    assert "error" in capsys.readouterr().out


def test_collect_lags_leaves_fresh_tokens_alone(token_file):
    rpc = FakeRpc(current=5_000)
    rpc.last_settled[MINT] = 4_500
    client = FakeSettlementClient(rpc)
    watches = sync_validator_slots.load_entity_watches([token_file])

    lags = sync_validator_slots.collect_lags(watches, rpc, 1_000, client)

    assert lags[0].stale is False
    assert client.sync_calls == []
