from __future__ import annotations

import json

import pytest
from solders.pubkey import Pubkey

from trustless_fee_attribution.addresses import PUMP_PROGRAM, PUMP_SWAP_PROGRAM
from trustless_fee_attribution.config import load_config, load_entity_watches, parse_entity_watch
from trustless_fee_attribution.errors import ConfigurationError


def test_load_config_defaults():
    config = load_config({"SOLANA_RPC_URL": "https://rpc.example"})

    assert config.ws_url == "wss://rpc.example"
    assert config.flush_interval == 30.0
    assert config.max_window == 1000
    assert config.adaptive_threshold == 800
    assert config.relay_url is None


def test_load_config_overrides():
    config = load_config(
        {
            "SOLANA_RPC_URL": "http://localhost:8899",
            "SOLANA_WS_URL": "ws://localhost:8900",
            "FLUSH_INTERVAL_SECONDS": "10",
            "MAX_SLOT_WINDOW": "500",
            "ADAPTIVE_THRESHOLD_RATIO": "0.5",
            "SETTLEMENT_RELAY_URL": "http://relay.local",
        }
    )

    assert config.ws_url == "ws://localhost:8900"
    assert config.flush_interval == 10.0
    assert config.adaptive_threshold == 250
    assert config.build_gate().max_window == 500
    assert config.relay_url == "http://relay.local"


@pytest.mark.parametrize(
    "env",
    [
        {},
        {"SOLANA_RPC_URL": "http://x", "MAX_SLOT_WINDOW": "lots"},
        {"SOLANA_RPC_URL": "http://x", "ADAPTIVE_THRESHOLD_RATIO": "1.5"},
        {"SOLANA_RPC_URL": "http://x", "MIN_PLAUSIBLE_FEE": "10", "MAX_PLAUSIBLE_FEE": "5"},
        {"SOLANA_RPC_URL": "http://x", "FLUSH_INTERVAL_SECONDS": "-1"},
    ],
)
def test_invalid_config_raises(env):
    with pytest.raises(ConfigurationError):
        load_config(env)


def test_parse_entity_watch_with_settlement_accounts():
    watch = parse_entity_watch(
        {
            "mint": "Mint",
            "bondingCurve": "Curve",
            "creatorVault": "Vault",
            "validatorState": "State",
            "tokenStats": "Stats",
            "name": "Token",
        }
    )

    assert watch.label == "Token"
    assert watch.settlement_accounts.validator_state == "State"
    assert watch.as_dict()["tokenStats"] == "Stats"


def test_parse_entity_watch_requires_curve():
    with pytest.raises(ConfigurationError):
        parse_entity_watch({"mint": "Mint", "creatorVault": "Vault"})


def test_load_entity_watches_skips_broken_and_duplicate_files(tmp_path):
    good = tmp_path / "good.json"
    good.write_text(json.dumps({"mint": "M", "bondingCurve": "C", "creatorVault": "V", "symbol": "GOOD"}))
    duplicate = tmp_path / "dup.json"
    duplicate.write_text(good.read_text())
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")

    watches = load_entity_watches([good, broken, duplicate, tmp_path / "missing.json"])

    assert [watch.label for watch in watches] == ["GOOD"]


WSOL_MINT = "So11111111111111111111111111111111111111112"
CREATOR = "11111111111111111111111111111111"
VALIDATOR_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


def _pda(seed: bytes, key: str, program: str) -> str:
    address, _bump = Pubkey.find_program_address(
        [seed, bytes(Pubkey.from_string(key))], Pubkey.from_string(program)
    )
    return str(address)


def test_token_file_with_creator_derives_vault_and_settlement_accounts(tmp_path):
    path = tmp_path / "token.json"
    path.write_text(
        json.dumps({"mint": WSOL_MINT, "bondingCurve": "Curve", "creator": CREATOR, "symbol": "ORIG"})
    )

    [watch] = load_entity_watches([path], VALIDATOR_PROGRAM)

    assert watch.fee_source == _pda(b"creator-vault", CREATOR, PUMP_PROGRAM)
    assert watch.settlement_accounts.validator_state == _pda(b"validator_v1", WSOL_MINT, VALIDATOR_PROGRAM)
    assert watch.settlement_accounts.token_stats == _pda(b"token_stats_v1", WSOL_MINT, VALIDATOR_PROGRAM)


def test_pumpswap_token_watches_pool_and_amm_vault():
    watch = parse_entity_watch(
        {"mint": WSOL_MINT, "pool": "Pool", "creator": CREATOR, "poolType": "pumpswap_amm"}
    )

    assert watch.activity_source == "Pool"
    assert watch.fee_source == _pda(b"creator_vault", CREATOR, PUMP_SWAP_PROGRAM)
    assert watch.settlement_accounts is None


def test_explicit_accounts_override_derivation():
    watch = parse_entity_watch(
        {
            "mint": WSOL_MINT,
            "bondingCurve": "Curve",
            "creator": CREATOR,
            "creatorVault": "Vault",
            "validatorState": "State",
            "tokenStats": "Stats",
        },
        program_id=VALIDATOR_PROGRAM,
    )

    assert watch.fee_source == "Vault"
    assert watch.settlement_accounts.validator_state == "State"


@pytest.mark.parametrize(
    "data",
    [
        {"mint": WSOL_MINT, "bondingCurve": "Curve"},
        {"mint": WSOL_MINT, "bondingCurve": "Curve", "creator": "not-base58!"},
        {"mint": WSOL_MINT, "pool": "Pool", "creator": CREATOR, "poolType": "raydium"},
        {"mint": WSOL_MINT, "bondingCurve": "Curve", "creatorVault": "Vault", "validatorState": "State"},
    ],
)
def test_unusable_token_file_raises(data):
    with pytest.raises(ConfigurationError):
        parse_entity_watch(data)
