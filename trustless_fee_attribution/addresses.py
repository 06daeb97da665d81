"""Program-derived addresses for pump.fun tokens and the validator program."""
from __future__ import annotations

from typing import Sequence

from solders.pubkey import Pubkey

from .errors import ConfigurationError

PUMP_PROGRAM = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"
PUMP_SWAP_PROGRAM = "pAMMBay6oceH9fJKBRHGP5D4bD4sWpmSwMn52FMfXEA"

BONDING_CURVE = "bonding_curve"
PUMPSWAP_AMM = "pumpswap_amm"

CREATOR_VAULT_SEED = b"creator-vault"
PUMPSWAP_CREATOR_VAULT_SEED = b"creator_vault"
VALIDATOR_STATE_SEED = b"validator_v1"
TOKEN_STATS_SEED = b"token_stats_v1"


def parse_pubkey(value: str, field: str = "address") -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {field} {value!r}: {exc}") from exc


def find_address(seeds: Sequence[bytes], program_id: str) -> str:
    address, _bump = Pubkey.find_program_address(list(seeds), parse_pubkey(program_id, "program id"))
    return str(address)


def creator_vault_address(creator: str, pool_type: str = BONDING_CURVE) -> str:
    """Where creator fees land: the bonding-curve vault or the AMM vault authority."""

    key = bytes(parse_pubkey(creator, "creator"))
    if pool_type == PUMPSWAP_AMM:
        return find_address([PUMPSWAP_CREATOR_VAULT_SEED, key], PUMP_SWAP_PROGRAM)
    if pool_type != BONDING_CURVE:
        raise ConfigurationError(f"Unknown pool type {pool_type!r}")
    return find_address([CREATOR_VAULT_SEED, key], PUMP_PROGRAM)


def validator_state_address(mint: str, program_id: str) -> str:
    return find_address([VALIDATOR_STATE_SEED, bytes(parse_pubkey(mint, "mint"))], program_id)


def token_stats_address(mint: str, program_id: str) -> str:
    return find_address([TOKEN_STATS_SEED, bytes(parse_pubkey(mint, "mint"))], program_id)


__all__ = [
    "BONDING_CURVE",
    "PUMPSWAP_AMM",
    "PUMP_PROGRAM",
    "PUMP_SWAP_PROGRAM",
    "creator_vault_address",
    "find_address",
    "parse_pubkey",
    "token_stats_address",
    "validator_state_address",
]
