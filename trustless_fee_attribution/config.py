"""Environment-driven configuration and token watch files."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional

from dotenv import load_dotenv

from .addresses import (
    BONDING_CURVE,
    PUMPSWAP_AMM,
    creator_vault_address,
    token_stats_address,
    validator_state_address,
)
from .errors import ConfigurationError
from .extraction import DEFAULT_MAX_PLAUSIBLE_FEE, DEFAULT_MIN_PLAUSIBLE_FEE, FeeExtractor
from .gate import DEFAULT_MAX_EVENTS_PER_MARKER, DEFAULT_MAX_FEE_PER_MARKER, DEFAULT_MAX_WINDOW, SettlementGate
from .models import EntityWatch, SettlementAccounts
from .subscriptions import websocket_url_for

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DaemonConfig:
    rpc_url: str
    ws_url: str
    relay_url: Optional[str] = None
    program_id: Optional[str] = None
    flush_interval: float = 30.0
    adaptive_interval: float = 5.0
    poll_interval: float = 15.0
    max_window: int = DEFAULT_MAX_WINDOW
    adaptive_ratio: float = 0.8
    activity_limit: int = 10
    min_plausible_fee: int = DEFAULT_MIN_PLAUSIBLE_FEE
    max_plausible_fee: int = DEFAULT_MAX_PLAUSIBLE_FEE
    max_fee_per_marker: int = DEFAULT_MAX_FEE_PER_MARKER
    max_events_per_marker: int = DEFAULT_MAX_EVENTS_PER_MARKER
    rpc_timeout: float = 10.0
    failure_alert_threshold: int = 5
    shutdown_timeout: float = 30.0

    @property
    def adaptive_threshold(self) -> int:
        return int(self.max_window * self.adaptive_ratio)

    def build_gate(self) -> SettlementGate:
        return SettlementGate(
            max_window=self.max_window,
            max_fee_per_marker=self.max_fee_per_marker,
            max_events_per_marker=self.max_events_per_marker,
        )

    def build_extractor(self) -> FeeExtractor:
        return FeeExtractor(min_plausible_fee=self.min_plausible_fee, max_plausible_fee=self.max_plausible_fee)


def _number(env: Mapping[str, str], key: str, default: Any, kind: type) -> Any:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = kind(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a {kind.__name__}, got {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative")
    return value


def load_config(env: Optional[Mapping[str, str]] = None) -> DaemonConfig:
    """Build a :class:`DaemonConfig` from ``env`` (``os.environ`` after ``.env``)."""

    if env is None:
        load_dotenv()
        env = os.environ

    rpc_url = env.get("SOLANA_RPC_URL", "").strip()
    if not rpc_url:
        raise ConfigurationError("Set SOLANA_RPC_URL before starting the validator daemon.")

    config = DaemonConfig(
        rpc_url=rpc_url,
        ws_url=env.get("SOLANA_WS_URL", "").strip() or websocket_url_for(rpc_url),
        relay_url=env.get("SETTLEMENT_RELAY_URL") or None,
        program_id=env.get("VALIDATOR_PROGRAM_ID") or None,
        flush_interval=_number(env, "FLUSH_INTERVAL_SECONDS", 30.0, float),
        adaptive_interval=_number(env, "ADAPTIVE_CHECK_SECONDS", 5.0, float),
        poll_interval=_number(env, "POLL_INTERVAL_SECONDS", 15.0, float),
        max_window=_number(env, "MAX_SLOT_WINDOW", DEFAULT_MAX_WINDOW, int),
        adaptive_ratio=_number(env, "ADAPTIVE_THRESHOLD_RATIO", 0.8, float),
        activity_limit=_number(env, "ACTIVITY_LIMIT", 10, int),
        min_plausible_fee=_number(env, "MIN_PLAUSIBLE_FEE", DEFAULT_MIN_PLAUSIBLE_FEE, int),
        max_plausible_fee=_number(env, "MAX_PLAUSIBLE_FEE", DEFAULT_MAX_PLAUSIBLE_FEE, int),
        max_fee_per_marker=_number(env, "MAX_FEE_PER_SLOT", DEFAULT_MAX_FEE_PER_MARKER, int),
        max_events_per_marker=_number(env, "MAX_EVENTS_PER_SLOT", DEFAULT_MAX_EVENTS_PER_MARKER, int),
        rpc_timeout=_number(env, "RPC_TIMEOUT_SECONDS", 10.0, float),
        failure_alert_threshold=_number(env, "FAILURE_ALERT_THRESHOLD", 5, int),
        shutdown_timeout=_number(env, "SHUTDOWN_TIMEOUT_SECONDS", 30.0, float),
    )
    if not 0 < config.adaptive_ratio <= 1:
        raise ConfigurationError("ADAPTIVE_THRESHOLD_RATIO must be in (0, 1]")
    if config.min_plausible_fee > config.max_plausible_fee:
        raise ConfigurationError("MIN_PLAUSIBLE_FEE must not exceed MAX_PLAUSIBLE_FEE")
    if config.activity_limit == 0 or config.max_window == 0:
        raise ConfigurationError("ACTIVITY_LIMIT and MAX_SLOT_WINDOW must be positive")
    return config


def _required(data: Mapping[str, Any], key: str, source: str) -> str:
    value = _optional(data, key)
    if value is None:
        raise ConfigurationError(f"{source}: missing {key!r}")
    return value


def _optional(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()


def parse_entity_watch(
    data: Mapping[str, Any],
    source: str = "<token>",
    program_id: Optional[str] = None,
) -> EntityWatch:
    """Build a watch from a token file.

    Explicit ``creatorVault``, ``validatorState`` and ``tokenStats`` entries win.
    Otherwise the vault is derived from ``creator`` and, when ``program_id`` is
    known, the settlement accounts from ``mint``.
    """

    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{source}: expected a JSON object")
    mint = _required(data, "mint", source)
    pool_type = _optional(data, "poolType") or BONDING_CURVE
    if pool_type == PUMPSWAP_AMM:
        activity_source = _required(data, "pool", source)
    elif pool_type == BONDING_CURVE:
        activity_source = _required(data, "bondingCurve", source)
    else:
        raise ConfigurationError(f"{source}: unknown poolType {pool_type!r}")

    fee_source = _optional(data, "creatorVault")
    if fee_source is None:
        creator = _optional(data, "creator")
        if creator is None:
            raise ConfigurationError(f"{source}: missing 'creatorVault' or 'creator'")
        fee_source = creator_vault_address(creator, pool_type)

    validator_state = _optional(data, "validatorState")
    token_stats = _optional(data, "tokenStats")
    if program_id:
        validator_state = validator_state or validator_state_address(mint, program_id)
        token_stats = token_stats or token_stats_address(mint, program_id)
    accounts = None
    if validator_state or token_stats:
        if not (validator_state and token_stats):
            raise ConfigurationError(f"{source}: 'validatorState' and 'tokenStats' go together")
        accounts = SettlementAccounts(validator_state=validator_state, token_stats=token_stats)

    label = data.get("symbol") or data.get("name") or "UNKNOWN"
    return EntityWatch(
        entity_id=mint,
        activity_source=activity_source,
        fee_source=fee_source,
        label=str(label),
        settlement_accounts=accounts,
    )


def load_entity_watch(path: Path, program_id: Optional[str] = None) -> EntityWatch:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Token file not found: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Failed to read token file {path}: {exc}") from exc
    return parse_entity_watch(data, str(path), program_id)


def load_entity_watches(paths: Iterable[Path], program_id: Optional[str] = None) -> List[EntityWatch]:
    """Load every readable token file; broken files are logged and skipped."""

    watches: List[EntityWatch] = []
    seen: set[str] = set()
    for path in paths:
        try:
            watch = load_entity_watch(Path(path), program_id)
        except ConfigurationError as exc:
            _LOGGER.error("%s", exc)
            continue
        if watch.entity_id in seen:
            _LOGGER.warning("Ignoring duplicate token %s from %s", watch.label, path)
            continue
        seen.add(watch.entity_id)
        _LOGGER.info("Loaded %s: %s", watch.label, watch.entity_id)
        watches.append(watch)
    return watches


__all__ = [
    "DaemonConfig",
    "load_config",
    "load_entity_watch",
    "load_entity_watches",
    "parse_entity_watch",
]
