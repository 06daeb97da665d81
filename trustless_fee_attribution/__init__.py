"""Trustless per-token fee attribution and settlement helpers."""
from __future__ import annotations

from .config import DaemonConfig, load_config, load_entity_watches
from .daemon import ValidatorDaemon
from .errors import (
    ConfigurationError,
    RpcError,
    SettlementError,
    SettlementErrorKind,
    TransientIOError,
    classify_program_error,
)
from .extraction import FeeExtractor
from .gate import GateAction, GateDecision, SettlementGate
from .ledger import PendingLedger
from .models import EntityWatch, EventRef, LedgerSnapshot, RawEvent, SettlementAccounts, WatcherStatus
from .settler import OnChainSettler, SettlementAction, SettlementOutcome, SignerRelayClient
from .watcher import EntityWatcher

__all__ = [
    "ConfigurationError",
    "DaemonConfig",
    "EntityWatch",
    "EntityWatcher",
    "EventRef",
    "FeeExtractor",
    "GateAction",
    "GateDecision",
    "LedgerSnapshot",
    "OnChainSettler",
    "PendingLedger",
    "RawEvent",
    "RpcError",
    "SettlementAccounts",
    "SettlementAction",
    "SettlementError",
    "SettlementErrorKind",
    "SettlementGate",
    "SettlementOutcome",
    "SignerRelayClient",
    "TransientIOError",
    "ValidatorDaemon",
    "WatcherStatus",
    "classify_program_error",
    "load_config",
    "load_entity_watches",
]
