"""Value types passed between the watcher, the gate and the settler."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, FrozenSet, Optional, Tuple


@dataclass(frozen=True)
class SettlementAccounts:
    """Program accounts that address one token's settlement state."""

    validator_state: str
    token_stats: str


@dataclass(frozen=True)
class EntityWatch:
    """A watched token, loaded once at startup."""

    entity_id: str
    activity_source: str
    fee_source: str
    label: str
    settlement_accounts: Optional[SettlementAccounts] = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "mint": self.entity_id,
            "bondingCurve": self.activity_source,
            "creatorVault": self.fee_source,
            "symbol": self.label,
        }
        if self.settlement_accounts is not None:
            payload["validatorState"] = self.settlement_accounts.validator_state
            payload["tokenStats"] = self.settlement_accounts.token_stats
        return payload


@dataclass(frozen=True)
class EventRef:
    """Reference to one transaction touching an activity source."""

    event_id: str
    marker: int
    failed: bool = False


@dataclass(frozen=True)
class RawEvent:
    """Log lines and balance snapshots of a single transaction."""

    event_id: str
    marker: int
    log_lines: Tuple[str, ...] = ()
    account_keys: Tuple[str, ...] = ()
    pre_balances: Tuple[int, ...] = ()
    post_balances: Tuple[int, ...] = ()


@dataclass(frozen=True)
class LedgerSnapshot:
    """Immutable copy of a pending ledger."""

    fee_amount: int
    event_ids: FrozenSet[str]
    start_marker: int
    end_marker: int

    @property
    def event_count(self) -> int:
        return len(self.event_ids)


@dataclass(frozen=True)
class SettlementAttempt:
    """Arguments of one settlement call and how it ended."""

    entity_id: str
    fee_amount: int
    end_marker: int
    event_count: int
    outcome: Optional[str] = None
    receipt: Optional[str] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class WatcherStatus:
    """Side-effect free view of a watcher, safe to read from any thread."""

    entity_id: str
    label: str
    fee_amount: int
    event_count: int
    start_marker: int
    end_marker: int
    consecutive_failures: int = 0
    last_attempt: Optional[SettlementAttempt] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "mint": self.entity_id,
            "symbol": self.label,
            "fee_amount": self.fee_amount,
            "event_count": self.event_count,
            "start_marker": self.start_marker,
            "end_marker": self.end_marker,
            "consecutive_failures": self.consecutive_failures,
        }
        if self.last_attempt is not None:
            payload["last_attempt"] = {
                "fee_amount": self.last_attempt.fee_amount,
                "end_marker": self.last_attempt.end_marker,
                "event_count": self.last_attempt.event_count,
                "outcome": self.last_attempt.outcome,
                "receipt": self.last_attempt.receipt,
                "detail": self.last_attempt.detail,
            }
        payload.update(self.extra)
        return payload
