"""Pre-flight check run immediately before every settlement attempt."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .models import LedgerSnapshot

DEFAULT_MAX_WINDOW = 1000
DEFAULT_MAX_FEE_PER_MARKER = 10_000_000
DEFAULT_MAX_EVENTS_PER_MARKER = 100


class GateAction(str, Enum):
    PROCEED = "proceed"
    SKIP_AND_RESET = "skip_and_reset"
    SKIP_AND_WAIT = "skip_and_wait"


@dataclass(frozen=True)
class GateDecision:
    action: GateAction
    reason: str
    span: int = 0

    @property
    def proceed(self) -> bool:
        return self.action is GateAction.PROCEED


@dataclass(frozen=True)
class SettlementGate:
    """Decide whether a ledger snapshot may be settled against the stored marker.

    ``max_fee_per_marker`` and ``max_events_per_marker`` mirror the program's
    per-range caps; a snapshot above them waits because the allowed amount
    grows with the span. Set either to ``0`` to disable that check.
    """

    max_window: int = DEFAULT_MAX_WINDOW
    max_fee_per_marker: int = DEFAULT_MAX_FEE_PER_MARKER
    max_events_per_marker: int = DEFAULT_MAX_EVENTS_PER_MARKER

    def check(self, snapshot: LedgerSnapshot, last_settled_marker: int) -> GateDecision:
        if snapshot.fee_amount == 0:
            return GateDecision(GateAction.SKIP_AND_WAIT, "nothing pending")

        span = snapshot.end_marker - last_settled_marker
        if span > self.max_window:
            return GateDecision(
                GateAction.SKIP_AND_RESET,
                f"window of {span} slots exceeds maximum {self.max_window}",
                span,
            )
        if snapshot.end_marker <= last_settled_marker:
            return GateDecision(
                GateAction.SKIP_AND_RESET,
                f"end slot {snapshot.end_marker} already settled through {last_settled_marker}",
                span,
            )
        if self.max_fee_per_marker and snapshot.fee_amount > span * self.max_fee_per_marker:
            return GateDecision(
                GateAction.SKIP_AND_WAIT,
                f"fee {snapshot.fee_amount} above cap for {span} slots",
                span,
            )
        if self.max_events_per_marker and snapshot.event_count > span * self.max_events_per_marker:
            return GateDecision(
                GateAction.SKIP_AND_WAIT,
                f"{snapshot.event_count} events above cap for {span} slots",
                span,
            )
        return GateDecision(GateAction.PROCEED, "ok", span)


__all__ = [
    "DEFAULT_MAX_EVENTS_PER_MARKER",
    "DEFAULT_MAX_FEE_PER_MARKER",
    "DEFAULT_MAX_WINDOW",
    "GateAction",
    "GateDecision",
    "SettlementGate",
]
