"""Per-token accumulator of fees that have been attributed but not yet settled."""
from __future__ import annotations

from typing import Dict, FrozenSet, Tuple

from .models import LedgerSnapshot


class PendingLedger:
    """Running fee total for one token since its last settlement.

    The ledger is not thread-safe; it belongs to exactly one watcher worker.
    Other threads read it through :meth:`snapshot` copies.
    """

    def __init__(self, start_marker: int) -> None:
        self.fee_amount = 0
        self.start_marker = start_marker
        self.end_marker = start_marker
        self._entries: Dict[str, Tuple[int, int]] = {}

    @property
    def seen_event_ids(self) -> FrozenSet[str]:
        return frozenset(self._entries)

    @property
    def event_count(self) -> int:
        return len(self._entries)

    def has_seen(self, event_id: str) -> bool:
        return event_id in self._entries

    def accumulate(self, event_id: str, marker: int, fee: int) -> bool:
        """Count ``fee`` for ``event_id``; return ``False`` when nothing changed."""

        if fee <= 0 or event_id in self._entries:
            return False
        self._entries[event_id] = (marker, fee)
        self.fee_amount += fee
        self.end_marker = max(self.end_marker, marker)
        return True

    def discard_through(self, marker: int) -> int:
        """Drop events at or before ``marker`` and start the ledger there.

        Returns the fee removed. Dropped ids cannot be counted again because
        discovery ignores activity at or before ``start_marker``.
        """

        dropped = [event_id for event_id, (at, _fee) in self._entries.items() if at <= marker]
        removed = sum(self._entries.pop(event_id)[1] for event_id in dropped)
        self.fee_amount -= removed
        self.start_marker = max(self.start_marker, marker)
        self.end_marker = max((at for at, _fee in self._entries.values()), default=self.start_marker)
        return removed

    def reset(self, new_start_marker: int) -> None:
        self.fee_amount = 0
        self._entries = {}
        self.start_marker = new_start_marker
        self.end_marker = new_start_marker

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            fee_amount=self.fee_amount,
            event_ids=self.seen_event_ids,
            start_marker=self.start_marker,
            end_marker=self.end_marker,
        )

    def __repr__(self) -> str:
        return (
            f"PendingLedger(fee_amount={self.fee_amount}, events={self.event_count}, "
            f"start_marker={self.start_marker}, end_marker={self.end_marker})"
        )
