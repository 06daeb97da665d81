"""Per-token worker that discovers trades, attributes fees and settles them.

Each :class:`EntityWatcher` is an actor: one worker thread owns the token's
:class:`PendingLedger` and drains a command queue. Subscriptions and the flush
scheduler only enqueue commands, so accumulation and the read-settle-reset
sequence for one token never interleave, while different tokens proceed in
parallel.
"""
from __future__ import annotations

import logging
import queue
import threading
from collections import OrderedDict
from enum import Enum
from typing import Any, Optional

from .errors import ConfigurationError, SettlementError, SettlementErrorKind, TransientIOError
from .extraction import FeeExtractor
from .gate import GateAction, SettlementGate
from .ledger import PendingLedger
from .models import EntityWatch, LedgerSnapshot, WatcherStatus
from .settler import OnChainSettler, SettlementAction, SettlementOutcome

_LOGGER = logging.getLogger(__name__)

DEFAULT_ACTIVITY_LIMIT = 10
DEFAULT_IGNORED_CAPACITY = 2048
DEFAULT_FAILURE_ALERT_THRESHOLD = 5


class _Command(Enum):
    DISCOVER = "discover"
    FLUSH = "flush"
    CHECK_WINDOW = "check_window"
    STOP = "stop"


class EntityWatcher:
    def __init__(
        self,
        watch: EntityWatch,
        rpc: Any,
        settler: OnChainSettler,
        *,
        start_marker: int,
        extractor: Optional[FeeExtractor] = None,
        gate: Optional[SettlementGate] = None,
        activity_limit: int = DEFAULT_ACTIVITY_LIMIT,
        adaptive_threshold: Optional[int] = None,
        failure_alert_threshold: int = DEFAULT_FAILURE_ALERT_THRESHOLD,
        ignored_capacity: int = DEFAULT_IGNORED_CAPACITY,
    ) -> None:
        self.watch = watch
        self.rpc = rpc
        self.settler = settler
        self.extractor = extractor or FeeExtractor()
        self.gate = gate or SettlementGate()
        self.activity_limit = activity_limit
        self.adaptive_threshold = (
            adaptive_threshold if adaptive_threshold is not None else int(self.gate.max_window * 0.8)
        )
        self.failure_alert_threshold = failure_alert_threshold
        self.ledger = PendingLedger(start_marker)
        self.consecutive_failures = 0
        self._ignored: "OrderedDict[str, None]" = OrderedDict()
        self._ignored_capacity = ignored_capacity
        self._last_attempt = None
        self._unconfirmed_end: Optional[int] = None
        self._queue: "queue.Queue[tuple[_Command, Any]]" = queue.Queue()
        self._flags_lock = threading.Lock()
        self._discovery_queued = False
        self._status_lock = threading.Lock()
        self._status = self._build_status()
        self._thread: Optional[threading.Thread] = None

    # -- queries -----------------------------------------------------------

    @property
    def entity_id(self) -> str:
        return self.watch.entity_id

    def status(self) -> WatcherStatus:
        with self._status_lock:
            return self._status

    def _build_status(self) -> WatcherStatus:
        snapshot = self.ledger.snapshot()
        return WatcherStatus(
            entity_id=self.watch.entity_id,
            label=self.watch.label,
            fee_amount=snapshot.fee_amount,
            event_count=snapshot.event_count,
            start_marker=snapshot.start_marker,
            end_marker=snapshot.end_marker,
            consecutive_failures=self.consecutive_failures,
            last_attempt=self._last_attempt,
        )

    def _publish(self) -> None:
        status = self._build_status()
        with self._status_lock:
            self._status = status

    # -- commands (any thread) ---------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=f"watcher-{self.watch.label}", daemon=True)
        self._thread.start()

    def notify_activity(self, slot: Optional[int] = None) -> None:
        """Account-change callback; coalesces into a single queued discovery pass."""

        with self._flags_lock:
            if self._discovery_queued:
                return
            self._discovery_queued = True
        self._queue.put((_Command.DISCOVER, slot))

    def request_flush(self, reason: str = "interval") -> None:
        self._queue.put((_Command.FLUSH, reason))

    def request_window_check(self) -> None:
        self._queue.put((_Command.CHECK_WINDOW, None))

    def shutdown(self, final_flush: bool = True) -> None:
        if self._thread is None or not self._thread.is_alive():
            if final_flush:
                self._final_flush()
            return
        self._queue.put((_Command.STOP, final_flush))

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -- worker ------------------------------------------------------------

    def _run(self) -> None:
        while True:
            command, argument = self._queue.get()
            if command is _Command.STOP:
                if argument:
                    self._final_flush()
                return
            try:
                if command is _Command.DISCOVER:
                    self.discover()
                elif command is _Command.FLUSH:
                    self.settle(argument)
                elif command is _Command.CHECK_WINDOW:
                    self.check_window()
            except Exception:  # noqa: BLE001 - keep the worker alive for the next tick
                _LOGGER.exception("%s: %s command failed", self.watch.label, command.value)

    def _final_flush(self) -> None:
        if self.ledger.fee_amount == 0:
            return
        _LOGGER.info("%s: final flush of %d lamports", self.watch.label, self.ledger.fee_amount)
        try:
            self.settle("shutdown")
        except Exception:  # noqa: BLE001 - best effort during shutdown
            _LOGGER.exception("%s: final flush failed", self.watch.label)

    def _ignore(self, event_id: str) -> None:
        self._ignored[event_id] = None
        while len(self._ignored) > self._ignored_capacity:
            self._ignored.popitem(last=False)

    def discover(self) -> int:
        """Fetch recent activity and accumulate newly attributed fees.

        Returns the number of transactions that were counted.
        """

        with self._flags_lock:
            self._discovery_queued = False

        try:
            refs = self.rpc.list_recent_activity(self.watch.activity_source, self.activity_limit)
        except TransientIOError as exc:
            _LOGGER.warning("%s: listing recent activity failed: %s", self.watch.label, exc)
            return 0

        counted = 0
        # Oldest first so end_marker advances in order.
        for ref in reversed(refs):
            if self.ledger.has_seen(ref.event_id) or ref.event_id in self._ignored:
                continue
            if ref.marker <= self.ledger.start_marker:
                continue
            if ref.failed:
                self._ignore(ref.event_id)
                continue
            try:
                event = self.rpc.get_event_detail(ref)
            except TransientIOError as exc:
                _LOGGER.warning("%s: skipping %s: %s", self.watch.label, ref.event_id, exc)
                continue
            if event is None:
                _LOGGER.debug("%s: transaction %s not available yet", self.watch.label, ref.event_id)
                continue

            fee = self.extractor.extract(event, self.watch.fee_source)
            if fee == 0:
                self._ignore(ref.event_id)
                continue
            if self.ledger.accumulate(ref.event_id, ref.marker, fee):
                counted += 1
                _LOGGER.debug(
                    "%s: +%d lamports at slot %d (tx %s)", self.watch.label, fee, ref.marker, ref.event_id[:8]
                )

        if counted:
            self._publish()
        return counted

    def check_window(self) -> bool:
        """Settle early when the pending span nears the program's maximum."""

        if self.ledger.event_count == 0:
            return False
        try:
            last_settled = self.rpc.get_last_settled_marker(self.watch)
        except (TransientIOError, ConfigurationError) as exc:
            _LOGGER.warning("%s: cannot read settled slot: %s", self.watch.label, exc)
            return False
        delta = self.ledger.end_marker - last_settled
        if delta < self.adaptive_threshold:
            return False
        _LOGGER.info(
            "%s: pending span %d slots reached threshold %d, settling now",
            self.watch.label,
            delta,
            self.adaptive_threshold,
        )
        self.settle("adaptive")
        return True

    def settle(self, reason: str = "interval") -> Optional[SettlementOutcome]:
        """Gate and submit the current ledger, then apply the outcome."""

        snapshot = self.ledger.snapshot()
        if snapshot.fee_amount == 0:
            return None
        try:
            last_settled = self.rpc.get_last_settled_marker(self.watch)
        except (TransientIOError, ConfigurationError) as exc:
            _LOGGER.warning("%s: cannot read settled slot before %s flush: %s", self.watch.label, reason, exc)
            return None

        if self._unconfirmed_end is not None:
            snapshot = self._reconcile(last_settled)
            if snapshot.fee_amount == 0:
                return None

        decision = self.gate.check(snapshot, last_settled)
        if decision.action is GateAction.SKIP_AND_WAIT:
            _LOGGER.info("%s: %s flush deferred: %s", self.watch.label, reason, decision.reason)
            return None
        if decision.action is GateAction.SKIP_AND_RESET:
            _LOGGER.warning(
                "%s: dropping %d lamports over %d txs: %s",
                self.watch.label,
                snapshot.fee_amount,
                snapshot.event_count,
                decision.reason,
            )
            if decision.span > self.gate.max_window:
                self._sync_marker()
            self._unconfirmed_end = None
            if self._reset_to_current():
                self.consecutive_failures = 0
            self._publish()
            return None

        _LOGGER.info(
            "%s: %s flush of %d lamports through slot %d (%d txs)",
            self.watch.label,
            reason,
            snapshot.fee_amount,
            snapshot.end_marker,
            snapshot.event_count,
        )
        outcome = self.settler.submit(self.watch, snapshot.fee_amount, snapshot.end_marker, snapshot.event_count)
        self._apply(outcome)
        return outcome

    def _reconcile(self, last_settled: int) -> LedgerSnapshot:
        """Account for an earlier attempt whose result never reached us.

        A timed-out call may still have landed. Once the stored marker has
        reached that attempt's end, its events are already committed.
        """

        end = self._unconfirmed_end
        if last_settled >= end:
            removed = self.ledger.discard_through(end)
            self._unconfirmed_end = None
            _LOGGER.info(
                "%s: earlier settlement through slot %d landed, dropping %d committed lamports",
                self.watch.label,
                end,
                removed,
            )
            self._publish()
        return self.ledger.snapshot()

    def _apply(self, outcome: SettlementOutcome) -> None:
        self._last_attempt = outcome.attempt
        if outcome.error_kind is SettlementErrorKind.TRANSIENT:
            self._unconfirmed_end = outcome.attempt.end_marker
        elif outcome.action is not SettlementAction.RETAIN:
            self._unconfirmed_end = None
        if outcome.action is SettlementAction.RESET_TO_END:
            self.ledger.reset(outcome.attempt.end_marker)
            self.consecutive_failures = 0
        elif outcome.action is SettlementAction.RESET_TO_CURRENT:
            if outcome.error_kind is SettlementErrorKind.WINDOW_EXCEEDED:
                self._sync_marker()
            if self._reset_to_current():
                self.consecutive_failures = 0
        elif outcome.counts_as_failure:
            self.consecutive_failures += 1
            if self.failure_alert_threshold and self.consecutive_failures % self.failure_alert_threshold == 0:
                _LOGGER.error(
                    "%s: settlement rejected %d times in a row; check the token's configuration",
                    self.watch.label,
                    self.consecutive_failures,
                )
        self._publish()

    def _reset_to_current(self) -> bool:
        try:
            current = self.rpc.get_current_position()
        except TransientIOError as exc:
            _LOGGER.warning("%s: reset postponed, cannot read current slot: %s", self.watch.label, exc)
            return False
        self.ledger.reset(current)
        return True

    def _sync_marker(self) -> None:
        try:
            receipt = self.settler.client.sync(self.watch)
        except SettlementError as exc:
            _LOGGER.info("%s: slot sync not applied: %s", self.watch.label, exc)
        except (TransientIOError, ConfigurationError) as exc:
            _LOGGER.warning("%s: slot sync failed: %s", self.watch.label, exc)
        else:
            _LOGGER.info("%s: synced settled slot to current (tx %s)", self.watch.label, receipt)


__all__ = ["DEFAULT_ACTIVITY_LIMIT", "EntityWatcher"]
