"""Composition root: owns the watchers, the subscriptions and the scheduler."""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Iterable, List, Optional

from .config import DaemonConfig
from .errors import ConfigurationError, SettlementError, TransientIOError
from .models import EntityWatch, WatcherStatus
from .rpc import SolanaRpcClient
from .scheduler import FlushScheduler
from .settler import OnChainSettler, SettlementClient, SignerRelayClient
from .subscriptions import AccountSubscriptionManager
from .watcher import EntityWatcher

_LOGGER = logging.getLogger(__name__)


class ValidatorDaemon:
    """Long-running fee attribution and settlement process.

    Pending fees live only in memory. Anything extracted but not yet settled
    when the process exits is lost; on restart every ledger is anchored at the
    then-current slot.
    """

    def __init__(
        self,
        config: DaemonConfig,
        rpc: Any,
        settlement_client: SettlementClient,
        *,
        subscriptions: Optional[AccountSubscriptionManager] = None,
        presync: bool = True,
    ) -> None:
        self.config = config
        self.rpc = rpc
        self.settler = OnChainSettler(settlement_client)
        self.subscriptions = subscriptions
        self.presync = presync
        self.gate = config.build_gate()
        self.extractor = config.build_extractor()
        self.refused: Dict[str, str] = {}
        self._watchers: Dict[str, EntityWatcher] = {}
        self._handles: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._admission_lock = threading.Lock()
        self._running = False
        self.scheduler = FlushScheduler(
            self.watchers,
            flush_interval=config.flush_interval,
            adaptive_interval=config.adaptive_interval,
            poll_interval=config.poll_interval,
        )

    @classmethod
    def from_config(cls, config: DaemonConfig) -> "ValidatorDaemon":
        rpc = SolanaRpcClient(config.rpc_url, timeout=config.rpc_timeout)
        client = SignerRelayClient(config.relay_url or "", config.program_id or "", timeout=config.rpc_timeout * 3)
        subscriptions = AccountSubscriptionManager(config.ws_url)
        return cls(config, rpc, client, subscriptions=subscriptions)

    @property
    def running(self) -> bool:
        return self._running

    def watchers(self) -> List[EntityWatcher]:
        with self._lock:
            return list(self._watchers.values())

    def start(self, watches: Iterable[EntityWatch]) -> int:
        """Start watching ``watches``; return how many were accepted."""

        if self._running:
            _LOGGER.warning("Validator daemon already running")
            return 0
        try:
            current = self.rpc.get_current_position()
        except TransientIOError as exc:
            raise ConfigurationError(f"Cannot reach RPC endpoint at startup: {exc}") from exc

        accepted = sum(1 for watch in watches if self._add(watch, current))
        if self.subscriptions is not None:
            self.subscriptions.start()
        self.scheduler.start()
        self._running = True
        _LOGGER.info(
            "Validator daemon started: %d token(s), flush every %ss, window %d slots",
            accepted,
            self.config.flush_interval,
            self.config.max_window,
        )
        return accepted

    def watch(self, watch: EntityWatch) -> bool:
        try:
            current = self.rpc.get_current_position()
        except TransientIOError as exc:
            _LOGGER.error("%s: cannot read current slot: %s", watch.label, exc)
            return False
        return self._add(watch, current)

    def _add(self, watch: EntityWatch, current: int) -> bool:
        # One admission at a time, so a mint cannot be checked and started twice.
        with self._admission_lock:
            with self._lock:
                if watch.entity_id in self._watchers:
                    _LOGGER.warning("%s is already watched", watch.label)
                    return False
            try:
                last_settled = self.rpc.get_last_settled_marker(watch)
            except (ConfigurationError, TransientIOError) as exc:
                _LOGGER.error("Refusing to watch %s: %s", watch.label, exc)
                self.refused[watch.entity_id] = str(exc)
                return False

            if self.presync and current - last_settled > self.config.max_window:
                self._presync(watch, current - last_settled)

            watcher = EntityWatcher(
                watch,
                self.rpc,
                self.settler,
                start_marker=current,
                extractor=self.extractor,
                gate=self.gate,
                activity_limit=self.config.activity_limit,
                adaptive_threshold=self.config.adaptive_threshold,
                failure_alert_threshold=self.config.failure_alert_threshold,
            )
            watcher.start()
            handle = None
            if self.subscriptions is not None:
                handle = self.subscriptions.subscribe(watch.activity_source, watcher.notify_activity)
            with self._lock:
                self._watchers[watch.entity_id] = watcher
                if handle is not None:
                    self._handles[watch.entity_id] = handle
            self.refused.pop(watch.entity_id, None)
        _LOGGER.info("Watching %s (%s) from slot %d", watch.label, watch.activity_source, current)
        return True

    def _presync(self, watch: EntityWatch, lag: int) -> None:
        _LOGGER.info("%s: settled slot is %d slots behind, syncing", watch.label, lag)
        try:
            receipt = self.settler.client.sync(watch)
        except (SettlementError, TransientIOError, ConfigurationError) as exc:
            _LOGGER.warning("%s: pre-sync skipped: %s", watch.label, exc)
        else:
            _LOGGER.info("%s: pre-sync tx %s", watch.label, receipt)

    def unwatch(self, entity_id: str, *, final_flush: bool = True) -> bool:
        with self._lock:
            watcher = self._watchers.pop(entity_id, None)
            handle = self._handles.pop(entity_id, None)
        if watcher is None:
            return False
        if handle is not None and self.subscriptions is not None:
            self.subscriptions.unsubscribe(handle)
        watcher.shutdown(final_flush)
        watcher.join(self.config.shutdown_timeout)
        _LOGGER.info("Stopped watching %s", watcher.watch.label)
        return True

    def pending_totals(self) -> Dict[str, WatcherStatus]:
        return {watcher.entity_id: watcher.status() for watcher in self.watchers()}

    def force_flush(self) -> None:
        self.scheduler.flush_all("manual")

    def stop(self) -> None:
        """Stop timers and subscriptions, drain every watcher with a final flush."""

        if not self._running:
            return
        _LOGGER.info("Stopping validator daemon")
        self.scheduler.stop()
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        if self.subscriptions is not None:
            for handle in handles:
                self.subscriptions.unsubscribe(handle)
            self.subscriptions.stop()

        watchers = self.watchers()
        for watcher in watchers:
            watcher.shutdown(final_flush=True)
        deadline = time.monotonic() + self.config.shutdown_timeout
        for watcher in watchers:
            if not watcher.join(max(0.0, deadline - time.monotonic())):
                _LOGGER.warning("%s: worker did not finish before the shutdown timeout", watcher.watch.label)
        with self._lock:
            self._watchers.clear()
        self._running = False
        _LOGGER.info("Validator daemon stopped")


__all__ = ["ValidatorDaemon"]
