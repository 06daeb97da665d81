"""Account-change subscriptions over the Solana websocket API."""
from __future__ import annotations

import itertools
import json
import logging
import threading
from typing import Any, Callable, Dict, Mapping, Optional

import websocket

_LOGGER = logging.getLogger(__name__)

SlotCallback = Callable[[int], None]


def websocket_url_for(rpc_url: str) -> str:
    """Derive the default websocket endpoint from an HTTP RPC URL."""

    if rpc_url.startswith("https://"):
        return "wss://" + rpc_url[len("https://") :]
    if rpc_url.startswith("http://"):
        return "ws://" + rpc_url[len("http://") :]
    return rpc_url


class AccountSubscriptionManager:
    """Keeps ``accountSubscribe`` streams alive and dispatches slot notifications.

    Subscriptions are tracked by a local handle; the server-side subscription
    id changes on every reconnect, so all handles are re-sent from ``on_open``.
    """

    def __init__(
        self,
        ws_url: str,
        *,
        commitment: str = "confirmed",
        ping_interval: float = 30.0,
        reconnect_delay: float = 5.0,
        app_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.ws_url = ws_url
        self.commitment = commitment
        self.ping_interval = ping_interval
        self.reconnect_delay = reconnect_delay
        self._app_factory = app_factory or websocket.WebSocketApp
        self._lock = threading.Lock()
        self._handles = itertools.count(1)
        self._request_ids = itertools.count(1)
        self._subscriptions: Dict[int, tuple[str, SlotCallback]] = {}
        self._pending_requests: Dict[int, int] = {}
        self._server_ids: Dict[int, int] = {}
        self._stop_event = threading.Event()
        self._ws: Any = None
        self._connected = False
        self._thread: Optional[threading.Thread] = None

    def subscribe(self, address: str, callback: SlotCallback) -> int:
        with self._lock:
            handle = next(self._handles)
            self._subscriptions[handle] = (address, callback)
            connected = self._connected
        if connected:
            self._send_subscribe(handle, address)
        return handle

    def unsubscribe(self, handle: int) -> None:
        with self._lock:
            self._subscriptions.pop(handle, None)
            server_id = next((sid for sid, h in self._server_ids.items() if h == handle), None)
            if server_id is not None:
                del self._server_ids[server_id]
            connected = self._connected
        if server_id is not None and connected:
            self._send("accountUnsubscribe", [server_id])

    def _send(self, method: str, params: list[Any], handle: Optional[int] = None) -> int:
        with self._lock:
            request_id = next(self._request_ids)
            if handle is not None:
                self._pending_requests[request_id] = handle
        message = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        try:
            self._ws.send(json.dumps(message))
        except (websocket.WebSocketException, OSError, AttributeError) as exc:
            _LOGGER.warning("Websocket send failed for %s: %s", method, exc)
        return request_id

    def _send_subscribe(self, handle: int, address: str) -> None:
        self._send(
            "accountSubscribe",
            [address, {"encoding": "base64", "commitment": self.commitment}],
            handle,
        )

    def on_open(self, _ws: Any) -> None:
        _LOGGER.info("Websocket connected to %s", self.ws_url)
        with self._lock:
            self._connected = True
            self._pending_requests.clear()
            self._server_ids.clear()
            subscriptions = list(self._subscriptions.items())
        for handle, (address, _callback) in subscriptions:
            self._send_subscribe(handle, address)

    def on_close(self, _ws: Any, status: Any = None, reason: Any = None) -> None:
        with self._lock:
            self._connected = False
        if not self._stop_event.is_set():
            _LOGGER.warning("Websocket closed (%s %s), reconnecting", status, reason)

    def on_error(self, _ws: Any, error: Any) -> None:
        _LOGGER.warning("Websocket error: %s", error)

    def on_message(self, _ws: Any, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            _LOGGER.debug("Ignoring non-JSON websocket frame")
            return
        if isinstance(message, Mapping):
            self.handle_message(message)

    def handle_message(self, message: Mapping[str, Any]) -> None:
        if "id" in message and "result" in message:
            with self._lock:
                handle = self._pending_requests.pop(message["id"], None)
                if handle is not None and handle in self._subscriptions and isinstance(message["result"], int):
                    self._server_ids[message["result"]] = handle
            return

        if message.get("method") != "accountNotification":
            if "error" in message:
                _LOGGER.warning("Subscription request failed: %s", message["error"])
            return
        params = message.get("params")
        if not isinstance(params, Mapping):
            return
        with self._lock:
            handle = self._server_ids.get(params.get("subscription"))
            entry = self._subscriptions.get(handle) if handle is not None else None
        if entry is None:
            return
        result = params.get("result")
        context = result.get("context") if isinstance(result, Mapping) else None
        slot = context.get("slot") if isinstance(context, Mapping) else None
        if not isinstance(slot, int):
            return
        _address, callback = entry
        try:
            callback(slot)
        except Exception:  # noqa: BLE001 - a listener must not kill the socket thread
            _LOGGER.exception("Account notification handler failed for %s", _address)

    def start(self) -> None:
        if self.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="account-subscriptions", daemon=True)
        self._thread.start()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self) -> None:
        while not self._stop_event.is_set():
            self._ws = self._app_factory(
                self.ws_url,
                on_open=self.on_open,
                on_message=self.on_message,
                on_error=self.on_error,
                on_close=self.on_close,
            )
            if self._stop_event.is_set():
                break
            self._ws.run_forever(ping_interval=self.ping_interval)
            if self._stop_event.wait(self.reconnect_delay):
                break

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        with self._lock:
            server_ids = list(self._server_ids)
            connected = self._connected
        if connected:
            for server_id in server_ids:
                self._send("accountUnsubscribe", [server_id])
        if self._ws is not None:
            self._ws.close()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


__all__ = ["AccountSubscriptionManager", "SlotCallback", "websocket_url_for"]
