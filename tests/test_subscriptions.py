from __future__ import annotations

import json
import threading
import time

from trustless_fee_attribution.subscriptions import AccountSubscriptionManager, websocket_url_for


class FakeSocket:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    def close(self) -> None:
        pass


def _connected_manager():
    manager = AccountSubscriptionManager("ws://rpc.local")
    manager._ws = FakeSocket()
    return manager


def _notification(subscription: int, slot: int) -> dict:
    return {
        "jsonrpc": "2.0",
        "method": "accountNotification",
        "params": {"subscription": subscription, "result": {"context": {"slot": slot}, "value": {}}},
    }


def test_websocket_url_for():
    assert websocket_url_for("https://api.mainnet-beta.solana.com") == "wss://api.mainnet-beta.solana.com"
    assert websocket_url_for("http://127.0.0.1:8899") == "ws://127.0.0.1:8899"


def test_open_subscribes_and_notifications_dispatch():
    manager = _connected_manager()
    slots: list[int] = []
    manager.subscribe("Curve111", slots.append)

    manager.on_open(manager._ws)
    request = manager._ws.sent[0]
    assert request["method"] == "accountSubscribe"
    assert request["params"][0] == "Curve111"

    manager.handle_message({"jsonrpc": "2.0", "id": request["id"], "result": 77})
    manager.handle_message(_notification(77, 1_234))
    manager.handle_message(_notification(78, 9_999))

    assert slots == [1_234]


def test_reconnect_resubscribes_every_handle():
    manager = _connected_manager()
    manager.subscribe("CurveA", lambda slot: None)
    manager.subscribe("CurveB", lambda slot: None)

    manager.on_open(manager._ws)
    manager.on_close(manager._ws, 1006, "abnormal")
    manager.on_open(manager._ws)

    addresses = [message["params"][0] for message in manager._ws.sent]
    assert addresses == ["CurveA", "CurveB", "CurveA", "CurveB"]


def test_unsubscribe_stops_dispatch():
    manager = _connected_manager()
    slots: list[int] = []
    handle = manager.subscribe("Curve111", slots.append)
    manager.on_open(manager._ws)
    manager.handle_message({"id": manager._ws.sent[0]["id"], "result": 5})

    manager.unsubscribe(handle)
    manager.handle_message(_notification(5, 10))

    assert slots == []
    assert manager._ws.sent[-1]["method"] == "accountUnsubscribe"
    assert manager._ws.sent[-1]["params"] == [5]


def test_callback_errors_are_contained():
    manager = _connected_manager()

    def _boom(slot):
        raise ValueError("listener bug")

    manager.subscribe("Curve111", _boom)
    manager.on_open(manager._ws)
    manager.handle_message({"id": manager._ws.sent[0]["id"], "result": 9})

    manager.handle_message(_notification(9, 1))


def test_non_json_frames_are_ignored():
    manager = _connected_manager()

    manager.on_message(manager._ws, "not-json")


class FakeApp:
    def __init__(self, url, **callbacks) -> None:
        self.url = url
        self.callbacks = callbacks
        self.running = threading.Event()
        self.closed = threading.Event()

    def send(self, raw: str) -> None:
        pass

    def run_forever(self, ping_interval=None) -> None:
        self.running.set()
        self.closed.wait(5)

    def close(self) -> None:
        self.closed.set()


def test_manager_can_be_restarted_after_stop():
    apps: list[FakeApp] = []

    def _factory(url, **callbacks):
        app = FakeApp(url, **callbacks)
        apps.append(app)
        return app

    manager = AccountSubscriptionManager("ws://rpc.local", reconnect_delay=0.01, app_factory=_factory)

    manager.start()
    assert _wait_for(lambda: apps and apps[-1].running.is_set())
    manager.stop()
    assert not manager.is_alive()

    manager.start()
    assert _wait_for(lambda: len(apps) == 2 and apps[-1].running.is_set())
    assert manager.is_alive()
    manager.stop()
    assert not manager.is_alive()


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False
