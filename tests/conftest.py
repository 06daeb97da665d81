"""Shared fakes for the attribution daemon tests; nothing here touches the network."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import pytest

from trustless_fee_attribution.errors import ConfigurationError, TransientIOError
from trustless_fee_attribution.models import EntityWatch, EventRef, RawEvent, SettlementAccounts
from trustless_fee_attribution.settler import SettlementClient

VAULT = "CreatorVau1t1111111111111111111111111111111"
CURVE = "BondingCurve111111111111111111111111111111"
MINT = "TokenMint11111111111111111111111111111111pump"


def make_event(
    signature: str,
    slot: int,
    logs: Sequence[str] = (),
    keys: Sequence[str] = (),
    pre: Sequence[int] = (),
    post: Sequence[int] = (),
) -> RawEvent:
    return RawEvent(
        event_id=signature,
        marker=slot,
        log_lines=tuple(logs),
        account_keys=tuple(keys),
        pre_balances=tuple(pre),
        post_balances=tuple(post),
    )


def fee_event(signature: str, slot: int, fee: int) -> RawEvent:
    return make_event(signature, slot, logs=(f"Program log: Transfer: {fee} lamports to creator-vault",))


class FakeRpc:
    """In-memory stand-in for :class:`SolanaRpcClient`."""

    def __init__(self, current: int = 1_000) -> None:
        self.current = current
        self.last_settled: Dict[str, int] = {}
        self.activity: Dict[str, List[EventRef]] = {}
        self.details: Dict[str, RawEvent] = {}
        self.fail_listing = False
        self.fail_current = False
        self.fail_marker = False
        self.fail_details: set[str] = set()
        self.detail_requests: List[str] = []

    def add_event(self, address: str, event: RawEvent, failed: bool = False) -> None:
        refs = self.activity.setdefault(address, [])
        refs.insert(0, EventRef(event.event_id, event.marker, failed))
        self.details[event.event_id] = event

    def get_current_position(self) -> int:
        if self.fail_current:
            raise TransientIOError("getSlot timed out")
        return self.current

    def list_recent_activity(self, address: str, limit: int) -> List[EventRef]:
        if self.fail_listing:
            raise TransientIOError("getSignaturesForAddress timed out")
        return list(self.activity.get(address, []))[:limit]

    def get_event_detail(self, ref: EventRef) -> Optional[RawEvent]:
        self.detail_requests.append(ref.event_id)
        if ref.event_id in self.fail_details:
            raise TransientIOError(f"getTransaction failed for {ref.event_id}")
        return self.details.get(ref.event_id)

    def get_last_settled_marker(self, watch: EntityWatch) -> int:
        if self.fail_marker:
            raise TransientIOError("getAccountInfo timed out")
        if watch.entity_id not in self.last_settled:
            raise ConfigurationError(f"{watch.label}: validator state not initialised")
        return self.last_settled[watch.entity_id]


class FakeSettlementClient(SettlementClient):
    """Records calls; mirrors successful settlements and syncs into a :class:`FakeRpc`."""

    def __init__(self, rpc: Optional[FakeRpc] = None) -> None:
        self.rpc = rpc
        self.calls: List[tuple[str, int, int, int]] = []
        self.sync_calls: List[str] = []
        self.errors: List[Exception] = []
        self.sync_error: Optional[Exception] = None

    def settle(self, watch: EntityWatch, fee_amount: int, end_marker: int, event_count: int) -> str:
        self.calls.append((watch.entity_id, fee_amount, end_marker, event_count))
        if self.errors:
            raise self.errors.pop(0)
        if self.rpc is not None:
            self.rpc.last_settled[watch.entity_id] = end_marker
        return f"settle-tx-{len(self.calls)}"

    def sync(self, watch: EntityWatch) -> str:
        self.sync_calls.append(watch.entity_id)
        if self.sync_error is not None:
            raise self.sync_error
        if self.rpc is not None:
            self.rpc.last_settled[watch.entity_id] = self.rpc.current
        return f"sync-tx-{len(self.sync_calls)}"


class FakeResponse:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        import requests

        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    """Replays queued responses for ``session.post`` and records each request."""

    def __init__(self, *responses: Any) -> None:
        self.headers: Dict[str, str] = {}
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def post(self, url: str, json: Any = None, timeout: Optional[float] = None) -> FakeResponse:
        self.requests.append({"url": url, "json": json, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, FakeResponse):
            return response
        return FakeResponse(response)


@pytest.fixture
def watch() -> EntityWatch:
    return EntityWatch(
        entity_id=MINT,
        activity_source=CURVE,
        fee_source=VAULT,
        label="TEST",
        settlement_accounts=SettlementAccounts(validator_state="Va1idatorState11111", token_stats="TokenStats111111"),
    )


@pytest.fixture
def rpc(watch: EntityWatch) -> FakeRpc:
    fake = FakeRpc(current=1_000)
    fake.last_settled[watch.entity_id] = 990
    return fake


@pytest.fixture
def settlement_client(rpc: FakeRpc) -> FakeSettlementClient:
    return FakeSettlementClient(rpc)
