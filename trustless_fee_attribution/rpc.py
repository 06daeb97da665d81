"""Minimal Solana JSON-RPC client covering the reads the daemon relies on."""
from __future__ import annotations

import base64
import binascii
import itertools
import logging
import struct
import threading
from typing import Any, List, Mapping, Optional, Sequence

import requests

from .errors import ConfigurationError, RpcError, TransientIOError
from .models import EntityWatch, EventRef, RawEvent

_LOGGER = logging.getLogger(__name__)

DEFAULT_COMMITMENT = "confirmed"
DEFAULT_TIMEOUT = 10.0

# ValidatorState layout: 8-byte discriminator, mint, bonding curve, last_validated_slot.
_LAST_SLOT_OFFSET = 8 + 32 + 32
_LAST_SLOT = struct.Struct("<Q")


def decode_last_settled_marker(data: bytes) -> int:
    """Return ``last_validated_slot`` from raw validator-state account data."""

    if len(data) < _LAST_SLOT_OFFSET + _LAST_SLOT.size:
        raise ConfigurationError(f"Validator state account too small ({len(data)} bytes)")
    return _LAST_SLOT.unpack_from(data, _LAST_SLOT_OFFSET)[0]


def _as_int_tuple(values: Any) -> tuple[int, ...]:
    if not isinstance(values, Sequence) or isinstance(values, (str, bytes)):
        return ()
    result = []
    for value in values:
        try:
            result.append(int(value))
        except (TypeError, ValueError):
            return ()
    return tuple(result)


def _account_keys(transaction: Mapping[str, Any], meta: Mapping[str, Any]) -> tuple[str, ...]:
    message = transaction.get("message") if isinstance(transaction, Mapping) else None
    keys: List[str] = []
    if isinstance(message, Mapping):
        for entry in message.get("accountKeys") or ():
            if isinstance(entry, str):
                keys.append(entry)
            elif isinstance(entry, Mapping) and isinstance(entry.get("pubkey"), str):
                keys.append(entry["pubkey"])
    # Versioned transactions list lookup-table accounts after the static keys.
    loaded = meta.get("loadedAddresses")
    if isinstance(loaded, Mapping):
        for section in ("writable", "readonly"):
            keys.extend(key for key in loaded.get(section) or () if isinstance(key, str))
    return tuple(keys)


def parse_transaction(signature: str, payload: Mapping[str, Any]) -> RawEvent:
    """Convert a ``getTransaction`` result (json encoding) into a :class:`RawEvent`."""

    meta = payload.get("meta")
    meta = meta if isinstance(meta, Mapping) else {}
    logs = meta.get("logMessages") or ()
    return RawEvent(
        event_id=signature,
        marker=int(payload.get("slot") or 0),
        log_lines=tuple(line for line in logs if isinstance(line, str)),
        account_keys=_account_keys(payload.get("transaction") or {}, meta),
        pre_balances=_as_int_tuple(meta.get("preBalances")),
        post_balances=_as_int_tuple(meta.get("postBalances")),
    )


class SolanaRpcClient:
    """Thread-safe JSON-RPC wrapper built on a shared ``requests.Session``."""

    def __init__(
        self,
        url: str,
        *,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        commitment: str = DEFAULT_COMMITMENT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.commitment = commitment
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()

    def _next_id(self) -> int:
        with self._id_lock:
            return next(self._ids)

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params or []}
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            raise TransientIOError(f"{method} failed: {exc}") from exc
        except ValueError as exc:
            raise TransientIOError(f"{method} returned invalid JSON") from exc

        if not isinstance(data, Mapping):
            raise TransientIOError(f"{method} returned unexpected payload {data!r}")
        error = data.get("error")
        if error:
            _LOGGER.debug("RPC %s rejected: %s", method, error)
            if isinstance(error, Mapping):
                raise RpcError(f"{method}: {error.get('message', error)}", error.get("code"))
            raise RpcError(f"{method}: {error}")
        return data.get("result")

    def get_current_position(self) -> int:
        result = self.call("getSlot", [{"commitment": self.commitment}])
        try:
            return int(result)
        except (TypeError, ValueError) as exc:
            raise TransientIOError(f"getSlot returned {result!r}") from exc

    def list_recent_activity(self, address: str, limit: int) -> List[EventRef]:
        """Return the ``limit`` most recent signatures for ``address``, newest first."""

        result = self.call(
            "getSignaturesForAddress",
            [address, {"limit": limit, "commitment": self.commitment}],
        )
        refs: List[EventRef] = []
        for entry in result or ():
            if not isinstance(entry, Mapping) or not isinstance(entry.get("signature"), str):
                continue
            refs.append(
                EventRef(
                    event_id=entry["signature"],
                    marker=int(entry.get("slot") or 0),
                    failed=entry.get("err") is not None,
                )
            )
        return refs

    def get_event_detail(self, ref: EventRef) -> Optional[RawEvent]:
        result = self.call(
            "getTransaction",
            [
                ref.event_id,
                {"encoding": "json", "maxSupportedTransactionVersion": 0, "commitment": self.commitment},
            ],
        )
        if not isinstance(result, Mapping):
            return None
        event = parse_transaction(ref.event_id, result)
        if event.marker == 0:
            event = RawEvent(
                event_id=event.event_id,
                marker=ref.marker,
                log_lines=event.log_lines,
                account_keys=event.account_keys,
                pre_balances=event.pre_balances,
                post_balances=event.post_balances,
            )
        return event

    def get_account_data(self, address: str) -> Optional[bytes]:
        result = self.call("getAccountInfo", [address, {"encoding": "base64", "commitment": self.commitment}])
        value = result.get("value") if isinstance(result, Mapping) else None
        if not isinstance(value, Mapping):
            return None
        data = value.get("data")
        if isinstance(data, (list, tuple)) and data and isinstance(data[0], str):
            try:
                return base64.b64decode(data[0])
            except (binascii.Error, ValueError) as exc:
                raise TransientIOError(f"Undecodable account data for {address}") from exc
        return None

    def get_last_settled_marker(self, watch: EntityWatch) -> int:
        if watch.settlement_accounts is None:
            raise ConfigurationError(f"{watch.label}: no validator state account configured")
        address = watch.settlement_accounts.validator_state
        data = self.get_account_data(address)
        if data is None:
            raise ConfigurationError(f"{watch.label}: validator state {address} not initialised")
        return decode_last_settled_marker(data)


__all__ = [
    "SolanaRpcClient",
    "decode_last_settled_marker",
    "parse_transaction",
]
