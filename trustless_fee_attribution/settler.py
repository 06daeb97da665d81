"""Submit attested fee totals through the permissionless settlement instruction.

Signing is delegated: the daemon builds unsigned Anchor instructions and hands
them to a signer relay, which signs, sends and reports the outcome. The settler
turns that outcome into the ledger action the watcher must apply.
"""
from __future__ import annotations

import base64
import hashlib
import logging
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import requests

from .errors import (
    ConfigurationError,
    SettlementError,
    SettlementErrorKind,
    TransientIOError,
    settlement_error_from_payload,
)
from .models import EntityWatch, SettlementAttempt

_LOGGER = logging.getLogger(__name__)

U64_MAX = 2**64 - 1
U32_MAX = 2**32 - 1

REGISTER_FEES_INSTRUCTION = "register_validated_fees"
SYNC_SLOT_INSTRUCTION = "sync_validator_slot"
_REGISTER_ARGS = struct.Struct("<QQI")


def instruction_discriminator(name: str) -> bytes:
    """Anchor's 8-byte instruction selector for ``name``."""

    return hashlib.sha256(f"global:{name}".encode("utf-8")).digest()[:8]


def encode_register_fees(fee_amount: int, end_marker: int, event_count: int) -> bytes:
    return instruction_discriminator(REGISTER_FEES_INSTRUCTION) + _REGISTER_ARGS.pack(
        fee_amount, end_marker, event_count
    )


class SettlementClient(ABC):
    """Interface to the external settlement endpoint."""

    @abstractmethod
    def settle(self, watch: EntityWatch, fee_amount: int, end_marker: int, event_count: int) -> str:
        """Return a transaction signature or raise :class:`SettlementError`."""

    @abstractmethod
    def sync(self, watch: EntityWatch) -> str:
        """Advance a stale on-chain marker to the current slot."""


class SignerRelayClient(SettlementClient):
    """Posts unsigned instructions to a signer relay over HTTP."""

    def __init__(
        self,
        relay_url: str,
        program_id: str,
        *,
        timeout: Optional[float] = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not relay_url:
            raise ConfigurationError("A signer relay URL is required to submit settlements")
        if not program_id:
            raise ConfigurationError("The validator program id is required to submit settlements")
        self.relay_url = relay_url
        self.program_id = program_id
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

    def build_instruction(self, name: str, watch: EntityWatch, data: bytes) -> Dict[str, Any]:
        """Return the unsigned instruction payload sent to the relay."""

        if watch.settlement_accounts is None:
            raise ConfigurationError(f"{watch.label}: settlement accounts are not configured")
        accounts: List[Dict[str, Any]] = [
            {"pubkey": watch.settlement_accounts.validator_state, "isSigner": False, "isWritable": True},
        ]
        if name == REGISTER_FEES_INSTRUCTION:
            accounts.append(
                {"pubkey": watch.settlement_accounts.token_stats, "isSigner": False, "isWritable": True}
            )
        return {
            "programId": self.program_id,
            "instruction": name,
            "mint": watch.entity_id,
            "data": base64.b64encode(data).decode("ascii"),
            "accounts": accounts,
        }

    def _submit(self, payload: Mapping[str, Any]) -> str:
        try:
            response = self.session.post(self.relay_url, json=payload, timeout=self.timeout)
            body = response.json()
        except requests.RequestException as exc:
            raise TransientIOError(f"Signer relay unreachable: {exc}") from exc
        except ValueError as exc:
            raise TransientIOError("Signer relay returned invalid JSON") from exc

        if isinstance(body, Mapping):
            error = body.get("error")
            if isinstance(error, Mapping):
                raise settlement_error_from_payload(error)
            if isinstance(error, str) and error:
                raise settlement_error_from_payload({"message": error})
            signature = body.get("signature")
            if isinstance(signature, str) and signature:
                return signature
        if response.status_code >= 500:
            raise TransientIOError(f"Signer relay error {response.status_code}")
        raise SettlementError(SettlementErrorKind.REJECTED, f"Unexpected relay response: {body!r}")

    def settle(self, watch: EntityWatch, fee_amount: int, end_marker: int, event_count: int) -> str:
        data = encode_register_fees(fee_amount, end_marker, event_count)
        return self._submit(self.build_instruction(REGISTER_FEES_INSTRUCTION, watch, data))

    def sync(self, watch: EntityWatch) -> str:
        data = instruction_discriminator(SYNC_SLOT_INSTRUCTION)
        return self._submit(self.build_instruction(SYNC_SLOT_INSTRUCTION, watch, data))


class SettlementAction(str, Enum):
    RESET_TO_END = "reset_to_end"
    RESET_TO_CURRENT = "reset_to_current"
    RETAIN = "retain"


@dataclass(frozen=True)
class SettlementOutcome:
    action: SettlementAction
    attempt: SettlementAttempt
    error_kind: Optional[SettlementErrorKind] = None

    @property
    def succeeded(self) -> bool:
        return self.action is SettlementAction.RESET_TO_END

    @property
    def counts_as_failure(self) -> bool:
        return self.error_kind is SettlementErrorKind.REJECTED


def _attempt(watch: EntityWatch, fee: int, end: int, count: int, outcome: str, **kwargs: Any) -> SettlementAttempt:
    return SettlementAttempt(watch.entity_id, fee, end, count, outcome=outcome, **kwargs)


class OnChainSettler:
    """Run one settlement call and classify its result."""

    def __init__(self, client: SettlementClient) -> None:
        self.client = client

    def submit(self, watch: EntityWatch, fee_amount: int, end_marker: int, event_count: int) -> SettlementOutcome:
        if not (0 <= fee_amount <= U64_MAX and 0 <= end_marker <= U64_MAX and 0 <= event_count <= U32_MAX):
            detail = "arguments overflow the instruction layout"
            _LOGGER.error("%s: settlement not sent, %s", watch.label, detail)
            return SettlementOutcome(
                SettlementAction.RETAIN,
                _attempt(watch, fee_amount, end_marker, event_count, "rejected", detail=detail),
                SettlementErrorKind.REJECTED,
            )

        try:
            receipt = self.client.settle(watch, fee_amount, end_marker, event_count)
        except SettlementError as exc:
            kind = exc.kind
            detail = str(exc)
        except (TransientIOError, ConfigurationError) as exc:
            kind = SettlementErrorKind.TRANSIENT if isinstance(exc, TransientIOError) else SettlementErrorKind.REJECTED
            detail = str(exc)
        else:
            _LOGGER.info(
                "%s: settled %d lamports through slot %d (%d txs) tx=%s",
                watch.label,
                fee_amount,
                end_marker,
                event_count,
                receipt,
            )
            return SettlementOutcome(
                SettlementAction.RESET_TO_END,
                _attempt(watch, fee_amount, end_marker, event_count, "settled", receipt=receipt),
            )

        if kind in (SettlementErrorKind.WINDOW_EXCEEDED, SettlementErrorKind.STALE):
            _LOGGER.warning("%s: settlement refused (%s), resetting to current slot", watch.label, detail)
            action = SettlementAction.RESET_TO_CURRENT
        else:
            _LOGGER.error("%s: settlement failed (%s), keeping ledger for retry", watch.label, detail)
            action = SettlementAction.RETAIN
        return SettlementOutcome(
            action,
            _attempt(watch, fee_amount, end_marker, event_count, kind.value, detail=detail),
            kind,
        )


__all__ = [
    "OnChainSettler",
    "REGISTER_FEES_INSTRUCTION",
    "SYNC_SLOT_INSTRUCTION",
    "SettlementAction",
    "SettlementClient",
    "SettlementOutcome",
    "SignerRelayClient",
    "encode_register_fees",
    "instruction_discriminator",
]
