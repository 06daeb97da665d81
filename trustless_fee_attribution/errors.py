"""Error taxonomy shared by the RPC layer, the settler and the daemon."""
from __future__ import annotations

import re
from enum import Enum
from typing import Any, Mapping, Optional


class SettlementErrorKind(str, Enum):
    """Closed set of outcomes a failed settlement call can map onto."""

    WINDOW_EXCEEDED = "window_exceeded"
    STALE = "stale"
    REJECTED = "rejected"
    TRANSIENT = "transient"


class ConfigurationError(RuntimeError):
    """Raised when a watch or the daemon itself cannot be configured."""


class TransientIOError(RuntimeError):
    """Raised for network, timeout and RPC failures that are retried next tick."""


class RpcError(TransientIOError):
    """Raised when the JSON-RPC endpoint answers with an error payload."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class SettlementError(RuntimeError):
    """Raised by a settlement client when the program rejects a call."""

    def __init__(
        self,
        kind: SettlementErrorKind,
        message: str,
        *,
        code: Optional[int] = None,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.name = name


# Anchor numbers custom program errors from 6000 in declaration order.
PROGRAM_ERROR_CODES: Mapping[int, str] = {
    6002: "UnauthorizedAccess",
    6004: "InvalidParameter",
    6005: "MathOverflow",
    6019: "StaleValidation",
    6020: "SlotRangeTooLarge",
    6021: "ValidatorNotStale",
    6022: "FeeTooHigh",
    6023: "TooManyTransactions",
    6024: "InvalidBondingCurve",
    6026: "PendingFeesOverflow",
}

_KIND_BY_NAME: Mapping[str, SettlementErrorKind] = {
    "SlotRangeTooLarge": SettlementErrorKind.WINDOW_EXCEEDED,
    "StaleValidation": SettlementErrorKind.STALE,
}

_CUSTOM_ERROR_RE = re.compile(r"custom program error:\s*(0x[0-9a-fA-F]+|\d+)")


def _parse_code(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            return None
    return None


def classify_program_error(
    *,
    code: Any = None,
    name: Optional[str] = None,
    message: Optional[str] = None,
) -> SettlementErrorKind:
    """Map a structured program error onto :class:`SettlementErrorKind`.

    The error name wins over the numeric code. A code embedded in a
    simulation message (``custom program error: 0x1784``) is used when neither
    is supplied. Anything unrecognised is a plain rejection.
    """

    if isinstance(name, str) and name in _KIND_BY_NAME:
        return _KIND_BY_NAME[name]

    parsed = _parse_code(code)
    if parsed is None and isinstance(message, str):
        match = _CUSTOM_ERROR_RE.search(message)
        if match:
            parsed = _parse_code(match.group(1))

    if parsed is not None:
        resolved = PROGRAM_ERROR_CODES.get(parsed)
        if resolved in _KIND_BY_NAME:
            return _KIND_BY_NAME[resolved]
    return SettlementErrorKind.REJECTED


def settlement_error_from_payload(payload: Mapping[str, Any]) -> SettlementError:
    """Build a :class:`SettlementError` from a relay ``error`` object."""

    name = payload.get("name")
    name = name if isinstance(name, str) and name else None
    message = payload.get("message")
    message = message if isinstance(message, str) else ""
    code = _parse_code(payload.get("code"))
    if name is None and code is not None:
        name = PROGRAM_ERROR_CODES.get(code)
    kind = classify_program_error(code=code, name=name, message=message)
    label = name or (f"code {code}" if code is not None else "unknown error")
    return SettlementError(kind, f"{label}: {message}" if message else label, code=code, name=name)


__all__ = [
    "ConfigurationError",
    "PROGRAM_ERROR_CODES",
    "RpcError",
    "SettlementError",
    "SettlementErrorKind",
    "TransientIOError",
    "classify_program_error",
    "settlement_error_from_payload",
]
