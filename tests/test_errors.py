from __future__ import annotations

import pytest

from trustless_fee_attribution.errors import (
    RpcError,
    SettlementErrorKind,
    TransientIOError,
    classify_program_error,
    settlement_error_from_payload,
)


@pytest.mark.parametrize(
    "kwargs, expected",
    [
        ({"name": "SlotRangeTooLarge"}, SettlementErrorKind.WINDOW_EXCEEDED),
        ({"name": "StaleValidation"}, SettlementErrorKind.STALE),
        ({"code": 6020}, SettlementErrorKind.WINDOW_EXCEEDED),
        ({"code": "0x1783"}, SettlementErrorKind.STALE),
        ({"message": "Transaction simulation failed: custom program error: 0x1784"}, SettlementErrorKind.WINDOW_EXCEEDED),
        ({"name": "FeeTooHigh", "code": 6022}, SettlementErrorKind.REJECTED),
        ({"message": "blockhash not found"}, SettlementErrorKind.REJECTED),
    ],
)
def test_classify_program_error(kwargs, expected):
    assert classify_program_error(**kwargs) is expected


def test_name_wins_over_code():
    assert classify_program_error(name="StaleValidation", code=6020) is SettlementErrorKind.STALE


def test_payload_fills_in_name_from_code():
    error = settlement_error_from_payload({"code": 6023, "message": "too many"})

    assert error.kind is SettlementErrorKind.REJECTED
    assert error.name == "TooManyTransactions"
    assert str(error) == "TooManyTransactions: too many"


def test_rpc_error_is_transient():
    error = RpcError("getSlot: node is behind", -32005)

    assert isinstance(error, TransientIOError)
    assert error.code == -32005
