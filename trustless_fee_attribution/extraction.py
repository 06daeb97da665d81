"""Re-derive the creator fee paid by a single trade from its raw transaction data."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .models import RawEvent

DEFAULT_FEE_TAG = "creator-vault"
DEFAULT_MIN_PLAUSIBLE_FEE = 1_000
DEFAULT_MAX_PLAUSIBLE_FEE = 100_000_000

_LAMPORTS_RE = re.compile(r"(\d+)\s+lamports")
_LONG_INTEGER_RE = re.compile(r"(\d{6,})")

Strategy = Callable[[RawEvent, str], Optional[int]]


def _structured_amount(event: RawEvent, destination: str, tag: str = DEFAULT_FEE_TAG) -> Optional[int]:
    for line in event.log_lines:
        if tag not in line and destination not in line:
            continue
        match = _LAMPORTS_RE.search(line)
        if match:
            return int(match.group(1))
    return None


def _heuristic_amount(
    event: RawEvent,
    destination: str,
    minimum: int = DEFAULT_MIN_PLAUSIBLE_FEE,
    maximum: int = DEFAULT_MAX_PLAUSIBLE_FEE,
) -> Optional[int]:
    if not destination:
        return None
    for line in event.log_lines:
        if destination not in line:
            continue
        match = _LONG_INTEGER_RE.search(line)
        if not match:
            continue
        amount = int(match.group(1))
        if minimum <= amount <= maximum:
            return amount
    return None


def _balance_delta(event: RawEvent, destination: str) -> Optional[int]:
    try:
        index = event.account_keys.index(destination)
    except ValueError:
        return None
    if index >= len(event.pre_balances) or index >= len(event.post_balances):
        return None
    delta = event.post_balances[index] - event.pre_balances[index]
    return delta if delta > 0 else None


@dataclass(frozen=True)
class FeeExtractor:
    """Ordered list of pure extraction strategies.

    ``extract`` tries each strategy in turn and returns the first positive
    result; it returns ``0`` when none identifies a fee and never raises.
    """

    fee_tag: str = DEFAULT_FEE_TAG
    min_plausible_fee: int = DEFAULT_MIN_PLAUSIBLE_FEE
    max_plausible_fee: int = DEFAULT_MAX_PLAUSIBLE_FEE

    @property
    def strategies(self) -> Sequence[Strategy]:
        return (
            lambda event, dest: _structured_amount(event, dest, self.fee_tag),
            lambda event, dest: _heuristic_amount(event, dest, self.min_plausible_fee, self.max_plausible_fee),
            _balance_delta,
        )

    def extract(self, event: RawEvent, destination: str) -> int:
        for strategy in self.strategies:
            try:
                amount = strategy(event, destination)
            except (TypeError, ValueError, AttributeError):
                amount = None
            if amount is not None and amount > 0:
                return amount
        return 0


__all__ = [
    "DEFAULT_FEE_TAG",
    "DEFAULT_MAX_PLAUSIBLE_FEE",
    "DEFAULT_MIN_PLAUSIBLE_FEE",
    "FeeExtractor",
]
