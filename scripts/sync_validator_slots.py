#!/usr/bin/env python3
"""Show how far each token's settled slot lags and optionally sync stale ones."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from trustless_fee_attribution.config import load_config, load_entity_watches
from trustless_fee_attribution.errors import ConfigurationError, SettlementError, TransientIOError
from trustless_fee_attribution.models import EntityWatch
from trustless_fee_attribution.rpc import SolanaRpcClient
from trustless_fee_attribution.settler import SettlementClient, SignerRelayClient


@dataclass
class SlotLag:
    symbol: str
    mint: str
    last_settled: Optional[int]
    current: int
    stale: bool
    error: Optional[str] = None
    sync_tx: Optional[str] = None

    @property
    def lag(self) -> Optional[int]:
        if self.last_settled is None:
            return None
        return self.current - self.last_settled

    def as_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "mint": self.mint,
            "last_settled": self.last_settled,
            "current": self.current,
            "lag": self.lag,
            "stale": self.stale,
            "error": self.error,
            "sync_tx": self.sync_tx,
        }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect validator slot lag for watched tokens.")
    parser.add_argument("tokens", nargs="+", help="Token JSON files.")
    parser.add_argument("--sync", action="store_true", help="Submit sync_validator_slot for stale tokens.")
    parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON.")
    parser.add_argument("--log-level", type=str, default="WARNING", help="Logging verbosity")
    return parser


def collect_lags(
    watches: Sequence[EntityWatch],
    rpc: Any,
    max_window: int,
    client: Optional[SettlementClient] = None,
) -> list[SlotLag]:
    current = rpc.get_current_position()
    results: list[SlotLag] = []
    for watch in watches:
        try:
            last = rpc.get_last_settled_marker(watch)
        except (ConfigurationError, TransientIOError) as exc:
            results.append(SlotLag(watch.label, watch.entity_id, None, current, False, error=str(exc)))
            continue
        entry = SlotLag(watch.label, watch.entity_id, last, current, current - last > max_window)
        if entry.stale and client is not None:
            try:
                entry.sync_tx = client.sync(watch)
            except (SettlementError, TransientIOError, ConfigurationError) as exc:
                entry.error = str(exc)
        results.append(entry)
    return results


def _format_lag(entry: SlotLag) -> str:
    if entry.last_settled is None:
        return f"{entry.symbol:10} | error: {entry.error}"
    state = "STALE" if entry.stale else "ok"
    line = f"{entry.symbol:10} | settled {entry.last_settled} | lag {entry.lag:>6} | {state}"
    if entry.sync_tx:
        line += f" | synced {entry.sync_tx}"
    elif entry.error:
        line += f" | sync failed: {entry.error}"
    return line


def main(argv: Optional[Sequence[str]] = None, *, rpc: Any = None, client: Optional[SettlementClient] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    try:
        config = load_config()
        if rpc is None:
            rpc = SolanaRpcClient(config.rpc_url, timeout=config.rpc_timeout)
        if args.sync and client is None:
            client = SignerRelayClient(config.relay_url or "", config.program_id or "")
    except ConfigurationError as exc:
        logging.error("%s", exc)
        return 2

    watches = load_entity_watches(args.tokens, config.program_id)
    if not watches:
        logging.error("No tokens loaded.")
        return 1

    try:
        lags = collect_lags(watches, rpc, config.max_window, client if args.sync else None)
    except TransientIOError as exc:
        logging.error("Cannot read current slot: %s", exc)
        return 1

    if args.json:
        json.dump([entry.as_dict() for entry in lags], sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        print(f"Current slot: {lags[0].current if lags else '-'} (window {config.max_window})")
        for entry in lags:
            print(_format_lag(entry))
    return 0 if all(entry.error is None for entry in lags) else 1


if __name__ == "__main__":
    sys.exit(main())
