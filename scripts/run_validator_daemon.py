#!/usr/bin/env python3
"""Run the trustless fee attribution daemon for a set of token files."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from dataclasses import replace
from typing import Mapping, Optional, Sequence

from trustless_fee_attribution.config import DaemonConfig, load_config, load_entity_watches
from trustless_fee_attribution.daemon import ValidatorDaemon
from trustless_fee_attribution.errors import ConfigurationError
from trustless_fee_attribution.models import WatcherStatus

LAMPORTS_PER_SOL = 1_000_000_000


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Watch PumpFun bonding curves, re-derive creator fees from transaction logs "
            "and commit them through the permissionless register_validated_fees instruction."
        )
    )
    parser.add_argument("tokens", nargs="+", help="Token JSON files (mint, bondingCurve, creatorVault, ...).")
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Fixed flush interval in seconds (defaults to FLUSH_INTERVAL_SECONDS or 30).",
    )
    parser.add_argument(
        "--status-interval",
        type=float,
        default=60.0,
        help="Seconds between pending-fee summaries; 0 disables them.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Logging verbosity (DEBUG, INFO, WARNING)",
    )
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def format_pending(statuses: Mapping[str, WatcherStatus]) -> list[str]:
    lines = []
    for status in statuses.values():
        if status.fee_amount <= 0:
            continue
        sol = status.fee_amount / LAMPORTS_PER_SOL
        lines.append(
            f"{status.label}: {sol:.6f} SOL "
            f"({status.event_count} TXs, slots {status.start_marker}-{status.end_marker})"
        )
    return lines


def _resolve_config(args: argparse.Namespace) -> DaemonConfig:
    config = load_config()
    if args.interval is not None:
        if args.interval <= 0:
            raise ConfigurationError("--interval must be positive")
        config = replace(config, flush_interval=args.interval)
    return config


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    daemon_factory=ValidatorDaemon.from_config,
    stop_event: Optional[threading.Event] = None,
) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = _resolve_config(args)
    except ConfigurationError as exc:
        logging.error("%s", exc)
        return 2

    watches = load_entity_watches(args.tokens, config.program_id)
    if not watches:
        logging.error("No tokens loaded. Please create token config files.")
        return 1

    try:
        daemon = daemon_factory(config)
        accepted = daemon.start(watches)
    except ConfigurationError as exc:
        logging.error("%s", exc)
        return 1
    if accepted == 0:
        logging.error("None of the %d token(s) could be watched", len(watches))
        daemon.stop()
        return 1

    stop_requested = stop_event if stop_event is not None else threading.Event()

    def _request_stop(signum, _frame) -> None:
        logging.info("Received %s, shutting down", signal.Signals(signum).name)
        stop_requested.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    logging.info("Monitoring for trades... (Ctrl+C to stop)")
    wait = args.status_interval if args.status_interval > 0 else None
    while not stop_requested.wait(wait):
        for line in format_pending(daemon.pending_totals()):
            logging.info("Pending %s", line)

    daemon.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
