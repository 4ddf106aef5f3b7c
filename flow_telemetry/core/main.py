"""Watch a running flow's telemetry stream from the terminal."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from typing import Optional

from .aggregate_store import TelemetrySnapshot
from .config import TelemetryConfig
from .session import FlowTelemetrySession
from .views import metrics_array


LOGGER = logging.getLogger(__name__)


def _parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Flow runtime telemetry watcher")
    parser.add_argument(
        "--flow-id",
        default=os.environ.get("FLOW_TELEMETRY_FLOW_ID"),
        required=os.environ.get("FLOW_TELEMETRY_FLOW_ID") is None,
        help="Flow whose runtime stream should be watched",
    )
    parser.add_argument("--stream-url", help="Websocket status stream endpoint")
    parser.add_argument("--api-url", help="Base URL of the flow API")
    parser.add_argument("--log-capacity", type=int, help="Number of log lines kept in memory")
    parser.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="Stop after this many seconds (0 runs until interrupted)",
    )
    parser.add_argument(
        "--history",
        action="store_true",
        help="Load one page of historical messages after connecting",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


class _LogPrinter:
    """Print log lines once each as snapshots arrive."""

    def __init__(self) -> None:
        self._last_sequence = 0

    def __call__(self, snapshot: TelemetrySnapshot) -> None:
        for entry in snapshot.logs:
            if entry.sequence <= self._last_sequence:
                continue
            self._last_sequence = entry.sequence
            print(f"{entry.timestamp:.0f} {entry.level.name:<5} [{entry.source}] {entry.message}")


def _print_summary(snapshot: TelemetrySnapshot) -> None:
    LOGGER.info(
        "Connection %s (error=%s), %d logs, %d messages, %d dropped frames",
        snapshot.connection_state.value,
        snapshot.error,
        len(snapshot.logs),
        len(snapshot.messages),
        snapshot.dropped_frames,
    )
    if snapshot.health is not None:
        LOGGER.info("Health: %s %s", snapshot.health.overall_status.value, snapshot.health.counts)
    for row in metrics_array(snapshot):
        if row.rate is None:
            rate = "-"
        elif row.near_zero:
            rate = "<0.01/s"
        else:
            rate = f"{row.rate:.2f}/s"
        LOGGER.info("%s %s = %s (%s)", row.component, row.metric_name, row.raw.value, rate)


async def main(argv: Optional[list] = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config = TelemetryConfig.from_env(
        stream_url=args.stream_url,
        api_url=args.api_url,
        log_capacity=args.log_capacity,
    )

    async with FlowTelemetrySession(config) as session:
        session.subscribe(_LogPrinter(), subscriber_id="terminal")
        await session.open(args.flow_id)

        if args.history and await session.load_history():
            LOGGER.info("Merged %d messages", len(session.snapshot().messages))
        elif args.history:
            LOGGER.warning("History unavailable: %s", session.snapshot().history_error)

        try:
            if args.duration > 0:
                await asyncio.sleep(args.duration)
            else:
                await asyncio.Event().wait()
        finally:
            _print_summary(session.snapshot())


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
