"""Fetch one page of historical runtime messages for a flow."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

from flow_telemetry.core.config import TelemetryConfig
from flow_telemetry.core.history_reconciler import HistoryReconciler
from flow_telemetry.core.messages_client import HistoryFetchError, MessagesClient

LOGGER = logging.getLogger("flow_telemetry.cli.history")


def _build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--flow-id", required=True, help="Flow to query")
    parser.add_argument("--api-url", help="Base URL of the flow API")
    parser.add_argument("--limit", type=int, default=None, help="Page size")
    parser.add_argument("--cursor", default=None, help="Cursor returned by a previous page")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Request timeout in seconds",
    )
    return parser


async def _fetch_page(
    config: TelemetryConfig,
    flow_id: str,
    limit: int,
    cursor: Optional[str],
) -> Dict[str, Any]:
    client = MessagesClient(config.api_url, timeout=config.fetch_timeout)
    try:
        page = await client.fetch_messages(flow_id, limit=limit, cursor=cursor)
    finally:
        await client.close()

    reconciler = HistoryReconciler()
    reconciler.add_history(page.messages)
    return {
        "flow_id": flow_id,
        "total": page.total,
        "next_cursor": page.next_cursor,
        "skipped": reconciler.skipped,
        "messages": [message.to_payload() for message in reconciler.merge(())],
    }


def main(argv: Optional[list] = None) -> int:
    parser = _build_argument_parser()
    args = parser.parse_args(argv)
    config = TelemetryConfig.from_env(api_url=args.api_url, fetch_timeout=args.timeout)

    try:
        payload = asyncio.run(
            _fetch_page(config, args.flow_id, args.limit or config.history_page_size, args.cursor)
        )
    except HistoryFetchError as exc:
        LOGGER.error("Could not fetch history: %s", exc)
        print(json.dumps({"error": exc.to_payload()}, indent=2, sort_keys=True))
        return 1

    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
