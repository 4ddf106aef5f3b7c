"""Merge historical message pages with the live message stream."""

from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from .frame_schemas import MalformedFrameError, RuntimeMessage, message_from_record


LOGGER = logging.getLogger(__name__)


class HistoryReconciler:
    """Accumulate historical messages and merge them with live ones.

    Entries are identified by ``trace_id:timestamp`` (or the record id for
    historical entries without a trace id).  Live entries always win a key
    collision, and re-adding an already merged page changes nothing.  Entries
    without any key are always kept.
    """

    def __init__(self, sequence: Optional[Iterator[int]] = None) -> None:
        self._sequence = sequence if sequence is not None else itertools.count()
        self._keyed: Dict[str, RuntimeMessage] = {}
        self._unkeyed: List[RuntimeMessage] = []
        self._skipped = 0

    @property
    def historical_count(self) -> int:
        return len(self._keyed) + len(self._unkeyed)

    @property
    def skipped(self) -> int:
        """Historical records rejected as malformed."""

        return self._skipped

    def add_history(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Normalise and remember ``records``; returns how many were new."""

        added = 0
        for record in records:
            try:
                message = message_from_record(record, sequence=next(self._sequence))
            except MalformedFrameError as exc:
                self._skipped += 1
                LOGGER.warning("Skipping historical message: %s", exc)
                continue

            key = message.dedup_key
            if key is None:
                self._unkeyed.append(message)
            elif key in self._keyed:
                continue
            else:
                self._keyed[key] = message
            added += 1
        return added

    def merge(self, live: Iterable[RuntimeMessage]) -> Tuple[RuntimeMessage, ...]:
        """Return live and historical messages, oldest first, without duplicates."""

        merged: List[RuntimeMessage] = []
        live_index: Dict[str, int] = {}
        for message in live:
            key = message.dedup_key
            if key is None:
                merged.append(message)
            elif key in live_index:
                merged[live_index[key]] = message
            else:
                live_index[key] = len(merged)
                merged.append(message)

        for key, message in self._keyed.items():
            if key not in live_index:
                merged.append(message)
        merged.extend(self._unkeyed)

        merged.sort(key=lambda message: (message.timestamp, message.sequence))
        return tuple(merged)

    def reconcile(
        self,
        live: Iterable[RuntimeMessage],
        records: Iterable[Mapping[str, Any]],
    ) -> Tuple[RuntimeMessage, ...]:
        self.add_history(records)
        return self.merge(live)

    def reset(self) -> None:
        self._keyed.clear()
        self._unkeyed.clear()
