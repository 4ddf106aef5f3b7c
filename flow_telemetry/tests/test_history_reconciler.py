from flow_telemetry.core.frame_schemas import RuntimeMessage
from flow_telemetry.core.history_reconciler import HistoryReconciler


def _live(subject: str, timestamp: float, *, trace_id=None, sequence: int = 0) -> RuntimeMessage:
    return RuntimeMessage(
        id=f"live-{subject}",
        timestamp=timestamp,
        subject=subject,
        direction="processed",
        component="live-component",
        trace_id=trace_id,
        sequence=sequence,
    )


def _record(message_id: str, timestamp: float, subject: str, **extra) -> dict:
    return {
        "message_id": message_id,
        "timestamp": timestamp,
        "subject": subject,
        "direction": "published",
        "component": "old-component",
        **extra,
    }


def test_merge_orders_historical_and_live_by_timestamp() -> None:
    reconciler = HistoryReconciler()

    merged = reconciler.reconcile(
        [_live("newest.message", 1705329780000, trace_id="new-001", sequence=1)],
        [
            _record("old-002", 1705329775000, "middle.message"),
            _record("old-001", 1705329770000, "oldest.message"),
        ],
    )

    assert [message.subject for message in merged] == [
        "oldest.message",
        "middle.message",
        "newest.message",
    ]
    assert [message.origin for message in merged] == ["history", "history", "live"]


def test_live_entry_wins_key_collision() -> None:
    reconciler = HistoryReconciler()
    live = [_live("live.version", 1705329780000, trace_id="dup-123")]

    merged = reconciler.reconcile(live, [_record("dup-123", 1705329780000, "historical.version")])

    assert len(merged) == 1
    assert merged[0].subject == "live.version"
    assert merged[0].origin == "live"


def test_same_trace_different_timestamp_is_kept() -> None:
    reconciler = HistoryReconciler()
    live = [_live("live", 2000, trace_id="trace-1")]

    merged = reconciler.reconcile(live, [_record("trace-1", 1000, "earlier hop")])

    assert [message.subject for message in merged] == ["earlier hop", "live"]


def test_repeated_batches_are_idempotent() -> None:
    reconciler = HistoryReconciler()
    batch = [_record("duplicate-123", 1705329770000, "duplicate.message")]

    once = reconciler.reconcile([], batch)
    twice = reconciler.reconcile([], batch)

    assert once == twice
    assert len(twice) == 1
    assert reconciler.historical_count == 1


def test_entries_without_key_are_always_kept() -> None:
    reconciler = HistoryReconciler()
    live = [_live("a", 1000), _live("b", 1000)]

    merged = reconciler.reconcile(live, [{"timestamp": 500, "subject": "anonymous"}])

    assert [message.subject for message in merged] == ["anonymous", "a", "b"]


def test_historical_metadata_is_preserved() -> None:
    reconciler = HistoryReconciler()

    merged = reconciler.reconcile(
        [],
        [_record("detailed-trace", 1000, "detailed.message", payload_size=2048, custom_field="custom_value")],
    )

    assert merged[0].trace_id == "detailed-trace"
    assert merged[0].metadata["payload_size"] == 2048
    assert merged[0].metadata["custom_field"] == "custom_value"


def test_malformed_records_are_skipped() -> None:
    reconciler = HistoryReconciler()

    added = reconciler.add_history([{"subject": "no timestamp"}, _record("ok", 1, "fine")])

    assert added == 1
    assert reconciler.skipped == 1


def test_reset_forgets_history() -> None:
    reconciler = HistoryReconciler()
    reconciler.add_history([_record("h", 1, "old")])

    reconciler.reset()

    assert reconciler.merge([]) == ()


def test_integer_and_float_timestamps_share_a_key() -> None:
    reconciler = HistoryReconciler()
    live = _live("live.version", 1000, trace_id="t1")

    merged = reconciler.reconcile([live], [_record("t1", 1000, "historical.version")])

    assert live.dedup_key == _live("other", 1000.0, trace_id="t1").dedup_key
    assert [(message.origin, message.subject) for message in merged] == [("live", "live.version")]


def test_non_finite_history_timestamp_is_skipped() -> None:
    reconciler = HistoryReconciler()

    added = reconciler.add_history([_record("nan", float("nan"), "broken"), _record("ok", 5, "fine")])

    assert added == 1
    assert reconciler.skipped == 1
    assert [message.subject for message in reconciler.merge([])] == ["fine"]
