import asyncio

from flow_telemetry.core.fanout import SnapshotBroadcaster


def test_new_subscriber_receives_current_snapshot() -> None:
    broadcaster = SnapshotBroadcaster("initial")
    received = []

    broadcaster.subscribe(received.append)

    assert received == ["initial"]


def test_subscribers_see_snapshots_in_publication_order() -> None:
    broadcaster = SnapshotBroadcaster(0)
    first, second = [], []
    broadcaster.subscribe(first.append, subscriber_id="first")
    broadcaster.subscribe(second.append, subscriber_id="second")

    for value in range(1, 4):
        broadcaster.publish(value)

    assert first == [0, 1, 2, 3]
    assert second == first


def test_publish_from_callback_is_delivered_after_current_round() -> None:
    broadcaster = SnapshotBroadcaster(0)
    events = []

    def _republisher(value: int) -> None:
        events.append(("a", value))
        if value == 1:
            broadcaster.publish(2)

    broadcaster.subscribe(_republisher)
    broadcaster.subscribe(lambda value: events.append(("b", value)))
    events.clear()

    broadcaster.publish(1)

    assert events == [("a", 1), ("b", 1), ("a", 2), ("b", 2)]
    assert broadcaster.current == 2


def test_unsubscribe_during_round_stops_delivery() -> None:
    broadcaster = SnapshotBroadcaster(0)
    received = []
    handles = {}

    def _first(value: int) -> None:
        if value == 1:
            handles["second"]()

    broadcaster.subscribe(_first)
    handles["second"] = broadcaster.subscribe(received.append)

    broadcaster.publish(1)
    broadcaster.publish(2)
    handles["second"]()

    assert received == [0]
    assert broadcaster.subscriber_count == 1


def test_failing_subscriber_does_not_block_others() -> None:
    broadcaster = SnapshotBroadcaster(0)
    received = []

    def _broken(value: int) -> None:
        if value:
            raise RuntimeError("boom")

    broadcaster.subscribe(_broken, subscriber_id="broken")
    broadcaster.subscribe(received.append, subscriber_id="healthy")

    broadcaster.publish(1)

    assert received == [0, 1]
    metrics = broadcaster.metrics_snapshot()
    assert metrics["failed"]["broken"] == 1
    assert metrics["delivered"]["healthy"] == 2
    assert metrics["published"] == 1


def test_queue_consumer_keeps_latest_snapshot() -> None:
    asyncio.run(_test_queue_consumer_keeps_latest_snapshot())


async def _test_queue_consumer_keeps_latest_snapshot() -> None:
    broadcaster = SnapshotBroadcaster(0)
    queue = broadcaster.register_queue(maxsize=1, subscriber_id="slow")

    broadcaster.publish(1)
    broadcaster.publish(2)

    latest = await asyncio.wait_for(queue.get(), timeout=1)
    assert latest == 2
    assert broadcaster.metrics_snapshot()["dropped"]["slow"] == 2

    broadcaster.unregister_queue(queue)
    broadcaster.publish(3)
    assert queue.empty()
