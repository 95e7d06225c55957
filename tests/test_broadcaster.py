"""Tests for the update broadcaster."""

import logging

from production_tracker.broadcaster import Broadcaster, ProductionUpdate, QueueChannel


class Recorder:
    def __init__(self):
        self.events = []

    def deliver(self, event):
        self.events.append(event)


class Broken:
    def deliver(self, event):
        raise ConnectionResetError("client went away")


class Unsubscriber:
    """Removes itself from the broadcaster while being delivered to."""

    def __init__(self, broadcaster):
        self.broadcaster = broadcaster
        self.events = []

    def deliver(self, event):
        self.events.append(event)
        self.broadcaster.unsubscribe(self)


EVENT = ProductionUpdate(device_serial="SN-1", stage="assembly", status="in_progress")


def test_publish_reaches_every_observer():
    broadcaster = Broadcaster()
    a, b = Recorder(), Recorder()
    broadcaster.subscribe(a)
    broadcaster.subscribe(b)

    assert broadcaster.publish(EVENT) == 2
    assert a.events == [EVENT]
    assert b.events == [EVENT]


def test_failing_observer_is_dropped_and_others_still_receive(caplog):
    broadcaster = Broadcaster()
    first, second = Recorder(), Recorder()
    broadcaster.subscribe(first)
    broadcaster.subscribe(Broken())
    broadcaster.subscribe(second)

    with caplog.at_level(logging.WARNING):
        delivered = broadcaster.publish(EVENT)

    assert delivered == 2
    assert first.events == [EVENT]
    assert second.events == [EVENT]
    assert len(broadcaster) == 2
    assert "Dropping observer" in caplog.text


def test_unsubscribe_is_idempotent():
    broadcaster = Broadcaster()
    handle = broadcaster.subscribe()

    assert broadcaster.unsubscribe(handle) is True
    assert broadcaster.unsubscribe(handle) is False
    assert len(broadcaster) == 0


def test_unsubscribe_during_publish():
    broadcaster = Broadcaster()
    leaving = Unsubscriber(broadcaster)
    staying = Recorder()
    broadcaster.subscribe(leaving)
    broadcaster.subscribe(staying)

    broadcaster.publish(EVENT)
    broadcaster.publish(EVENT)

    assert len(leaving.events) == 1
    assert len(staying.events) == 2


def test_events_for_one_observer_keep_publish_order():
    broadcaster = Broadcaster()
    channel = broadcaster.subscribe()
    events = [ProductionUpdate(device_serial=f"SN-{i}", stage="qc", status="testing") for i in range(5)]
    for event in events:
        broadcaster.publish(event)

    assert [channel.get(timeout=0) for _ in events] == events
    assert channel.get(timeout=0) is None


def test_full_queue_channel_is_dropped():
    broadcaster = Broadcaster(queue_size=1)
    stalled = broadcaster.subscribe()
    broadcaster.publish(EVENT)

    assert broadcaster.publish(EVENT) == 0
    assert len(broadcaster) == 0
    assert stalled.closed


def test_closed_channel_is_dropped_on_next_publish():
    broadcaster = Broadcaster()
    channel = QueueChannel()
    broadcaster.subscribe(channel)
    channel.close()

    assert broadcaster.publish(EVENT) == 0
    assert len(broadcaster) == 0


def test_event_payload():
    event = ProductionUpdate(device_serial="SN-1", stage="qc", status="testing",
                             stage_logs=[{"stage": "qc", "status": "testing"}])
    assert event.to_dict() == {
        "type": "production_update",
        "device_serial": "SN-1",
        "stage": "qc",
        "status": "testing",
        "stage_logs": [{"stage": "qc", "status": "testing"}],
    }
