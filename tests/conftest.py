from datetime import datetime, timedelta, UTC

import pytest

from production_tracker import create_app, db


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 8, 0, tzinfo=UTC)

    def __call__(self):
        return self.now

    def tick(self, minutes=1):
        self.now += timedelta(minutes=minutes)
        return self.now


@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "SECRET_KEY": "test",
        "SSE_KEEPALIVE_SECONDS": 0.05,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    yield app.test_client()


@pytest.fixture
def tracker(app):
    return app.extensions["production_tracker"]


@pytest.fixture
def clock(tracker):
    clock = FakeClock()
    tracker.clock = clock
    return clock


@pytest.fixture
def schedule(tracker):
    """Create pending units in batch ``B1``."""

    def _schedule(*serials, batch_id="B1"):
        result = tracker.schedule_units(batch_id, list(serials), employee_id="planner")
        assert result.success, result.message
        return result

    return _schedule


@pytest.fixture
def move_to(tracker, schedule):
    """Schedule a unit and walk it to the given status through real commands."""
    path = {
        "pending": [],
        "in_progress": ["approve"],
        "firmware_upload": ["approve", "advance"],
        "firmware_uploading": ["approve", "advance", "advance"],
        "firmware_uploaded": ["approve", "advance", "advance", "advance"],
        "testing": ["approve", "advance", "advance", "advance", "advance"],
    }

    def _move_to(serial, status):
        schedule(serial)
        for step in path[status]:
            if step == "approve":
                result = tracker.approve_pending([serial], "emp-1")
            else:
                result = tracker.advance_serial(serial, "emp-1")
            assert result.success, result.message
        return tracker.get_unit(serial)

    return _move_to
