from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace
from uuid import uuid4

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stepflow.db.models.goal import Goal
from stepflow.services import stale_monitor
from stepflow.services.generation_state import PendingState, QueuedState, merge_state, read_state

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )

    @event.listens_for(engine, "connect")
    def set_fk(conn, record):  # pragma: no cover
        cursor = conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    TestingSession = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Goal.__table__.create(bind=engine)
    return TestingSession


def _goal(metadata):
    return SimpleNamespace(id=uuid4(), metadata_json=metadata)


def test_pending_without_steps_past_threshold_is_stalled():
    goal = _goal(merge_state({}, PendingState(started_at=NOW - timedelta(minutes=4))))

    action = stale_monitor.check(goal, 0, NOW)

    assert action is not None
    assert action.reason == "stalled from pending state"
    assert action.stalled_for == timedelta(minutes=4)


def test_queued_without_steps_past_threshold_is_stalled():
    goal = _goal(merge_state({}, QueuedState(queued_at=NOW - timedelta(minutes=10))))

    action = stale_monitor.check(goal, 0, NOW)

    assert action is not None
    assert action.reason == "stalled from queued state"


def test_recent_or_productive_runs_are_left_alone():
    recent = _goal(merge_state({}, PendingState(started_at=NOW - timedelta(minutes=2))))
    productive = _goal(merge_state({}, PendingState(started_at=NOW - timedelta(hours=1))))
    no_timestamp = _goal({"generationStatus": "pending"})
    completed = _goal({"generationStatus": "completed"})

    assert stale_monitor.check(recent, 0, NOW) is None
    assert stale_monitor.check(productive, 3, NOW) is None
    assert stale_monitor.check(no_timestamp, 0, NOW) is None
    assert stale_monitor.check(completed, 0, NOW) is None


def test_naive_timestamps_are_read_as_utc():
    goal = _goal({"generationStatus": "queued", "queuedAt": "2024-01-01T11:50:00"})

    action = stale_monitor.check(goal, 0, NOW)

    assert action is not None
    assert action.since == datetime(2024, 1, 1, 11, 50, tzinfo=timezone.utc)


def test_apply_marks_failed_and_keeps_other_metadata():
    Session = _session()
    session = Session()
    goal = Goal(
        title="Read",
        start_date=date(2024, 1, 1),
        selected_days=[],
        duration_weeks=4,
        metadata_json={
            **merge_state({}, PendingState(started_at=NOW - timedelta(minutes=5))),
            "wizardContext": {"goal_title": "Read"},
        },
    )
    session.add(goal)
    session.commit()

    action = stale_monitor.check(goal, 0, NOW)
    stale_monitor.apply(session, goal, action, now=NOW)

    state = read_state(goal.metadata_json)
    assert state.status == "failed"
    assert "stalled from pending state" in state.error
    assert state.failed_at == NOW
    assert goal.metadata_json["wizardContext"] == {"goal_title": "Read"}
    assert "startedAt" not in goal.metadata_json
    session.close()
