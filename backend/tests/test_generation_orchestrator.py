from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import List
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stepflow.core.errors import (
    GlobalTimeoutError,
    InvalidGenerationTransition,
    InvalidWizardContext,
    NoOccurrencesFound,
    OccurrenceGenerationError,
    RateLimitedError,
    TransientServiceError,
)
from stepflow.db.models.goal import Goal
from stepflow.db.models.step import Step
from stepflow.db.models.substep import Substep
from stepflow.services.generation_orchestrator import (
    GenerationOrchestrator,
    individual_due_date,
    supporter_due_date,
    supporter_prep_time,
)
from stepflow.services.generation_state import QueuedState, merge_state
from stepflow.services.step_generator import GeneratedStep, StepGenerator, WizardContext

OCCURRENCES = [
    datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc),
    datetime(2024, 1, 3, 9, 0, tzinfo=timezone.utc),
    datetime(2024, 1, 5, 9, 0, tzinfo=timezone.utc),
]
CONTEXT = WizardContext(goal_title="Walk every morning", category="health", challenge_areas=["initiation"])


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
    Step.__table__.create(bind=engine)
    Substep.__table__.create(bind=engine)
    return TestingSession


def _seed_goal(db_session, *, habit=False, metadata=None):
    session = db_session()
    try:
        goal = Goal(
            id=uuid4(),
            title="Walk every morning",
            domain="health",
            start_date=date(2024, 1, 1),
            frequency_per_week=3 if habit else None,
            selected_days=["mon", "wed", "fri"] if habit else [],
            duration_weeks=2,
            status="active",
            metadata_json=metadata
            or merge_state({}, QueuedState(queued_at=datetime(2024, 1, 1, tzinfo=timezone.utc))),
        )
        session.add(goal)
        session.commit()
        return goal.id
    finally:
        session.close()


def _reload(db_session, goal_id):
    session = db_session()
    try:
        goal = session.get(Goal, goal_id)
        steps = session.query(Step).filter(Step.goal_id == goal_id).order_by(Step.order_index).all()
        return dict(goal.metadata_json or {}), steps
    finally:
        session.close()


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


class _FakeTimer:
    instances: List["_FakeTimer"] = []

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.started = False
        self.cancelled = False
        _FakeTimer.instances.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


class _FakeGenerator(StepGenerator):
    name = "fake"

    def __init__(self, outcomes=None, on_call=None, titles=None):
        super().__init__(None)
        self.outcomes = list(outcomes or [])
        self.on_call = on_call
        self.titles = titles or ["Get ready by Monday: lay out your shoes", "Step outside", "Log the walk"]
        self.requests = []

    def _generate(self, request):
        self.requests.append(request)
        if self.on_call:
            self.on_call(request)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
        return [
            GeneratedStep(
                title=title,
                description=f"{request.flow} step {position}",
                phase="prep" if position == 0 and title.startswith("Get ready") else "activation",
                estimated_duration_minutes=5,
            )
            for position, title in enumerate(self.titles)
        ]


def _orchestrator(session, db_session, generator, sleeps, **kwargs):
    return GenerationOrchestrator(
        session,
        generator,
        sleep=sleeps.append,
        session_factory=db_session,
        timer_factory=_FakeTimer,
        **kwargs,
    )


def test_single_occurrence_persists_chained_steps_and_completes():
    Session = _session()
    goal_id = _seed_goal(Session)
    statuses_at_call = []

    def record_status(request):
        reader = Session()
        try:
            statuses_at_call.append(reader.get(Goal, goal_id).metadata_json["generationStatus"])
        finally:
            reader.close()

    session = Session()
    goal = session.get(Goal, goal_id)
    generator = _FakeGenerator(on_call=record_status)
    result = _orchestrator(session, Session, generator, []).run(goal, OCCURRENCES[:1], CONTEXT)
    session.close()

    assert result.status == "completed"
    assert result.successful_count == 1
    assert result.generated_indices == [0]
    assert statuses_at_call == ["pending"]

    metadata, steps = _reload(Session, goal_id)
    assert metadata["generationStatus"] == "completed"
    assert metadata["completedAt"]
    assert metadata["wizardContext"]["goal_title"] == "Walk every morning"
    assert [step.title for step in steps] == generator.titles
    assert [_naive(step.due_date) for step in steps] == [
        datetime(2023, 12, 31, 20, 0),
        datetime(2024, 1, 1, 9, 0),
        datetime(2024, 1, 1, 10, 0),
    ]
    assert steps[0].dependency_step_ids == []
    assert steps[1].dependency_step_ids == [str(steps[0].id)]
    assert steps[2].dependency_step_ids == [str(steps[1].id)]
    assert {step.generation_key for step in steps} == {f"{goal_id}:0"}
    assert all(step.step_type == "action" and step.is_required for step in steps)


def test_rate_limited_twice_then_success_saves_steps():
    Session = _session()
    goal_id = _seed_goal(Session)
    sleeps: List[float] = []
    generator = _FakeGenerator(outcomes=[RateLimitedError("429"), RateLimitedError("429")])

    session = Session()
    goal = session.get(Goal, goal_id)
    result = _orchestrator(session, Session, generator, sleeps).run(goal, OCCURRENCES[:1], CONTEXT)
    session.close()

    assert len(generator.requests) == 3
    assert sleeps == [5.0, 5.0]
    assert result.failed_days == []
    metadata, steps = _reload(Session, goal_id)
    assert len(steps) == 3
    assert not metadata.get("failed_days")
    assert metadata["generationStatus"] == "completed"


def test_first_occurrence_exhausting_retries_fails_the_run():
    Session = _session()
    goal_id = _seed_goal(Session)
    sleeps: List[float] = []
    generator = _FakeGenerator(outcomes=[TransientServiceError("upstream 503")] * 5)

    session = Session()
    goal = session.get(Goal, goal_id)
    with pytest.raises(OccurrenceGenerationError) as excinfo:
        _orchestrator(session, Session, generator, sleeps).run(goal, OCCURRENCES, CONTEXT)
    session.close()

    assert excinfo.value.index == 0
    assert len(generator.requests) == 3
    assert sleeps == [2.0, 2.0]
    metadata, steps = _reload(Session, goal_id)
    assert steps == []
    assert metadata["generationStatus"] == "failed"
    assert "first occurrence" in metadata["generationError"]
    assert metadata["failedAt"]


def test_partial_failure_then_retry_fills_only_the_gap():
    Session = _session()
    goal_id = _seed_goal(Session)
    failing = TransientServiceError("timeout")
    generator = _FakeGenerator(outcomes=[None, failing, failing, failing, None])

    session = Session()
    goal = session.get(Goal, goal_id)
    orchestrator = _orchestrator(session, Session, generator, [])
    result = orchestrator.run(goal, OCCURRENCES, CONTEXT)

    assert result.status == "failed"
    assert result.generated_indices == [0, 2]
    assert [day.index for day in result.failed_days] == [1]
    metadata, steps = _reload(Session, goal_id)
    assert metadata["generationStatus"] == "failed"
    assert metadata["failed_days"] == [{"index": 1, "date": "2024-01-03", "error": "timeout"}]
    assert metadata["totalPlannedOccurrences"] == 3
    assert len(steps) == 6

    retry_generator = _FakeGenerator()
    orchestrator.generator = retry_generator
    goal = session.get(Goal, goal_id)
    retried = orchestrator.retry(goal)
    session.close()

    assert retried.status == "completed"
    assert retried.generated_indices == [1]
    assert retried.skipped_indices == [0, 2]
    assert [request.occurrence_index for request in retry_generator.requests] == [1]
    metadata, steps = _reload(Session, goal_id)
    assert metadata["generationStatus"] == "completed"
    assert not metadata["failed_days"]
    assert len(steps) == 9
    assert len({step.generation_key for step in steps}) == 3


def test_habit_goal_generates_first_occurrence_then_continues():
    Session = _session()
    goal_id = _seed_goal(Session, habit=True)
    generator = _FakeGenerator()

    session = Session()
    goal = session.get(Goal, goal_id)
    orchestrator = _orchestrator(session, Session, generator, [])
    result = orchestrator.run(goal, OCCURRENCES, CONTEXT)

    assert result.status == "completed"
    assert result.generated_indices == [0]
    assert not result.is_partial
    metadata, steps = _reload(Session, goal_id)
    assert metadata["plannedOccurrences"] == [occurrence.isoformat() for occurrence in OCCURRENCES]
    assert metadata["totalPlannedOccurrences"] == 3
    assert metadata["lastGeneratedOccurrenceIndex"] == 0
    assert [step.step_type for step in steps] == ["action", "action", "habit"]

    goal = session.get(Goal, goal_id)
    continued = orchestrator.continue_habit(goal)
    session.close()

    assert continued.generated_indices == [1]
    metadata, steps = _reload(Session, goal_id)
    assert metadata["generationStatus"] == "completed"
    assert metadata["lastGeneratedOccurrenceIndex"] == 1
    assert len(steps) == 6
    assert {step.occurrence_index for step in steps} == {0, 1}


def test_supporter_failure_never_fails_the_run():
    Session = _session()
    goal_id = _seed_goal(Session)
    sleeps: List[float] = []
    context = CONTEXT.model_copy(update={"primary_supporter_role": "hands_on_helper"})
    supporter = _FakeGenerator(outcomes=[TransientServiceError("supporter down")] * 3)

    session = Session()
    goal = session.get(Goal, goal_id)
    result = _orchestrator(
        session, Session, _FakeGenerator(), sleeps, supporter_generator=supporter
    ).run(goal, OCCURRENCES[:1], context)
    session.close()

    assert result.status == "completed"
    assert len(supporter.requests) == 3
    assert sleeps == [2.0, 2.0]
    metadata, steps = _reload(Session, goal_id)
    assert metadata["generationStatus"] == "completed"
    assert metadata["supporter_failed_days"][0]["index"] == 0
    assert not any(step.is_supporter_step for step in steps)


def test_supporter_steps_are_optional_and_timed_around_start():
    Session = _session()
    goal_id = _seed_goal(Session)
    context = CONTEXT.model_copy(update={"primary_supporter_role": "hands_on_helper"})
    supporter = _FakeGenerator(titles=["Put the leash by the door", "Walk out together", "Cheer the effort"])

    session = Session()
    goal = session.get(Goal, goal_id)
    _orchestrator(session, Session, _FakeGenerator(), [], supporter_generator=supporter).run(
        goal, OCCURRENCES[:1], context
    )
    session.close()

    assert supporter.requests[0].flow == "supporter"
    assert supporter.requests[0].supporter_timing_offset == "by 8:00 AM"
    _, steps = _reload(Session, goal_id)
    supporter_steps = [step for step in steps if step.is_supporter_step]
    assert len(supporter_steps) == 3
    assert all(not step.is_required and step.dependency_step_ids == [] for step in supporter_steps)
    assert [_naive(step.due_date) for step in supporter_steps] == [
        datetime(2024, 1, 1, 8, 0),
        datetime(2024, 1, 1, 9, 0),
        datetime(2024, 1, 1, 9, 30),
    ]


def test_deadline_passed_between_calls_marks_failed():
    Session = _session()
    goal_id = _seed_goal(Session)
    clock = {"now": 0.0}

    def slow_call(request):
        clock["now"] += 121.0

    session = Session()
    goal = session.get(Goal, goal_id)
    orchestrator = _orchestrator(
        session, Session, _FakeGenerator(on_call=slow_call), [], clock=lambda: clock["now"]
    )
    with pytest.raises(GlobalTimeoutError):
        orchestrator.run(goal, OCCURRENCES[:1], CONTEXT)
    session.close()

    metadata, steps = _reload(Session, goal_id)
    assert metadata["generationStatus"] == "failed"
    assert "timed out" in metadata["generationError"]
    assert metadata["failedAt"]
    assert steps == []


def test_watchdog_firing_mid_call_marks_failed_once():
    Session = _session()
    goal_id = _seed_goal(Session)
    _FakeTimer.instances.clear()

    def fire_timer(request):
        _FakeTimer.instances[-1].function()

    session = Session()
    goal = session.get(Goal, goal_id)
    with pytest.raises(GlobalTimeoutError):
        _orchestrator(session, Session, _FakeGenerator(on_call=fire_timer), []).run(goal, OCCURRENCES[:1], CONTEXT)
    session.close()

    timer = _FakeTimer.instances[-1]
    assert timer.started and timer.cancelled
    assert timer.interval == 120.0
    metadata, steps = _reload(Session, goal_id)
    assert metadata["generationStatus"] == "failed"
    assert steps == []


def test_validation_errors_leave_status_untouched():
    Session = _session()
    goal_id = _seed_goal(Session)
    generator = _FakeGenerator()

    session = Session()
    goal = session.get(Goal, goal_id)
    orchestrator = _orchestrator(session, Session, generator, [])
    with pytest.raises(NoOccurrencesFound):
        orchestrator.run(goal, [], CONTEXT)
    with pytest.raises(InvalidWizardContext):
        orchestrator.run(goal, OCCURRENCES, WizardContext(goal_title="  "))
    session.close()

    metadata, _ = _reload(Session, goal_id)
    assert metadata["generationStatus"] == "queued"
    assert generator.requests == []


def test_retry_is_only_legal_from_failed():
    Session = _session()
    completed = merge_state({}, QueuedState())
    completed["generationStatus"] = "completed"
    goal_id = _seed_goal(Session, metadata=completed)
    failed_id = _seed_goal(Session, metadata={"generationStatus": "failed", "generationError": "boom"})

    session = Session()
    orchestrator = _orchestrator(session, Session, _FakeGenerator(), [])
    with pytest.raises(InvalidGenerationTransition):
        orchestrator.retry(session.get(Goal, goal_id))
    with pytest.raises(InvalidGenerationTransition):
        orchestrator.run(session.get(Goal, failed_id), OCCURRENCES, CONTEXT)
    session.close()


def test_due_date_helpers():
    morning = datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)
    evening = datetime(2024, 1, 1, 18, 0, tzinfo=timezone.utc)

    assert supporter_prep_time(morning) == morning
    assert supporter_prep_time(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)).hour == 8
    assert supporter_prep_time(evening).hour == 16

    meet = GeneratedStep(title="Meet at the park gate")
    cheer = GeneratedStep(title="Celebrate the first walk")
    breakfast = GeneratedStep(title="Eat breakfast first")
    assert individual_due_date(2, meet, evening) == evening
    assert individual_due_date(2, breakfast, evening) == evening
    assert supporter_due_date(2, breakfast, evening, evening - timedelta(hours=2)) == evening
    assert individual_due_date(2, cheer, evening).hour == 19
    assert individual_due_date(0, cheer, evening).hour == 19
