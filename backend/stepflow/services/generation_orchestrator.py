"""Drive micro-step generation for a goal's occurrences.

One run walks the selected occurrences sequentially, calls the generation service with a
bounded retry budget, persists the resulting steps as a dependency chain, and moves
``metadata.generationStatus`` through queued -> pending -> completed/failed. A coarse wall-clock
watchdog guarantees a run never leaves a goal in ``pending``.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from stepflow.core.config import Settings, settings as default_settings
from stepflow.core.context import bind_goal_id
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
from stepflow.observability.metrics import log_metric
from stepflow.observability.tracing import trace
from stepflow.services.generation_state import (
    CompletedState,
    FailedDay,
    FailedState,
    PendingState,
    merge_progress,
    merge_state,
    parse_occurrences,
    read_progress,
    read_state,
    utcnow,
)
from stepflow.services.notifications.hooks import notify_steps_created
from stepflow.services.occurrence_scheduler import schedule_for_goal
from stepflow.services.step_generator import (
    GeneratedStep,
    GenerationRequest,
    StepGenerator,
    WizardContext,
    format_display_time,
    get_step_generator,
)

logger = logging.getLogger(__name__)

GATING_OCCURRENCE = 0
AT_MARKER = "at "
_PREP_PHASES = {"prep", "preparation", "setup"}


@dataclass
class RunResult:
    goal_id: UUID
    status: str
    successful_count: int = 0
    failed_days: List[FailedDay] = field(default_factory=list)
    generated_indices: List[int] = field(default_factory=list)
    skipped_indices: List[int] = field(default_factory=list)
    total_occurrences: int = 0

    @property
    def is_partial(self) -> bool:
        """Failed occurrences only; a habit goal generating 1 of N on purpose is not partial."""
        return bool(self.failed_days)


class GenerationWatchdog:
    """Fires once when the run exceeds its wall-clock budget, even mid-call."""

    def __init__(
        self,
        timeout: float,
        on_expire: Callable[[], None],
        *,
        timer_factory: Callable[..., Any] = threading.Timer,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout = timeout
        self._on_expire = on_expire
        self._timer_factory = timer_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._deadline: Optional[float] = None
        self._timer: Any = None
        self._cancelled = False
        self.expired = False

    def start(self) -> None:
        self._deadline = self._clock() + self.timeout
        self._timer = self._timer_factory(self.timeout, self.fire)
        if hasattr(self._timer, "daemon"):
            self._timer.daemon = True
        self._timer.start()

    def fire(self) -> None:
        with self._lock:
            if self._cancelled or self.expired:
                return
            self.expired = True
        try:
            self._on_expire()
        except Exception:  # pragma: no cover - runs on the timer thread
            logger.exception("Failed to persist generation timeout")

    def check(self) -> None:
        if not self.expired and self._deadline is not None and self._clock() >= self._deadline:
            self.fire()
        if self.expired:
            raise GlobalTimeoutError(f"Generation timed out after {self.timeout:.0f} seconds")

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()


class GenerationOrchestrator:
    def __init__(
        self,
        db: Session,
        generator: StepGenerator,
        *,
        supporter_generator: Optional[StepGenerator] = None,
        settings: Settings = default_settings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
        session_factory: Optional[Callable[[], Session]] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.db = db
        self.generator = generator
        self.supporter_generator = supporter_generator or generator
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self._now = now
        self._session_factory = session_factory or sessionmaker(bind=db.get_bind(), future=True)
        self._timer_factory = timer_factory

    def run(
        self,
        goal: Goal,
        occurrences: Sequence[datetime],
        wizard_context: WizardContext | Dict[str, Any],
        *,
        retry: bool = False,
    ) -> RunResult:
        """Generate steps for the goal's eager occurrences and settle its generation status."""
        context = _coerce_context(wizard_context)
        occurrences = list(occurrences)
        if not occurrences:
            raise NoOccurrencesFound("No occurrences to generate steps for.")
        if not context.goal_title.strip():
            raise InvalidWizardContext("Wizard context is missing a goal title.")

        state = read_state(goal.metadata_json)
        if retry and state.status != "failed":
            raise InvalidGenerationTransition(f"Only failed generations can be retried (status={state.status}).")
        if not retry and state.status in {"failed", "completed"}:
            raise InvalidGenerationTransition(f"Generation already {state.status}; use retry instead.")
        if state.status == "pending":
            logger.warning("Goal %s already has a pending generation; continuing anyway", goal.id)

        with bind_goal_id(goal.id), trace(
            "generation.run",
            metadata={"goal_id": str(goal.id), "occurrences": len(occurrences), "retry": retry},
        ):
            self._persist_plan(goal, occurrences, context)
            targets = self._select_targets(goal, occurrences)
            goal_id = goal.id
            watchdog = GenerationWatchdog(
                self.settings.generation_global_timeout_seconds,
                lambda: self._persist_timeout(goal_id),
                timer_factory=self._timer_factory,
                clock=self._clock,
            )
            watchdog.start()
            try:
                result = self._process(goal, targets, context, watchdog=watchdog, manage_status=True)
            except GlobalTimeoutError:
                self.db.rollback()
                log_metric("generation.run.timeout", 1, {"goal_id": str(goal.id)})
                logger.error("Generation for goal %s hit the global timeout", goal.id)
                raise
            except OccurrenceGenerationError as exc:
                self.db.rollback()
                self._mark_failed(goal, str(exc))
                log_metric("generation.run.success", 0, {"goal_id": str(goal.id)})
                raise
            finally:
                watchdog.cancel()

            result.total_occurrences = len(occurrences)
            if result.failed_days:
                self._mark_failed(
                    goal,
                    f"{len(result.failed_days)} of {len(targets)} occurrence(s) failed to generate",
                )
                result.status = "failed"
            else:
                self._mark_completed(goal)
                result.status = "completed"
            log_metric(
                "generation.run.success",
                0 if result.failed_days else 1,
                {"goal_id": str(goal.id), "generated": result.successful_count},
            )
            logger.info(
                "Generation for goal %s finished: status=%s generated=%s failed=%s",
                goal.id,
                result.status,
                result.generated_indices,
                [day.index for day in result.failed_days],
            )
            return result

    def retry(self, goal: Goal) -> RunResult:
        """Explicit retry of a failed run; recomputes nothing that was already persisted."""
        state = read_state(goal.metadata_json)
        if state.status != "failed":
            raise InvalidGenerationTransition(f"Only failed generations can be retried (status={state.status}).")
        context = _context_from_metadata(goal)
        progress = read_progress(goal.metadata_json)
        occurrences = parse_occurrences(progress) or self.schedule_occurrences(goal, context)
        logger.info("Retrying generation for goal %s (%s occurrences)", goal.id, len(occurrences))
        return self.run(goal, occurrences, context, retry=True)

    def continue_habit(self, goal: Goal) -> RunResult:
        """Generate the next unprocessed habit occurrence; generation status is left as is."""
        state = read_state(goal.metadata_json)
        progress = read_progress(goal.metadata_json)
        occurrences = parse_occurrences(progress)
        result = RunResult(goal_id=goal.id, status=state.status, total_occurrences=len(occurrences))
        next_index = progress.last_generated_index + 1
        if not goal.is_habit or next_index >= len(occurrences):
            return result

        context = _context_from_metadata(goal)
        with bind_goal_id(goal.id), trace(
            "generation.continue",
            metadata={"goal_id": str(goal.id), "occurrence_index": next_index},
        ):
            processed = self._process(
                goal,
                [(next_index, occurrences[next_index])],
                context,
                watchdog=None,
                manage_status=False,
            )
        processed.status = state.status
        processed.total_occurrences = len(occurrences)
        return processed

    def _process(
        self,
        goal: Goal,
        targets: List[Tuple[int, datetime]],
        context: WizardContext,
        *,
        watchdog: Optional[GenerationWatchdog],
        manage_status: bool,
    ) -> RunResult:
        result = RunResult(goal_id=goal.id, status="pending")
        pending_written = False

        def before_first_call() -> None:
            nonlocal pending_written
            if manage_status and not pending_written:
                self._mark_pending(goal)
                pending_written = True

        for index, occurrence in targets:
            if self._has_steps(goal, index):
                logger.info("Steps already exist for occurrence %s, skipping", index)
                result.skipped_indices.append(index)
                self._record_success(goal, index)
                continue

            request = self._build_request(goal, index, occurrence, context)
            try:
                generated = self._call_with_retry(self.generator, request, watchdog, before_first_call)
            except TransientServiceError as exc:
                if manage_status and index == GATING_OCCURRENCE:
                    raise OccurrenceGenerationError(
                        index, f"Could not generate steps for the first occurrence: {exc}"
                    ) from exc
                failed = FailedDay(index=index, date=occurrence.date().isoformat(), error=str(exc))
                result.failed_days.append(failed)
                self._record_failure(goal, failed)
                logger.warning("Occurrence %s failed after retries: %s", index, exc)
                continue

            saved = self._persist_individual_steps(goal, index, occurrence, generated)
            self._record_success(goal, index)
            result.successful_count += 1
            result.generated_indices.append(index)
            notify_steps_created(goal.id, [step.id for step in saved])

            if context.wants_supporter_steps:
                self._generate_supporter_steps(goal, index, occurrence, request, watchdog)
        return result

    def _call_with_retry(
        self,
        generator: StepGenerator,
        request: GenerationRequest,
        watchdog: Optional[GenerationWatchdog],
        before_call: Optional[Callable[[], None]] = None,
    ) -> List[GeneratedStep]:
        attempts = max(1, self.settings.generation_max_attempts)
        last_error: TransientServiceError = TransientServiceError("Generation was not attempted")
        for attempt in range(1, attempts + 1):
            if watchdog is not None:
                watchdog.check()
            if before_call is not None:
                before_call()
            try:
                steps = generator.generate(request)
            except RateLimitedError as exc:
                last_error = exc
                delay = self.settings.generation_rate_limit_backoff_seconds
            except TransientServiceError as exc:
                last_error = exc
                delay = self.settings.generation_transient_backoff_seconds
            else:
                if watchdog is not None:
                    watchdog.check()
                return steps

            log_metric(
                "generation.attempt.failed",
                1,
                {"flow": request.flow, "attempt": attempt, "rate_limited": isinstance(last_error, RateLimitedError)},
            )
            logger.warning(
                "Attempt %s/%s for occurrence %s (%s) failed: %s",
                attempt,
                attempts,
                request.occurrence_index,
                request.flow,
                last_error,
            )
            if attempt < attempts:
                self._sleep(delay)
        raise last_error

    def _generate_supporter_steps(
        self,
        goal: Goal,
        index: int,
        occurrence: datetime,
        individual_request: GenerationRequest,
        watchdog: Optional[GenerationWatchdog],
    ) -> List[Step]:
        prep = supporter_prep_time(occurrence)
        request = individual_request.model_copy(
            update={
                "flow": "supporter",
                "supporter_timing_offset": f"by {format_display_time(prep.hour, prep.minute)}",
            }
        )
        try:
            generated = self._call_with_retry(self.supporter_generator, request, watchdog)
        except TransientServiceError as exc:
            logger.warning("Supporter steps for occurrence %s failed: %s", index, exc)
            failed = FailedDay(index=index, date=occurrence.date().isoformat(), error=str(exc))
            self._write_metadata(
                goal,
                lambda metadata: {
                    **metadata,
                    "supporter_failed_days": _upsert_failed_day(metadata.get("supporter_failed_days"), failed),
                },
            )
            return []

        order_start = self._next_order_index(goal)
        saved: List[Step] = []
        for position, item in enumerate(generated):
            saved.append(
                Step(
                    id=uuid4(),
                    goal_id=goal.id,
                    title=item.title,
                    notes=item.description,
                    order_index=order_start + position,
                    status="not_started",
                    due_date=supporter_due_date(position, item, occurrence, prep),
                    is_required=False,
                    is_planned=True,
                    is_supporter_step=True,
                    dependency_step_ids=[],
                    step_type="action",
                    week_number=item.week_number,
                    session_number=item.session_number,
                    occurrence_index=index,
                    generation_key=f"{_generation_key(goal.id, index)}:supporter",
                    estimated_effort_min=item.estimated_duration_minutes or 10,
                )
            )
        self.db.add_all(saved)
        self.db.commit()
        notify_steps_created(goal.id, [step.id for step in saved])
        return saved

    def _persist_individual_steps(
        self,
        goal: Goal,
        index: int,
        occurrence: datetime,
        generated: List[GeneratedStep],
    ) -> List[Step]:
        order_start = self._next_order_index(goal)
        saved: List[Step] = []
        last_position = len(generated) - 1
        for position, item in enumerate(generated):
            step = Step(
                id=uuid4(),
                goal_id=goal.id,
                title=item.title,
                notes=item.description,
                order_index=order_start + position,
                status="not_started",
                due_date=individual_due_date(position, item, occurrence),
                is_required=True,
                is_planned=True,
                is_supporter_step=False,
                dependency_step_ids=[str(saved[-1].id)] if saved else [],
                step_type="habit" if goal.is_habit and position == last_position else "action",
                week_number=item.week_number,
                session_number=item.session_number,
                occurrence_index=index,
                generation_key=_generation_key(goal.id, index),
                estimated_effort_min=item.estimated_duration_minutes or 15,
            )
            saved.append(step)
        self.db.add_all(saved)
        self.db.commit()
        return saved

    def _build_request(
        self,
        goal: Goal,
        index: int,
        occurrence: datetime,
        context: WizardContext,
    ) -> GenerationRequest:
        return GenerationRequest(
            flow="individual",
            goal_title=context.goal_title,
            category=context.category or goal.domain or "general",
            start=occurrence,
            motivation=context.custom_motivation or context.goal_motivation,
            challenge_areas=context.challenge_areas,
            prerequisite=context.prerequisite,
            duration_weeks=goal.duration_weeks,
            frequency_per_week=goal.frequency_per_week,
            occurrence_index=index,
            supporter_role=context.primary_supporter_role,
            supported_person_name=context.supported_person_name,
            supporter_name=context.primary_supporter_name,
        )

    def _select_targets(self, goal: Goal, occurrences: List[datetime]) -> List[Tuple[int, datetime]]:
        if not goal.is_habit:
            return list(enumerate(occurrences))
        next_index = read_progress(goal.metadata_json).last_generated_index + 1
        if next_index >= len(occurrences):
            return []
        return [(next_index, occurrences[next_index])]

    def _persist_plan(self, goal: Goal, occurrences: List[datetime], context: WizardContext) -> None:
        def apply(metadata: Dict[str, Any]) -> Dict[str, Any]:
            metadata.setdefault("wizardContext", context.model_dump(mode="json"))
            progress = read_progress(metadata)
            if len(occurrences) > 1 and not progress.planned_occurrences:
                progress.planned_occurrences = [occurrence.isoformat() for occurrence in occurrences]
                progress.total_planned_occurrences = len(occurrences)
                return merge_progress(metadata, progress)
            return metadata

        self._write_metadata(goal, apply)

    def _has_steps(self, goal: Goal, index: int) -> bool:
        existing = (
            self.db.query(Step.id)
            .filter(Step.goal_id == goal.id, Step.generation_key == _generation_key(goal.id, index))
            .first()
        )
        return existing is not None

    def _next_order_index(self, goal: Goal) -> int:
        current = self.db.query(func.max(Step.order_index)).filter(Step.goal_id == goal.id).scalar()
        return 0 if current is None else current + 1

    def _record_success(self, goal: Goal, index: int) -> None:
        def apply(metadata: Dict[str, Any]) -> Dict[str, Any]:
            progress = read_progress(metadata)
            progress.failed_days = [day for day in progress.failed_days if day.index != index]
            if goal.is_habit:
                progress.last_generated_index = max(progress.last_generated_index, index)
            return merge_progress(metadata, progress)

        self._write_metadata(goal, apply)

    def _record_failure(self, goal: Goal, failed: FailedDay) -> None:
        self._write_metadata(
            goal,
            lambda metadata: {**metadata, "failed_days": _upsert_failed_day(metadata.get("failed_days"), failed)},
        )

    def _mark_pending(self, goal: Goal) -> None:
        self._write_metadata(goal, lambda metadata: merge_state(metadata, PendingState(started_at=self._now())))

    def _mark_completed(self, goal: Goal) -> None:
        self._write_metadata(goal, lambda metadata: merge_state(metadata, CompletedState(completed_at=self._now())))

    def _mark_failed(self, goal: Goal, message: str) -> None:
        self._write_metadata(
            goal,
            lambda metadata: merge_state(metadata, FailedState(error=message, failed_at=self._now())),
        )

    def _persist_timeout(self, goal_id: UUID) -> None:
        message = (
            f"Generation timed out after {self.settings.generation_global_timeout_seconds:.0f} seconds"
        )
        session = self._session_factory()
        try:
            goal = session.get(Goal, goal_id)
            if goal is None:
                return
            goal.metadata_json = merge_state(goal.metadata_json, FailedState(error=message, failed_at=self._now()))
            session.add(goal)
            session.commit()
        finally:
            session.close()

    def _write_metadata(self, goal: Goal, mutate: Callable[[Dict[str, Any]], Dict[str, Any]]) -> None:
        self.db.refresh(goal)
        goal.metadata_json = mutate(dict(goal.metadata_json or {}))
        self.db.add(goal)
        self.db.commit()

    def schedule_occurrences(self, goal: Goal, context: WizardContext) -> List[datetime]:
        return schedule_for_goal(
            goal,
            start_time=context.start_time or self.settings.default_start_time,
            timezone_name=self.settings.scheduler_timezone,
        ).occurrences


def individual_due_date(position: int, item: GeneratedStep, occurrence: datetime) -> datetime:
    """Prep step is due the evening before, the activation step at the start, the rest an hour later."""
    if position == 0 and _is_prep(item):
        return (occurrence - timedelta(days=1)).replace(hour=20, minute=0, second=0, microsecond=0)
    if position == 1 or AT_MARKER in item.title.lower():
        return occurrence
    return occurrence + timedelta(hours=1)


def supporter_prep_time(occurrence: datetime) -> datetime:
    """Two hours before the individual starts, but not before 08:00 nor after the start."""
    prep = occurrence - timedelta(hours=2)
    floor = occurrence.replace(hour=8, minute=0, second=0, microsecond=0)
    if prep < floor:
        prep = min(floor, occurrence)
    return prep


def supporter_due_date(position: int, item: GeneratedStep, occurrence: datetime, prep: datetime) -> datetime:
    if position == 0:
        return prep
    if position == 1 or AT_MARKER in item.title.lower():
        return occurrence
    return occurrence + timedelta(minutes=30)


def _is_prep(item: GeneratedStep) -> bool:
    return (item.phase or "").lower() in _PREP_PHASES or "get ready by" in item.title.lower()


def _generation_key(goal_id: UUID, index: int) -> str:
    return f"{goal_id}:{index}"


def _upsert_failed_day(existing: Optional[List[Dict[str, Any]]], failed: FailedDay) -> List[Dict[str, Any]]:
    days = [day for day in (existing or []) if day.get("index") != failed.index]
    days.append(failed.model_dump())
    return sorted(days, key=lambda day: day["index"])


def _coerce_context(wizard_context: WizardContext | Dict[str, Any]) -> WizardContext:
    if isinstance(wizard_context, WizardContext):
        return wizard_context
    return WizardContext.model_validate(wizard_context or {})


def _context_from_metadata(goal: Goal) -> WizardContext:
    raw = (goal.metadata_json or {}).get("wizardContext")
    if not raw:
        return WizardContext(goal_title=goal.title, category=goal.domain)
    return _coerce_context(raw)


def build_orchestrator(
    db: Session,
    *,
    generator: Optional[StepGenerator] = None,
    settings: Settings = default_settings,
    session_factory: Optional[Callable[[], Session]] = None,
) -> GenerationOrchestrator:
    """Wire an orchestrator with the configured generation client."""
    return GenerationOrchestrator(
        db,
        generator or get_step_generator(settings),
        settings=settings,
        session_factory=session_factory,
    )


def run_generation_task(
    session_factory: Callable[[], Session],
    goal_id: UUID,
    generator: StepGenerator,
    *,
    occurrences: Optional[List[str]] = None,
    retry: bool = False,
    settings: Settings = default_settings,
) -> Optional[RunResult]:
    """Background entry point: own session, own orchestrator, errors end up in the goal metadata."""
    session = session_factory()
    try:
        goal = session.get(Goal, goal_id)
        if goal is None:
            logger.warning("Goal %s disappeared before generation started", goal_id)
            return None
        orchestrator = build_orchestrator(
            session,
            generator=generator,
            settings=settings,
            session_factory=session_factory,
        )
        try:
            if retry:
                return orchestrator.retry(goal)
            schedule = [datetime.fromisoformat(value) for value in occurrences or []]
            context = _context_from_metadata(goal)
            return orchestrator.run(goal, schedule or orchestrator.schedule_occurrences(goal, context), context)
        except (OccurrenceGenerationError, GlobalTimeoutError, InvalidGenerationTransition) as exc:
            logger.warning("Generation for goal %s ended without completing: %s", goal_id, exc)
            return None
    finally:
        session.close()
