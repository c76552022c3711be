"""Decide which steps a user may act on next."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

UPCOMING_VISIBLE_LIMIT = 4
GROUPING_WINDOW = 10
COMPLETE_STATUSES = {"done", "skipped"}
ACTIONABLE_STEP_TYPES = {None, "", "action"}

_WEEK_RE = re.compile(r"Week (\d+)", re.IGNORECASE)
_SESSION_RE = re.compile(r"Session (\d+)", re.IGNORECASE)

SubstepMap = Mapping[Any, Sequence[Any]]


@dataclass
class UpcomingSteps:
    visible: List[Any] = field(default_factory=list)
    queued: List[Any] = field(default_factory=list)


def is_step_complete(step: Any, substeps: Optional[Sequence[Any]] = None) -> bool:
    """A step with substeps is complete once every substep is; otherwise its status decides."""
    if substeps:
        return all(sub.completed_at is not None for sub in substeps)
    return step.status in COMPLETE_STATUSES


def week_session(step: Any) -> Tuple[Optional[int], Optional[int]]:
    """Structured week/session numbers, falling back to "Week N" / "Session M" in the title."""
    week = getattr(step, "week_number", None)
    session = getattr(step, "session_number", None)
    title = step.title or ""
    if week is None:
        match = _WEEK_RE.search(title)
        week = int(match.group(1)) if match else None
    if session is None:
        match = _SESSION_RE.search(title)
        session = int(match.group(1)) if match else None
    return week, session


def is_actionable(step: Any) -> bool:
    return (
        not getattr(step, "hidden", False)
        and not step.is_supporter_step
        and step.status != "skipped"
        and step.step_type in ACTIONABLE_STEP_TYPES
    )


def sort_actionable_steps(steps: Iterable[Any]) -> List[Any]:
    """Order actionable steps by (week, session), keeping unpatterned steps near their group."""
    candidates = sorted((step for step in steps if is_actionable(step)), key=lambda s: _order(s, float("inf")))
    return sorted(candidates, key=cmp_to_key(_compare_steps))


def is_blocked(step: Any, all_steps: Sequence[Any], substeps_by_step: Optional[SubstepMap] = None) -> bool:
    substeps_by_step = substeps_by_step or {}

    if not step.is_supporter_step:
        sequence = sort_actionable_steps(all_steps)
        position = _index_of(sequence, step)
        for previous in sequence[:position]:
            if not previous.is_required:
                continue
            if not is_step_complete(previous, _substeps_for(previous, substeps_by_step)):
                return True

    if step.dependency_step_ids:
        by_id = {str(s.id): s for s in all_steps}
        for dep_id in step.dependency_step_ids:
            dependency = by_id.get(str(dep_id))
            if dependency is not None and dependency.status not in COMPLETE_STATUSES:
                return True
        return False

    if step.is_supporter_step:
        return False

    week, session = week_session(step)
    if week is None:
        return False

    for other in all_steps:
        if other is step or not other.is_required or other.is_supporter_step:
            continue
        other_week, other_session = week_session(other)
        if other_week is None:
            continue
        earlier_week = other_week < week
        earlier_session = (
            session is not None
            and other_session is not None
            and other_week == week
            and other_session < session
        )
        if (earlier_week or earlier_session) and not is_step_complete(other, _substeps_for(other, substeps_by_step)):
            return True
    return False


def blocked_map(all_steps: Sequence[Any], substeps_by_step: Optional[SubstepMap] = None) -> Dict[str, bool]:
    """Evaluate every step once; recomputed from scratch on each call."""
    return {str(step.id): is_blocked(step, all_steps, substeps_by_step) for step in all_steps}


def partition_upcoming(
    all_steps: Sequence[Any],
    limit: int = UPCOMING_VISIBLE_LIMIT,
) -> UpcomingSteps:
    """First `limit` actionable steps are shown; the rest wait behind a reveal action."""
    ordered = sort_actionable_steps(all_steps)
    return UpcomingSteps(visible=ordered[:limit], queued=ordered[limit:])


def _order(step: Any, default: float) -> float:
    return step.order_index if step.order_index is not None else default


def _compare_steps(a: Any, b: Any) -> int:
    a_week, a_session = week_session(a)
    b_week, b_session = week_session(b)
    a_main = a_week is not None and a_session is not None
    b_main = b_week is not None and b_session is not None

    if a_main and b_main:
        if a_week != b_week:
            return a_week - b_week
        return a_session - b_session

    if a_main and not b_main:
        a_index, b_index = _order(a, 0), _order(b, float("inf"))
        if a_index < b_index < a_index + GROUPING_WINDOW:
            return -1
        return _sign(a_index - b_index)

    if b_main and not a_main:
        a_index, b_index = _order(a, float("inf")), _order(b, 0)
        if b_index < a_index < b_index + GROUPING_WINDOW:
            return 1
        return _sign(a_index - b_index)

    return _sign(_order(a, float("inf")) - _order(b, float("inf")))


def _sign(value: float) -> int:
    if value != value:  # inf - inf
        return 0
    return (value > 0) - (value < 0)


def _index_of(sequence: List[Any], step: Any) -> int:
    for position, candidate in enumerate(sequence):
        if str(candidate.id) == str(step.id):
            return position
    return 0


def _substeps_for(step: Any, substeps_by_step: SubstepMap) -> Sequence[Any]:
    return substeps_by_step.get(step.id) or substeps_by_step.get(str(step.id)) or []
