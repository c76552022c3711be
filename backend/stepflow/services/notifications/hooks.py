"""Notification hook utilities."""
from __future__ import annotations

import logging
from typing import Iterable
from uuid import UUID

from stepflow.core.config import settings
from stepflow.observability.metrics import log_metric
from stepflow.services.notifications.base import ChangeKind, NotificationResult, StepChangeEvent
from stepflow.services.notifications.factory import get_notifier

logger = logging.getLogger(__name__)


def notify_steps_created(goal_id: UUID, step_ids: Iterable[UUID]) -> NotificationResult:
    return _publish(goal_id, "created", step_ids)


def notify_step_updated(goal_id: UUID, step_id: UUID) -> NotificationResult:
    return _publish(goal_id, "updated", [step_id])


def _publish(goal_id: UUID, kind: ChangeKind, step_ids: Iterable[UUID]) -> NotificationResult:
    event = StepChangeEvent(goal_id=goal_id, kind=kind, step_ids=list(step_ids))
    result = get_notifier().publish(event)
    logger.debug("Step change %s for goal %s: %s (%s)", kind, goal_id, result.status, result.reason)
    log_metric(
        "notifications.step_change",
        result.delivered,
        metadata={"kind": kind, "provider": settings.notifications_provider, "status": result.status},
    )
    return result
