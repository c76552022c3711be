"""No-op step change notifier (logs only)."""
from __future__ import annotations

import logging
from uuid import UUID

from stepflow.services.notifications.base import (
    NotificationResult,
    StepChangeEvent,
    StepChangeNotifier,
    Subscriber,
    Unsubscribe,
)

logger = logging.getLogger(__name__)


class NoopStepChangeNotifier(StepChangeNotifier):
    def subscribe(self, goal_id: UUID, callback: Subscriber) -> Unsubscribe:
        return lambda: None

    def publish(self, event: StepChangeEvent) -> NotificationResult:
        logger.info(
            "Step change (noop) goal=%s kind=%s steps=%s",
            event.goal_id,
            event.kind,
            len(event.step_ids),
        )
        return NotificationResult(status="noop", reason="notification provider is noop")
