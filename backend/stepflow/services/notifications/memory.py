"""In-process step change notifier."""
from __future__ import annotations

import logging
from collections import defaultdict
from threading import Lock
from typing import Dict, List
from uuid import UUID

from stepflow.services.notifications.base import (
    NotificationResult,
    StepChangeEvent,
    StepChangeNotifier,
    Subscriber,
    Unsubscribe,
)

logger = logging.getLogger(__name__)


class InMemoryStepChangeNotifier(StepChangeNotifier):
    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._lock = Lock()

    def subscribe(self, goal_id: UUID, callback: Subscriber) -> Unsubscribe:
        key = str(goal_id)
        with self._lock:
            self._subscribers[key].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(key, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(key, None)

        return unsubscribe

    def publish(self, event: StepChangeEvent) -> NotificationResult:
        with self._lock:
            callbacks = list(self._subscribers.get(str(event.goal_id), []))
        if not callbacks:
            return NotificationResult(status="skipped", reason="no subscribers")

        delivered = 0
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("Step change subscriber failed for goal %s", event.goal_id)
                continue
            delivered += 1
        return NotificationResult(status="delivered", reason=f"{event.kind} event", delivered=delivered)

    def subscriber_count(self, goal_id: UUID) -> int:
        with self._lock:
            return len(self._subscribers.get(str(goal_id), []))
