"""Step change notification interface."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Literal
from uuid import UUID

ChangeKind = Literal["created", "updated"]


@dataclass
class StepChangeEvent:
    goal_id: UUID
    kind: ChangeKind
    step_ids: List[UUID] = field(default_factory=list)


@dataclass
class NotificationResult:
    status: str
    reason: str
    delivered: int = 0


Subscriber = Callable[[StepChangeEvent], None]
Unsubscribe = Callable[[], None]


class StepChangeNotifier:
    """Base interface for step change providers."""

    def subscribe(self, goal_id: UUID, callback: Subscriber) -> Unsubscribe:
        raise NotImplementedError

    def publish(self, event: StepChangeEvent) -> NotificationResult:
        raise NotImplementedError
