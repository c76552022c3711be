"""Step change notifier factory."""
from __future__ import annotations

from functools import lru_cache

from stepflow.core.config import settings
from stepflow.services.notifications.base import StepChangeNotifier
from stepflow.services.notifications.memory import InMemoryStepChangeNotifier
from stepflow.services.notifications.noop import NoopStepChangeNotifier


@lru_cache
def get_notifier() -> StepChangeNotifier:
    provider = settings.notifications_provider.lower()
    if provider == "noop":
        return NoopStepChangeNotifier()
    return InMemoryStepChangeNotifier()
