from __future__ import annotations

from uuid import uuid4

from stepflow.services.goal_view import GoalViewCache, StepsSnapshot
from stepflow.services.notifications import hooks
from stepflow.services.notifications.base import StepChangeEvent
from stepflow.services.notifications.memory import InMemoryStepChangeNotifier
from stepflow.services.notifications.noop import NoopStepChangeNotifier


def test_memory_notifier_delivers_per_goal():
    notifier = InMemoryStepChangeNotifier()
    goal_id, other_goal = uuid4(), uuid4()
    received = []
    notifier.subscribe(goal_id, received.append)

    result = notifier.publish(StepChangeEvent(goal_id=goal_id, kind="created", step_ids=[uuid4()]))
    skipped = notifier.publish(StepChangeEvent(goal_id=other_goal, kind="created"))

    assert result.status == "delivered"
    assert result.delivered == 1
    assert skipped.status == "skipped"
    assert [event.goal_id for event in received] == [goal_id]


def test_unsubscribe_and_failing_subscriber():
    notifier = InMemoryStepChangeNotifier()
    goal_id = uuid4()
    received = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    notifier.subscribe(goal_id, broken)
    unsubscribe = notifier.subscribe(goal_id, received.append)

    result = notifier.publish(StepChangeEvent(goal_id=goal_id, kind="updated"))
    assert result.delivered == 1
    assert len(received) == 1

    unsubscribe()
    notifier.publish(StepChangeEvent(goal_id=goal_id, kind="updated"))
    assert len(received) == 1
    assert notifier.subscriber_count(goal_id) == 1


def test_noop_notifier_reports_noop():
    result = NoopStepChangeNotifier().publish(StepChangeEvent(goal_id=uuid4(), kind="created"))

    assert result.status == "noop"


def test_step_change_invalidates_goal_view_cache(monkeypatch):
    notifier = InMemoryStepChangeNotifier()
    monkeypatch.setattr(hooks, "get_notifier", lambda: notifier)
    cache = GoalViewCache(notifier=notifier)
    goal_id = uuid4()

    cache.put(goal_id, StepsSnapshot())
    assert cache.get(goal_id) is not None
    assert notifier.subscriber_count(goal_id) == 1

    hooks.notify_step_updated(goal_id, uuid4())

    assert cache.get(goal_id) is None
    assert notifier.subscriber_count(goal_id) == 0


def test_cache_put_twice_subscribes_once():
    notifier = InMemoryStepChangeNotifier()
    cache = GoalViewCache(notifier=notifier)
    goal_id = uuid4()

    cache.put(goal_id, StepsSnapshot())
    cache.put(goal_id, StepsSnapshot())
    assert notifier.subscriber_count(goal_id) == 1

    cache.clear()
    assert cache.get(goal_id) is None
    assert notifier.subscriber_count(goal_id) == 0
