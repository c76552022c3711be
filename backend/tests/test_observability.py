"""Tests ensuring observability wiring is safe by default."""
from __future__ import annotations

from uuid import uuid4

import pytest

from stepflow.core.config import Settings
from stepflow.core.context import bind_goal_id
from stepflow.observability import client as client_module
from stepflow.observability import tracing


class _DummyTrace:
    def __init__(self, name, metadata=None):
        self.name = name
        self.metadata = metadata or {}
        self.error_info = None
        self.ended = False

    def update(self, error_info=None, **kwargs):
        self.error_info = error_info

    def end(self):
        self.ended = True


class _DummyOpik:
    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs
        self.traces = []

    def trace(self, name, metadata=None):
        trace = _DummyTrace(name, metadata)
        self.traces.append(trace)
        return trace


@pytest.fixture(autouse=True)
def _fresh_client():
    client_module.reset_opik_client()
    yield
    client_module.reset_opik_client()


def test_init_returns_none_when_opik_is_disabled() -> None:
    settings = Settings(_env_file=None, opik_enabled=False)

    assert client_module.init_opik(settings) is None


def test_init_requires_api_key(monkeypatch) -> None:
    monkeypatch.setattr(client_module, "Opik", _DummyOpik)

    assert client_module.init_opik(Settings(_env_file=None, opik_enabled=True, opik_api_key=None)) is None


def test_init_builds_client_once(monkeypatch) -> None:
    monkeypatch.setattr(client_module, "Opik", _DummyOpik)
    settings = Settings(_env_file=None, opik_enabled=True, opik_api_key="key", opik_project="stepflow-test")

    first = client_module.init_opik(settings)
    second = client_module.init_opik(settings)

    assert isinstance(first, _DummyOpik)
    assert first is second
    assert first.kwargs["project_name"] == "stepflow-test"


def test_trace_is_a_noop_without_client(monkeypatch) -> None:
    monkeypatch.setattr(tracing, "get_opik_client", lambda: None)

    with tracing.trace("generation.run") as span:
        assert span is None


def test_trace_tags_bound_goal_id(monkeypatch) -> None:
    dummy = _DummyOpik()
    monkeypatch.setattr(tracing, "get_opik_client", lambda: dummy)
    goal_id = uuid4()

    with bind_goal_id(goal_id):
        with tracing.trace("generation.run", metadata={"occurrences": 3}):
            pass

    assert dummy.traces[0].metadata == {"occurrences": 3, "goal_id": str(goal_id)}
    assert dummy.traces[0].ended is True


def test_trace_records_error_and_reraises(monkeypatch) -> None:
    dummy = _DummyOpik()
    monkeypatch.setattr(tracing, "get_opik_client", lambda: dummy)

    with pytest.raises(RuntimeError):
        with tracing.trace("generation.run"):
            raise RuntimeError("boom")

    assert dummy.traces[0].error_info == {"message": "boom", "type": "RuntimeError"}
    assert dummy.traces[0].ended is True
