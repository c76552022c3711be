from __future__ import annotations

from datetime import datetime, timezone

from stepflow.services.generation_state import (
    SCHEMA_VERSION,
    CompletedState,
    FailedDay,
    FailedState,
    NoneState,
    PendingState,
    QueuedState,
    as_aware,
    merge_progress,
    merge_state,
    parse_occurrences,
    read_progress,
    read_state,
)


def test_missing_or_unknown_status_reads_as_none():
    assert isinstance(read_state(None), NoneState)
    assert isinstance(read_state({"generationStatus": "exploded"}), NoneState)


def test_merge_replaces_previous_state_keys_and_keeps_foreign_keys():
    started = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    metadata = {"wizardContext": {"goal_title": "Read"}, "colour": "teal"}
    metadata = merge_state(metadata, FailedState(error="boom", failed_at=started))
    metadata = merge_state(metadata, PendingState(started_at=started))

    assert metadata["generationStatus"] == "pending"
    assert metadata["startedAt"] == "2024-01-01T08:00:00Z"
    assert "generationError" not in metadata
    assert "failedAt" not in metadata
    assert metadata["colour"] == "teal"
    assert metadata["wizardContext"] == {"goal_title": "Read"}
    assert metadata["schemaVersion"] == SCHEMA_VERSION


def test_round_trip_through_json_metadata():
    queued = merge_state({}, QueuedState(queued_at=datetime(2024, 2, 2, tzinfo=timezone.utc)))
    state = read_state(queued)

    assert isinstance(state, QueuedState)
    assert state.queued_at == datetime(2024, 2, 2, tzinfo=timezone.utc)

    completed = read_state(merge_state(queued, CompletedState()))
    assert completed.status == "completed"


def test_progress_defaults_and_updates():
    progress = read_progress({})
    assert progress.last_generated_index == -1
    assert progress.planned_occurrences == []

    progress.planned_occurrences = ["2024-01-01T08:00:00+00:00", "2024-01-03T08:00:00+00:00"]
    progress.total_planned_occurrences = 2
    progress.last_generated_index = 0
    progress.failed_days = [FailedDay(index=1, date="2024-01-03", error="rate limited")]
    metadata = merge_progress({"generationStatus": "completed"}, progress)

    assert metadata["lastGeneratedOccurrenceIndex"] == 0
    assert metadata["totalPlannedOccurrences"] == 2
    assert metadata["failed_days"] == [{"index": 1, "date": "2024-01-03", "error": "rate limited"}]
    assert metadata["generationStatus"] == "completed"

    reread = read_progress(metadata)
    assert parse_occurrences(reread)[1] == datetime(2024, 1, 3, 8, tzinfo=timezone.utc)


def test_as_aware_treats_naive_as_utc():
    assert as_aware(datetime(2024, 1, 1)).tzinfo is timezone.utc
    aware = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert as_aware(aware) is aware
