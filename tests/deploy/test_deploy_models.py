"""Tests for deployment records and outcomes."""

from __future__ import annotations

import pytest

from rollout.core.errors import DeploymentError
from rollout.deploy.models import DeploymentOutcome, DeploymentRecord, DeployState, OutcomeStatus, ReleaseEntry


def _entry(n: int) -> ReleaseEntry:
    return ReleaseEntry(release_id=f"{n}-abc", release_dir=f"{n}-abc-0000000{n}")


class TestDeploymentRecord:
    def test_fresh_record_is_idle(self):
        record = DeploymentRecord(target="web")
        assert record.state == DeployState.IDLE
        assert record.current_release_id is None
        assert record.previous is None
        assert record.referenced_dirs() == set()

    def test_activate_pushes_history_newest_first(self):
        record = DeploymentRecord(target="web")
        for n in (1, 2, 3):
            record.activate(_entry(n), depth=5)
        assert record.current_release_id == "3-abc"
        assert [e.release_id for e in record.history] == ["2-abc", "1-abc"]
        assert record.previous.release_id == "2-abc"

    def test_activate_evicts_beyond_depth(self):
        record = DeploymentRecord(target="web")
        evicted = []
        for n in (1, 2, 3, 4):
            evicted += record.activate(_entry(n), depth=2)
        assert [e.release_id for e in record.history] == ["3-abc", "2-abc"]
        assert [e.release_id for e in evicted] == ["1-abc"]
        assert record.referenced_dirs() == {"4-abc-00000004", "3-abc-00000003", "2-abc-00000002"}

    def test_restore_previous_drops_current(self):
        record = DeploymentRecord(target="web")
        record.activate(_entry(1), depth=5)
        record.activate(_entry(2), depth=5)
        restored = record.restore_previous()
        assert restored.release_id == "1-abc"
        assert record.current_release_id == "1-abc"
        assert record.history == []

    def test_set_state_tracks_errors(self):
        record = DeploymentRecord(target="web")
        record.set_state(DeployState.FAILED, "boom")
        assert record.last_error == "boom"
        record.set_state(DeployState.ACTIVE)
        assert record.last_error is None

    def test_json_round_trip(self):
        record = DeploymentRecord(target="web")
        record.activate(_entry(1), depth=5)
        assert DeploymentRecord.model_validate_json(record.model_dump_json()) == record


class TestDeploymentOutcome:
    def test_mark_complete(self):
        outcome = DeploymentOutcome(target="web", release_id="1-abc")
        assert outcome.succeeded is False
        outcome.mark_complete(OutcomeStatus.DEPLOYED, DeployState.ACTIVE, "1-abc")
        assert outcome.succeeded is True
        assert outcome.completed_at is not None
        assert outcome.duration_seconds >= 0
        outcome.raise_for_status()

    def test_attached_error_is_raised_not_serialized(self):
        outcome = DeploymentOutcome(target="web")
        error = DeploymentError("switch failed")
        outcome.attach(error)
        assert outcome.exception is error
        assert "_exception" not in outcome.model_dump()
        with pytest.raises(DeploymentError):
            outcome.raise_for_status()
