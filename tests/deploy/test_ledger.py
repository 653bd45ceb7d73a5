"""Tests for the deployment ledger."""

from __future__ import annotations

import pytest

from rollout.core.errors import ConfigError
from rollout.deploy.ledger import DeploymentLedger
from rollout.deploy.models import DeployState, ReleaseEntry


class TestDeploymentLedger:
    def test_unknown_target_is_idle(self, ledger):
        record = ledger.load("web")
        assert record.target == "web"
        assert record.state == DeployState.IDLE

    def test_save_persists_across_instances(self, tmp_path):
        ledger = DeploymentLedger(tmp_path / "ledger")
        record = ledger.load("web")
        record.activate(ReleaseEntry(release_id="1-abc", release_dir="1-abc-x"), depth=3)
        record.set_state(DeployState.ACTIVE)
        ledger.save(record)

        reloaded = DeploymentLedger(tmp_path / "ledger").load("web")
        assert reloaded.current_release_id == "1-abc"
        assert reloaded.state == DeployState.ACTIVE
        assert not list((tmp_path / "ledger").glob(".*.tmp"))

    def test_load_returns_copies(self, ledger):
        record = ledger.load("web")
        record.set_state(DeployState.FAILED, "boom")
        assert ledger.load("web").state == DeployState.IDLE

    def test_in_memory(self):
        ledger = DeploymentLedger()
        record = ledger.load("web")
        record.set_state(DeployState.ACTIVE)
        ledger.save(record)
        assert ledger.load("web").state == DeployState.ACTIVE
        assert ledger.targets() == ["web"]

    def test_targets_include_files(self, tmp_path):
        (tmp_path / "ledger").mkdir()
        ledger = DeploymentLedger(tmp_path / "ledger")
        ledger.save(ledger.load("web"))
        assert DeploymentLedger(tmp_path / "ledger").targets() == ["web"]

    def test_corrupt_record(self, tmp_path):
        (tmp_path / "ledger").mkdir()
        (tmp_path / "ledger" / "web.json").write_text("{not json")
        with pytest.raises(ConfigError, match="Corrupt"):
            DeploymentLedger(tmp_path / "ledger").load("web")
