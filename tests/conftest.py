"""
Shared pytest fixtures for rollout-core tests.

This module provides:
- Settings rooted in a temporary state directory
- A sample application directory and its packaged artifact
- A filesystem release store, a two-host inventory and a deployment
  controller wired to local host directories
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from rollout.core.logging import configure_logging
from rollout.core.settings import RolloutSettings, clear_settings_cache
from rollout.deploy.controller import DeploymentController
from rollout.deploy.ledger import DeploymentLedger
from rollout.deploy.transport import LocalTransport
from rollout.release.backends import FilesystemBackend
from rollout.release.packaging import package_directory
from rollout.release.store import ReleaseStore
from rollout.targets.registry import TargetRegistry, inventory_from_dict


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True, scope="session")
def _quiet_logging():
    configure_logging(level="CRITICAL", json_format=True)


@pytest.fixture
def info_logging(capsys):
    """JSON logging at INFO for one test; returns a reader of the events emitted so far."""
    configure_logging(level="INFO", json_format=True)

    def events() -> list[dict]:
        return [json.loads(line) for line in capsys.readouterr().err.splitlines() if line.startswith("{")]

    yield events
    configure_logging(level="CRITICAL", json_format=True)


@pytest.fixture(autouse=True)
def _fresh_settings():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings(tmp_path: Path) -> RolloutSettings:
    return RolloutSettings(state_dir=tmp_path / "state", log_level="CRITICAL", log_format="json")


# =============================================================================
# Artifacts
# =============================================================================


def make_app_dir(root: Path, version: str = "1") -> Path:
    """A tiny application tree: index.html, static/app.js and a .git dir that packaging skips."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "index.html").write_text(f"<h1>version {version}</h1>\n")
    (root / "static").mkdir(exist_ok=True)
    (root / "static" / "app.js").write_text(f"console.log('v{version}');\n")
    (root / ".git").mkdir(exist_ok=True)
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    return root


def make_artifact(tmp_path: Path, version: str = "1") -> Path:
    app_dir = make_app_dir(tmp_path / f"app-v{version}", version)
    return package_directory(app_dir, tmp_path / f"web-v{version}.tar.gz")


@pytest.fixture
def app_dir(tmp_path: Path) -> Path:
    return make_app_dir(tmp_path / "app")


@pytest.fixture
def artifact(tmp_path: Path) -> Path:
    return make_artifact(tmp_path, "1")


@pytest.fixture
def artifact_v2(tmp_path: Path) -> Path:
    return make_artifact(tmp_path, "2")


@pytest.fixture
def artifact_factory(tmp_path: Path):
    """Build artifacts of distinct versions: ``artifact_factory("3")``."""
    return lambda version: make_artifact(tmp_path, version)


# =============================================================================
# Components
# =============================================================================


@pytest.fixture
def store(tmp_path: Path) -> ReleaseStore:
    root = tmp_path / "store"
    return ReleaseStore(FilesystemBackend(root / "objects"), root / "index.json")


@pytest.fixture
def registry(tmp_path: Path) -> TargetRegistry:
    return inventory_from_dict({
        "hosts": {
            "web1": {"address": "10.0.0.11", "deploy_root": str(tmp_path / "hosts" / "web1")},
            "web2": {"address": "10.0.0.12", "deploy_root": str(tmp_path / "hosts" / "web2")},
            "db1": {"address": "10.0.0.21", "deploy_root": str(tmp_path / "hosts" / "db1")},
        },
        "groups": {
            "web": ["web1", "web2"],
            "staging": ["web", "db1"],
        },
    })


@pytest.fixture
def transport(tmp_path: Path) -> LocalTransport:
    return LocalTransport(tmp_path / "hosts")


@pytest.fixture
def ledger(tmp_path: Path) -> DeploymentLedger:
    return DeploymentLedger(tmp_path / "ledger")


@pytest.fixture
def controller(store, registry, transport, ledger) -> DeploymentController:
    return DeploymentController(store, registry, transport, ledger=ledger, history_depth=3)
