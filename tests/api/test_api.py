"""Tests for the trigger API (FastAPI TestClient)."""

from __future__ import annotations

import threading
import time

import pytest
from fastapi.testclient import TestClient

from rollout.api.app import create_app, load_pipelines
from rollout.api.errors import status_for_error
from rollout.core.errors import (
    BusyError,
    ConfigError,
    ConflictError,
    DeploymentError,
    NotFoundError,
    UnknownTargetError,
    ValidationError,
)
from rollout.orchestration.pipeline import PipelineDefinition
from rollout.orchestration.stage_types import ActionResult, StageSpec

API = "/api/v1"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class SlowStage:
    """Waits for cancellation, signalling once it is running."""

    def __init__(self):
        self.started = threading.Event()

    def __call__(self, ctx):
        self.started.set()
        ctx.wait_cancelled(10)
        ctx.check_cancelled()


@pytest.fixture
def slow() -> SlowStage:
    return SlowStage()


@pytest.fixture
def pipelines(slow):
    return {
        "ci": PipelineDefinition(
            "ci",
            [
                StageSpec("build", lambda ctx: {"artifact": f"build-{ctx.build_number}"}),
                StageSpec("test", lambda ctx: ActionResult.ok({"ref": ctx.ref}), depends_on=("build",)),
            ],
            description="Build and test",
        ),
        "slow": PipelineDefinition("slow", [StageSpec("wait", slow)]),
    }


@pytest.fixture
def client(settings, pipelines):
    with TestClient(create_app(settings, pipelines=pipelines)) as test_client:
        yield test_client


def wait_for(client, run_id, predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        data = client.get(f"{API}/runs/{run_id}").json()
        if predicate(data):
            return data
        if time.monotonic() > deadline:
            raise AssertionError(f"run {run_id} never reached the expected state: {data['status']}")
        time.sleep(0.02)


def finished(data):
    return data["status"] in ("succeeded", "failed", "cancelled")


TRIGGER = {"target": "staging", "ref": "main"}


# ---------------------------------------------------------------------------
# Health / pipelines
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health(self, client):
        data = client.get(f"{API}/health").json()
        assert data["status"] == "ok"
        assert data["pipelines"] == 2
        assert data["active_runs"] == 0
        assert data["version"]

    def test_openapi_under_prefix(self, client):
        assert client.get(f"{API}/openapi.json").status_code == 200


class TestPipelines:
    def test_list(self, client):
        data = client.get(f"{API}/pipelines").json()
        assert data[0] == {"name": "ci", "description": "Build and test", "stages": ["build", "test"]}
        assert [p["name"] for p in data] == ["ci", "slow"]


# ---------------------------------------------------------------------------
# Triggering
# ---------------------------------------------------------------------------


class TestTrigger:
    def test_accepted_then_completes(self, client):
        response = client.post(f"{API}/pipelines/ci/runs", json={**TRIGGER, "variables": {"X": "1"}})
        assert response.status_code == 202
        accepted = response.json()
        assert accepted["pipeline"] == "ci"
        assert accepted["build_number"] == 1

        data = wait_for(client, accepted["run_id"], finished)
        assert data["status"] == "succeeded"
        assert data["parameters"]["variables"] == {"X": "1"}
        stages = {s["stage"]: s for s in data["stages"]}
        assert stages["build"]["data"] == {"artifact": "build-1"}
        assert stages["test"]["data"] == {"ref": "main"}

    def test_build_numbers_increase(self, client):
        first = client.post(f"{API}/pipelines/ci/runs", json=TRIGGER).json()
        second = client.post(f"{API}/pipelines/ci/runs", json=TRIGGER).json()
        assert second["build_number"] == first["build_number"] + 1

    def test_explicit_build_number(self, client):
        response = client.post(f"{API}/pipelines/ci/runs", json={**TRIGGER, "build_number": 42})
        assert response.json()["build_number"] == 42

    def test_unknown_pipeline(self, client):
        response = client.post(f"{API}/pipelines/nope/runs", json=TRIGGER)
        assert response.status_code == 404

    @pytest.mark.parametrize(
        "body",
        [
            {"ref": "main"},
            {"target": "", "ref": "main"},
            {"target": "staging", "ref": "main", "build_number": -1},
        ],
    )
    def test_malformed_body(self, client, body):
        assert client.post(f"{API}/pipelines/ci/runs", json=body).status_code == 422

    def test_invalid_parameters_are_problem_details(self, client):
        response = client.post(f"{API}/pipelines/ci/runs", json={"target": "bad target", "ref": "main"})
        assert response.status_code == 422
        problem = response.json()
        assert problem["title"] == "ValidationError"
        assert problem["status"] == 422
        assert problem["instance"] == f"{API}/pipelines/ci/runs"
        assert client.get(f"{API}/runs").json() == []


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class TestRuns:
    def test_unknown_run(self, client):
        assert client.get(f"{API}/runs/missing").status_code == 404
        assert client.post(f"{API}/runs/missing/cancel").status_code == 404

    def test_list_newest_first(self, client):
        ids = []
        for _ in range(3):
            run_id = client.post(f"{API}/pipelines/ci/runs", json=TRIGGER).json()["run_id"]
            wait_for(client, run_id, finished)
            ids.append(run_id)

        listed = client.get(f"{API}/runs").json()
        assert [r["run_id"] for r in listed] == list(reversed(ids))
        assert all("output" not in s for r in listed for s in r["stages"])
        assert len(client.get(f"{API}/runs", params={"limit": 2}).json()) == 2
        assert client.get(f"{API}/runs", params={"pipeline": "slow"}).json() == []

    def test_cancel_running(self, client, slow):
        run_id = client.post(f"{API}/pipelines/slow/runs", json=TRIGGER).json()["run_id"]
        assert slow.started.wait(5)
        assert client.get(f"{API}/health").json()["active_runs"] == 1
        assert any(r["run_id"] == run_id for r in client.get(f"{API}/runs").json())

        response = client.post(f"{API}/runs/{run_id}/cancel")
        assert response.json() == {"run_id": run_id, "cancelled": True}

        data = wait_for(client, run_id, finished)
        assert data["status"] == "cancelled"
        assert client.post(f"{API}/runs/{run_id}/cancel").json()["cancelled"] is False


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


class TestCreateApp:
    def test_loads_pipelines_directory(self, settings, tmp_path):
        directory = tmp_path / "pipelines"
        directory.mkdir()
        (directory / "ci.yaml").write_text("stages:\n  - {name: build, run: 'true'}\n")
        (directory / "nightly.yml").write_text("name: nightly\nstages:\n  - {name: scan, run: 'true'}\n")
        app = create_app(settings.model_copy(update={"pipelines_dir": directory}))
        assert sorted(app.state.pipelines) == ["ci", "nightly"]
        app.state.runner.shutdown()

    def test_missing_pipelines_directory(self, tmp_path):
        with pytest.raises(ConfigError):
            load_pipelines(tmp_path / "missing", {})

    def test_duplicate_pipeline_names(self, tmp_path):
        (tmp_path / "a.yaml").write_text("name: ci\nstages:\n  - {name: a, run: 'true'}\n")
        (tmp_path / "b.yaml").write_text("name: ci\nstages:\n  - {name: b, run: 'true'}\n")
        with pytest.raises(ConfigError, match="Duplicate"):
            load_pipelines(tmp_path, {})

    def test_no_directory_means_no_pipelines(self):
        assert load_pipelines(None, {}) == {}


class TestErrorMapping:
    @pytest.mark.parametrize(
        "error, status",
        [
            (ValidationError("bad"), 422),
            (NotFoundError("1-abc"), 404),
            (UnknownTargetError("prod"), 404),
            (ConflictError("1-abc", "a" * 64, "b" * 64), 409),
            (BusyError("web"), 409),
            (DeploymentError("boom"), 500),
        ],
    )
    def test_status_for_error(self, error, status):
        assert status_for_error(error) == status
