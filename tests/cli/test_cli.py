"""Tests for the rollout CLI (Typer app driven through CliRunner)."""

from __future__ import annotations

import json
import textwrap

import pytest
from typer.testing import CliRunner

from rollout.cli.app import app

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """State directory, inventory and quiet logging via environment variables."""
    hosts = tmp_path / "hosts"
    inventory = tmp_path / "inventory.yaml"
    inventory.write_text(textwrap.dedent(f"""\
        hosts:
          web1: {{address: 10.0.0.11, deploy_root: {hosts / "web1"}}}
          web2: {{address: 10.0.0.12, deploy_root: {hosts / "web2"}}}
        groups:
          web: [web1, web2]
    """))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ROLLOUT_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("ROLLOUT_INVENTORY_FILE", str(inventory))
    monkeypatch.setenv("ROLLOUT_LOG_LEVEL", "CRITICAL")
    monkeypatch.setenv("ROLLOUT_LOG_FORMAT", "json")
    return tmp_path


def invoke(*args):
    return runner.invoke(app, [str(a) for a in args])


def invoke_json(*args):
    result = invoke(*args, "--json")
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def publish(artifact, build=1, commit="abc123"):
    return invoke_json("release", "publish", artifact, "--app", "web", "--commit", commit, "--build", build)


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


class TestRoot:
    def test_version(self):
        result = invoke("--version")
        assert result.exit_code == 0
        assert result.stdout.startswith("rollout-core ")

    def test_help_lists_commands(self):
        result = invoke("--help")
        assert result.exit_code == 0
        for command in ("run", "deploy", "rollback", "status", "release", "targets", "runs", "serve"):
            assert command in result.stdout


# ---------------------------------------------------------------------------
# release
# ---------------------------------------------------------------------------


class TestRelease:
    def test_publish(self, cli_env, artifact):
        data = invoke_json(
            "release", "publish", artifact, "--app", "web", "--commit", "abc123", "--build", "1", "--meta", "branch=main"
        )
        assert data["release_id"] == "1-abc123"
        assert data["metadata"] == {"branch": "main"}
        assert (cli_env / "state" / "store" / "index.json").exists()

    def test_publish_is_idempotent(self, cli_env, artifact):
        assert publish(artifact)["checksum"] == publish(artifact)["checksum"]

    def test_publish_conflict(self, cli_env, artifact, artifact_v2):
        publish(artifact)
        result = invoke("release", "publish", artifact_v2, "--app", "web", "--commit", "abc123", "--build", "1")
        assert result.exit_code == 1
        assert "ConflictError" in result.output

    def test_publish_invalid_commit(self, cli_env, artifact):
        result = invoke("release", "publish", artifact, "--app", "web", "--commit", "a/b", "--build", "1")
        assert result.exit_code == 2
        assert "Invalid input" in result.output

    def test_publish_bad_metadata(self, cli_env, artifact):
        result = invoke("release", "publish", artifact, "--app", "web", "--commit", "c", "--build", "1", "--meta", "x")
        assert result.exit_code == 2

    def test_list_and_show(self, cli_env, artifact):
        publish(artifact, build=1)
        publish(artifact, build=2)
        releases = invoke_json("release", "list")
        assert [r["release_id"] for r in releases] == ["2-abc123", "1-abc123"]
        assert invoke_json("release", "show", "1-abc123")["build_number"] == 1

        table = invoke("release", "list")
        assert table.exit_code == 0
        assert "2-abc123" in table.stdout

    def test_show_unknown(self, cli_env):
        result = invoke("release", "show", "9-nothing")
        assert result.exit_code == 1
        assert "not found" in result.output


# ---------------------------------------------------------------------------
# deploy / rollback / status
# ---------------------------------------------------------------------------


class TestDeployment:
    def test_deploy_status_rollback(self, cli_env, artifact, artifact_v2):
        publish(artifact, build=1)
        publish(artifact_v2, build=2)

        first = invoke_json("deploy", "1-abc123", "--target", "web")
        assert first["status"] == "deployed"
        assert first["hosts"] == ["web1", "web2"]
        second = invoke_json("deploy", "2-abc123", "--target", "web")
        assert second["previous_release_id"] == "1-abc123"

        status = invoke_json("status", "--target", "web")
        assert status["state"] == "active"
        assert status["current"]["release_id"] == "2-abc123"
        assert set(status["hosts"]) == {"web1", "web2"}

        rolled_back = invoke_json("rollback", "--target", "web")
        assert rolled_back["status"] == "rolled_back"
        assert rolled_back["active_release_id"] == "1-abc123"
        assert (cli_env / "hosts" / "web1" / "current" / "index.html").read_text() == "<h1>version 1</h1>\n"

    def test_rollback_without_history_fails(self, cli_env, artifact):
        publish(artifact)
        invoke_json("deploy", "1-abc123", "--target", "web1")
        result = invoke("rollback", "--target", "web1")
        assert result.exit_code == 1
        assert "rollback_failed" in result.stdout

    def test_deploy_unknown_target(self, cli_env, artifact):
        publish(artifact)
        result = invoke("deploy", "1-abc123", "--target", "prod")
        assert result.exit_code == 1
        assert "Unknown target: prod" in result.output

    def test_deploy_unknown_release(self, cli_env):
        result = invoke("deploy", "9-nothing", "--target", "web")
        assert result.exit_code == 1
        assert "NotFoundError" in result.output

    def test_status_table(self, cli_env):
        result = invoke("status", "--target", "web")
        assert result.exit_code == 0
        assert "idle" in result.stdout


# ---------------------------------------------------------------------------
# targets
# ---------------------------------------------------------------------------


class TestTargets:
    def test_list(self, cli_env):
        rows = invoke_json("targets", "list")
        assert rows[0] == {"name": "web", "kind": "group", "members": "web1, web2"}
        assert [r["name"] for r in rows] == ["web", "web1", "web2"]

    def test_resolve(self, cli_env):
        hosts = invoke_json("targets", "resolve", "web")
        assert [h["address"] for h in hosts] == ["10.0.0.11", "10.0.0.12"]

    def test_resolve_unknown(self, cli_env):
        assert invoke("targets", "resolve", "prod").exit_code == 1

    def test_explicit_inventory(self, cli_env, tmp_path):
        other = tmp_path / "other.yaml"
        other.write_text("hosts:\n  solo: {}\n")
        rows = invoke_json("targets", "list", "--inventory", other)
        assert [r["name"] for r in rows] == ["solo"]


# ---------------------------------------------------------------------------
# run / runs
# ---------------------------------------------------------------------------


def _pipeline(tmp_path, second_stage="echo done"):
    path = tmp_path / "ci.yaml"
    path.write_text(textwrap.dedent(f"""\
        name: ci
        stages:
          - name: greet
            run: echo "hello $GREETING on $ROLLOUT_TARGET"
          - name: finish
            needs: [greet]
            run: {second_stage}
    """))
    return path


@pytest.mark.integration
class TestRun:
    def test_successful_run(self, cli_env):
        data = invoke_json("run", _pipeline(cli_env), "--target", "web", "--ref", "main", "--var", "GREETING=world")
        assert data["status"] == "succeeded"
        assert data["parameters"]["build_number"] == 1
        greet = next(s for s in data["stages"] if s["stage"] == "greet")
        assert "hello world on web" in greet["output"]

    def test_failed_run_exits_nonzero(self, cli_env):
        result = invoke("run", _pipeline(cli_env, "exit 4"), "--target", "web", "--ref", "main")
        assert result.exit_code == 1
        assert "failed" in result.stdout

    def test_invalid_trigger_parameters(self, cli_env):
        result = invoke("run", _pipeline(cli_env), "--target", "bad target", "--ref", "main")
        assert result.exit_code == 2

    def test_bad_variable(self, cli_env):
        result = invoke("run", _pipeline(cli_env), "--target", "web", "--ref", "main", "--var", "novalue")
        assert result.exit_code == 2

    def test_missing_pipeline_file(self, cli_env):
        result = invoke("run", cli_env / "missing.yaml", "--target", "web", "--ref", "main")
        assert result.exit_code == 2

    def test_history(self, cli_env):
        pipeline = _pipeline(cli_env)
        invoke_json("run", pipeline, "--target", "web", "--ref", "main", "--var", "GREETING=one")
        second = invoke_json("run", pipeline, "--target", "web", "--ref", "main", "--var", "GREETING=two")
        assert second["parameters"]["build_number"] == 2

        runs = invoke_json("runs", "list")
        assert [r["parameters"]["build_number"] for r in runs] == [2, 1]
        assert all("output" not in s for r in runs for s in r["stages"])

        shown = invoke_json("runs", "show", second["run_id"])
        assert shown["run_id"] == second["run_id"]

        text = invoke("runs", "show", second["run_id"], "--output")
        assert text.exit_code == 0
        assert "hello two on web" in text.stdout

    def test_show_unknown_run(self, cli_env):
        result = invoke("runs", "show", "nope")
        assert result.exit_code == 1
        assert "Run not found" in result.output

    def test_run_with_info_logging(self, cli_env, monkeypatch, info_logging):
        monkeypatch.setenv("ROLLOUT_LOG_LEVEL", "INFO")
        result = invoke("run", _pipeline(cli_env), "--target", "web", "--ref", "main", "--var", "GREETING=world")
        assert result.exit_code == 0, result.output
        assert "pipeline.start" in result.output
        assert "pipeline.complete" in result.output
        assert "succeeded" in result.output
