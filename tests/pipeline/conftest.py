"""Fixtures for action tests: stage contexts and fake external tools."""

from __future__ import annotations

from pathlib import Path

import pytest

from rollout.core.credentials import NO_CREDENTIALS
from rollout.orchestration.context import StageContext, TriggerParameters


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def make_context(workspace):
    """``make_context(outputs=..., target=..., ...)`` -> StageContext closed after the test."""
    contexts: list[StageContext] = []

    def _make(*, stage="stage", outputs=None, credentials=NO_CREDENTIALS, use_workspace=True, **params):
        params.setdefault("target", "web")
        params.setdefault("ref", "main")
        params.setdefault("build_number", 7)
        ctx = StageContext(
            run_id="run-1",
            pipeline="web-release",
            stage=stage,
            parameters=TriggerParameters(**params),
            outputs=outputs,
            credentials=credentials,
            workspace=workspace if use_workspace else None,
        )
        contexts.append(ctx)
        return ctx

    yield _make
    for ctx in contexts:
        ctx.close()


@pytest.fixture
def make_tool(tmp_path: Path):
    """Write an executable shell script standing in for an external CLI."""

    def _make(name: str, body: str) -> Path:
        path = tmp_path / "bin" / name
        path.parent.mkdir(exist_ok=True)
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(0o755)
        return path

    return _make
