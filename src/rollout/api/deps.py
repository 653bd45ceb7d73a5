"""
FastAPI dependency injection — the engine and pipelines live on ``app.state``.

Usage in routers::

    from rollout.api.deps import Engine

    @router.get("/runs/{run_id}")
    def get_run(run_id: str, engine: Engine):
        ...
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Annotated

from fastapi import Depends, Request

from rollout.orchestration.engine import PipelineEngine
from rollout.orchestration.pipeline import PipelineDefinition


def get_engine(request: Request) -> PipelineEngine:
    return request.app.state.engine


def get_pipelines(request: Request) -> dict[str, PipelineDefinition]:
    return request.app.state.pipelines


def get_runner(request: Request) -> ThreadPoolExecutor:
    """Background pool that executes accepted runs."""
    return request.app.state.runner


Engine = Annotated[PipelineEngine, Depends(get_engine)]
Pipelines = Annotated[dict[str, PipelineDefinition], Depends(get_pipelines)]
Runner = Annotated[ThreadPoolExecutor, Depends(get_runner)]
