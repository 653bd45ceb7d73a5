"""
Health router.
"""

from __future__ import annotations

from fastapi import APIRouter

from rollout import __version__
from rollout.api.deps import Engine, Pipelines
from rollout.api.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health(engine: Engine, pipelines: Pipelines):
    return HealthResponse(version=__version__, pipelines=len(pipelines), active_runs=len(engine.active_runs()))
