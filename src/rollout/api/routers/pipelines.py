"""
Pipelines router — list pipelines and trigger runs.

Endpoints:
    GET    /pipelines              Pipelines loaded at startup
    POST   /pipelines/{name}/runs  Trigger a run (202, executes in the background)
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException

from rollout.api.deps import Engine, Pipelines, Runner
from rollout.api.schemas import PipelineSummary, RunAccepted, TriggerRequest
from rollout.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/pipelines")


@router.get("", response_model=list[PipelineSummary])
def list_pipelines(pipelines: Pipelines):
    return [
        PipelineSummary(name=name, description=definition.description, stages=definition.stage_names())
        for name, definition in sorted(pipelines.items())
    ]


@router.post("/{name}/runs", response_model=RunAccepted, status_code=202)
def trigger_run(name: str, body: TriggerRequest, engine: Engine, pipelines: Pipelines, runner: Runner):
    """Validate the trigger, register the run and execute it in the background.

    The response carries the ``run_id`` to poll with ``GET /runs/{run_id}``.
    """
    definition = pipelines.get(name)
    if definition is None:
        raise HTTPException(status_code=404, detail=f"Pipeline not found: {name}")

    # ValidationError propagates to the 422 handler; nothing has run yet.
    run = engine.prepare(definition, body.model_dump(exclude_none=True))
    runner.submit(_execute, engine, run)
    logger.info("api.run_accepted", run_id=run.run_id, pipeline=name, target=run.parameters.target)
    return RunAccepted(
        run_id=run.run_id,
        pipeline=run.pipeline,
        build_number=run.parameters.build_number,
        status=run.status.value,
    )


def _execute(engine, run) -> None:
    try:
        engine.execute(run)
    except Exception:
        logger.exception("api.run_crashed", run_id=run.run_id)
