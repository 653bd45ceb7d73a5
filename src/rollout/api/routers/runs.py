"""
Runs router — inspect and cancel pipeline runs.

Endpoints:
    GET    /runs                    Active runs plus recorded history
    GET    /runs/{run_id}           Full run detail with stage results
    POST   /runs/{run_id}/cancel    Cancel a pending or running run
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query

from rollout.api.deps import Engine
from rollout.api.schemas import CancelResponse

router = APIRouter(prefix="/runs")


@router.get("")
def list_runs(
    engine: Engine,
    pipeline: str | None = Query(None),
    limit: int = Query(20, ge=1, le=200),
) -> list[dict[str, Any]]:
    runs = {r.run_id: r for r in engine.active_runs() if pipeline is None or r.pipeline == pipeline}
    if engine.history is not None:
        for run in engine.history.list(pipeline, limit):
            runs.setdefault(run.run_id, run)
    ordered = sorted(runs.values(), key=lambda r: r.created_at, reverse=True)
    return [run.to_dict(include_output=False) for run in ordered[:limit]]


@router.get("/{run_id}")
def get_run(run_id: str, engine: Engine) -> dict[str, Any]:
    run = engine.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return run.to_dict()


@router.post("/{run_id}/cancel", response_model=CancelResponse)
def cancel_run(run_id: str, engine: Engine):
    """Cancel a run. ``cancelled`` is false when it had already finished."""
    if engine.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return CancelResponse(run_id=run_id, cancelled=engine.cancel(run_id))
