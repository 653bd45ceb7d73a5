"""
FastAPI application factory.

``create_app()`` loads the pipelines, wires the engine and routers and
installs the error handlers. Runs accepted over HTTP execute on a
background thread pool owned by the app; shutting the app down cancels
whatever is still running.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Mapping
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI

from rollout import __version__
from rollout.api.errors import rollout_error_handler, unhandled_exception_handler
from rollout.core.errors import ConfigError, RolloutError
from rollout.core.logging import configure_logging, get_logger
from rollout.core.settings import RolloutSettings, get_settings
from rollout.orchestration.engine import PipelineEngine
from rollout.orchestration.pipeline import PipelineDefinition
from rollout.pipeline.loader import load_pipeline
from rollout.services import build_services

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup / shutdown hooks."""
    logger.info("api.starting", version=app.version, pipelines=sorted(app.state.pipelines))
    yield
    engine: PipelineEngine = app.state.engine
    for run in engine.active_runs():
        engine.cancel(run.run_id)
    app.state.runner.shutdown(wait=True)
    logger.info("api.stopped")


def load_pipelines(directory: Path | None, actions: Mapping[str, Any]) -> dict[str, PipelineDefinition]:
    """Every ``*.yaml`` / ``*.yml`` file under ``directory``, keyed by pipeline name."""
    if directory is None:
        return {}
    if not Path(directory).is_dir():
        raise ConfigError(f"Pipelines directory does not exist: {directory}")
    pipelines: dict[str, PipelineDefinition] = {}
    for path in sorted(Path(directory).glob("*.y*ml")):
        definition = load_pipeline(path, actions)
        if definition.name in pipelines:
            raise ConfigError(f"Duplicate pipeline name '{definition.name}' in {path}")
        pipelines[definition.name] = definition
    return pipelines


def create_app(
    settings: RolloutSettings | None = None,
    *,
    engine: PipelineEngine | None = None,
    pipelines: Mapping[str, PipelineDefinition] | None = None,
) -> FastAPI:
    """Build the trigger API.

    Args:
        settings: Override settings (default: environment)
        engine: Override the engine (default: built from settings)
        pipelines: Override the pipelines (default: ``settings.pipelines_dir``)
    """
    settings = settings or get_settings()
    configure_logging(level=settings.log_level, json_format=settings.json_logs, service="rollout-api")

    if pipelines is None:
        services = build_services(settings, engine=engine)
        engine = services.engine
        pipelines = load_pipelines(settings.pipelines_dir, services.actions)
    elif engine is None:
        engine = PipelineEngine.from_settings(settings)

    prefix = settings.api_prefix.rstrip("/")
    app = FastAPI(
        title="rollout",
        version=__version__,
        lifespan=lifespan,
        docs_url=f"{prefix}/docs",
        openapi_url=f"{prefix}/openapi.json",
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.pipelines = dict(pipelines)
    app.state.runner = ThreadPoolExecutor(max_workers=4, thread_name_prefix="rollout-run")

    app.add_exception_handler(RolloutError, rollout_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    from rollout.api.routers import health, pipelines as pipelines_router, runs

    app.include_router(health.router, prefix=prefix, tags=["health"])
    app.include_router(pipelines_router.router, prefix=prefix, tags=["pipelines"])
    app.include_router(runs.router, prefix=prefix, tags=["runs"])
    return app
