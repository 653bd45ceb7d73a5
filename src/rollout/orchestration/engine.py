"""Pipeline Engine — executes a pipeline definition as a parallel DAG.

The engine takes a :class:`~rollout.orchestration.pipeline.PipelineDefinition`
and trigger parameters and drives every stage to exactly one terminal
outcome:

- a stage becomes eligible once all its dependencies are terminal;
- if any dependency did not succeed it is **skipped**
  (``dependency_not_succeeded``);
- if its condition is false it is **skipped** (``condition_false``);
- otherwise it is handed to the
  :class:`~rollout.orchestration.stage_executor.StageExecutor`.

Independent stages run concurrently on a thread pool. Results live in a
map keyed by stage name, so the run reads the same regardless of the order
in which concurrent stages finish. The run succeeds iff every non-skipped
stage succeeded.

Example::

    engine = PipelineEngine(max_parallel_stages=4)
    run = engine.run(definition, {"target": "dev", "ref": "main"})

    if run.status == RunStatus.SUCCEEDED:
        print(f"Released {run.stage('publish').data['release_id']}")
    else:
        print(f"Failed stages: {run.failed_stages}")

For triggers that must answer before the run finishes (the HTTP API),
split the call::

    run = engine.prepare(definition, params)   # validated, pending
    threading.Thread(target=engine.execute, args=(run,)).start()
    return run.run_id
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any

from rollout.core.credentials import NO_CREDENTIALS, Credentials
from rollout.core.errors import TerminalStateError, ValidationError
from rollout.core.logging import LogContext, get_logger
from rollout.core.settings import RolloutSettings
from rollout.orchestration.context import StageContext, TriggerParameters
from rollout.orchestration.history import RunHistory
from rollout.orchestration.pipeline import PipelineDefinition
from rollout.orchestration.run import PipelineRun, RunStatus
from rollout.orchestration.stage_executor import StageExecutor
from rollout.orchestration.stage_result import FailReason, SkipReason
from rollout.orchestration.stage_types import StageOutcome

logger = get_logger(__name__)


class PipelineEngine:
    """
    Runs pipelines.

    Args:
        executor: Stage executor (default: one with ``default_timeout``)
        history: Where finalized runs are recorded (optional)
        max_parallel_stages: Upper bound on concurrently running stages
        fail_fast: Skip all not-yet-started stages after the first failure
        default_timeout: Stage timeout when neither stage nor pipeline sets one
        max_output_bytes: Captured output limit per stage
        credentials: Passed explicitly to every stage context
        workspace_root: Per-run workspaces are created under this directory
    """

    def __init__(
        self,
        *,
        executor: StageExecutor | None = None,
        history: RunHistory | None = None,
        max_parallel_stages: int = 4,
        fail_fast: bool = False,
        default_timeout: float = 600.0,
        max_output_bytes: int = 64 * 1024,
        credentials: Credentials = NO_CREDENTIALS,
        workspace_root: Path | None = None,
    ):
        if max_parallel_stages < 1:
            raise ValueError("max_parallel_stages must be >= 1")
        self.executor = executor or StageExecutor(default_timeout=default_timeout)
        self.history = history
        self.max_parallel_stages = max_parallel_stages
        self.fail_fast = fail_fast
        self.max_output_bytes = max_output_bytes
        self.credentials = credentials
        self.workspace_root = workspace_root

        self._lock = threading.Lock()
        self._active: dict[str, PipelineRun] = {}
        self._build_numbers: dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings: RolloutSettings, **overrides: Any) -> PipelineEngine:
        options: dict[str, Any] = {
            "history": RunHistory(
                settings.runs_dir,
                max_runs=settings.run_retention_count,
                max_age_days=settings.run_retention_days,
            ),
            "max_parallel_stages": settings.max_parallel_stages,
            "fail_fast": settings.fail_fast,
            "default_timeout": settings.stage_timeout_seconds,
            "max_output_bytes": settings.max_output_bytes,
            "credentials": settings.credentials(),
            "workspace_root": settings.state_dir / "workspaces",
        }
        options.update(overrides)
        return cls(**options)

    # =========================================================================
    # Public API
    # =========================================================================

    def run(
        self,
        definition: PipelineDefinition,
        parameters: TriggerParameters | Mapping[str, Any],
        *,
        fail_fast: bool | None = None,
    ) -> PipelineRun:
        """Validate, execute and return the finalized run.

        Raises:
            DefinitionError: If the stage graph is malformed (nothing runs)
            ValidationError: If the trigger parameters are invalid
        """
        return self.execute(self.prepare(definition, parameters), fail_fast=fail_fast)

    def prepare(
        self,
        definition: PipelineDefinition,
        parameters: TriggerParameters | Mapping[str, Any],
    ) -> PipelineRun:
        """Validate inputs and create a pending run registered with the engine."""
        definition.validate()
        params = self._coerce_parameters(definition, parameters)
        run = PipelineRun.create(definition, params)
        with self._lock:
            self._active[run.run_id] = run
        logger.info(
            "pipeline.prepared",
            run_id=run.run_id,
            pipeline=definition.name,
            target=params.target,
            ref=params.ref,
            build_number=params.build_number,
        )
        return run

    def execute(self, run: PipelineRun, *, fail_fast: bool | None = None) -> PipelineRun:
        """Execute a prepared run to a terminal status.

        A run cancelled before it started is returned as-is.
        """
        definition = run.definition
        if definition is None:
            raise TerminalStateError(f"Run {run.run_id} has no definition attached")
        if not run.start():
            if run.is_terminal:
                return run
            raise TerminalStateError(f"Run {run.run_id} is already {run.status.value}")

        fail_fast = (self.fail_fast or definition.fail_fast) if fail_fast is None else fail_fast
        with LogContext(run_id=run.run_id, pipeline=definition.name):
            return self._execute_started(definition, run, fail_fast)

    def _execute_started(self, definition: PipelineDefinition, run: PipelineRun, fail_fast: bool) -> PipelineRun:
        logger.info(
            "pipeline.start",
            run_id=run.run_id,
            pipeline=definition.name,
            stages=len(definition.stages),
            fail_fast=fail_fast,
        )

        try:
            self._schedule(definition, run, fail_fast)
        except Exception as e:
            logger.exception("pipeline.engine_error", run_id=run.run_id, error=str(e))
            for result in run.stages.values():
                if not result.is_terminal:
                    if not result.mark_skipped(SkipReason.CANCELLED):
                        result.mark_failed(f"Engine error: {e}", reason=FailReason.ERROR)
            run.finalize(RunStatus.FAILED, error=f"Engine error: {e}")
            self._finish(run)
            return run

        status, error = self._final_status(run)
        run.finalize(status, error=error)
        self._finish(run)

        log = logger.info if status == RunStatus.SUCCEEDED else logger.error
        log(
            "pipeline.complete",
            run_id=run.run_id,
            pipeline=definition.name,
            status=status.value,
            failed=run.failed_stages,
            skipped=run.skipped_stages,
            duration_seconds=run.duration_seconds,
        )
        return run

    def cancel(self, run_id: str) -> bool:
        """Abort a run: running stages are cancelled, pending ones skipped.

        Returns:
            False if the run is unknown or already finished.
        """
        with self._lock:
            run = self._active.get(run_id)
        if run is None or run.is_terminal:
            return False

        contexts = run.request_cancel()
        logger.warning("pipeline.cancel_requested", run_id=run_id, running=len(contexts))
        for ctx in contexts:
            ctx.cancel("cancelled")

        # Never started: execute() will return it untouched.
        if run.abandon(SkipReason.CANCELLED):
            self._finish(run)
        return True

    def get_run(self, run_id: str) -> PipelineRun | None:
        with self._lock:
            run = self._active.get(run_id)
        if run is None and self.history is not None:
            run = self.history.get(run_id)
        return run

    def active_runs(self) -> list[PipelineRun]:
        with self._lock:
            return list(self._active.values())

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _schedule(self, definition: PipelineDefinition, run: PipelineRun, fail_fast: bool) -> None:
        order = definition.topological_order()
        specs = {s.name: s for s in definition.stages}
        ancestors = _ancestors(definition, order)
        pending: list[str] = list(order)
        failure_seen = False
        timeout = definition.default_timeout

        def skip(name: str, reason: str) -> None:
            if run.stages[name].mark_skipped(reason):
                run.record_transition(name, "pending", "skipped", reason)
                logger.info("stage.skipped", run_id=run.run_id, stage=name, reason=reason)
            pending.remove(name)

        def run_stage(name: str, ctx: StageContext) -> None:
            try:
                with LogContext(run_id=run.run_id, pipeline=definition.name, stage=name):
                    self.executor.execute(specs[name], ctx, timeout, result=run.stages[name])
            finally:
                run.detach_context(name)

        with ThreadPoolExecutor(max_workers=self.max_parallel_stages,
                                thread_name_prefix=f"{run.run_id}-") as pool:
            futures: dict[Future, str] = {}

            while pending or futures:
                if run.cancel_requested:
                    for name in list(pending):
                        skip(name, SkipReason.CANCELLED)
                elif fail_fast and failure_seen:
                    for name in list(pending):
                        skip(name, SkipReason.FAIL_FAST)
                else:
                    self._resolve_ready(run, specs, ancestors, pending, futures, pool, run_stage, skip)

                if not futures:
                    if pending:
                        # Every remaining stage is blocked on something that can never finish.
                        for name in list(pending):
                            skip(name, SkipReason.DEPENDENCY)
                    break

                done, _ = wait(list(futures), return_when=FIRST_COMPLETED)
                for future in done:
                    name = futures.pop(future)
                    result = run.stages[name]
                    try:
                        future.result()
                    except Exception as e:
                        logger.exception("stage.executor_error", run_id=run.run_id, stage=name, error=str(e))
                        if not result.is_terminal:
                            result.mark_failed(f"Executor error: {e}", reason=FailReason.ERROR)
                    run.record_transition(
                        name, "running" if result.attempts else "pending", result.outcome.value, result.reason
                    )
                    if result.outcome == StageOutcome.FAILED:
                        failure_seen = True
                        logger.warning(
                            "stage.failed",
                            run_id=run.run_id,
                            stage=name,
                            reason=result.reason,
                            error=result.error,
                        )

    def _resolve_ready(self, run, specs, ancestors, pending, futures, pool, run_stage, skip) -> None:
        """Skip or submit every pending stage whose dependencies are terminal."""
        progressed = True
        while progressed:
            progressed = False
            for name in list(pending):
                spec = specs[name]
                deps = [run.stages[d] for d in spec.depends_on]
                if not all(d.is_terminal for d in deps):
                    continue
                if any(not d.succeeded for d in deps):
                    skip(name, SkipReason.DEPENDENCY)
                    progressed = True
                    continue
                try:
                    should_run = spec.should_run(run.parameters)
                except Exception as e:
                    logger.warning("stage.condition_error", run_id=run.run_id, stage=name, error=str(e))
                    run.stages[name].mark_failed(f"Condition raised {type(e).__name__}: {e}")
                    run.record_transition(name, "pending", "failed", FailReason.ERROR)
                    pending.remove(name)
                    progressed = True
                    continue
                if not should_run:
                    skip(name, SkipReason.CONDITION)
                    progressed = True
                    continue
                if len(futures) >= self.max_parallel_stages:
                    continue

                ctx = self._make_context(run, name, ancestors[name])
                if not run.attach_context(name, ctx):
                    return
                pending.remove(name)
                run.record_transition(name, "pending", "running")
                futures[pool.submit(run_stage, name, ctx)] = name
                logger.debug("stage.submitted", run_id=run.run_id, stage=name, active=len(futures))

    def _make_context(self, run: PipelineRun, stage: str, upstream: list[str]) -> StageContext:
        outputs = {
            name: run.stages[name].data
            for name in upstream
            if run.stages[name].succeeded
        }
        workspace = None
        if self.workspace_root is not None:
            workspace = self.workspace_root / run.run_id
            workspace.mkdir(parents=True, exist_ok=True)
        return StageContext(
            run_id=run.run_id,
            pipeline=run.pipeline,
            stage=stage,
            parameters=run.parameters,
            outputs=outputs,
            credentials=self.credentials,
            workspace=workspace,
            max_output_bytes=self.max_output_bytes,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _final_status(run: PipelineRun) -> tuple[RunStatus, str | None]:
        if run.cancel_requested:
            return RunStatus.CANCELLED, "Cancelled by user"
        failed = run.failed_stages
        if failed:
            first = run.stages[failed[0]]
            return RunStatus.FAILED, f"{first.stage}: {first.error}"
        return RunStatus.SUCCEEDED, None

    def _coerce_parameters(
        self,
        definition: PipelineDefinition,
        parameters: TriggerParameters | Mapping[str, Any],
    ) -> TriggerParameters:
        if isinstance(parameters, TriggerParameters):
            params = parameters
        elif isinstance(parameters, Mapping):
            params = TriggerParameters.from_mapping(parameters)
        else:
            raise ValidationError("Trigger parameters must be a mapping", value=parameters)

        default_vars = definition.defaults.get("variables") or {}
        if default_vars:
            params = TriggerParameters(
                target=params.target,
                ref=params.ref,
                tags=params.tags,
                build_number=params.build_number,
                release_id=params.release_id,
                variables={**{str(k): str(v) for k, v in default_vars.items()}, **params.variables},
            )

        with self._lock:
            if params.build_number is None:
                floor = self.history.next_build_number(definition.name) if self.history else 1
                number = max(floor, self._build_numbers.get(definition.name, 0) + 1)
                params = params.with_build_number(number)
            self._build_numbers[definition.name] = max(
                params.build_number, self._build_numbers.get(definition.name, 0)
            )
        return params

    def _finish(self, run: PipelineRun) -> None:
        with self._lock:
            self._active.pop(run.run_id, None)
        if self.history is not None:
            self.history.record(run)


def _ancestors(definition: PipelineDefinition, order: list[str]) -> dict[str, list[str]]:
    """Transitive dependencies of each stage, in topological order."""
    position = {name: i for i, name in enumerate(order)}
    result: dict[str, list[str]] = {}
    for name in order:
        found: set[str] = set()
        for dep in definition.get_stage(name).depends_on:
            found.add(dep)
            found.update(result[dep])
        result[name] = sorted(found, key=position.__getitem__)
    return result
