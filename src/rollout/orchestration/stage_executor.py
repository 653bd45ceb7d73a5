"""Stage Executor — runs one stage's action under a hard timeout.

The executor is the boundary where everything an action can do wrong is
turned into a terminal :class:`~rollout.orchestration.stage_result.StageResult`:

- a raised exception becomes ``failed`` with its message
  (:class:`~rollout.core.errors.CommandError` keeps the exit status);
- a falsy / failed :class:`ActionResult` becomes ``failed``;
- exceeding the timeout cancels the context (registered subprocesses are
  killed, scoped resources released) and becomes ``failed`` with reason
  ``timeout``;
- an abort from the engine becomes ``failed`` with reason ``cancelled``,
  or ``skipped`` if the stage never started.

The action runs in a dedicated daemon thread so the executor can stop
waiting for it at the deadline. Retries only happen when the stage spec
carries a :class:`~rollout.orchestration.stage_types.RetryPolicy`.

Example::

    executor = StageExecutor(default_timeout=600)
    result = executor.execute(spec, ctx, timeout=120)
    result.outcome   # StageOutcome.SUCCEEDED | FAILED | SKIPPED
"""

from __future__ import annotations

import contextvars
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from rollout.core.errors import CommandError, RolloutError, StageFailure
from rollout.core.logging import get_logger
from rollout.orchestration.context import StageContext
from rollout.orchestration.stage_result import FailReason, SkipReason, StageResult
from rollout.orchestration.stage_types import ActionResult, StageSpec

logger = get_logger(__name__)


@dataclass
class _Attempt:
    """Outcome of one attempt, before it is recorded on the result."""

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    exit_status: int | None = None
    error: str | None = None
    reason: str | None = None


class StageExecutor:
    """
    Executes stage specs against stage contexts.

    Args:
        default_timeout: Timeout (seconds) when neither the stage nor the
            caller provides one
        poll_interval: How often a waiting attempt checks for an abort
        grace_seconds: How long to wait for an action thread to unwind
            after it was cancelled
    """

    def __init__(
        self,
        *,
        default_timeout: float = 600.0,
        poll_interval: float = 0.05,
        grace_seconds: float = 2.0,
    ):
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self.grace_seconds = grace_seconds

    def execute(
        self,
        spec: StageSpec,
        context: StageContext,
        timeout: float | None = None,
        *,
        result: StageResult | None = None,
    ) -> StageResult:
        """Run ``spec`` to a terminal result.

        Args:
            spec: The stage to run
            context: Context for this stage; cancelled on timeout or abort
            timeout: Caller default, used when the stage sets none
            result: Pre-created pending result to fill in

        Returns:
            The terminal StageResult. Never raises for action failures.
        """
        result = result or StageResult(stage=spec.name)
        effective_timeout = spec.timeout_seconds or timeout or self.default_timeout
        max_attempts = spec.retry.max_attempts if spec.retry else 1

        if context.aborted:
            if result.mark_skipped(SkipReason.CANCELLED):
                return result

        attempt = _Attempt(success=False)
        try:
            for attempt_no in range(1, max_attempts + 1):
                result.mark_running()
                logger.debug(
                    "stage.start",
                    run_id=context.run_id,
                    stage=spec.name,
                    attempt=attempt_no,
                    timeout_seconds=effective_timeout,
                )
                attempt = self._attempt(spec, context, effective_timeout)
                if attempt.success or not self._should_retry(spec, attempt, attempt_no, max_attempts):
                    break

                delay = spec.retry.delay_for(attempt_no)
                logger.info(
                    "stage.retry",
                    run_id=context.run_id,
                    stage=spec.name,
                    attempt=attempt_no,
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                    reason=attempt.reason,
                )
                if not context.reset_attempt() or context.wait_cancelled(delay):
                    attempt = _Attempt(
                        success=False,
                        error=f"Stage '{spec.name}' cancelled before retry",
                        reason=FailReason.CANCELLED,
                    )
                    break
                context.log(f"--- attempt {attempt_no + 1}/{max_attempts} ---")
        finally:
            context.close()

        output = context.buffer.getvalue()
        if attempt.success:
            result.mark_succeeded(output=output, data=attempt.data, exit_status=attempt.exit_status)
        else:
            if context.aborted:
                attempt.reason = FailReason.CANCELLED
            result.mark_failed(
                attempt.error or "Stage failed",
                reason=attempt.reason or FailReason.ERROR,
                output=output,
                exit_status=attempt.exit_status,
                data=attempt.data,
            )

        logger.debug(
            "stage.complete",
            run_id=context.run_id,
            stage=spec.name,
            outcome=result.outcome.value,
            reason=result.reason,
            attempts=result.attempts,
            duration_seconds=result.duration_seconds,
        )
        return result

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _should_retry(spec: StageSpec, attempt: _Attempt, attempt_no: int, max_attempts: int) -> bool:
        if spec.retry is None or attempt_no >= max_attempts:
            return False
        if attempt.reason == FailReason.CANCELLED:
            return False
        if attempt.reason == FailReason.TIMEOUT:
            return spec.retry.retry_on_timeout
        return True

    def _attempt(self, spec: StageSpec, context: StageContext, timeout: float) -> _Attempt:
        """One attempt in a worker thread, bounded by ``timeout``."""
        outcome: dict[str, Any] = {}
        done = threading.Event()

        def target() -> None:
            try:
                outcome["result"] = spec.invoke(context)
            except BaseException as e:  # noqa: BLE001
                outcome["error"] = e
            finally:
                done.set()

        # Carry the bound log context (run_id, pipeline, stage) into the action thread.
        worker = threading.Thread(
            target=contextvars.copy_context().run, args=(target,), name=f"stage-{spec.name}", daemon=True
        )
        deadline = time.monotonic() + timeout
        worker.start()

        while not done.wait(self.poll_interval):
            if context.cancelled:
                break
            if time.monotonic() >= deadline:
                logger.warning(
                    "stage.timeout",
                    run_id=context.run_id,
                    stage=spec.name,
                    timeout_seconds=timeout,
                )
                context.cancel("timeout")
                done.wait(self.grace_seconds)
                return _Attempt(
                    success=False,
                    error=f"Stage '{spec.name}' timed out after {timeout:g}s",
                    reason=FailReason.TIMEOUT,
                )

        if not done.is_set():
            # Aborted while running.
            done.wait(self.grace_seconds)
            return _Attempt(
                success=False,
                error=f"Stage '{spec.name}' cancelled",
                reason=FailReason.CANCELLED,
            )

        if "error" in outcome:
            return self._from_exception(spec, context, outcome["error"])
        action_result: ActionResult = outcome["result"]
        if action_result.success:
            return _Attempt(success=True, data=action_result.output, exit_status=action_result.exit_status)
        reason = FailReason.EXIT_STATUS if action_result.exit_status not in (None, 0) else FailReason.ERROR
        return _Attempt(
            success=False,
            data=action_result.output,
            exit_status=action_result.exit_status,
            error=action_result.error,
            reason=reason,
        )

    def _from_exception(self, spec: StageSpec, context: StageContext, error: BaseException) -> _Attempt:
        if isinstance(error, CommandError):
            logger.warning("stage.command_failed", stage=spec.name, exit_status=error.exit_status,
                           command=error.command[:1])
            return _Attempt(success=False, error=error.message, exit_status=error.exit_status,
                            reason=error.reason)
        if isinstance(error, StageFailure):
            logger.warning("stage.failed", stage=spec.name, reason=error.reason, error=error.message)
            return _Attempt(success=False, error=error.message, reason=error.reason)
        if isinstance(error, RolloutError):
            logger.warning("stage.failed", stage=spec.name, error=error.to_dict())
            return _Attempt(success=False, error=error.message, reason=FailReason.ERROR)
        if not isinstance(error, Exception):
            raise error
        logger.exception(
            "stage.exception",
            run_id=context.run_id,
            stage=spec.name,
            error=str(error),
            exc_info=error,
        )
        message = str(error) or type(error).__name__
        return _Attempt(success=False, error=f"{type(error).__name__}: {message}", reason=FailReason.ERROR)
