"""
Pipeline runs — one invocation of a pipeline definition.

A :class:`PipelineRun` holds the trigger parameters, one
:class:`StageResult` per stage (in definition order), an append-only
transition log and the overall status. The engine is its only writer;
once finalized it is immutable and safe to hand to readers on any thread.

Related modules:
    engine.py   — creates, executes, cancels and finalizes runs
    history.py  — persists finalized runs and applies retention
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from rollout.core.errors import TerminalStateError
from rollout.orchestration.context import TriggerParameters
from rollout.orchestration.stage_result import StageResult
from rollout.orchestration.stage_types import StageOutcome

if TYPE_CHECKING:
    from rollout.orchestration.context import StageContext
    from rollout.orchestration.pipeline import PipelineDefinition


class RunStatus(str, Enum):
    """Overall status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass(frozen=True)
class StageTransition:
    """One entry of the run's transition log."""

    stage: str
    from_state: str
    to_state: str
    at: datetime
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "stage": self.stage,
            "from": self.from_state,
            "to": self.to_state,
            "at": self.at.isoformat(),
        }
        if self.reason:
            result["reason"] = self.reason
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageTransition:
        return cls(
            stage=data["stage"],
            from_state=data["from"],
            to_state=data["to"],
            at=datetime.fromisoformat(data["at"]),
            reason=data.get("reason"),
        )


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


@dataclass
class PipelineRun:
    """
    State of one pipeline invocation.

    Attributes:
        run_id: Unique run identifier
        pipeline: Pipeline name
        parameters: Validated trigger parameters
        stages: Stage name -> result, in definition order
        status: Overall run status
        created_at: When the run was prepared
        started_at: When execution began
        finished_at: When the run reached a terminal status
        transitions: Append-only log of stage state changes
        error: Summary of the first failure, if any
    """

    run_id: str
    pipeline: str
    parameters: TriggerParameters
    stages: dict[str, StageResult]
    status: RunStatus = RunStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    transitions: list[StageTransition] = field(default_factory=list)
    error: str | None = None

    definition: PipelineDefinition | None = field(default=None, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    _cancel_requested: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)
    _contexts: dict[str, StageContext] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def create(cls, definition: PipelineDefinition, parameters: TriggerParameters) -> PipelineRun:
        return cls(
            run_id=new_run_id(),
            pipeline=definition.name,
            parameters=parameters,
            stages={name: StageResult(stage=name) for name in definition.stage_names()},
            definition=definition,
        )

    # =========================================================================
    # Engine-side mutation
    # =========================================================================

    def record_transition(self, stage: str, from_state: str, to_state: str, reason: str | None = None) -> None:
        with self._lock:
            if self.status.is_terminal:
                raise TerminalStateError(f"Run {self.run_id} is already {self.status.value}")
            self.transitions.append(
                StageTransition(stage=stage, from_state=from_state, to_state=to_state,
                                at=datetime.now(UTC), reason=reason)
            )

    def start(self) -> bool:
        """Move pending -> running; False if the run was already started or cancelled."""
        with self._lock:
            if self.status != RunStatus.PENDING:
                return False
            self.status = RunStatus.RUNNING
            self.started_at = datetime.now(UTC)
            return True

    def abandon(self, reason: str) -> bool:
        """Finalize a run that never started as cancelled, skipping every stage.

        Returns False if the run had already started or finished.
        """
        with self._lock:
            if self.status != RunStatus.PENDING:
                return False
            now = datetime.now(UTC)
            for name, result in self.stages.items():
                if result.mark_skipped(reason):
                    self.transitions.append(
                        StageTransition(stage=name, from_state="pending", to_state="skipped", at=now, reason=reason)
                    )
            self.status = RunStatus.CANCELLED
            self.error = "Cancelled before start"
            self.finished_at = now
            return True

    def finalize(self, status: RunStatus, error: str | None = None) -> None:
        with self._lock:
            if self.status.is_terminal:
                raise TerminalStateError(f"Run {self.run_id} is already {self.status.value}")
            self.status = status
            self.error = error
            self.finished_at = datetime.now(UTC)
            self._contexts.clear()

    def attach_context(self, stage: str, ctx: StageContext) -> bool:
        """Register a running stage's context; False once cancel was requested."""
        with self._lock:
            if self._cancel_requested.is_set():
                return False
            self._contexts[stage] = ctx
            return True

    def detach_context(self, stage: str) -> None:
        with self._lock:
            self._contexts.pop(stage, None)

    def request_cancel(self) -> list[StageContext]:
        """Flag the run cancelled; returns the contexts of running stages."""
        with self._lock:
            self._cancel_requested.set()
            return list(self._contexts.values())

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def stage(self, name: str) -> StageResult:
        return self.stages[name]

    def outcome_of(self, name: str) -> StageOutcome:
        return self.stages[name].outcome

    def stages_with(self, outcome: StageOutcome) -> list[str]:
        return [name for name, r in self.stages.items() if r.outcome == outcome]

    @property
    def failed_stages(self) -> list[str]:
        return self.stages_with(StageOutcome.FAILED)

    @property
    def skipped_stages(self) -> list[str]:
        return self.stages_with(StageOutcome.SKIPPED)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def to_dict(self, *, include_output: bool = True) -> dict[str, Any]:
        with self._lock:
            transitions = [t.to_dict() for t in self.transitions]
            status = self.status.value
            finished_at = self.finished_at
        stages = []
        for result in self.stages.values():
            data = result.to_dict()
            if not include_output:
                data.pop("output", None)
            stages.append(data)
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "status": status,
            "parameters": self.parameters.to_dict(),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": finished_at.isoformat() if finished_at else None,
            "duration_seconds": self.duration_seconds,
            "error": self.error,
            "stages": stages,
            "transitions": transitions,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineRun:
        started = data.get("started_at")
        finished = data.get("finished_at")
        return cls(
            run_id=data["run_id"],
            pipeline=data["pipeline"],
            parameters=TriggerParameters.from_mapping(data["parameters"]),
            stages={s["stage"]: StageResult.from_dict(s) for s in data.get("stages", [])},
            status=RunStatus(data["status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            started_at=datetime.fromisoformat(started) if started else None,
            finished_at=datetime.fromisoformat(finished) if finished else None,
            transitions=[StageTransition.from_dict(t) for t in data.get("transitions", [])],
            error=data.get("error"),
        )

    def __repr__(self) -> str:
        return f"PipelineRun({self.run_id!r}, {self.pipeline!r}, {self.status.value})"
