"""
Orchestration — pipeline definitions, stage execution and runs.

Public surface::

    from rollout.orchestration import (
        PipelineDefinition, StageSpec, RetryPolicy,
        PipelineEngine, PipelineRun, RunStatus,
        only_on_branch, only_for_target,
    )
"""

from rollout.orchestration.context import OutputBuffer, StageContext, TriggerParameters
from rollout.orchestration.engine import PipelineEngine
from rollout.orchestration.history import RunHistory
from rollout.orchestration.pipeline import PipelineDefinition
from rollout.orchestration.run import PipelineRun, RunStatus, StageTransition
from rollout.orchestration.stage_executor import StageExecutor
from rollout.orchestration.stage_result import FailReason, SkipReason, StageResult
from rollout.orchestration.stage_types import (
    Action,
    ActionResult,
    Condition,
    RetryPolicy,
    StageOutcome,
    StageSpec,
    all_of,
    only_for_target,
    only_on_branch,
)

__all__ = [
    "Action",
    "ActionResult",
    "Condition",
    "FailReason",
    "OutputBuffer",
    "PipelineDefinition",
    "PipelineEngine",
    "PipelineRun",
    "RetryPolicy",
    "RunHistory",
    "RunStatus",
    "SkipReason",
    "StageContext",
    "StageExecutor",
    "StageOutcome",
    "StageResult",
    "StageSpec",
    "StageTransition",
    "TriggerParameters",
    "all_of",
    "only_for_target",
    "only_on_branch",
]
