"""
Stage types — the building blocks of a pipeline definition.

A :class:`StageSpec` declares **what** a stage runs (its action), what it
waits for (``depends_on``), whether it runs at all for a given trigger
(``condition``), and how long it may take (``timeout_seconds``). It never
says how it is run; that is the job of the
:class:`~rollout.orchestration.stage_executor.StageExecutor`.

Actions are plain callables taking a
:class:`~rollout.orchestration.context.StageContext`, or objects with a
``run(ctx)`` method. Their return value is coerced through
:meth:`ActionResult.from_value`, so a function that returns a dict, a
bool or ``None`` works without importing anything from this package.

Example::

    from rollout.orchestration import StageSpec, only_on_branch

    stages = [
        StageSpec("build", ShellAction("make build")),
        StageSpec("scan", ScanAction("web"), depends_on=("build",)),
        StageSpec(
            "deploy",
            DeployAction(controller, store),
            depends_on=("scan",),
            condition=only_on_branch("main", "release/*"),
            timeout_seconds=300,
        ),
    ]

Tags:
    rollout-core, orchestration, stage, action, retry, condition
"""

from __future__ import annotations

import fnmatch
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from rollout.orchestration.context import StageContext, TriggerParameters


class StageOutcome(str, Enum):
    """Lifecycle of a single stage within a run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StageOutcome.SUCCEEDED, StageOutcome.FAILED, StageOutcome.SKIPPED)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Opt-in retry configuration for a stage.

    Stages are not retried unless a policy is attached. Delays grow by
    ``backoff_multiplier`` per attempt and are capped at
    ``max_delay_seconds``.
    """

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 60.0
    retry_on_timeout: bool = False

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay before attempt ``attempt + 1`` (``attempt`` is 1-based)."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay_seconds": self.initial_delay_seconds,
            "backoff_multiplier": self.backoff_multiplier,
            "max_delay_seconds": self.max_delay_seconds,
            "retry_on_timeout": self.retry_on_timeout,
        }


@dataclass
class ActionResult:
    """
    Result envelope returned by a stage action.

    Attributes:
        success: Whether the action completed successfully
        output: Data made available to downstream stages under this stage's name
        exit_status: Exit status of the underlying process, if any
        error: Error message if success=False
    """

    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    exit_status: int | None = None
    error: str | None = None

    def __post_init__(self):
        if not self.success and not self.error:
            self.error = "Action failed without error message"

    @classmethod
    def ok(cls, output: dict[str, Any] | None = None, exit_status: int | None = 0) -> ActionResult:
        return cls(success=True, output=output or {}, exit_status=exit_status)

    @classmethod
    def fail(
        cls,
        error: str,
        exit_status: int | None = None,
        output: dict[str, Any] | None = None,
    ) -> ActionResult:
        return cls(success=False, output=output or {}, exit_status=exit_status, error=error)

    @classmethod
    def from_value(cls, value: Any) -> ActionResult:
        """Coerce an arbitrary return value into an ActionResult.

        ============ =====================================================
        Type         Behaviour
        ============ =====================================================
        ActionResult Returned as-is.
        None         ``ok()`` with empty output.
        dict         ``ok(output=value)``
        bool         ``ok()`` if True, ``fail("returned False")`` if False.
        int          Treated as an exit status: 0 is ok, anything else fails.
        other        ``ok(output={"result": value})``
        ============ =====================================================
        """
        if isinstance(value, ActionResult):
            return value
        if value is None:
            return cls.ok()
        if isinstance(value, dict):
            return cls.ok(output=value)
        if isinstance(value, bool):
            return cls.ok() if value else cls.fail("Action returned False")
        if isinstance(value, int):
            if value == 0:
                return cls.ok(exit_status=0)
            return cls.fail(f"Action exited with status {value}", exit_status=value)
        return cls.ok(output={"result": value})


@runtime_checkable
class Action(Protocol):
    """Protocol for stage actions implemented as objects.

    Plain callables ``fn(ctx)`` are accepted as well.
    """

    def run(self, ctx: StageContext) -> Any:
        ...


Condition = Callable[["TriggerParameters"], bool]


@dataclass
class StageSpec:
    """
    One stage in a pipeline definition.

    Attributes:
        name: Unique stage name within the pipeline
        action: Callable ``fn(ctx)`` or object with ``run(ctx)``
        depends_on: Names of stages that must succeed first
        condition: Predicate on the trigger parameters; False means skipped
        timeout_seconds: Hard timeout (None uses the executor default)
        retry: Opt-in retry policy (None means a single attempt)
        description: Human-readable description
    """

    name: str
    action: Callable[..., Any] | Action
    depends_on: tuple[str, ...] = ()
    condition: Condition | None = None
    timeout_seconds: float | None = None
    retry: RetryPolicy | None = None
    description: str = ""

    def __post_init__(self):
        if isinstance(self.depends_on, str):
            self.depends_on = (self.depends_on,)
        else:
            self.depends_on = tuple(self.depends_on)
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"Stage '{self.name}' timeout must be positive")

    def should_run(self, parameters: TriggerParameters) -> bool:
        """Evaluate the condition predicate (no condition means always)."""
        if self.condition is None:
            return True
        return bool(self.condition(parameters))

    def invoke(self, ctx: StageContext) -> ActionResult:
        """Run the action once and coerce its return value."""
        if isinstance(self.action, Action):
            raw = self.action.run(ctx)
        else:
            raw = self.action(ctx)
        return ActionResult.from_value(raw)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name, "action": _action_name(self.action)}
        if self.depends_on:
            result["depends_on"] = list(self.depends_on)
        if self.timeout_seconds is not None:
            result["timeout_seconds"] = self.timeout_seconds
        if self.retry is not None:
            result["retry"] = self.retry.to_dict()
        if self.condition is not None:
            result["condition"] = getattr(self.condition, "description", _action_name(self.condition))
        if self.description:
            result["description"] = self.description
        return result

    def __repr__(self) -> str:
        deps = f", depends_on={list(self.depends_on)}" if self.depends_on else ""
        return f"StageSpec({self.name!r}{deps})"


def _action_name(obj: Any) -> str:
    if hasattr(obj, "describe"):
        return obj.describe()
    name = getattr(obj, "__qualname__", None) or type(obj).__name__
    return name


# =============================================================================
# Condition helpers
# =============================================================================


def _describe(predicate: Condition, description: str) -> Condition:
    predicate.description = description  # type: ignore[attr-defined]
    return predicate


def only_on_branch(*patterns: str) -> Condition:
    """Run only when the source ref matches one of the glob patterns."""

    def predicate(params: TriggerParameters) -> bool:
        return any(fnmatch.fnmatchcase(params.ref, p) for p in patterns)

    return _describe(predicate, f"branch in {list(patterns)}")


def only_for_target(*names: str) -> Condition:
    """Run only when the pipeline targets one of the named environments."""

    def predicate(params: TriggerParameters) -> bool:
        return params.target in names

    return _describe(predicate, f"target in {list(names)}")


def all_of(*conditions: Condition) -> Condition:
    """Combine predicates; all must hold."""

    def predicate(params: TriggerParameters) -> bool:
        return all(c(params) for c in conditions)

    parts = [getattr(c, "description", "?") for c in conditions]
    return _describe(predicate, " and ".join(parts))
