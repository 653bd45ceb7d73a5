"""
Structured error types for rollout-core.

Every failure the engine can report is a :class:`RolloutError` carrying a
category, a retry hint and an :class:`ErrorContext` with the pipeline,
stage, target and release involved. Callers catch the whole family with
one ``except RolloutError`` clause, or a specific subclass when they want
to react to one condition (for example :class:`BusyError` to retry a
deployment later).

Hierarchy::

    RolloutError  (category, retryable, retry_after, context, cause)
      ├── DefinitionError        ── malformed pipeline graph (fatal)
      ├── ValidationError        ── bad trigger parameters (fatal)
      ├── ConfigError            ── invalid settings / inventory / pipeline file
      ├── StageFailure           ── a stage's action failed or timed out
      │     ├── CheckoutError    ── source-control checkout failed
      │     └── CommandError     ── external CLI exited non-zero
      ├── ReleaseStoreError
      │     ├── ConflictError    ── same release id, different checksum
      │     ├── NotFoundError    ── never published or evicted
      │     └── IntegrityError   ── checksum mismatch on fetch
      ├── ArtifactStoreError     ── non-2xx from the HTTP artifact store
      ├── UnknownTargetError     ── unregistered target name
      ├── BusyError              ── deployment already in flight for target
      ├── DeploymentError        ── switch-over failed
      └── RollbackFailure        ── rollback attempt itself failed

Only :class:`DefinitionError` and :class:`ValidationError` escape
``PipelineEngine.run``; everything raised inside a stage is converted to a
terminal stage result at the executor boundary.

Tags:
    errors, exceptions, retry, rollout-core

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure (usually transient)
    NETWORK = "NETWORK"
    STORAGE = "STORAGE"
    PROCESS = "PROCESS"

    # Input errors (never retryable)
    DEFINITION = "DEFINITION"
    VALIDATION = "VALIDATION"
    CONFIG = "CONFIG"

    # Application errors
    STAGE = "STAGE"
    RELEASE = "RELEASE"
    TARGET = "TARGET"
    DEPLOYMENT = "DEPLOYMENT"
    CONCURRENCY = "CONCURRENCY"

    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error for logging.

    Only fields that are set are emitted by :meth:`to_dict`; anything that
    does not have a dedicated field goes into ``metadata``.
    """

    pipeline: str | None = None
    run_id: str | None = None
    stage: str | None = None
    target: str | None = None
    host: str | None = None
    release_id: str | None = None
    url: str | None = None
    http_status: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["pipeline", "run_id", "stage", "target", "host",
                    "release_id", "url", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class RolloutError(Exception):
    """
    Base exception for all rollout-core errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    callers get sensible retry semantics without passing them explicitly.

    Examples:
        >>> error = RolloutError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False

        >>> error = RolloutError("Upload failed").with_context(target="dev")
        >>> error.context.target
        'dev'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> RolloutError:
        """
        Add context to this error (fluent API).

        Usage:
            raise NotFoundError("missing").with_context(release_id="12-abc")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# INPUT ERRORS (fatal, abort before execution)
# =============================================================================


class DefinitionError(RolloutError):
    """Malformed pipeline definition (duplicate name, unknown dep, cycle)."""

    default_category = ErrorCategory.DEFINITION

    def __init__(self, message: str, *, cycle: list[str] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.cycle = cycle or []


class ValidationError(RolloutError):
    """
    Bad trigger parameters.

    Never retryable - the caller must fix the input.
    """

    default_category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class ConfigError(RolloutError):
    """Invalid configuration, inventory or pipeline file."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# STAGE ERRORS (contained at the executor boundary)
# =============================================================================


class StageFailure(RolloutError):
    """A stage's action failed or timed out."""

    default_category = ErrorCategory.STAGE

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        reason: str = "error",
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.stage = stage
        self.reason = reason
        if stage:
            self.context.stage = stage


class CheckoutError(StageFailure):
    """Source-control checkout of a ref failed."""

    def __init__(self, message: str, *, ref: str | None = None, **kwargs: Any):
        super().__init__(message, reason="checkout", **kwargs)
        self.ref = ref


class CommandError(StageFailure):
    """An external command exited with a non-zero status."""

    default_category = ErrorCategory.PROCESS

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        exit_status: int | None = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("reason", "exit_status")
        super().__init__(message, **kwargs)
        self.command = command or []
        self.exit_status = exit_status


# =============================================================================
# RELEASE STORE ERRORS
# =============================================================================


class ReleaseStoreError(RolloutError):
    """Release store error."""

    default_category = ErrorCategory.RELEASE


class ConflictError(ReleaseStoreError):
    """A release id was re-published with a different checksum."""

    def __init__(self, release_id: str, existing: str, incoming: str):
        self.release_id = release_id
        self.existing_checksum = existing
        self.incoming_checksum = incoming
        super().__init__(
            f"Release {release_id} already published with checksum {existing[:12]}, "
            f"refusing different checksum {incoming[:12]}"
        )
        self.context.release_id = release_id


class NotFoundError(ReleaseStoreError):
    """A release was never published or has been evicted."""

    def __init__(self, release_id: str, message: str | None = None):
        self.release_id = release_id
        super().__init__(message or f"Release not found: {release_id}")
        self.context.release_id = release_id


class IntegrityError(ReleaseStoreError):
    """Fetched artifact bytes do not match the recorded checksum."""

    def __init__(self, release_id: str, expected: str, actual: str):
        self.release_id = release_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for {release_id}: expected {expected[:12]}, got {actual[:12]}"
        )
        self.context.release_id = release_id


class ArtifactStoreError(RolloutError):
    """The HTTP artifact store answered with a non-2xx status.

    5xx responses are transient and retryable; 4xx are not.
    """

    default_category = ErrorCategory.NETWORK

    def __init__(self, message: str, *, status_code: int | None = None, url: str | None = None, **kwargs: Any):
        kwargs.setdefault("retryable", status_code is None or status_code >= 500)
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.url = url
        self.context.url = url
        self.context.http_status = status_code


# =============================================================================
# TARGET / DEPLOYMENT ERRORS
# =============================================================================


class UnknownTargetError(RolloutError):
    """Target name is not registered."""

    default_category = ErrorCategory.TARGET

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown target: {name}")
        self.context.target = name


class BusyError(RolloutError):
    """A deployment or rollback is already in progress for the target.

    Retryable: the caller may try again once the in-flight one finishes.
    """

    default_category = ErrorCategory.CONCURRENCY
    default_retryable = True

    def __init__(self, target: str, message: str | None = None):
        self.target = target
        super().__init__(message or f"Deployment already in progress for target: {target}")
        self.context.target = target


Busy = BusyError


class DeploymentError(RolloutError):
    """Switch-over of a release onto a target failed."""

    default_category = ErrorCategory.DEPLOYMENT


class RollbackFailure(DeploymentError):
    """Restoring the previously-active release failed.

    Reported on the deployment outcome and logged for operator attention;
    never retried automatically.
    """


class TerminalStateError(RolloutError):
    """Attempt to change a stage result or run that already reached a terminal state."""


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, RolloutError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, RolloutError):
        return error.category
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorCategory.NETWORK
    if isinstance(error, OSError):
        return ErrorCategory.STORAGE
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "RolloutError",
    "DefinitionError",
    "ValidationError",
    "ConfigError",
    "StageFailure",
    "CheckoutError",
    "CommandError",
    "ReleaseStoreError",
    "ConflictError",
    "NotFoundError",
    "IntegrityError",
    "ArtifactStoreError",
    "UnknownTargetError",
    "BusyError",
    "Busy",
    "DeploymentError",
    "RollbackFailure",
    "TerminalStateError",
    "is_retryable",
    "categorize_error",
]
