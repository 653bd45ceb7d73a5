"""Core primitives shared by every rollout-core component: errors, logging,
checksums, credentials and settings."""

from rollout.core.credentials import NO_CREDENTIALS, Credentials
from rollout.core.errors import (
    ArtifactStoreError,
    Busy,
    BusyError,
    CheckoutError,
    CommandError,
    ConfigError,
    ConflictError,
    DefinitionError,
    DeploymentError,
    ErrorCategory,
    ErrorContext,
    IntegrityError,
    NotFoundError,
    ReleaseStoreError,
    RollbackFailure,
    RolloutError,
    StageFailure,
    TerminalStateError,
    UnknownTargetError,
    ValidationError,
    categorize_error,
    is_retryable,
)
from rollout.core.logging import LogContext, configure_logging, get_logger

__all__ = [
    "ArtifactStoreError",
    "Busy",
    "BusyError",
    "CheckoutError",
    "CommandError",
    "ConfigError",
    "ConflictError",
    "Credentials",
    "DefinitionError",
    "DeploymentError",
    "ErrorCategory",
    "ErrorContext",
    "IntegrityError",
    "LogContext",
    "NO_CREDENTIALS",
    "NotFoundError",
    "ReleaseStoreError",
    "RollbackFailure",
    "RolloutError",
    "StageFailure",
    "TerminalStateError",
    "UnknownTargetError",
    "ValidationError",
    "categorize_error",
    "configure_logging",
    "get_logger",
    "is_retryable",
]
