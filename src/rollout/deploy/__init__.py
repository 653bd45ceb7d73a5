"""
Deployment — switching targets between releases.
"""

from rollout.deploy.controller import DeploymentController
from rollout.deploy.ledger import DeploymentLedger
from rollout.deploy.models import (
    DeploymentOutcome,
    DeploymentRecord,
    DeployState,
    OutcomeStatus,
    ReleaseEntry,
)
from rollout.deploy.transport import CommandReloader, HostTransport, LocalTransport, NullReloader, Reloader

__all__ = [
    "CommandReloader",
    "DeployState",
    "DeploymentController",
    "DeploymentLedger",
    "DeploymentOutcome",
    "DeploymentRecord",
    "HostTransport",
    "LocalTransport",
    "NullReloader",
    "OutcomeStatus",
    "ReleaseEntry",
    "Reloader",
]
