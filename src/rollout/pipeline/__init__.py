"""
Built-in actions and YAML pipeline loading.
"""

from rollout.pipeline.actions import (
    CheckoutAction,
    DeployAction,
    HostAutomationAction,
    PublishAction,
    ScanAction,
    ShellAction,
    VerifyAction,
    stage_environment,
)
from rollout.pipeline.loader import ActionFactory, load_pipeline, pipeline_from_dict
from rollout.pipeline.registry import builtin_actions

__all__ = [
    "ActionFactory",
    "CheckoutAction",
    "DeployAction",
    "HostAutomationAction",
    "PublishAction",
    "ScanAction",
    "ShellAction",
    "VerifyAction",
    "builtin_actions",
    "load_pipeline",
    "pipeline_from_dict",
    "stage_environment",
]
