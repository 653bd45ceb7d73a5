"""
Action registry for ``uses:`` references in pipeline files.

Every built-in entry is an :class:`~rollout.pipeline.loader.ActionFactory`
so that a stage can configure it through ``with:``::

    - name: scan
      uses: scan
      with: {project_key: web, blocking: false}
"""

from __future__ import annotations

from functools import partial
from typing import Any

from rollout.deploy.controller import DeploymentController
from rollout.pipeline.actions import (
    CheckoutAction,
    DeployAction,
    HostAutomationAction,
    PublishAction,
    ScanAction,
    ShellAction,
    VerifyAction,
)
from rollout.pipeline.loader import ActionFactory
from rollout.release.store import ReleaseStore


def builtin_actions(
    store: ReleaseStore | None = None,
    controller: DeploymentController | None = None,
) -> dict[str, ActionFactory]:
    """Registry of the built-in actions.

    ``publish`` needs a store and ``deploy`` a controller; each is only
    registered when its collaborator is given.
    """
    actions: dict[str, ActionFactory] = {
        "checkout": ActionFactory(CheckoutAction),
        "shell": ActionFactory(ShellAction),
        "scan": ActionFactory(ScanAction),
        "ansible": ActionFactory(HostAutomationAction),
        "verify": ActionFactory(VerifyAction),
    }
    if store is not None:
        actions["publish"] = ActionFactory(partial(PublishAction, store))
    if controller is not None:
        actions["deploy"] = ActionFactory(partial(DeployAction, controller, store))
    return actions

