"""
Wiring of the long-lived components from settings.

The CLI and the API factory are the only callers; everything below them
receives its collaborators as constructor arguments.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rollout.core.settings import RolloutSettings
from rollout.deploy.controller import DeploymentController
from rollout.orchestration.engine import PipelineEngine
from rollout.pipeline.registry import builtin_actions
from rollout.release.store import ReleaseStore
from rollout.targets.registry import TargetRegistry, load_inventory


@dataclass
class Services:
    settings: RolloutSettings
    store: ReleaseStore
    registry: TargetRegistry
    controller: DeploymentController
    engine: PipelineEngine
    actions: dict[str, Any] = field(default_factory=dict)


def load_registry(settings: RolloutSettings, inventory: Path | str | None = None) -> TargetRegistry:
    """Inventory from ``inventory`` or ``settings.inventory_file``; empty if neither is set."""
    path = inventory or settings.inventory_file
    if path is None:
        return TargetRegistry()
    return load_inventory(path)


def build_services(
    settings: RolloutSettings,
    *,
    inventory: Path | str | None = None,
    engine: PipelineEngine | None = None,
) -> Services:
    store = ReleaseStore.from_settings(settings)
    registry = load_registry(settings, inventory)
    controller = DeploymentController.from_settings(settings, store, registry)
    return Services(
        settings=settings,
        store=store,
        registry=registry,
        controller=controller,
        engine=engine or PipelineEngine.from_settings(settings),
        actions=builtin_actions(store, controller),
    )
