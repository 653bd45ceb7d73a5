"""
YAML pipeline definitions.

Format::

    name: web-release
    description: Build, scan, publish and deploy the web app
    defaults:
      timeout_seconds: 900
      fail_fast: false
      variables: {APP: web}
    stages:
      - name: build
        run: make build
      - name: lint
        run: make lint
      - name: scan
        uses: scan
        needs: [build]
      - name: publish
        uses: publish
        needs: [scan, lint]
      - name: deploy
        uses: deploy
        needs: [publish]
        when:
          branch: [main, "release/*"]
          target: [dev, staging, prod]
        timeout: 300
        retry: {max_attempts: 2, initial_delay_seconds: 10}

``run:`` is a shell command (``cwd:`` and ``env:`` optional). ``uses:``
names an entry of the action registry passed to :func:`load_pipeline`.
An :class:`ActionFactory` entry is called with the ``with:`` mapping as
keyword arguments and must return the action; any other entry is used
as-is.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import yaml

from rollout.core.errors import ConfigError, DefinitionError
from rollout.core.logging import get_logger
from rollout.orchestration.pipeline import PipelineDefinition
from rollout.orchestration.stage_types import Condition, RetryPolicy, StageSpec, all_of, only_for_target, only_on_branch
from rollout.pipeline.actions import ShellAction

logger = get_logger(__name__)

_STAGE_KEYS = {"name", "run", "uses", "with", "needs", "when", "timeout", "retry", "cwd", "env", "description"}


def load_pipeline(
    path: Path | str,
    actions: Mapping[str, Any] | None = None,
    *,
    name: str | None = None,
) -> PipelineDefinition:
    """Read a pipeline definition file.

    Args:
        path: YAML file
        actions: Registry for ``uses:`` references
        name: Overrides the file's ``name`` (default: file stem)

    Raises:
        ConfigError: Unreadable file or invalid YAML
        DefinitionError: Malformed stages, unknown actions, bad graph
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except OSError as e:
        raise ConfigError(f"Cannot read pipeline {path}: {e}", cause=e) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in pipeline {path}: {e}", cause=e) from e
    if not isinstance(data, Mapping):
        raise DefinitionError(f"Pipeline file {path} must contain a mapping")

    definition = pipeline_from_dict(data, actions, name=name or data.get("name") or path.stem)
    logger.debug("pipeline.loaded", path=str(path), pipeline=definition.name, stages=len(definition.stages))
    return definition


def pipeline_from_dict(
    data: Mapping[str, Any],
    actions: Mapping[str, Any] | None = None,
    *,
    name: str | None = None,
) -> PipelineDefinition:
    actions = actions or {}
    pipeline_name = name or data.get("name")
    if not pipeline_name:
        raise DefinitionError("Pipeline name is required")

    raw_stages = data.get("stages")
    if isinstance(raw_stages, Mapping):
        raw_stages = [{"name": key, **(value or {})} for key, value in raw_stages.items()]
    if not isinstance(raw_stages, list) or not raw_stages:
        raise DefinitionError(f"Pipeline '{pipeline_name}' must define a non-empty list of stages")

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, Mapping):
        raise DefinitionError(f"Pipeline '{pipeline_name}' defaults must be a mapping")

    stages = [_stage_from_dict(pipeline_name, raw, actions) for raw in raw_stages]
    return PipelineDefinition(
        name=str(pipeline_name),
        stages=stages,
        description=str(data.get("description") or ""),
        defaults=dict(defaults),
    )


def _stage_from_dict(pipeline: str, raw: Any, actions: Mapping[str, Any]) -> StageSpec:
    if not isinstance(raw, Mapping) or not raw.get("name"):
        raise DefinitionError(f"Pipeline '{pipeline}': every stage needs a name")
    name = str(raw["name"])
    unknown = set(raw) - _STAGE_KEYS
    if unknown:
        raise DefinitionError(f"Stage '{name}' has unknown keys: {sorted(unknown)}").with_context(
            pipeline=pipeline, stage=name
        )
    if ("run" in raw) == ("uses" in raw):
        raise DefinitionError(f"Stage '{name}' needs exactly one of 'run' or 'uses'").with_context(
            pipeline=pipeline, stage=name
        )

    if "run" in raw:
        action: Any = ShellAction(raw["run"], cwd=raw.get("cwd"), env={str(k): str(v) for k, v in
                                                                      (raw.get("env") or {}).items()})
    else:
        action = _resolve_action(pipeline, name, raw["uses"], raw.get("with"), actions)

    needs = raw.get("needs") or ()
    if isinstance(needs, str):
        needs = (needs,)

    try:
        return StageSpec(
            name=name,
            action=action,
            depends_on=tuple(str(n) for n in needs),
            condition=_condition(name, raw.get("when")),
            timeout_seconds=float(raw["timeout"]) if raw.get("timeout") is not None else None,
            retry=RetryPolicy(**raw["retry"]) if raw.get("retry") else None,
            description=str(raw.get("description") or ""),
        )
    except (TypeError, ValueError) as e:
        raise DefinitionError(f"Stage '{name}' is invalid: {e}", cause=e).with_context(
            pipeline=pipeline, stage=name
        ) from e


class ActionFactory:
    """
    Registry entry that builds its action from the stage's ``with:`` block.

    Entries that are not factories are used as-is and take no ``with:``.
    """

    def __init__(self, build: Callable[..., Any]):
        self.build = build

    def __call__(self, **params: Any) -> Any:
        return self.build(**params)

    def __repr__(self) -> str:
        return f"ActionFactory({getattr(self.build, '__name__', self.build)!r})"


def _resolve_action(pipeline: str, stage: str, uses: str, params: Any, actions: Mapping[str, Any]) -> Any:
    if uses not in actions:
        raise DefinitionError(
            f"Stage '{stage}' uses unknown action '{uses}' (known: {sorted(actions)})"
        ).with_context(pipeline=pipeline, stage=stage)
    entry = actions[uses]
    if params is not None and not isinstance(params, Mapping):
        raise DefinitionError(f"Stage '{stage}': 'with' must be a mapping").with_context(
            pipeline=pipeline, stage=stage
        )
    if not isinstance(entry, ActionFactory):
        if params:
            raise DefinitionError(f"Stage '{stage}': action '{uses}' takes no 'with' parameters").with_context(
                pipeline=pipeline, stage=stage
            )
        return entry
    try:
        return entry(**(params or {}))
    except (TypeError, ValueError) as e:
        raise DefinitionError(f"Stage '{stage}': cannot build action '{uses}': {e}", cause=e).with_context(
            pipeline=pipeline, stage=stage
        ) from e


def _condition(stage: str, when: Any) -> Condition | None:
    if not when:
        return None
    if not isinstance(when, Mapping) or set(when) - {"branch", "target"}:
        raise DefinitionError(f"Stage '{stage}': 'when' supports only 'branch' and 'target'")
    conditions: list[Condition] = []
    if when.get("branch"):
        branches = when["branch"]
        conditions.append(only_on_branch(*([branches] if isinstance(branches, str) else branches)))
    if when.get("target"):
        targets = when["target"]
        conditions.append(only_for_target(*([targets] if isinstance(targets, str) else targets)))
    if not conditions:
        return None
    return conditions[0] if len(conditions) == 1 else all_of(*conditions)
