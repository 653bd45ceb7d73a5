"""
Pipeline definition — a named DAG of stages.

The definition is the **blueprint**: which stages exist, what each waits
for, and the defaults applied to every run. It validates itself on
construction (unique names, known dependencies, no self-loops, no cycles)
and again when handed to the engine, so a malformed graph is rejected
with :class:`~rollout.core.errors.DefinitionError` before any stage runs.

Example::

    definition = PipelineDefinition(
        name="web-release",
        stages=[
            StageSpec("build", ShellAction("make build")),
            StageSpec("lint", ShellAction("make lint")),
            StageSpec("test", ShellAction("make test")),
            StageSpec("publish", PublishAction(store, "web", "dist"),
                      depends_on=("build", "lint", "test")),
        ],
        defaults={"timeout_seconds": 900},
    )
    definition.topological_order()
    # ['build', 'lint', 'test', 'publish']

Tags:
    rollout-core, orchestration, pipeline, dag, validation
"""

from __future__ import annotations

import math
from collections import defaultdict, deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from rollout.core.errors import DefinitionError
from rollout.orchestration.stage_types import StageSpec

DEFAULT_KEYS = frozenset({"timeout_seconds", "fail_fast", "variables"})


@dataclass
class PipelineDefinition:
    """
    A named pipeline with ordered stages.

    Attributes:
        name: Pipeline name (e.g., "web-release")
        stages: Stage specs in declaration order
        description: Human-readable description
        defaults: Values applied to every run; recognised keys are
            ``timeout_seconds``, ``fail_fast`` and ``variables``
    """

    name: str
    stages: list[StageSpec]
    description: str = ""
    defaults: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.stages = list(self.stages)
        self.validate()

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self) -> None:
        """Check the stage graph.

        Raises:
            DefinitionError: On a duplicate name, unknown or self
                dependency, a dependency cycle, or malformed defaults.
        """
        if not self.name:
            raise DefinitionError("Pipeline name is required")
        self._validate_names()
        self._validate_dependencies()
        self._validate_no_cycles()
        self._validate_defaults()

    def _validate_defaults(self) -> None:
        """Type-check ``defaults`` and normalise ``timeout_seconds`` to a float."""
        if not isinstance(self.defaults, Mapping):
            raise DefinitionError(f"Pipeline '{self.name}' defaults must be a mapping")
        defaults = dict(self.defaults)
        unknown = set(defaults) - DEFAULT_KEYS
        if unknown:
            raise DefinitionError(
                f"Pipeline '{self.name}' defaults has unknown keys: {sorted(unknown)}"
            ).with_context(pipeline=self.name)

        timeout = defaults.get("timeout_seconds")
        if timeout is not None:
            try:
                if isinstance(timeout, bool):
                    raise ValueError(timeout)
                timeout = float(timeout)
            except (TypeError, ValueError):
                timeout = None
            if timeout is None or not math.isfinite(timeout) or timeout <= 0:
                raise DefinitionError(
                    f"Pipeline '{self.name}' timeout_seconds must be a positive number, "
                    f"got {defaults['timeout_seconds']!r}"
                ).with_context(pipeline=self.name)
            defaults["timeout_seconds"] = timeout

        if "fail_fast" in defaults and not isinstance(defaults["fail_fast"], bool):
            raise DefinitionError(
                f"Pipeline '{self.name}' fail_fast must be true or false, got {defaults['fail_fast']!r}"
            ).with_context(pipeline=self.name)

        variables = defaults.get("variables")
        if variables is not None and not isinstance(variables, Mapping):
            raise DefinitionError(
                f"Pipeline '{self.name}' variables must be a mapping"
            ).with_context(pipeline=self.name)
        self.defaults = defaults

    def _validate_names(self) -> None:
        seen: set[str] = set()
        for stage in self.stages:
            if not stage.name:
                raise DefinitionError(f"Pipeline '{self.name}' has a stage without a name")
            if stage.name in seen:
                raise DefinitionError(f"Duplicate stage name: {stage.name}").with_context(pipeline=self.name)
            seen.add(stage.name)

    def _validate_dependencies(self) -> None:
        names = {s.name for s in self.stages}
        for stage in self.stages:
            for dep in stage.depends_on:
                if dep == stage.name:
                    raise DefinitionError(
                        f"Stage '{stage.name}' depends on itself", cycle=[stage.name, stage.name]
                    ).with_context(pipeline=self.name, stage=stage.name)
                if dep not in names:
                    raise DefinitionError(
                        f"Stage '{stage.name}' depends on unknown stage: '{dep}'"
                    ).with_context(pipeline=self.name, stage=stage.name)

    def _validate_no_cycles(self) -> None:
        """Kahn's algorithm; on failure report one concrete cycle."""
        order = self._kahn()
        if len(order) == len(self.stages):
            return
        remaining = {s.name for s in self.stages} - set(order)
        cycle = self._find_cycle(remaining)
        raise DefinitionError(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            cycle=cycle,
        ).with_context(pipeline=self.name)

    def _kahn(self) -> list[str]:
        in_degree: dict[str, int] = {s.name: 0 for s in self.stages}
        adjacency: dict[str, list[str]] = defaultdict(list)
        for stage in self.stages:
            for dep in stage.depends_on:
                adjacency[dep].append(stage.name)
                in_degree[stage.name] += 1

        queue: deque[str] = deque(name for name, deg in in_degree.items() if deg == 0)
        result: list[str] = []
        while queue:
            node = queue.popleft()
            result.append(node)
            for neighbor in adjacency[node]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)
        return result

    def _find_cycle(self, candidates: set[str]) -> list[str]:
        deps = {s.name: [d for d in s.depends_on if d in candidates] for s in self.stages if s.name in candidates}
        start = next(s.name for s in self.stages if s.name in candidates)
        path: list[str] = []
        index: dict[str, int] = {}
        node = start
        # Every remaining node has a remaining dependency, so this walk must revisit one.
        while node not in index:
            index[node] = len(path)
            path.append(node)
            node = deps[node][0]
        return path[index[node]:] + [node]

    # =========================================================================
    # Graph queries
    # =========================================================================

    def topological_order(self) -> list[str]:
        """Stage names in dependency order, ties broken by declaration order."""
        return self._kahn()

    def dependents(self) -> dict[str, list[str]]:
        """Adjacency list: stage -> stages that depend on it."""
        graph: dict[str, list[str]] = defaultdict(list)
        for stage in self.stages:
            for dep in stage.depends_on:
                graph[dep].append(stage.name)
        return dict(graph)

    def get_stage(self, name: str) -> StageSpec | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    @property
    def fail_fast(self) -> bool:
        return self.defaults.get("fail_fast", False)

    @property
    def default_timeout(self) -> float | None:
        return self.defaults.get("timeout_seconds")

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "stages": [s.to_dict() for s in self.stages],
        }
        if self.description:
            result["description"] = self.description
        if self.defaults:
            result["defaults"] = dict(self.defaults)
        return result

    def __repr__(self) -> str:
        return f"PipelineDefinition({self.name!r}, stages={len(self.stages)})"
