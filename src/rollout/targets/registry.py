"""Target Registry — named environments resolving to hosts.

A target is either a single :class:`Host` or a group whose members are
hosts and other groups. ``resolve`` expands a group depth-first in
declaration order, keeping the first occurrence of each host, so the same
registry always yields the same host tuple.

Inventory file format (YAML)::

    defaults:
      deploy_root: /srv/web
    hosts:
      web1:
        address: 10.0.0.11
        vars: {http_port: "8080"}
      web2:
        address: 10.0.0.12
        deploy_root: /opt/web
    groups:
      web: [web1, web2]
      production:
        members: [web]
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from rollout.core.errors import ConfigError, UnknownTargetError
from rollout.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Host:
    """
    One machine a release is deployed to.

    Attributes:
        name: Inventory name
        address: Hostname or IP the transport connects to
        variables: Per-host variables for host automation
        deploy_root: Directory holding ``releases/`` and ``current``
    """

    name: str
    address: str = ""
    variables: Mapping[str, str] = field(default_factory=dict, compare=False, hash=False)
    deploy_root: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address or self.name,
            "variables": dict(self.variables),
            "deploy_root": self.deploy_root,
        }


@dataclass(frozen=True)
class Target:
    """A registered target name: one host, or a group of members."""

    name: str
    members: tuple[str, ...] = ()
    is_group: bool = False


class TargetRegistry:
    """
    Lookup of target names to hosts.

    Example:
        >>> registry = TargetRegistry()
        >>> registry.add_host(Host("web1", "10.0.0.11"))
        >>> registry.add_host(Host("web2", "10.0.0.12"))
        >>> registry.add_group("web", ["web1", "web2"])
        >>> [h.name for h in registry.resolve("web")]
        ['web1', 'web2']
    """

    def __init__(self):
        self._hosts: dict[str, Host] = {}
        self._groups: dict[str, tuple[str, ...]] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # Registration
    # =========================================================================

    def add_host(self, host: Host) -> None:
        with self._lock:
            if host.name in self._groups:
                raise ConfigError(f"Host name clashes with group: {host.name}")
            self._hosts[host.name] = host

    def add_group(self, name: str, members: Iterable[str]) -> None:
        """Register a group; members may be hosts or groups (forward references allowed).

        Raises:
            ConfigError: On a name clash or if the group would form a cycle.
        """
        members = tuple(members)
        with self._lock:
            if name in self._hosts:
                raise ConfigError(f"Group name clashes with host: {name}")
            if len(set(members)) != len(members):
                raise ConfigError(f"Group '{name}' lists a member twice")
            groups = {**self._groups, name: members}
            cycle = _find_cycle(name, groups)
            if cycle:
                raise ConfigError(f"Group cycle detected: {' -> '.join(cycle)}")
            self._groups[name] = members

    def validate(self) -> None:
        """Every group member must be registered."""
        with self._lock:
            for group, members in self._groups.items():
                for member in members:
                    if member not in self._hosts and member not in self._groups:
                        raise ConfigError(f"Group '{group}' references unknown member: {member}")

    # =========================================================================
    # Lookup
    # =========================================================================

    def resolve(self, name: str) -> tuple[Host, ...]:
        """Hosts of a target, depth-first in declaration order, de-duplicated.

        Raises:
            UnknownTargetError: If ``name`` (or a member) is not registered.
        """
        with self._lock:
            if name not in self._hosts and name not in self._groups:
                raise UnknownTargetError(name)
            seen: dict[str, Host] = {}
            self._expand(name, seen)
            return tuple(seen.values())

    def _expand(self, name: str, seen: dict[str, Host]) -> None:
        host = self._hosts.get(name)
        if host is not None:
            seen.setdefault(name, host)
            return
        members = self._groups.get(name)
        if members is None:
            raise UnknownTargetError(name)
        for member in members:
            self._expand(member, seen)

    def get(self, name: str) -> Target:
        with self._lock:
            if name in self._groups:
                return Target(name=name, members=self._groups[name], is_group=True)
            if name in self._hosts:
                return Target(name=name)
        raise UnknownTargetError(name)

    def host(self, name: str) -> Host:
        try:
            return self._hosts[name]
        except KeyError:
            raise UnknownTargetError(name) from None

    def names(self) -> list[str]:
        """Registered target names: groups first, then hosts, each in registration order."""
        with self._lock:
            return list(self._groups) + list(self._hosts)

    def __contains__(self, name: object) -> bool:
        return name in self._hosts or name in self._groups

    def __len__(self) -> int:
        return len(self._hosts) + len(self._groups)


def _find_cycle(start: str, groups: Mapping[str, tuple[str, ...]]) -> list[str]:
    """Path of a cycle through ``start`` in the group graph, or []."""
    stack: list[tuple[str, list[str]]] = [(start, [start])]
    while stack:
        node, path = stack.pop()
        for member in reversed(groups.get(node, ())):
            if member == start:
                return path + [start]
            if member in groups and member not in path:
                stack.append((member, path + [member]))
    return []


# =============================================================================
# Inventory loading
# =============================================================================


def load_inventory(path: Path | str) -> TargetRegistry:
    """Build a registry from a YAML inventory file.

    Raises:
        ConfigError: Unreadable file, malformed structure, unknown group
            members or group cycles.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read inventory {path}: {e}", cause=e) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in inventory {path}: {e}", cause=e) from e
    registry = inventory_from_dict(data)
    logger.debug("inventory.loaded", path=str(path), targets=len(registry))
    return registry


def inventory_from_dict(data: Mapping[str, Any]) -> TargetRegistry:
    if not isinstance(data, Mapping):
        raise ConfigError("Inventory must be a mapping")
    defaults = data.get("defaults") or {}
    hosts = data.get("hosts") or {}
    groups = data.get("groups") or {}
    if not isinstance(hosts, Mapping) or not isinstance(groups, Mapping):
        raise ConfigError("Inventory 'hosts' and 'groups' must be mappings")

    registry = TargetRegistry()
    for name, spec in hosts.items():
        spec = spec or {}
        if not isinstance(spec, Mapping):
            raise ConfigError(f"Host '{name}' must be a mapping")
        variables = {**(defaults.get("vars") or {}), **(spec.get("vars") or {})}
        registry.add_host(
            Host(
                name=str(name),
                address=str(spec.get("address", name)),
                variables={str(k): str(v) for k, v in variables.items()},
                deploy_root=spec.get("deploy_root", defaults.get("deploy_root")),
            )
        )
    for name, spec in groups.items():
        members = spec.get("members") if isinstance(spec, Mapping) else spec
        if not isinstance(members, list):
            raise ConfigError(f"Group '{name}' members must be a list")
        registry.add_group(str(name), [str(m) for m in members])
    registry.validate()
    return registry
