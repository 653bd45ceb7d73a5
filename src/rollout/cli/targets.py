"""
CLI: ``rollout targets`` — inspect the inventory.
"""

from __future__ import annotations

from pathlib import Path

import typer

from rollout.cli.utils import handle_errors, load_settings, print_json, print_table
from rollout.services import load_registry

app = typer.Typer(no_args_is_help=True)


@app.command("list")
def list_targets(
    inventory: Path | None = typer.Option(None, "--inventory", "-i"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List groups and hosts."""
    with handle_errors():
        registry = load_registry(load_settings(), inventory)
        rows = []
        for name in registry.names():
            target = registry.get(name)
            rows.append({
                "name": name,
                "kind": "group" if target.is_group else "host",
                "members": ", ".join(target.members),
            })
    if json_out:
        print_json(rows)
        return
    print_table(rows, ["name", "kind", "members"], title="Targets")


@app.command("resolve")
def resolve_target(
    name: str = typer.Argument(..., help="Host or group name"),
    inventory: Path | None = typer.Option(None, "--inventory", "-i"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Expand a target to its hosts."""
    with handle_errors():
        hosts = load_registry(load_settings(), inventory).resolve(name)
    rows = [host.to_dict() for host in hosts]
    if json_out:
        print_json(rows)
        return
    print_table(rows, ["name", "address", "deploy_root"], title=f"Hosts in {name}")
