"""
CLI: ``rollout deploy``, ``rollout rollback`` and ``rollout status``.
"""

from __future__ import annotations

from pathlib import Path

import typer

from rollout.cli.utils import console, handle_errors, make_services, print_dict, print_json, styled
from rollout.deploy.models import DeploymentOutcome, OutcomeStatus


def _report(outcome: DeploymentOutcome, json_out: bool, expected: OutcomeStatus = OutcomeStatus.DEPLOYED) -> None:
    if json_out:
        print_json(outcome)
    else:
        line = f"{outcome.target}: {styled(outcome.status.value)}"
        if outcome.active_release_id:
            line += f" (current: {outcome.active_release_id})"
        console.print(line)
        for message in (outcome.error, outcome.rollback_error):
            if message:
                console.print(f"[red]{message}[/red]")
    if outcome.status != expected:
        raise typer.Exit(code=1)


def deploy(
    release_id: str = typer.Argument(..., help="Release to deploy"),
    target: str = typer.Option(..., "--target", "-t", help="Host or group"),
    inventory: Path | None = typer.Option(None, "--inventory", "-i"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Deploy a published release to a target."""
    with handle_errors():
        outcome = make_services(inventory).controller.deploy(release_id, target)
    _report(outcome, json_out)


def rollback(
    target: str = typer.Option(..., "--target", "-t", help="Host or group"),
    inventory: Path | None = typer.Option(None, "--inventory", "-i"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Switch a target back to its previous release."""
    with handle_errors():
        outcome = make_services(inventory).controller.rollback(target)
    _report(outcome, json_out, expected=OutcomeStatus.ROLLED_BACK)


def status(
    target: str = typer.Option(..., "--target", "-t", help="Host or group"),
    inventory: Path | None = typer.Option(None, "--inventory", "-i"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show a target's deployment record."""
    with handle_errors():
        data = make_services(inventory).controller.status(target)
    if json_out:
        print_json(data)
        return
    print_dict(data, title=f"Target: {target}")
