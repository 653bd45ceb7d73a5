"""
CLI: ``rollout run`` — execute a pipeline file.
"""

from __future__ import annotations

from pathlib import Path

import typer

from rollout.cli.utils import console, handle_errors, make_services, parse_pairs, print_json, print_table, styled
from rollout.orchestration.run import PipelineRun
from rollout.pipeline.loader import load_pipeline


def stage_rows(run: PipelineRun) -> list[dict[str, object]]:
    order = run.definition.topological_order() if run.definition else list(run.stages)
    rows = []
    for name in order:
        result = run.stages[name]
        duration = result.duration_seconds
        rows.append({
            "stage": name,
            "outcome": result.outcome.value,
            "reason": result.reason or "",
            "attempts": result.attempts,
            "duration": f"{duration:.1f}s" if duration is not None else "",
        })
    return rows


def run_pipeline(
    pipeline_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Pipeline YAML file"),
    target: str = typer.Option(..., "--target", "-t", help="Host group to deploy to"),
    ref: str = typer.Option(..., "--ref", "-r", help="Branch, tag or commit to build"),
    tags: str = typer.Option("all", "--tags", help="Comma-separated task tags"),
    build_number: int | None = typer.Option(None, "--build-number", "-b", min=0, help="Default: next for the pipeline"),
    release_id: str | None = typer.Option(None, "--release-id", help="Deploy an existing release"),
    variables: list[str] | None = typer.Option(None, "--var", help="Extra variable KEY=VALUE (repeatable)"),
    fail_fast: bool = typer.Option(False, "--fail-fast", help="Stop scheduling after the first failure"),
    inventory: Path | None = typer.Option(None, "--inventory", "-i", help="Inventory file"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Run a pipeline and report every stage result."""
    with handle_errors():
        services = make_services(inventory)
        definition = load_pipeline(pipeline_file, services.actions)
        parameters = {
            "target": target,
            "ref": ref,
            "tags": tags,
            "build_number": build_number,
            "release_id": release_id,
            "variables": parse_pairs(variables),
        }
        run = services.engine.run(definition, parameters, fail_fast=True if fail_fast else None)

    if json_out:
        print_json(run.to_dict())
    else:
        print_table(stage_rows(run), ["stage", "outcome", "reason", "attempts", "duration"],
                    title=f"{run.pipeline} #{run.parameters.build_number} ({run.run_id})")
        console.print(f"Run {run.run_id}: {styled(run.status.value)}")
        if run.error:
            console.print(f"[red]{run.error}[/red]")
    if not run.succeeded:
        raise typer.Exit(code=1)
