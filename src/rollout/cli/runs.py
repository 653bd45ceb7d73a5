"""
CLI: ``rollout runs`` — pipeline run history.
"""

from __future__ import annotations

import typer

from rollout.cli.pipelines import stage_rows
from rollout.cli.utils import console, fail, load_settings, print_json, print_table, styled
from rollout.orchestration.history import RunHistory

app = typer.Typer(no_args_is_help=True)


def _history() -> RunHistory:
    settings = load_settings()
    return RunHistory(settings.runs_dir, max_runs=settings.run_retention_count,
                      max_age_days=settings.run_retention_days)


@app.command("list")
def list_runs(
    pipeline: str | None = typer.Option(None, "--pipeline", "-p"),
    limit: int = typer.Option(20, "--limit", "-n", min=1),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List recorded runs, newest first."""
    runs = _history().list(pipeline, limit)
    if json_out:
        print_json([run.to_dict(include_output=False) for run in runs])
        return
    rows = [
        {
            "run_id": run.run_id,
            "pipeline": run.pipeline,
            "build": run.parameters.build_number,
            "target": run.parameters.target,
            "ref": run.parameters.ref,
            "status": run.status.value,
            "created_at": run.created_at.isoformat(timespec="seconds"),
        }
        for run in runs
    ]
    print_table(rows, ["run_id", "pipeline", "build", "target", "ref", "status", "created_at"], title="Runs")


@app.command("show")
def show_run(
    run_id: str = typer.Argument(..., help="Run ID"),
    output: bool = typer.Option(False, "--output", help="Print captured stage output"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show one run with its stage results."""
    run = _history().get(run_id)
    if run is None:
        fail(f"Run not found: {run_id}")
    if json_out:
        print_json(run.to_dict())
        return
    console.print(f"[bold]{run.pipeline}[/bold] #{run.parameters.build_number} {run.run_id}: "
                  f"{styled(run.status.value)}")
    if run.error:
        console.print(f"[red]{run.error}[/red]")
    print_table(stage_rows(run), ["stage", "outcome", "reason", "attempts", "duration"])
    if output:
        for name, result in run.stages.items():
            if result.output:
                console.rule(name)
                console.print(result.output, markup=False, highlight=False)
