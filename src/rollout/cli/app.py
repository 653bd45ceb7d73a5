"""
Root Typer application for the ``rollout`` CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

app = Typer(
    name="rollout",
    help="rollout — build, publish and deploy pipelines.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from rollout import __version__

        typer.echo(f"rollout-core {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """rollout CLI — run pipelines, manage releases and deployments."""


# ── Sub-command registration ─────────────────────────────────────────────

from rollout.cli.deploy import deploy, rollback, status  # noqa: E402
from rollout.cli.pipelines import run_pipeline  # noqa: E402
from rollout.cli.release import app as release_app  # noqa: E402
from rollout.cli.runs import app as runs_app  # noqa: E402
from rollout.cli.serve import serve  # noqa: E402
from rollout.cli.targets import app as targets_app  # noqa: E402

app.command("run")(run_pipeline)
app.command("deploy")(deploy)
app.command("rollback")(rollback)
app.command("status")(status)
app.command("serve")(serve)

app.add_typer(release_app, name="release", help="Publish and inspect releases.")
app.add_typer(targets_app, name="targets", help="Inspect hosts and groups.")
app.add_typer(runs_app, name="runs", help="Pipeline run history.")


if __name__ == "__main__":
    app()
