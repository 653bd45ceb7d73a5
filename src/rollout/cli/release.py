"""
CLI: ``rollout release`` — publish and inspect releases.
"""

from __future__ import annotations

from pathlib import Path

import typer

from rollout.cli.utils import console, handle_errors, load_settings, parse_pairs, print_dict, print_json, print_table
from rollout.release.store import ReleaseStore

app = typer.Typer(no_args_is_help=True)

_COLUMNS = ["release_id", "app", "build_number", "commit", "size", "created_at"]


@app.command("publish")
def publish(
    artifact: Path = typer.Argument(..., exists=True, dir_okay=False, help="Artifact file (tar.gz)"),
    app_name: str = typer.Option(..., "--app", "-a", help="Application name"),
    commit: str = typer.Option(..., "--commit", "-c"),
    build: int = typer.Option(..., "--build", "-b", min=0, help="Build number"),
    meta: list[str] | None = typer.Option(None, "--meta", help="Metadata KEY=VALUE (repeatable)"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Publish an artifact as a release (idempotent for identical bytes)."""
    with handle_errors():
        store = ReleaseStore.from_settings(load_settings())
        release = store.publish(artifact, app=app_name, commit=commit, build_number=build,
                                metadata=parse_pairs(meta, "--meta"))
    if json_out:
        print_json(release)
        return
    console.print(f"[green]Published[/green] {release.release_id} ({release.checksum[:12]}, {release.size} bytes)")


@app.command("list")
def list_releases(
    app_name: str | None = typer.Option(None, "--app", "-a"),
    limit: int = typer.Option(50, "--limit", "-n", min=1),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List releases, newest first."""
    with handle_errors():
        releases = ReleaseStore.from_settings(load_settings()).list(app_name)[:limit]
    if json_out:
        print_json(releases)
        return
    print_table([r.to_dict() for r in releases], _COLUMNS, title="Releases")


@app.command("show")
def show_release(
    release_id: str = typer.Argument(..., help="Release ID (<build>-<commit>)"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show one release."""
    with handle_errors():
        release = ReleaseStore.from_settings(load_settings()).get(release_id)
    if json_out:
        print_json(release)
        return
    print_dict(release.to_dict(), title=f"Release: {release_id}")
