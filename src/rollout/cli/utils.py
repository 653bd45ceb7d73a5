"""
CLI utility helpers — settings, service wiring and output formatting.
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from rollout.core.errors import RolloutError, ValidationError
from rollout.core.logging import configure_logging
from rollout.core.settings import RolloutSettings, get_settings
from rollout.services import Services, build_services

console = Console()
err_console = Console(stderr=True)

_OUTCOME_STYLES = {
    "succeeded": "green",
    "deployed": "green",
    "active": "green",
    "failed": "red",
    "rollback_failed": "bold red",
    "rolled_back": "yellow",
    "skipped": "dim",
    "cancelled": "yellow",
    "running": "cyan",
}


# ── Settings / services ──────────────────────────────────────────────────


def load_settings() -> RolloutSettings:
    """Read settings and configure logging from them."""
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.json_logs, service="rollout-cli")
    return settings


def make_services(inventory: Path | None = None) -> Services:
    return build_services(load_settings(), inventory=inventory)


def parse_pairs(pairs: Sequence[str] | None, option: str = "--var") -> dict[str, str]:
    """Parse repeated ``k=v`` options."""
    values: dict[str, str] = {}
    for pair in pairs or ():
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint=option)
        values[key.strip()] = value
    return values


# ── Errors ───────────────────────────────────────────────────────────────


@contextmanager
def handle_errors() -> Iterator[None]:
    """Print a :class:`RolloutError` and exit non-zero (2 for invalid input)."""
    try:
        yield
    except ValidationError as e:
        err_console.print(f"[bold red]Invalid input[/bold red]: {e.message}")
        raise typer.Exit(code=2) from e
    except RolloutError as e:
        err_console.print(f"[bold red]Error[/bold red] ({type(e).__name__}): {e.message}")
        raise typer.Exit(code=1) from e


def fail(message: str, code: int = 1) -> None:
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    raise typer.Exit(code=code)


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert pydantic model / object with ``to_dict`` / dataclass / dict to plain dict."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def print_json(payload: Any) -> None:
    if isinstance(payload, list | tuple):
        payload = [_to_dict(item) for item in payload]
    elif not isinstance(payload, dict):
        payload = _to_dict(payload)
    console.print_json(json.dumps(payload, default=str))


def styled(value: Any) -> str:
    text = str(value) if value is not None else ""
    style = _OUTCOME_STYLES.get(text)
    return f"[{style}]{text}[/{style}]" if style else text


def print_table(rows: Sequence[dict[str, Any]], columns: Sequence[str], *, title: str = "") -> None:
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, show_lines=False)
    for column in columns:
        table.add_column(column.replace("_", " ").title())
    for row in rows:
        table.add_row(*(styled(row.get(column)) for column in columns))
    console.print(table)


def print_dict(data: dict[str, Any], *, title: str = "") -> None:
    table = Table(title=title or None, show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, dict | list):
            value = json.dumps(value, default=str)
        table.add_row(key, styled(value))
    console.print(table)
