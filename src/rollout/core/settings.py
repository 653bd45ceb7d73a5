"""
Centralized settings for rollout-core.

:class:`RolloutSettings` is the single validated source of configuration.
All fields can be set through ``ROLLOUT_*`` environment variables (for
example ``ROLLOUT_HISTORY_DEPTH=10``) or a ``.env`` file in the working
directory.

Settings are read only at the edges (CLI commands, the API factory) and
handed to components as explicit constructor arguments. No component
reaches for process-wide configuration on its own; secrets in particular
travel as a :class:`~rollout.core.credentials.Credentials` capability.

Tags:
    rollout-core, configuration, settings, pydantic
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rollout.core.credentials import Credentials


class RolloutSettings(BaseSettings):
    """rollout-core configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ROLLOUT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Paths ────────────────────────────────────────────────────
    state_dir: Path = Field(default=Path.home() / ".rollout")
    store_dir: Path | None = Field(default=None, description="Local release store (default: <state_dir>/store)")
    deploy_root: Path | None = Field(default=None, description="Host deploy root (default: <state_dir>/hosts)")
    inventory_file: Path | None = Field(default=None, description="YAML inventory of hosts and groups")

    # ── Artifact store (HTTP) ────────────────────────────────────
    artifact_url: str | None = Field(default=None, description="Base URL of the HTTP artifact store")
    artifact_repo: str = Field(default="releases")
    artifact_username: str | None = Field(default=None)
    artifact_password: SecretStr | None = Field(default=None)
    artifact_token: SecretStr | None = Field(default=None)
    artifact_timeout_seconds: float = Field(default=60.0)

    # ── Deployment ───────────────────────────────────────────────
    history_depth: int = Field(default=5, ge=1)
    busy_policy: Literal["reject", "wait"] = Field(default="reject")
    busy_wait_seconds: float = Field(default=30.0, ge=0)
    reload_command: str | None = Field(default=None, description="e.g. 'sudo systemctl reload nginx'")

    # ── Pipeline execution ───────────────────────────────────────
    stage_timeout_seconds: float = Field(default=600.0, gt=0)
    max_output_bytes: int = Field(default=64 * 1024, gt=0)
    max_parallel_stages: int = Field(default=4, ge=1)
    fail_fast: bool = Field(default=False)

    # ── Retention ────────────────────────────────────────────────
    run_retention_count: int = Field(default=50, ge=1)
    run_retention_days: int = Field(default=30, ge=1)
    release_retention_count: int = Field(default=20, ge=1)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console", "auto"] = Field(default="auto")

    # ── API ──────────────────────────────────────────────────────
    api_host: str = Field(default="127.0.0.1")
    api_port: int = Field(default=12100)
    api_prefix: str = Field(default="/api/v1")
    pipelines_dir: Path | None = Field(default=None, description="Directory of *.yaml pipelines served by the API")

    @model_validator(mode="after")
    def _derive_paths(self) -> RolloutSettings:
        if self.store_dir is None:
            self.store_dir = self.state_dir / "store"
        if self.deploy_root is None:
            self.deploy_root = self.state_dir / "hosts"
        return self

    # ── Derived ──────────────────────────────────────────────────

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs"

    @property
    def ledger_dir(self) -> Path:
        return self.state_dir / "deployments"

    @property
    def json_logs(self) -> bool | None:
        if self.log_format == "auto":
            return None
        return self.log_format == "json"

    def credentials(self) -> Credentials:
        """Build the artifact-store credential capability from settings."""
        return Credentials(
            username=self.artifact_username,
            password=self.artifact_password.get_secret_value() if self.artifact_password else None,
            token=self.artifact_token.get_secret_value() if self.artifact_token else None,
        )


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, RolloutSettings] = {}


def get_settings(*, _force_reload: bool = False) -> RolloutSettings:
    """Load, validate, and cache a :class:`RolloutSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = RolloutSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
