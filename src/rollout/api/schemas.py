"""
Request and response bodies of the trigger API.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class TriggerRequest(BaseModel):
    """Body of ``POST /pipelines/{name}/runs``.

    Example:
        {"target": "staging", "ref": "main", "tags": "app,nginx",
         "variables": {"FEATURE_X": "on"}}
    """

    target: str = Field(min_length=1, description="Host group to deploy to")
    ref: str = Field(min_length=1, description="Branch, tag or commit to build")
    tags: str = Field(default="all", min_length=1, description="Comma-separated task tags")
    build_number: int | None = Field(default=None, ge=0, description="Default: next for the pipeline")
    release_id: str | None = Field(default=None, description="Deploy an existing release")
    variables: dict[str, str] = Field(default_factory=dict)


class RunAccepted(BaseModel):
    run_id: str
    pipeline: str
    build_number: int | None
    status: str


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool


class PipelineSummary(BaseModel):
    name: str
    description: str = ""
    stages: list[str]


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    pipelines: int
    active_runs: int


class ProblemDetail(BaseModel):
    """RFC 7807 error body."""

    type: str = "about:blank"
    title: str
    status: int
    detail: str = ""
    instance: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
