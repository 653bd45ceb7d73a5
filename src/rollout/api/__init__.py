"""HTTP trigger API (FastAPI)."""

from rollout.api.app import create_app

__all__ = ["create_app"]
