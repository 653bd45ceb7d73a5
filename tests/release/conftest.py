"""Fixtures for release store tests: an in-memory HTTP artifact store."""

from __future__ import annotations

import httpx
import pytest


class FakeArtifactServer:
    """Answers PUT / GET / HEAD / DELETE from a dict keyed by URL path."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with)
        path = request.url.path
        if request.method == "PUT":
            self.objects[path] = request.read()
            return httpx.Response(201)
        if path not in self.objects:
            return httpx.Response(404)
        if request.method == "GET":
            return httpx.Response(200, content=self.objects[path])
        if request.method == "HEAD":
            return httpx.Response(200)
        if request.method == "DELETE":
            del self.objects[path]
            return httpx.Response(204)
        return httpx.Response(405)


@pytest.fixture
def server() -> FakeArtifactServer:
    return FakeArtifactServer()
