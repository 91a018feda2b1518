from __future__ import annotations

import json
import os
from typing import Any, Callable, Iterator

import httpx
import pytest
from fastapi.testclient import TestClient

import grid_adapter.serve.fastapi_app as app_mod
from grid_adapter.common.config import Settings, load_settings
from grid_adapter.grid.poller import GridClient


class FakeGrid:
    """Scripted stand-in for the grid API, served through httpx.MockTransport.

    ``statuses`` are consumed one per text status GET (or image check GET);
    the last one repeats. Items may be JSON dicts, ``httpx.Response`` objects
    or exceptions to raise. ``image_status`` answers the image status GET.
    """

    def __init__(
        self,
        statuses: list[Any] | None = None,
        *,
        job_id: str = "job-1",
        submit: httpx.Response | None = None,
        models: dict[str, list[dict[str, Any]]] | None = None,
        image_status: Any = None,
    ) -> None:
        self.statuses = list(statuses or [{"done": True, "generations": [{"text": "hello world"}]}])
        self.job_id = job_id
        self.submit = submit
        self.models = models or {}
        if image_status is None:
            image_status = {"done": True, "generations": [{"id": "img-1"}]}
        self.image_status = image_status
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path.endswith(("/generate/text/async", "/generate/async")):
            return self.submit or httpx.Response(200, json={"id": self.job_id})
        if request.method == "GET" and ("/generate/text/status/" in path or "/generate/check/" in path):
            return self._reply(self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0])
        if request.method == "GET" and "/generate/status/" in path:
            return self._reply(self.image_status)
        if request.method == "GET" and path.endswith("/status/models"):
            return httpx.Response(200, json=self.models.get(request.url.params.get("type"), []))
        return httpx.Response(404, json={"message": "not found"})

    @staticmethod
    def _reply(item: Any) -> httpx.Response:
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def submit_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    @property
    def status_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if "/generate/text/status/" in r.url.path]

    @property
    def check_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if "/generate/check/" in r.url.path]

    def submitted_payload(self) -> dict[str, Any]:
        return json.loads(self.submit_requests[0].content)


def make_settings(**overrides: Any) -> Settings:
    base: dict[str, Any] = {"poll_interval": 0.0, "token_delay": 0.0, "retry_base_delay": 0.0}
    base.update(overrides)
    return load_settings(**base)


@pytest.fixture(autouse=True)
def _clean_grid_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep GRID_* variables from the outer shell out of every test."""
    for name in list(os.environ):
        if name.startswith("GRID_"):
            monkeypatch.delenv(name)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def make_client() -> Iterator[Callable[..., TestClient]]:
    """Build a TestClient whose grid calls go to the given FakeGrid."""

    def _make(fake: FakeGrid, raise_server_exceptions: bool = True, **overrides: Any) -> TestClient:
        cfg = make_settings(**overrides)
        grid = GridClient(cfg, transport=fake.transport())
        app_mod.app.dependency_overrides[app_mod.get_settings] = lambda: cfg
        app_mod.app.dependency_overrides[app_mod.get_grid] = lambda: grid
        return TestClient(app_mod.app, raise_server_exceptions=raise_server_exceptions)

    yield _make
    app_mod.app.dependency_overrides.clear()
