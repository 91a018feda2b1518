from __future__ import annotations

import asyncio
import sys
from typing import Any

import pytest

import grid_adapter.cli.run_job as run_job_mod
from grid_adapter.grid.poller import GridClient
from grid_adapter.serve.server import build_command

from conftest import FakeGrid, make_settings


def _patch_grid(monkeypatch: pytest.MonkeyPatch, fake: FakeGrid) -> None:
    def _factory(settings: Any) -> GridClient:
        return GridClient(settings, transport=fake.transport())

    monkeypatch.setattr(run_job_mod, "GridClient", _factory)


def test_run_job_chat(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeGrid([{"done": True, "generations": [{"text": "thinking... Final Answer: 4"}]}])
    _patch_grid(monkeypatch, fake)
    settings = make_settings(answer_marker="Final Answer:")

    out = asyncio.run(run_job_mod.run_job("2+2?", "k", settings, chat=True))
    assert out == "4"
    payload = fake.submitted_payload()
    assert payload["prompt"] == "user: 2+2?"
    assert "width" not in payload["params"]


def test_run_job_prompt(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = FakeGrid([{"done": True, "generations": [{"text": "ok"}]}])
    _patch_grid(monkeypatch, fake)

    out = asyncio.run(run_job_mod.run_job("raw prompt", "k", make_settings(), model="m", max_tokens=12))
    assert out == "ok"
    payload = fake.submitted_payload()
    assert payload["prompt"] == "raw prompt"
    assert payload["models"] == ["m"]
    assert payload["params"]["max_length"] == 12


def test_server_command(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GRID_ADAPTER_PORT", "9100")
    cmd = build_command()
    assert cmd[0] == sys.executable
    assert "grid_adapter.serve.fastapi_app:app" in cmd
    assert cmd[cmd.index("--port") + 1] == "9100"
