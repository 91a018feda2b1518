from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from grid_adapter.common.errors import JobCancelled, PollTimeout, SubmitFailed, UpstreamError
from grid_adapter.common.schema import JobHandle
from grid_adapter.grid.poller import GridClient, retry_with_backoff

from conftest import FakeGrid, make_settings

PAYLOAD: dict[str, Any] = {"prompt": "user: hi", "models": ["m"], "n": 1, "trusted_workers": False, "params": {}}
PENDING = {"done": False, "generations": []}


def _run(fake: FakeGrid, cancel_check: Any = None, **overrides: Any) -> str:
    async def _go() -> str:
        grid = GridClient(make_settings(**overrides), transport=fake.transport())
        try:
            return await grid.generate(PAYLOAD, "secret-key", cancel_check=cancel_check)
        finally:
            await grid.aclose()

    return asyncio.run(_go())


def test_polls_until_done() -> None:
    fake = FakeGrid([PENDING, PENDING, {"done": True, "generations": [{"text": "hello world"}]}])
    assert _run(fake) == "hello world"
    assert len(fake.submit_requests) == 1
    assert len(fake.status_requests) == 3
    # submit precedes every poll
    assert fake.requests[0].method == "POST"
    assert all(r.url.path.endswith("/generate/text/status/job-1") for r in fake.status_requests)


def test_grid_headers_and_payload() -> None:
    fake = FakeGrid()
    _run(fake)
    for r in fake.requests:
        assert r.headers["apikey"] == "secret-key"
        assert r.headers["content-type"] == "application/json"
    assert fake.submitted_payload() == PAYLOAD
    assert str(fake.submit_requests[0].url) == "https://api.aipowergrid.io/api/v2/generate/text/async"


def test_done_without_generations_keeps_polling() -> None:
    fake = FakeGrid([{"done": True, "generations": []}, {"done": True, "generations": [{"text": " ok \n"}]}])
    assert _run(fake) == "ok"
    assert len(fake.status_requests) == 2


def test_attempt_cap_raises_poll_timeout() -> None:
    fake = FakeGrid([PENDING])
    with pytest.raises(PollTimeout):
        _run(fake, max_poll_attempts=3)
    assert len(fake.status_requests) == 3


def test_deadline_raises_poll_timeout() -> None:
    fake = FakeGrid([PENDING])
    with pytest.raises(PollTimeout):
        _run(fake, poll_timeout=0.0)
    assert fake.status_requests == []


def test_cancel_check_stops_loop() -> None:
    fake = FakeGrid([PENDING])

    async def disconnected() -> bool:
        return True

    with pytest.raises(JobCancelled):
        _run(fake, cancel_check=disconnected)
    assert fake.status_requests == []


def test_transient_errors_are_retried() -> None:
    fake = FakeGrid([httpx.ConnectError("reset"), {"done": True, "generations": [{"text": "after retry"}]}])
    assert _run(fake, poll_retries=2) == "after retry"
    assert len(fake.status_requests) == 2


def test_retries_are_bounded() -> None:
    fake = FakeGrid([httpx.ConnectError("down")])
    with pytest.raises(UpstreamError):
        _run(fake, poll_retries=1)
    assert len(fake.status_requests) == 2


def test_non_2xx_status_is_upstream_error() -> None:
    fake = FakeGrid([httpx.Response(503, text="maintenance")])
    with pytest.raises(UpstreamError):
        _run(fake)
    assert len(fake.status_requests) == 1


@pytest.mark.parametrize(
    "status",
    [
        httpx.Response(200, text="<html>"),
        httpx.Response(200, json=["done"]),
        {"done": True, "generations": {"text": "x"}},
        {"done": True, "generations": "x"},
        {"done": True, "generations": [{"text": 7}]},
        {"done": True, "generations": ["x"]},
    ],
)
def test_malformed_status_body(status: Any) -> None:
    fake = FakeGrid([status])
    with pytest.raises(UpstreamError):
        _run(fake)
    assert len(fake.status_requests) == 1


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(401, json={"message": "invalid key"}),
        httpx.Response(200, json={"message": "queued"}),
        httpx.Response(200, text="not json"),
    ],
)
def test_submit_failures(response: httpx.Response) -> None:
    fake = FakeGrid(submit=response)
    with pytest.raises(SubmitFailed):
        _run(fake)
    assert fake.status_requests == []


def test_poll_single_result() -> None:
    fake = FakeGrid([PENDING])

    async def _go() -> Any:
        grid = GridClient(make_settings(), transport=fake.transport())
        return await grid.poll(JobHandle(job_id="abc"), "k")

    result = asyncio.run(_go())
    assert result.done is False
    assert fake.status_requests[0].url.path.endswith("/status/abc")


def test_list_models_all_kinds() -> None:
    fake = FakeGrid(models={"text": [{"name": "t1"}], "image": [{"name": "i1"}, {"name": "i2"}]})

    async def _go() -> Any:
        grid = GridClient(make_settings(), transport=fake.transport())
        return await grid.list_models(), await grid.list_models("text")

    everything, text_only = asyncio.run(_go())
    assert sorted(m["name"] for m in everything) == ["i1", "i2", "t1"]
    assert text_only == [{"name": "t1"}]


def test_retry_with_backoff_passes_through_other_errors() -> None:
    calls = []

    async def boom() -> None:
        calls.append(1)
        raise ValueError("not transient")

    with pytest.raises(ValueError):
        asyncio.run(retry_with_backoff(boom, max_retries=3, base_delay=0.0))
    assert len(calls) == 1


IMAGE_PAYLOAD: dict[str, Any] = {"prompt": "a red fox", "models": ["img"], "params": {}}


def _run_image(fake: FakeGrid, **overrides: Any) -> str:
    async def _go() -> str:
        grid = GridClient(make_settings(**overrides), transport=fake.transport())
        try:
            return await grid.generate_image(IMAGE_PAYLOAD, "secret-key")
        finally:
            await grid.aclose()

    return asyncio.run(_go())


def test_image_job_checks_then_fetches_once() -> None:
    fake = FakeGrid([{"done": False}, {"done": False}, {"done": True}], image_status={"generations": [{"id": "abc"}]})
    assert _run_image(fake) == "https://images.aipg.art/abc.webp"
    paths = [r.url.path for r in fake.requests]
    assert paths[0].endswith("/generate/async")
    assert len(fake.check_requests) == 3
    assert all(p.endswith("/generate/check/job-1") for p in paths[1:4])
    assert paths[4].endswith("/generate/status/job-1")
    assert len(paths) == 5
    assert fake.submitted_payload() == IMAGE_PAYLOAD


def test_image_url_template_is_configurable() -> None:
    fake = FakeGrid([{"done": True}], image_status={"generations": [{"id": "xyz", "img": "ignored"}]})
    assert _run_image(fake, image_url_template="https://cdn.test/{id}.png") == "https://cdn.test/xyz.png"


def test_image_wait_is_bounded() -> None:
    fake = FakeGrid([{"done": False}])
    with pytest.raises(PollTimeout):
        _run_image(fake, max_poll_attempts=2)
    assert len(fake.check_requests) == 2
    assert not any("/generate/status/" in r.url.path for r in fake.requests)


@pytest.mark.parametrize(
    "image_status",
    [
        {"done": True, "generations": []},
        {"done": True, "generations": {"id": "abc"}},
        {"done": True, "generations": [{"img": "no-id"}]},
        httpx.Response(500, text="boom"),
    ],
)
def test_image_status_without_generation(image_status: Any) -> None:
    fake = FakeGrid([{"done": True}], image_status=image_status)
    with pytest.raises(UpstreamError):
        _run_image(fake)


def test_image_submit_failure() -> None:
    fake = FakeGrid(submit=httpx.Response(403, json={"message": "forbidden"}))
    with pytest.raises(SubmitFailed):
        _run_image(fake)
    assert fake.check_requests == []
