"""Async client for the grid's submit -> poll -> fetch job API.

Each inbound request drives its own loop over one shared ``httpx.AsyncClient``.
The loop is bounded by a deadline and an attempt cap, retries transient
transport errors with exponential backoff, and stops early when the caller's
``cancel_check`` reports the client went away.

Text jobs report their result on the status endpoint itself. Image jobs are
polled on a lightweight ``check`` endpoint and fetched from ``status`` once.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from grid_adapter.common.config import Settings
from grid_adapter.common.errors import JobCancelled, PollTimeout, SubmitFailed, UpstreamError
from grid_adapter.common.schema import GenerationResult, JobHandle

LOGGER = logging.getLogger("grid_adapter.grid.poller")

T = TypeVar("T")
CancelCheck = Callable[[], Awaitable[bool]]

MODEL_KINDS = ("image", "text")


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay: float = 0.5,
    retryable_exceptions: tuple[type[BaseException], ...] = (httpx.TransportError,),
) -> T:
    """Retry an awaitable factory with exponential backoff."""
    attempt = 0
    while True:
        try:
            return await fn()
        except retryable_exceptions as exc:
            attempt += 1
            if attempt > max_retries:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            LOGGER.warning("Transient grid error (%s); retry %d/%d in %.2fs", exc, attempt, max_retries, delay)
            await asyncio.sleep(delay)


def _body_excerpt(response: httpx.Response, limit: int = 500) -> str:
    try:
        text = response.text
    except Exception:  # noqa: BLE001 - undecodable body, nothing to show
        return "<unreadable body>"
    return text[:limit]


class GridClient:
    """Thin async wrapper around the grid's generation endpoints."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.base_url = settings.base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.http_timeout, transport=transport)
        self._extensions: dict[str, Any] = {}
        if settings.sni_hostname:
            self._extensions["sni_hostname"] = settings.sni_hostname

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def headers(api_key: str) -> dict[str, str]:
        return {"apikey": api_key, "Content-Type": "application/json"}

    async def _submit(self, url: str, payload: dict[str, Any], api_key: str) -> JobHandle:
        try:
            r = await self._client.post(url, json=payload, headers=self.headers(api_key), extensions=self._extensions)
        except httpx.HTTPError as e:
            LOGGER.error("Grid submit failed: %s", e)
            raise SubmitFailed(str(e)) from e

        if r.status_code >= 300:
            LOGGER.error("Grid submit rejected: status=%s body=%s", r.status_code, _body_excerpt(r))
            raise SubmitFailed(f"submit status {r.status_code}")
        try:
            data = r.json()
        except ValueError as e:
            LOGGER.error("Grid submit returned non-JSON body: %s", _body_excerpt(r))
            raise SubmitFailed("submit body is not JSON") from e

        job_id = data.get("id") if isinstance(data, dict) else None
        if not job_id:
            LOGGER.error("Grid submit response has no job id: %s", data)
            raise SubmitFailed("submit response has no job id")
        LOGGER.info("Submitted grid job %s (model=%s)", job_id, payload.get("models"))
        return JobHandle(job_id=str(job_id))

    async def _get_object(self, url: str, job: JobHandle, api_key: str) -> dict[str, Any]:
        """GET a job endpoint with transport retries; anything but a JSON object is UpstreamError."""

        async def _get() -> httpx.Response:
            return await self._client.get(url, headers=self.headers(api_key), extensions=self._extensions)

        try:
            r = await retry_with_backoff(
                _get,
                max_retries=self.settings.poll_retries,
                base_delay=self.settings.retry_base_delay,
            )
        except httpx.HTTPError as e:
            LOGGER.error("Grid request for job %s failed: %s", job.job_id, e)
            raise UpstreamError(str(e)) from e

        if r.status_code >= 300:
            LOGGER.error("Grid %s for job %s: status=%s body=%s", url, job.job_id, r.status_code, _body_excerpt(r))
            raise UpstreamError(f"status {r.status_code}")
        try:
            data = r.json()
        except ValueError as e:
            LOGGER.error("Grid %s for job %s is not JSON: %s", url, job.job_id, _body_excerpt(r))
            raise UpstreamError("body is not JSON") from e
        if not isinstance(data, dict):
            LOGGER.error("Grid %s for job %s has unexpected shape: %s", url, job.job_id, data)
            raise UpstreamError("body is not an object")
        return data

    @staticmethod
    def _generations(data: dict[str, Any], job: JobHandle) -> list[Any]:
        generations = data.get("generations")
        if generations is None:
            return []
        if not isinstance(generations, list):
            LOGGER.error("Grid job %s returned non-list generations: %s", job.job_id, generations)
            raise UpstreamError("generations is not a list")
        return generations

    async def submit(self, payload: dict[str, Any], api_key: str) -> JobHandle:
        """POST a text job; the grid answers with ``{"id": ...}``."""
        return await self._submit(f"{self.base_url}/generate/text/async", payload, api_key)

    async def poll(self, job: JobHandle, api_key: str) -> GenerationResult:
        """One status check. ``done`` is only true once a generation is present."""
        data = await self._get_object(f"{self.base_url}/generate/text/status/{job.job_id}", job, api_key)
        generations = self._generations(data, job)
        if not data.get("done"):
            return GenerationResult(done=False)
        if not generations:
            LOGGER.warning("Grid job %s reported done without generations; polling again", job.job_id)
            return GenerationResult(done=False)
        first = generations[0]
        if not isinstance(first, dict) or not isinstance(first.get("text"), str):
            LOGGER.error("Grid job %s returned a malformed generation: %s", job.job_id, first)
            raise UpstreamError("malformed generation")
        return GenerationResult(done=True, text=first["text"].strip())

    async def _wait_until(
        self,
        job: JobHandle,
        check: Callable[[], Awaitable[GenerationResult]],
        cancel_check: CancelCheck | None = None,
    ) -> GenerationResult:
        interval = self.settings.poll_interval
        deadline = time.monotonic() + self.settings.poll_timeout
        attempts = 0
        while True:
            if attempts >= self.settings.max_poll_attempts:
                LOGGER.error("Grid job %s still pending after %d polls", job.job_id, attempts)
                raise PollTimeout(f"gave up after {attempts} polls")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                LOGGER.error("Grid job %s timed out after %.1fs", job.job_id, self.settings.poll_timeout)
                raise PollTimeout(f"no result within {self.settings.poll_timeout}s")

            await asyncio.sleep(min(interval, remaining))
            if cancel_check is not None and await cancel_check():
                LOGGER.info("Client disconnected; abandoning grid job %s", job.job_id)
                raise JobCancelled("client disconnected")

            attempts += 1
            result = await check()
            LOGGER.debug("Grid job %s poll #%d done=%s", job.job_id, attempts, result.done)
            if result.done:
                LOGGER.info("Grid job %s finished after %d polls", job.job_id, attempts)
                return result

    async def wait(self, job: JobHandle, api_key: str, cancel_check: CancelCheck | None = None) -> str:
        """
        Sleep-then-poll until the text job is done.

        Raises:
            PollTimeout: deadline passed or attempt cap reached.
            JobCancelled: ``cancel_check`` returned true.
        """
        result = await self._wait_until(job, lambda: self.poll(job, api_key), cancel_check)
        return result.text

    async def generate(self, payload: dict[str, Any], api_key: str, cancel_check: CancelCheck | None = None) -> str:
        """Submit a text job and wait for its text."""
        job = await self.submit(payload, api_key)
        return await self.wait(job, api_key, cancel_check=cancel_check)

    async def submit_image(self, payload: dict[str, Any], api_key: str) -> JobHandle:
        """POST an image job."""
        return await self._submit(f"{self.base_url}/generate/async", payload, api_key)

    async def check_image(self, job: JobHandle, api_key: str) -> GenerationResult:
        data = await self._get_object(f"{self.base_url}/generate/check/{job.job_id}", job, api_key)
        return GenerationResult(done=data.get("done") is True)

    async def fetch_image(self, job: JobHandle, api_key: str) -> str:
        """Public URL of the first finished image of ``job``."""
        data = await self._get_object(f"{self.base_url}/generate/status/{job.job_id}", job, api_key)
        generations = self._generations(data, job)
        first = generations[0] if generations else None
        if not isinstance(first, dict) or not first.get("id"):
            LOGGER.error("Grid image job %s has no finished generation: %s", job.job_id, data)
            raise UpstreamError("image job has no generation")
        return self.settings.image_url_template.format(id=first["id"])

    async def wait_image(self, job: JobHandle, api_key: str, cancel_check: CancelCheck | None = None) -> str:
        await self._wait_until(job, lambda: self.check_image(job, api_key), cancel_check)
        return await self.fetch_image(job, api_key)

    async def generate_image(
        self, payload: dict[str, Any], api_key: str, cancel_check: CancelCheck | None = None
    ) -> str:
        """Submit an image job, wait for it and return the image URL."""
        job = await self.submit_image(payload, api_key)
        return await self.wait_image(job, api_key, cancel_check=cancel_check)

    async def _models_of_kind(self, kind: str) -> list[dict[str, Any]]:
        url = f"{self.base_url}/status/models"
        try:
            r = await self._client.get(url, params={"type": kind}, extensions=self._extensions)
        except httpx.HTTPError as e:
            LOGGER.error("Grid model list (%s) failed: %s", kind, e)
            raise UpstreamError(str(e)) from e
        if r.status_code >= 300:
            LOGGER.error("Grid model list (%s): status=%s body=%s", kind, r.status_code, _body_excerpt(r))
            raise UpstreamError(f"models status {r.status_code}")
        try:
            data = r.json()
        except ValueError as e:
            raise UpstreamError("models body is not JSON") from e
        if not isinstance(data, list):
            raise UpstreamError("models body is not a list")
        return data

    async def list_models(self, kind: str | None = None) -> list[dict[str, Any]]:
        """Raw grid model entries of one kind, or of every kind when ``kind`` is None."""
        if kind in MODEL_KINDS:
            return await self._models_of_kind(kind)
        batches = await asyncio.gather(*(self._models_of_kind(k) for k in MODEL_KINDS))
        return [m for batch in batches for m in batch]
