"""Run one generation job against the grid from the command line.

Builds the same payload the HTTP adapter would, submits it, polls until the
job finishes and prints the text (or the SSE frames with ``--stream``).
"""
from __future__ import annotations
import argparse
import asyncio
import logging
import os
import time

from grid_adapter.common.config import Settings, load_settings
from grid_adapter.common.errors import AdapterError
from grid_adapter.common.logging_setup import setup_logging
from grid_adapter.common.templates import extract_final_answer
from grid_adapter.grid.emitter import count_tokens, stream_chat
from grid_adapter.grid.poller import GridClient
from grid_adapter.grid.translator import build_payload, translate_chat, translate_completion

LOGGER = logging.getLogger("grid_adapter.cli")


async def run_job(
    text: str,
    api_key: str,
    settings: Settings,
    *,
    chat: bool = False,
    model: str | None = None,
    max_tokens: int | None = None,
) -> str:
    """
    Submit ``text`` to the grid and wait for the answer.

    Args:
        text: Prompt, or the user message when ``chat`` is set.
        api_key: Grid API key.
        settings: Adapter settings (grid URL, polling bounds, defaults).
        chat: Send as a one-message chat conversation instead of a raw prompt.
    """
    body = {"model": model, "max_tokens": max_tokens}
    if chat:
        req = translate_chat({**body, "messages": [{"role": "user", "content": text}]}, api_key, settings)
        payload = build_payload(req)
    else:
        req = translate_completion({**body, "prompt": text}, api_key, settings)
        payload = build_payload(req, legacy_image_params=settings.legacy_image_params)

    grid = GridClient(settings)
    try:
        out = await grid.generate(payload, api_key)
    finally:
        await grid.aclose()
    return extract_final_answer(out, settings.answer_marker)


async def _print_stream(text: str, model: str, settings: Settings) -> None:
    async for frame in stream_chat(text, model, token_delay=settings.token_delay):
        print(frame, end="", flush=True)


def main() -> None:
    ap = argparse.ArgumentParser(description="Run a text job on the grid")
    ap.add_argument("--text", required=True, help="Prompt text")
    ap.add_argument("--cfg", default=None, help="YAML config path")
    ap.add_argument("--api-key", default=os.getenv("GRID_API_KEY"), help="Grid API key (or $GRID_API_KEY)")
    ap.add_argument("--model", default=None)
    ap.add_argument("--max-tokens", type=int, default=None)
    ap.add_argument("--chat", action="store_true", help="Send as a chat message")
    ap.add_argument("--stream", action="store_true", help="Print SSE frames instead of plain text")
    args = ap.parse_args()

    settings = load_settings(args.cfg)
    setup_logging(settings.log_level)
    if not args.api_key:
        ap.error("an API key is required (--api-key or $GRID_API_KEY)")

    start = time.time()
    try:
        text = asyncio.run(
            run_job(args.text, args.api_key, settings, chat=args.chat, model=args.model, max_tokens=args.max_tokens)
        )
    except AdapterError as e:
        LOGGER.error("Job failed: %s", e.detail)
        raise SystemExit(1)
    latency_ms = int((time.time() - start) * 1000)
    LOGGER.info("Latency: %sms | tokens=%s", latency_ms, count_tokens(text))

    if args.stream:
        model = args.model or (settings.chat_default_model if args.chat else settings.completion_default_model)
        asyncio.run(_print_stream(text, model, settings))
    else:
        print(text)


if __name__ == "__main__":
    main()
