"""Render finished grid text as OpenAI-style JSON or a simulated SSE stream."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import AsyncIterator, Awaitable, Callable

from grid_adapter.common.errors import GENERIC_MESSAGE
from grid_adapter.common.schema import (
    ChatChoice,
    ChatCompletion,
    ChatCompletionChunk,
    ChatMessage,
    ChunkChoice,
    TextChoice,
    TextCompletion,
    Usage,
)

LOGGER = logging.getLogger("grid_adapter.grid.emitter")

DONE_FRAME = "data: [DONE]\n\n"
SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def count_tokens(text: str) -> int:
    # Space-split word count, not a tokenizer count.
    return len(text.split(" "))


def usage_for(text: str) -> Usage:
    n = count_tokens(text)
    return Usage(prompt_tokens=0, completion_tokens=n, total_tokens=n)


def new_response_id() -> str:
    return str(uuid.uuid4())


def new_fingerprint() -> str:
    return f"fp_{uuid.uuid4().hex[:10]}"


def split_stream_tokens(text: str) -> list[str]:
    """Space-delimited tokens, each keeping its trailing space except the last."""
    words = text.split(" ")
    return [w + " " for w in words[:-1]] + [words[-1]]


def chat_completion(text: str, model: str, fingerprint: str | None = None) -> ChatCompletion:
    return ChatCompletion(
        id=new_response_id(),
        created=int(time.time()),
        model=model,
        system_fingerprint=fingerprint,
        choices=[ChatChoice(message=ChatMessage(role="assistant", content=text))],
        usage=usage_for(text),
    )


def text_completion(text: str, model: str) -> TextCompletion:
    return TextCompletion(
        id=new_response_id(),
        created=int(time.time()),
        model=model,
        choices=[TextChoice(text=text)],
        usage=usage_for(text),
    )


def sse_frame(chunk: ChatCompletionChunk) -> str:
    exclude = {"error"} if chunk.error is None else None
    return f"data: {chunk.model_dump_json(exclude=exclude)}\n\n"


class ChatStream:
    """Builds the frames of one stream; every chunk shares its id and timestamp."""

    def __init__(self, model: str, fingerprint: str | None = None) -> None:
        self.id = new_response_id()
        self.created = int(time.time())
        self.model = model
        self.fingerprint = fingerprint

    def _frame(self, delta: dict[str, str], finish_reason: str | None = None, error: dict[str, str] | None = None) -> str:
        return sse_frame(
            ChatCompletionChunk(
                id=self.id,
                created=self.created,
                model=self.model,
                system_fingerprint=self.fingerprint,
                choices=[ChunkChoice(delta=delta, finish_reason=finish_reason)],
                error=error,
            )
        )

    def role_frame(self) -> str:
        return self._frame({"role": "assistant", "content": ""})

    def content_frame(self, token: str) -> str:
        return self._frame({"content": token})

    def stop_frame(self) -> str:
        return self._frame({}, finish_reason="stop")

    def error_frame(self, message: str = GENERIC_MESSAGE) -> str:
        return self._frame({}, finish_reason="error", error={"message": message})


async def stream_chat(
    result: str | Awaitable[str],
    model: str,
    *,
    token_delay: float = 0.0,
    fingerprint: str | None = None,
    transform: Callable[[str], str] | None = None,
) -> AsyncIterator[str]:
    """
    Yield the SSE frames for one chat completion.

    Args:
        result: The finished text, or an awaitable that produces it after the
            role frame has gone out.
        model: Model name echoed in every chunk.
        token_delay: Pause between token frames, in seconds.
        fingerprint: Optional ``system_fingerprint`` value.
        transform: Post-processing applied to the text before tokenizing.

    A failure after the first frame ends the stream with an error frame and the
    ``[DONE]`` sentinel instead of leaving the connection open.
    """
    stream = ChatStream(model, fingerprint)
    try:
        yield stream.role_frame()
        try:
            text = result if isinstance(result, str) else await result
            if transform is not None:
                text = transform(text)
            for i, token in enumerate(split_stream_tokens(text)):
                if i and token_delay > 0:
                    await asyncio.sleep(token_delay)
                yield stream.content_frame(token)
            yield stream.stop_frame()
        except Exception:
            LOGGER.exception("Stream %s failed after it started", stream.id)
            yield stream.error_frame()
        yield DONE_FRAME
    finally:
        # No-op once awaited; otherwise the stream closed before the job started.
        if asyncio.iscoroutine(result):
            result.close()
