"""Pydantic models and dataclasses for request/response types."""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel


@dataclass
class GenerationRequest:
    """A normalized inbound request, ready to become a grid payload."""
    instruction: str
    model: str
    api_key: str
    temperature: float
    max_tokens: int
    top_p: float
    stream: bool = False
    session_id: str | None = None


@dataclass
class ImageRequest:
    """A normalized image-generation request."""
    prompt: str
    model: str
    api_key: str
    nsfw: bool = False
    session_id: str | None = None


@dataclass
class JobHandle:
    """Opaque id the grid assigns to a submitted job."""
    job_id: str


@dataclass
class GenerationResult:
    """One status poll: ``text`` is only meaningful once ``done`` is true."""
    done: bool
    text: str = ""


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int
    total_tokens: int


class ChatMessage(BaseModel):
    role: str
    content: str


class ChatChoice(BaseModel):
    index: int = 0
    message: ChatMessage
    finish_reason: str = "stop"


class ChatCompletion(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    system_fingerprint: str | None = None
    choices: list[ChatChoice]
    usage: Usage


class TextChoice(BaseModel):
    text: str
    index: int = 0
    logprobs: Any = None
    finish_reason: str = "stop"


class TextCompletion(BaseModel):
    id: str
    object: Literal["text_completion"] = "text_completion"
    created: int
    model: str
    choices: list[TextChoice]
    usage: Usage


class ChunkChoice(BaseModel):
    index: int = 0
    delta: dict[str, str]
    finish_reason: str | None = None


class ChatCompletionChunk(BaseModel):
    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    system_fingerprint: str | None = None
    choices: list[ChunkChoice]
    error: dict[str, str] | None = None


class ModelCard(BaseModel):
    id: str
    object: Literal["model"] = "model"
    created: int
    owned_by: str


class ModelList(BaseModel):
    object: Literal["list"] = "list"
    data: list[ModelCard]


class GenerateOut(BaseModel):
    response: str
    sessionId: str
