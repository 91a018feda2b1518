"""Turn OpenAI-shaped request bodies into grid job payloads."""
from __future__ import annotations
import math
from typing import Any, Mapping

from grid_adapter.common.config import LEGACY_IMAGE_PARAMS, Settings
from grid_adapter.common.errors import InvalidRequest, MissingApiKey, MissingMessages, MissingPrompt
from grid_adapter.common.schema import GenerationRequest, ImageRequest
from grid_adapter.common.templates import apply_directive


def resolve_api_key(authorization: str | None, body: Mapping[str, Any]) -> str:
    """
    Pick the grid API key for a request.

    A ``Bearer`` token in the Authorization header wins over the body's
    ``apiKey`` field.

    Raises:
        MissingApiKey: neither source carries a key.
    """
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
        if token:
            return token
    key = body.get("apiKey")
    if isinstance(key, str) and key.strip():
        return key.strip()
    raise MissingApiKey()


def _content_text(content: Any, index: int) -> str:
    """Message content as text; multipart lists may only hold text parts, joined by newlines."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for part in content:
            if not isinstance(part, Mapping) or part.get("type") != "text" or not isinstance(part.get("text"), str):
                raise InvalidRequest(f"messages[{index}].content only supports text parts")
            texts.append(part["text"])
        return "\n".join(texts)
    raise InvalidRequest(f"messages[{index}].content must be a string or a list of text parts")


def messages_to_instruction(messages: Any) -> str:
    """Flatten chat messages into ``role: content`` blocks, one blank line apart."""
    if not isinstance(messages, list) or not messages:
        raise MissingMessages()
    parts = []
    for i, msg in enumerate(messages):
        if not isinstance(msg, Mapping) or "role" not in msg or "content" not in msg:
            raise InvalidRequest(f"messages[{i}] must have 'role' and 'content'")
        parts.append(f"{msg['role']}: {_content_text(msg['content'], i)}")
    return "\n\n".join(parts)


def _number(body: Mapping[str, Any], key: str, default: Any, cast: type) -> Any:
    value = body.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        raise InvalidRequest(f"'{key}' must be a number")
    try:
        if not math.isfinite(float(value)):
            raise InvalidRequest(f"'{key}' must be a finite number")
        return cast(value)
    except (TypeError, ValueError, OverflowError):
        raise InvalidRequest(f"'{key}' must be a number")


def _session_id(body: Mapping[str, Any]) -> str | None:
    value = body.get("sessionId")
    return value if isinstance(value, str) and value else None


def _model(body: Mapping[str, Any], default: str) -> str:
    model = body.get("model")
    if model is None or model == "":
        return default
    if not isinstance(model, str):
        raise InvalidRequest("'model' must be a string")
    return model


def translate_chat(body: Mapping[str, Any], api_key: str, settings: Settings) -> GenerationRequest:
    """Build a request from a ``/v1/chat/completions`` body."""
    instruction = messages_to_instruction(body.get("messages"))
    return GenerationRequest(
        instruction=apply_directive(instruction, settings.system_directive),
        model=_model(body, settings.chat_default_model),
        api_key=api_key,
        temperature=_number(body, "temperature", settings.temperature, float),
        max_tokens=_number(body, "max_tokens", settings.chat_max_tokens, int),
        top_p=_number(body, "top_p", settings.top_p, float),
        stream=body.get("stream") is True,
        session_id=_session_id(body),
    )


def translate_completion(body: Mapping[str, Any], api_key: str, settings: Settings) -> GenerationRequest:
    """Build a request from a ``/v1/completions`` body; the prompt is sent verbatim."""
    prompt = body.get("prompt")
    if prompt is None or prompt == "":
        raise MissingPrompt()
    if not isinstance(prompt, str):
        raise InvalidRequest("'prompt' must be a string")
    if settings.directive_on_completions:
        prompt = apply_directive(prompt, settings.system_directive)
    return GenerationRequest(
        instruction=prompt,
        model=_model(body, settings.completion_default_model),
        api_key=api_key,
        temperature=_number(body, "temperature", settings.temperature, float),
        max_tokens=_number(body, "max_tokens", settings.completion_max_tokens, int),
        top_p=_number(body, "top_p", settings.top_p, float),
        session_id=_session_id(body),
    )


def build_payload(req: GenerationRequest, legacy_image_params: bool = False) -> dict[str, Any]:
    """
    Grid job-submission payload for a normalized request.

    Args:
        req: The normalized request.
        legacy_image_params: Also send the image-era fields the grid schema tolerates.
    """
    params: dict[str, Any] = {}
    if legacy_image_params:
        params.update(LEGACY_IMAGE_PARAMS)
        params["post_processing"] = []
    params.update(
        max_length=req.max_tokens,
        temperature=req.temperature,
        top_p=req.top_p,
    )
    return {
        "prompt": req.instruction,
        "models": [req.model],
        "n": 1,
        "trusted_workers": False,
        "params": params,
    }


def translate_image(body: Mapping[str, Any], api_key: str) -> ImageRequest:
    """Build an image request from a ``/generate-image`` body."""
    prompt = body.get("prompt")
    if prompt is None or prompt == "":
        raise MissingPrompt()
    if not isinstance(prompt, str):
        raise InvalidRequest("'prompt' must be a string")
    model = body.get("model")
    if not isinstance(model, str) or not model:
        raise InvalidRequest("'model' is required")
    custom = body.get("customSettings") or {}
    if not isinstance(custom, Mapping):
        raise InvalidRequest("'customSettings' must be an object")
    return ImageRequest(
        prompt=prompt,
        model=model,
        api_key=api_key,
        nsfw=custom.get("nsfw") is True,
        session_id=_session_id(body),
    )


def build_image_payload(req: ImageRequest) -> dict[str, Any]:
    """Grid payload for an image job; the NSFW censor is the inverse of ``nsfw``."""
    params = {k: v for k, v in LEGACY_IMAGE_PARAMS.items() if k != "max_context_length"}
    params["post_processing"] = []
    return {
        "prompt": req.prompt,
        "allow_downgrade": False,
        "nsfw": req.nsfw,
        "censor_nsfw": not req.nsfw,
        "trusted_workers": False,
        "models": [req.model],
        "source_processing": "img2img",
        "r2": True,
        "params": params,
    }
