"""Adapter settings: defaults, then an optional YAML file, then GRID_* environment."""
from __future__ import annotations
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_GRID_URL = "https://api.aipowergrid.io/api/v2"
DEFAULT_MODEL = "aphrodite/deepseek-ai/DeepSeek-R1-Distill-Llama-70B"
DEFAULT_IMAGE_URL = "https://images.aipg.art/{id}.webp"

# Fields the grid's shared schema accepts for text jobs but ignores.
LEGACY_IMAGE_PARAMS: dict[str, Any] = {
    "max_context_length": 512,
    "n": 1,
    "width": 512,
    "height": 512,
    "steps": 30,
    "sampler_name": "DDIM",
    "cfg_scale": 7.5,
    "tiling": False,
    "clip_skip": 1,
    "post_processing": [],
    "karras": False,
    "hires_fix": False,
}


class Settings(BaseSettings):
    """
    Adapter configuration. Every field reads from ``GRID_<FIELD_NAME>``.
    """

    # Grid connection
    base_url: str = DEFAULT_GRID_URL
    sni_hostname: str | None = None  # TLS server name override
    http_timeout: float = Field(30.0, gt=0)
    image_url_template: str = DEFAULT_IMAGE_URL

    # Request defaults
    chat_default_model: str = DEFAULT_MODEL
    completion_default_model: str = DEFAULT_MODEL
    chat_max_tokens: int = Field(150, ge=1)
    completion_max_tokens: int = Field(50, ge=1)
    temperature: float = 0.7
    top_p: float = 0.9
    legacy_image_params: bool = True

    # Polling
    poll_interval: float = Field(2.0, ge=0)
    poll_timeout: float = Field(300.0, ge=0)
    max_poll_attempts: int = Field(150, ge=1)
    poll_retries: int = Field(3, ge=0)
    retry_base_delay: float = Field(0.5, ge=0)

    # Streaming
    token_delay: float = Field(0.05, ge=0)
    stream_before_result: bool = False

    # Instruction shaping
    system_directive: str | None = None
    directive_on_completions: bool = False
    answer_marker: str | None = None
    template_path: str = "configs/prompt_template.txt"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="GRID_", extra="forbid", frozen=True)

    @field_validator("sni_hostname", "system_directive", "answer_marker", mode="before")
    @classmethod
    def _empty_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


def load_cfg(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data or {}


def load_settings(cfg_path: str | None = None, **overrides: Any) -> Settings:
    """
    Build settings from defaults, a YAML file, the environment and overrides.

    Args:
        cfg_path: YAML config path. Defaults to $GRID_ADAPTER_CONFIG when set.
        overrides: Final values, mostly for tests.
    """
    cfg_path = cfg_path or os.getenv("GRID_ADAPTER_CONFIG")
    file_values: dict[str, Any] = {}
    if cfg_path:
        if not Path(cfg_path).exists():
            raise FileNotFoundError(f"Config file not found at {cfg_path}")
        file_values = load_cfg(cfg_path)
        if not isinstance(file_values, dict):
            raise ValueError(f"{cfg_path} must hold a mapping of settings")

    # Init values outrank the environment in BaseSettings, so the YAML layer
    # only fills fields the environment left unset.
    from_env = Settings()
    env_values = from_env.model_dump(include=from_env.model_fields_set)
    return Settings(**{**file_values, **env_values, **overrides})
