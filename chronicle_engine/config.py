"""Engine configuration (model connection, pipeline tuning, data dir).

get_config() returns defaults merged with an optional JSON config file and
then with environment variables. `.env` in the working directory is loaded
first so local overrides don't need exporting.

Environment variables:
  CHRONICLE_CONFIG               path to a JSON config file
  CHRONICLE_DATA_DIR             enables JSON persistence of sessions
  CHRONICLE_MODEL_CALL_TIMEOUT   per-call timeout in seconds
  CHRONICLE_SAFETY_THRESHOLD     low | medium | high | critical
  CHRONICLE_CHECK_RESOLUTION     inline | deferred
  LLM_PROVIDER_URL, LLM_API_KEY, LLM_PROVIDER_FORMAT, LLM_MODEL, LLM_TIMEOUT
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from chronicle_engine.llm import HttpLLM, ProviderFormat


class LLMSettings(BaseModel):
    provider_url: str = "http://localhost:5001"
    api_key: str = ""
    provider_format: ProviderFormat = "koboldcpp"
    model: str = ""
    timeout: float = 120.0


class PipelineSettings(BaseModel):
    history_window: int = Field(default=6, ge=0)
    safety_threshold: Literal["low", "medium", "high", "critical"] = "high"
    check_resolution: Literal["inline", "deferred"] = "inline"
    model_call_timeout: float = Field(default=45.0, gt=0)
    check_expiry_seconds: int = Field(default=90, gt=0)


class EngineConfig(BaseModel):
    llm: LLMSettings = Field(default_factory=LLMSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    data_dir: Path | None = None


_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "LLM_PROVIDER_URL": ("llm", "provider_url"),
    "LLM_API_KEY": ("llm", "api_key"),
    "LLM_PROVIDER_FORMAT": ("llm", "provider_format"),
    "LLM_MODEL": ("llm", "model"),
    "LLM_TIMEOUT": ("llm", "timeout"),
    "CHRONICLE_MODEL_CALL_TIMEOUT": ("pipeline", "model_call_timeout"),
    "CHRONICLE_SAFETY_THRESHOLD": ("pipeline", "safety_threshold"),
    "CHRONICLE_CHECK_RESOLUTION": ("pipeline", "check_resolution"),
}


def get_config(path: Path | None = None) -> EngineConfig:
    """Read config, returning defaults merged with stored values and env."""
    load_dotenv()

    stored: dict[str, Any] = {"llm": {}, "pipeline": {}}
    path = path or (Path(os.environ["CHRONICLE_CONFIG"]) if os.getenv("CHRONICLE_CONFIG") else None)
    if path is not None and path.is_file():
        data = json.loads(path.read_text())
        for section in ("llm", "pipeline"):
            if isinstance(data.get(section), dict):
                stored[section].update(data[section])
        if data.get("data_dir"):
            stored["data_dir"] = data["data_dir"]

    for var, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(var)
        if value:
            stored[section][key] = value
    if os.getenv("CHRONICLE_DATA_DIR"):
        stored["data_dir"] = os.environ["CHRONICLE_DATA_DIR"]

    return EngineConfig.model_validate(stored)


def build_llm(settings: LLMSettings) -> HttpLLM:
    """Construct the HTTP model client from config."""
    return HttpLLM(
        provider_url=settings.provider_url,
        api_key=settings.api_key,
        provider_format=settings.provider_format,
        model=settings.model,
        timeout=settings.timeout,
    )
