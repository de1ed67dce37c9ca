"""Model client — HTTP connection to a text-completion backend.

The pipeline injects an LLM callable matching the protocol:

    async def __call__(self, packet: PromptPacket) -> str: ...

`packet.stage` identifies which pipeline node is calling (e.g.
"intent-intake", "narrative-weaver"). Implementations may use it for logging
or routing; the simplest implementation ignores it.

Two implementations are provided:

    HttpLLM   — real HTTP client, supports KoboldCpp and OpenAI-compatible
                 backends. Selected by provider_format.
    EchoLLM   — returns the prompt back unchanged. Useful for smoke-testing
                 the pipeline wiring without a running model.

The client is stateless and never retries; a failed call raises LLMError and
the turn fails with it.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal, Protocol

import httpx

from chronicle_engine.models import PromptPacket

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol — every model client must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, packet: PromptPacket) -> str: ...


# ---------------------------------------------------------------------------
# HttpLLM — connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai", "openai-chat"]


class HttpLLM:
    """Async HTTP client for completion backends.

    Supported formats:
      "koboldcpp"    — POST /api/v1/generate        {"prompt": ...}
                       Response: {"results": [{"text": "..."}]}
      "openai"       — POST /v1/completions         {"model": ..., "prompt": ...}
                       Response: {"choices": [{"text": "..."}]}
      "openai-chat"  — POST /v1/chat/completions    {"model": ..., "messages": [...]}
                       Response: {"choices": [{"message": {"content": "..."}}]}

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "koboldcpp".
        model:           Model identifier, used only by the openai formats.
        timeout:         HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _flat_prompt(self, packet: PromptPacket) -> str:
        if packet.system:
            return f"{packet.system}\n\n{packet.prompt}"
        return packet.prompt

    def _build_request(self, packet: PromptPacket) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai-chat":
            url = f"{self._base_url}/v1/chat/completions"
            messages = []
            if packet.system:
                messages.append({"role": "system", "content": packet.system})
            messages.append({"role": "user", "content": packet.prompt})
            body: dict[str, Any] = {
                "messages": messages,
                "temperature": packet.temperature,
                "max_tokens": packet.max_tokens,
            }
            if packet.response_format == "json":
                body["response_format"] = {"type": "json_object"}
            if self._model:
                body["model"] = self._model
            return url, body

        if self._format == "openai":
            url = f"{self._base_url}/v1/completions"
            body = {
                "prompt": self._flat_prompt(packet),
                "temperature": packet.temperature,
                "max_tokens": packet.max_tokens,
            }
            if self._model:
                body["model"] = self._model
            return url, body

        # koboldcpp (default)
        url = f"{self._base_url}/api/v1/generate"
        return url, {
            "prompt": self._flat_prompt(packet),
            "temperature": packet.temperature,
            "max_length": packet.max_tokens,
        }

    def _parse_response(self, data: dict) -> str:
        """Extract the completion text from the response body."""
        if self._format == "openai-chat":
            choices = data.get("choices")
            message = choices[0].get("message") if choices else None
            if not message or not isinstance(message.get("content"), str):
                raise LLMError("Unexpected response format from OpenAI-compatible chat backend")
            return message["content"]

        if self._format == "openai":
            choices = data.get("choices")
            if not choices or "text" not in choices[0]:
                raise LLMError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["text"]

        # koboldcpp
        results = data.get("results")
        if not results or "text" not in results[0]:
            raise LLMError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]

    async def __call__(self, packet: PromptPacket) -> str:
        url, body = self._build_request(packet)
        logger.debug(
            "llm call stage=%s url=%s prompt_len=%d", packet.stage, url, len(packet.prompt)
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e

        text = self._parse_response(resp.json())
        logger.debug("llm response stage=%s len=%d", packet.stage, len(text))
        return text


# ---------------------------------------------------------------------------
# EchoLLM — returns the prompt unchanged; useful for pipeline smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the packet prompt as-is. No network calls.

    Lets you verify that the pipeline wiring (scene framing, intent fallback,
    session commit) works end-to-end without a running model. The output
    won't be valid JSON for the classification stages, so those nodes take
    their heuristic fallbacks.
    """

    async def __call__(self, packet: PromptPacket) -> str:
        logger.debug("EchoLLM stage=%s prompt_len=%d", packet.stage, len(packet.prompt))
        return packet.prompt


# ---------------------------------------------------------------------------
# JSON output parsing
# ---------------------------------------------------------------------------

def parse_json_output(text: str) -> dict | None:
    """Parse a JSON object from model output.

    Strips markdown fences; if the object is wrapped in prose ("Sure: {...}"),
    the outermost {...} span is parsed instead.
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            logger.warning("Model output is not valid JSON: %s", e)
            return None
        try:
            data = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as inner:
            logger.warning("Model output is not valid JSON: %s", inner)
            return None
    return data if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# LLMError — raised for all model call failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the model backend cannot be reached, times out or returns an error."""
