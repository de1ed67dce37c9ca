"""Tests for chronicle_engine.llm — HttpLLM, EchoLLM and JSON output parsing."""

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from chronicle_engine.llm import EchoLLM, HttpLLM, LLMError, parse_json_output
from chronicle_engine.models import PromptPacket


def _packet(prompt: str = "prompt", **kwargs) -> PromptPacket:
    return PromptPacket(stage="narrative-weaver", prompt=prompt, **kwargs)


# ---------------------------------------------------------------------------
# EchoLLM
# ---------------------------------------------------------------------------

class TestEchoLLM:
    async def test_returns_prompt_unchanged(self) -> None:
        llm = EchoLLM()
        result = await llm(_packet("hello world"))
        assert result == "hello world"

    async def test_stage_name_ignored(self) -> None:
        llm = EchoLLM()
        a = await llm(PromptPacket(stage="intent-intake", prompt="x"))
        b = await llm(PromptPacket(stage="narrative-weaver", prompt="x"))
        assert a == b


# ---------------------------------------------------------------------------
# HttpLLM — KoboldCpp format
# ---------------------------------------------------------------------------

def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


class TestHttpLLMKoboldCpp:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(provider_url="http://localhost:5001", api_key="")

    async def test_happy_path(self, llm: HttpLLM) -> None:
        body = {"results": [{"text": "The docks are silent."}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm(_packet("Describe the docks."))
        assert result == "The docks are silent."

    async def test_posts_to_correct_url(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm(_packet())
        url = mock_post.call_args[0][0]
        assert url == "http://localhost:5001/api/v1/generate"

    async def test_system_prepended_and_sampling_sent(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm(_packet("my prompt", system="be terse", temperature=0.1, max_tokens=50))
        sent_body = mock_post.call_args.kwargs["json"]
        assert sent_body == {"prompt": "be terse\n\nmy prompt", "temperature": 0.1, "max_length": 50}

    @pytest.mark.parametrize("api_key,expected", [("secret", "Bearer secret"), ("", None)])
    async def test_authorization_header(self, api_key: str, expected: str | None) -> None:
        llm = HttpLLM(provider_url="http://localhost:5001/", api_key=api_key)
        mock_post = AsyncMock(return_value=_mock_response({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm(_packet())
        assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"
        assert mock_post.call_args.kwargs["headers"].get("Authorization") == expected

    @pytest.mark.parametrize(
        "outcome,message",
        [
            ({"side_effect": httpx.ConnectError("refused")}, "Cannot connect"),
            ({"side_effect": httpx.TimeoutException("slow")}, "timed out"),
            ({"return_value": _mock_response({}, status=503)}, "HTTP 503"),
            ({"return_value": _mock_response({"unexpected": "format"})}, "Unexpected response format"),
        ],
    )
    async def test_transport_failures_become_llm_error(
        self, llm: HttpLLM, outcome: dict, message: str
    ) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(**outcome)):
            with pytest.raises(LLMError, match=message):
                await llm(_packet())


# ---------------------------------------------------------------------------
# HttpLLM — OpenAI formats
# ---------------------------------------------------------------------------

class TestHttpLLMOpenAI:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(
            provider_url="http://localhost:8080",
            provider_format="openai",
            model="mistral-7b",
        )

    async def test_posts_to_correct_url(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"choices": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm(_packet())
        url = mock_post.call_args[0][0]
        assert url == "http://localhost:8080/v1/completions"

    async def test_sends_model_in_body(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"choices": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm(_packet())
        sent_body = mock_post.call_args.kwargs["json"]
        assert sent_body["model"] == "mistral-7b"

    async def test_malformed_response_raises_llm_error(self, llm: HttpLLM) -> None:
        body = {"results": [{"text": "kobold format accidentally"}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await llm(_packet())


class TestHttpLLMOpenAIChat:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(
            provider_url="http://localhost:8080",
            provider_format="openai-chat",
            model="gpt-x",
        )

    async def test_messages_and_json_mode(self, llm: HttpLLM) -> None:
        body = {"choices": [{"message": {"content": "{}"}}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        packet = PromptPacket(
            stage="intent-intake", prompt="classify", system="you classify",
            response_format="json",
        )
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm(packet)
        assert result == "{}"
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/chat/completions"
        sent_body = mock_post.call_args.kwargs["json"]
        assert sent_body["messages"] == [
            {"role": "system", "content": "you classify"},
            {"role": "user", "content": "classify"},
        ]
        assert sent_body["response_format"] == {"type": "json_object"}
        assert sent_body["model"] == "gpt-x"

    async def test_text_packets_have_no_response_format(self, llm: HttpLLM) -> None:
        body = {"choices": [{"message": {"content": "prose"}}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm(_packet())
        assert "response_format" not in mock_post.call_args.kwargs["json"]

    async def test_missing_content_raises_llm_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"choices": [{"message": {}}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="Unexpected response format"):
                await llm(_packet())


# ---------------------------------------------------------------------------
# parse_json_output
# ---------------------------------------------------------------------------

class TestParseJsonOutput:
    def test_plain_object(self) -> None:
        assert parse_json_output('{"a": 1}') == {"a": 1}

    def test_strips_markdown_fences(self) -> None:
        assert parse_json_output('```json\n{"a": 1}\n```') == {"a": 1}

    def test_invalid_json_returns_none(self) -> None:
        assert parse_json_output("The docks are quiet.") is None

    def test_non_object_returns_none(self) -> None:
        assert parse_json_output("[1, 2]") is None

    def test_object_wrapped_in_prose(self) -> None:
        text = 'Sure, here is the classification: {"skill": "stealth", "requires_check": true} Hope that helps.'
        assert parse_json_output(text) == {"skill": "stealth", "requires_check": True}

    def test_broken_object_in_prose_returns_none(self) -> None:
        assert parse_json_output("Sure: {skill: stealth}") is None
