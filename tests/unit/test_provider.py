from unittest.mock import MagicMock

import httpx
import openai
import pytest

from chatdelta.errors import ErrorKind, ResponseError
from chatdelta.message import MessageRole
from chatdelta.provider import (
    ModalVLLMProvider,
    ModelProvider,
    OpenAIProvider,
    OpenRouter,
    VLLMProvider,
)

from tests.conftest import make_completion, sse_encode, split_every


# ---------------------------------------------------------------------------
# Fake raw responses (mirror openai's AsyncAPIResponse surface)
# ---------------------------------------------------------------------------

class FakeRawResponse:
    def __init__(self, chunks: list[bytes] | None = None, text: str = ""):
        self._chunks = chunks or []
        self._text = text

    async def iter_bytes(self):
        for chunk in self._chunks:
            yield chunk

    async def text(self):
        return self._text


class FakeOpen:
    """Stands in for ``with_streaming_response.create`` and records calls."""

    def __init__(self, response: FakeRawResponse | None = None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.calls: list[dict] = []

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        return self

    async def __aenter__(self):
        if self.error is not None:
            raise self.error
        return self.response

    async def __aexit__(self, *exc):
        return False


def _request() -> httpx.Request:
    return httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _status_error(body) -> openai.APIStatusError:
    response = httpx.Response(400, request=_request())
    return openai.BadRequestError("Error code: 400", response=response, body=body)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def test_modal_provider_appends_v1():
    p = ModalVLLMProvider(
        endpoint_url="https://workspace--app.modal.run",
        api_key="test",
    )
    assert p.base_url == "https://workspace--app.modal.run/v1"


def test_modal_provider_no_double_v1():
    p = ModalVLLMProvider(
        endpoint_url="https://workspace--app.modal.run/v1/",
        api_key="test",
    )
    assert p.base_url == "https://workspace--app.modal.run/v1"


def test_openai_provider_reads_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
    p = OpenAIProvider()
    assert p.client.api_key == "sk-from-env"


def test_openrouter_reads_env(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "or-from-env")
    p = OpenRouter()
    assert p.client.api_key == "or-from-env"
    assert p.base_url == "https://openrouter.ai/api/v1"


def test_vllm_base_url():
    p = VLLMProvider(url="localhost", port=8000)
    assert p.base_url == "http://localhost:8000/v1"


def test_receive_timeout_reaches_dispatcher():
    p = VLLMProvider(url="localhost", port=8000, receive_timeout=2.5)
    assert p.dispatcher.receive_timeout == 2.5


# ---------------------------------------------------------------------------
# Request construction
# ---------------------------------------------------------------------------

class TestBuildRequest:
    def test_includes_tools_with_tool_choice(self):
        provider = OpenAIProvider(api_key="test-key")
        tools = [{"type": "function", "function": {"name": "f"}}]

        kwargs = provider.build_request("gpt-4o", [], tools, stream=True)

        assert kwargs["tools"] == tools
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["stream"] is True

    def test_omits_tools_and_tool_choice_when_none(self):
        provider = OpenAIProvider(api_key="test-key")

        kwargs = provider.build_request("gpt-4o", [], None, stream=False)

        assert "tools" not in kwargs
        assert "tool_choice" not in kwargs

    def test_forwards_extra_params(self):
        provider = OpenAIProvider(api_key="test-key")

        kwargs = provider.build_request("gpt-4o", [], None, stream=True, temperature=1, seed=0)

        assert kwargs["temperature"] == 1
        assert kwargs["seed"] == 0


# ---------------------------------------------------------------------------
# stream_complete / complete
# ---------------------------------------------------------------------------

class TestStreamComplete:
    @pytest.mark.asyncio
    async def test_streams_raw_bytes_through_dispatcher(self, monkeypatch, text_stream):
        provider = OpenAIProvider(api_key="test-key")
        fake = FakeOpen(FakeRawResponse(
            chunks=[c.encode("utf-8") for c in split_every(text_stream, 17)],
        ))
        monkeypatch.setattr(provider, "_open", fake)
        received = []

        [message] = await provider.stream_complete(
            "gpt-4o", [{"role": "user", "content": "hi"}], callback=received.append,
        )

        assert message.role == MessageRole.ASSISTANT
        assert message.content == "Colorful Threads"
        assert len(received) == 4
        assert fake.calls[0]["stream"] is True
        assert fake.calls[0]["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_timeout_is_reported(self, monkeypatch):
        provider = OpenAIProvider(api_key="test-key")
        monkeypatch.setattr(provider, "_open", FakeOpen(
            error=openai.APITimeoutError(request=_request()),
        ))

        with pytest.raises(ResponseError, match="Request timed out") as exc:
            await provider.stream_complete("gpt-4o", [])
        assert exc.value.kind == ErrorKind.TRANSPORT_TIMEOUT

    @pytest.mark.asyncio
    async def test_status_error_message_is_surfaced(self, monkeypatch):
        provider = OpenAIProvider(api_key="test-key")
        monkeypatch.setattr(provider, "_open", FakeOpen(
            error=_status_error({"message": "[] is too short - 'messages'"}),
        ))

        with pytest.raises(ResponseError, match=r"\[\] is too short - 'messages'") as exc:
            await provider.stream_complete("gpt-4o", [])
        assert exc.value.kind == ErrorKind.UPSTREAM_ERROR

    @pytest.mark.asyncio
    async def test_error_recorded_on_span(self, monkeypatch):
        import chatdelta.provider as provider_module

        span = MagicMock()
        record_error = MagicMock()

        class _Span:
            async def __aenter__(self):
                return span

            async def __aexit__(self, *exc):
                return False

        monkeypatch.setattr(provider_module, "completion_span", lambda *a: _Span())
        monkeypatch.setattr(provider_module, "record_error", record_error)
        provider = OpenAIProvider(api_key="test-key")
        monkeypatch.setattr(provider, "_open", FakeOpen(FakeRawResponse(
            chunks=[b"data: {broken\n\n"],
        )))

        with pytest.raises(ResponseError):
            await provider.stream_complete("gpt-4o", [])

        assert record_error.call_args.args[0] is span


class TestComplete:
    @pytest.mark.asyncio
    async def test_non_streamed_body(self, monkeypatch):
        import json

        provider = OpenAIProvider(api_key="test-key")
        body = json.dumps(make_completion([
            {"message": {"role": "assistant", "content": "answer"},
             "finish_reason": "stop", "index": 0},
        ]))
        fake = FakeOpen(FakeRawResponse(text=body))
        monkeypatch.setattr(provider, "_open", fake)
        received = []

        [message] = await provider.complete("gpt-4o", [], callback=received.append)

        assert message.content == "answer"
        assert received == [message]
        assert fake.calls[0]["stream"] is False

    @pytest.mark.asyncio
    async def test_base_provider_requires_transport(self):
        with pytest.raises(NotImplementedError):
            await ModelProvider().complete("m", [])

    @pytest.mark.asyncio
    async def test_stream_sentinel_only(self, monkeypatch):
        provider = OpenAIProvider(api_key="test-key")
        monkeypatch.setattr(provider, "_open", FakeOpen(FakeRawResponse(
            chunks=[sse_encode([]).encode("utf-8")],
        )))

        assert await provider.stream_complete("gpt-4o", []) == []
