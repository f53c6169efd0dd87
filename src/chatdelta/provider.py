import logging
import os
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import openai
from openai import AsyncOpenAI

from chatdelta.dispatcher import ResponseDispatcher, ResponseResult
from chatdelta.errors import REQUEST_TIMED_OUT, ErrorKind, ResponseError
from chatdelta.instrumentation import (
    completion_span,
    record_error,
    record_finish_reasons,
    record_usage,
)
from chatdelta.message import Message

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s:%(name)s:%(levelname)s:%(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    handlers=[
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


class ModelProvider:
    """Byte source for the dispatcher.

    Subclasses implement ``stream_raw()`` and ``complete_raw()``; the
    decoding, parsing and merging of what they return happens here.

    Args:
        receive_timeout: Seconds to wait for each streamed chunk before
            failing with ``"Request timed out"``.
    """

    system = "openai"

    def __init__(self, receive_timeout: float | None = None):
        self.dispatcher = ResponseDispatcher(receive_timeout=receive_timeout)

    def stream_raw(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None = None,
            **params,
    ) -> AsyncIterator[bytes]:
        raise NotImplementedError

    async def complete_raw(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None = None,
            **params,
    ) -> str:
        raise NotImplementedError

    async def stream_complete(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None = None,
            callback: Callable | None = None,
            **params,
    ) -> list[Message]:
        """Stream a completion, calling ``callback`` once per delta."""
        async with completion_span(self.system, model) as span:
            try:
                result = await self.dispatcher.collect(
                    self.stream_raw(model, messages, tools, **params),
                    callback,
                )
            except ResponseError as e:
                record_error(span, e)
                raise
            self._record(span, result)
            return result.messages

    async def complete(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None = None,
            callback: Callable | None = None,
            **params,
    ) -> list[Message]:
        """Request a non-streamed completion, calling ``callback`` per message."""
        async with completion_span(self.system, model) as span:
            try:
                body = await self.complete_raw(model, messages, tools, **params)
                result = await self.dispatcher.collect_response(body, callback)
            except ResponseError as e:
                record_error(span, e)
                raise
            self._record(span, result)
            return result.messages

    def _record(self, span, result: ResponseResult) -> None:
        record_usage(span, result.usage, response_model=result.model)
        record_finish_reasons(span, result.messages)


class OpenAICompatibleProvider(ModelProvider):
    """Any endpoint that speaks the OpenAI chat completions protocol."""

    def __init__(
            self,
            base_url: str | None = None,
            api_key: str | None = None,
            timeout: float = 600.0,
            max_retries: int = 5,
            receive_timeout: float | None = None,
    ):
        super().__init__(receive_timeout=receive_timeout)
        self.base_url = base_url
        self.client = AsyncOpenAI(
            base_url=base_url,
            api_key=api_key,
            max_retries=max_retries,
            timeout=timeout,
        )

    def build_request(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None,
            stream: bool,
            **params,
    ) -> dict:
        kwargs = dict(model=model, messages=messages, stream=stream, **params)
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        return kwargs

    def _open(self, **kwargs):
        return self.client.chat.completions.with_streaming_response.create(**kwargs)

    async def stream_raw(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None = None,
            **params,
    ) -> AsyncIterator[bytes]:
        kwargs = self.build_request(model, messages, tools, stream=True, **params)
        async with _translate_errors():
            async with self._open(**kwargs) as response:
                async for chunk in response.iter_bytes():
                    yield chunk

    async def complete_raw(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None = None,
            **params,
    ) -> str:
        kwargs = self.build_request(model, messages, tools, stream=False, **params)
        async with _translate_errors():
            async with self._open(**kwargs) as response:
                return await response.text()


class OpenAIProvider(OpenAICompatibleProvider):

    def __init__(self, api_key: str | None = None, **kwargs):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        super().__init__(api_key=api_key, **kwargs)


class OpenRouter(OpenAICompatibleProvider):

    system = "openrouter"

    def __init__(self, api_key: str | None = None, **kwargs):
        if not api_key:
            api_key = os.getenv("OPENROUTER_API_KEY")
        kwargs.setdefault("timeout", 180.0)
        super().__init__(
            base_url="https://openrouter.ai/api/v1",
            api_key=api_key,
            **kwargs,
        )


class VLLMProvider(OpenAICompatibleProvider):

    system = "vllm"

    def __init__(self, url: str, port: int, **kwargs):
        super().__init__(
            base_url=f"http://{url}:{port}/v1", api_key="DUMMY", **kwargs,
        )


class ModalVLLMProvider(OpenAICompatibleProvider):
    """vLLM served from a Modal web endpoint."""

    system = "vllm"

    def __init__(self, endpoint_url: str, api_key: str | None = None, **kwargs):
        base_url = endpoint_url.rstrip("/")
        if not base_url.endswith("/v1"):
            base_url = f"{base_url}/v1"
        super().__init__(base_url=base_url, api_key=api_key or "DUMMY", **kwargs)


@asynccontextmanager
async def _translate_errors():
    try:
        yield
    except openai.APITimeoutError as e:
        logger.warning(f"Provider request timed out: {e}")
        raise ResponseError(ErrorKind.TRANSPORT_TIMEOUT, REQUEST_TIMED_OUT) from e
    except openai.APIStatusError as e:
        reason = _error_reason(e)
        logger.warning(f"Provider returned {e.status_code}: {reason}")
        raise ResponseError(ErrorKind.UPSTREAM_ERROR, reason) from e


def _error_reason(error: openai.APIStatusError) -> str:
    body = error.body
    if isinstance(body, dict):
        inner = body.get("error", body)
        if isinstance(inner, dict) and inner.get("message"):
            return str(inner["message"])
        if isinstance(inner, str) and inner:
            return inner
    if isinstance(body, str) and body:
        return body
    return error.message
