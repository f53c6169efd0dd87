import asyncio
import codecs
import inspect
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from chatdelta.errors import (
    INVALID_JSON_PREFIX,
    REQUEST_TIMED_OUT,
    STREAM_ENDED_EARLY,
    UNEXPECTED_RESPONSE,
    ErrorKind,
    ParseError,
    ResponseError,
)
from chatdelta.events import DeltaEvent, MessageEvent, ResponseCompleteEvent, StreamEvent
from chatdelta.message import Message, TokenUsage
from chatdelta.parsing import decode_payload, parse_response
from chatdelta.sse import decode_stream, flush
from chatdelta.streaming import MergeEngine, MessageDelta

logger = logging.getLogger(__name__)


@dataclass
class ResponseResult:
    """The outcome of one streamed or non-streamed call."""

    messages: list[Message] = field(default_factory=list)
    usage: TokenUsage | None = None
    model: str | None = None


class ResponseStream:
    """Decode, parse and merge state for a single streamed call.

    ``feed()`` is synchronous and returns the events produced by one
    chunk; ``close()`` flushes the tail and returns the result.  Raises
    :class:`ResponseError` as soon as a payload fails to parse.
    """

    def __init__(self) -> None:
        self._tail = ""
        # text received since the last newline; nothing in it can end a line
        self._held: list[str] = []
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._engine = MergeEngine()
        self.usage: TokenUsage | None = None
        self.model: str | None = None

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        if isinstance(chunk, bytes):
            chunk = self._decode(chunk)
        if "\n" not in chunk:
            self._held.append(chunk)
            return []
        frames, self._tail = decode_stream(self._release(chunk), self._tail)
        events: list[StreamEvent] = []
        for frame in frames:
            events.extend(self._process(frame))
        return events

    def close(self) -> tuple[list[StreamEvent], ResponseResult]:
        """Finish the stream; every choice seen must have terminated."""
        events: list[StreamEvent] = []
        remainder = self._release(self._decode(b"", final=True))
        frames, self._tail = decode_stream(remainder, self._tail)
        for frame in frames + flush(self._tail):
            events.extend(self._process(frame))
        self._tail = ""
        if self._engine.pending:
            logger.warning(
                f"Stream ended with incomplete choices: {self._engine.pending}"
            )
            raise ResponseError(ErrorKind.INCOMPLETE_STREAM, STREAM_ENDED_EARLY)
        result = ResponseResult(
            messages=self._engine.messages, usage=self.usage, model=self.model,
        )
        return events, result

    def _release(self, text: str) -> str:
        if self._held:
            text = "".join(self._held) + text
            self._held = []
        return text

    def _decode(self, chunk: bytes, final: bool = False) -> str:
        try:
            return self._decoder.decode(chunk, final=final)
        except UnicodeDecodeError as e:
            logger.warning(f"Stream is not valid UTF-8: {e}")
            raise ResponseError(
                ErrorKind.MALFORMED_FRAME,
                INVALID_JSON_PREFIX + chunk.decode("utf-8", errors="replace"),
            ) from e

    def _process(self, frame: str) -> list[StreamEvent]:
        logger.debug(f"Frame: {frame}")
        payload = decode_payload(frame)
        if isinstance(payload, ParseError):
            raise ResponseError.from_parse_error(payload)
        self._observe(payload)
        parsed = parse_response(payload)

        if isinstance(parsed, ParseError):
            raise ResponseError.from_parse_error(parsed)
        if isinstance(parsed, MessageDelta):
            parsed = [parsed]
        if isinstance(parsed, Message):
            parsed = [parsed]
        if not isinstance(parsed, list):
            logger.warning(f"Unexpected payload in stream: {frame}")
            raise ResponseError(ErrorKind.UNRECOGNIZED_SHAPE, UNEXPECTED_RESPONSE)

        events: list[StreamEvent] = []
        for item in parsed:
            if isinstance(item, Message):
                self._engine.add_message(item)
                events.append(MessageEvent(message=item))
                continue
            events.append(DeltaEvent(delta=item))
            outcome = self._engine.add(item)
            if isinstance(outcome, ParseError):
                raise ResponseError.from_parse_error(outcome)
            if outcome is not None:
                events.append(MessageEvent(message=outcome))
        return events

    def _observe(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        if isinstance(payload.get("usage"), dict):
            self.usage = TokenUsage.model_validate(payload["usage"])
        if payload.get("model"):
            self.model = payload["model"]


class ResponseDispatcher:
    """Turns provider output into messages and feeds a caller's sink.

    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point;
    ``process_response()`` handles a complete, non-streamed body.

    Args:
        receive_timeout: Default number of seconds to wait for each chunk
            before failing with ``"Request timed out"``.  ``None`` waits
            forever.
    """

    def __init__(self, receive_timeout: float | None = None):
        self.receive_timeout = receive_timeout

    async def run(
        self, chunks: AsyncIterable[bytes | str],
        callback: Callable | None = None,
        receive_timeout: float | None = None,
    ) -> list[Message]:
        """Consume a stream, calling ``callback`` once per delta."""
        result = await self.collect(chunks, callback, receive_timeout)
        return result.messages

    async def collect(
        self, chunks: AsyncIterable[bytes | str],
        callback: Callable | None = None,
        receive_timeout: float | None = None,
    ) -> ResponseResult:
        """Like ``run()`` but returns usage and model alongside the messages."""
        result: ResponseResult | None = None
        async for event in self.iter(chunks, receive_timeout):
            if isinstance(event, DeltaEvent) and callback is not None:
                await _invoke(callback, event.delta)
            elif isinstance(event, ResponseCompleteEvent):
                result = event.result
        if result is None:
            raise RuntimeError("iter() ended without emitting ResponseCompleteEvent")
        return result

    async def iter(
        self, chunks: AsyncIterable[bytes | str],
        receive_timeout: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield events as chunks arrive, ending with ResponseCompleteEvent."""
        timeout = receive_timeout if receive_timeout is not None else self.receive_timeout
        stream = ResponseStream()
        iterator = aiter(chunks)
        try:
            while True:
                try:
                    async with asyncio.timeout(timeout):
                        chunk = await anext(iterator)
                except StopAsyncIteration:
                    break
                except TimeoutError:
                    logger.warning(f"No data received within {timeout}s")
                    raise ResponseError(
                        ErrorKind.TRANSPORT_TIMEOUT, REQUEST_TIMED_OUT,
                    ) from None
                for event in stream.feed(chunk):
                    yield event
        finally:
            # release the transport when the caller stops early or we fail
            if hasattr(iterator, "aclose"):
                await iterator.aclose()

        events, result = stream.close()
        for event in events:
            yield event
        yield ResponseCompleteEvent(result=result)

    async def process_response(
        self, body: bytes | str | dict, callback: Callable | None = None,
    ) -> list[Message]:
        """Parse a non-streamed body, calling ``callback`` once per message."""
        result = await self.collect_response(body, callback)
        return result.messages

    async def collect_response(
        self, body: bytes | str | dict, callback: Callable | None = None,
    ) -> ResponseResult:
        result = parse_body(body)
        if callback is not None:
            for message in result.messages:
                await _invoke(callback, message)
        return result


def parse_body(body: bytes | str | dict) -> ResponseResult:
    """Parse a complete response body into a :class:`ResponseResult`."""
    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ResponseError(
                ErrorKind.MALFORMED_FRAME,
                INVALID_JSON_PREFIX + body.decode("utf-8", errors="replace"),
            ) from e
    payload = decode_payload(body) if isinstance(body, str) else body
    if isinstance(payload, ParseError):
        raise ResponseError.from_parse_error(payload)

    parsed = parse_response(payload)
    if isinstance(parsed, ParseError):
        raise ResponseError.from_parse_error(parsed)
    if isinstance(parsed, Message):
        parsed = [parsed]
    if not isinstance(parsed, list) or not all(isinstance(m, Message) for m in parsed):
        raise ResponseError(ErrorKind.UNRECOGNIZED_SHAPE, UNEXPECTED_RESPONSE)

    usage = None
    if isinstance(payload.get("usage"), dict):
        usage = TokenUsage.model_validate(payload["usage"])
    return ResponseResult(
        messages=sorted(parsed, key=lambda m: m.index),
        usage=usage,
        model=payload.get("model"),
    )


async def _invoke(callback: Callable, item: Any) -> None:
    result = callback(item)
    if inspect.isawaitable(result):
        await result
