"""Map provider JSON payloads onto typed deltas and messages.

:func:`parse_response` recognises, in order: streamed chunks
(``choices[].delta``), complete responses (``choices[].message``), a
usage-only chunk with no choices, raw tool-call objects, bare choice
objects and provider error bodies.  Every failure comes back as a
:class:`~chatdelta.errors.ParseError` value; nothing here raises on bad
input.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Union

from chatdelta.errors import (
    INVALID_ARGUMENTS,
    INVALID_JSON_PREFIX,
    INVALID_TOOL_CALL_ARGUMENTS,
    UNEXPECTED_RESPONSE,
    ErrorKind,
    ParseError,
)
from chatdelta.message import (
    Message,
    MessageRole,
    MessageStatus,
    ToolCall,
    ToolCallStatus,
)
from chatdelta.streaming import MessageDelta, ToolCallDelta

logger = logging.getLogger(__name__)

ParseResult = Union[
    list[MessageDelta],
    list[Message],
    Message,
    MessageDelta,
    ToolCall,
    ParseError,
]


def decode_payload(text: str) -> Any:
    """JSON-decode one frame, returning a ParseError on syntax errors."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return ParseError(ErrorKind.MALFORMED_FRAME, INVALID_JSON_PREFIX + text)


def parse_frame(text: str) -> ParseResult:
    payload = decode_payload(text)
    if isinstance(payload, ParseError):
        return payload
    return parse_response(payload)


def parse_response(payload: Any) -> ParseResult:
    """Convert one decoded payload into typed records.

    Returns a list of :class:`MessageDelta` for a streamed chunk, a list
    of :class:`Message` for a complete response, a single
    :class:`MessageDelta` for a streamed tool-call fragment or bare delta
    choice, a :class:`ToolCall` for a complete tool-call object, a
    :class:`Message` for a bare message choice, or a :class:`ParseError`.

    Well-formed JSON whose fields have the wrong types (a ``null``
    message, a numeric ``content``, ``tool_calls`` that is not a list of
    objects) is an unrecognised shape, not a crash.
    """
    if not isinstance(payload, dict):
        return _unexpected(payload)

    choices = payload.get("choices")
    if isinstance(choices, list):
        if not choices:
            return []
        if all(_has_object(c, "delta") for c in choices):
            return _first_error([_parse_delta_choice(c) for c in choices])
        if all(_has_object(c, "message") for c in choices):
            return _first_error([_parse_message_choice(c) for c in choices])
        return _unexpected(payload)

    if isinstance(payload.get("function"), dict):
        return _parse_tool_call_object(payload)

    if _has_object(payload, "message"):
        return _parse_message_choice(payload)

    if _has_object(payload, "delta"):
        return _parse_delta_choice(payload)

    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return ParseError(ErrorKind.UPSTREAM_ERROR, str(error["message"]))
    if isinstance(error, str) and error:
        return ParseError(ErrorKind.UPSTREAM_ERROR, error)

    return _unexpected(payload)


def _unexpected(payload: Any) -> ParseError:
    logger.debug(f"Unrecognised response shape: {payload!r}")
    return ParseError(ErrorKind.UNRECOGNIZED_SHAPE, UNEXPECTED_RESPONSE)


def _has_object(value: Any, key: str) -> bool:
    return isinstance(value, dict) and isinstance(value.get(key), dict)


def _is_text(value: Any) -> bool:
    return value is None or isinstance(value, str)


def _is_index(value: Any) -> bool:
    return value is None or (isinstance(value, int) and not isinstance(value, bool))


def _first_error(results: list) -> list | ParseError:
    for result in results:
        if isinstance(result, ParseError):
            return result
    return results


def _valid_choice(choice: dict, body: dict) -> bool:
    return (
        _is_text(body.get("role"))
        and _is_text(body.get("content"))
        and _is_text(choice.get("finish_reason"))
        and _is_index(choice.get("index"))
        and (body.get("tool_calls") is None or isinstance(body["tool_calls"], list))
    )


def _status(choice: dict) -> MessageStatus:
    finish_reason = choice.get("finish_reason")
    status = MessageStatus.from_finish_reason(finish_reason)
    if status is MessageStatus.CANCELLED:
        logger.debug(f"Treating finish_reason {finish_reason!r} as cancelled")
    return status


def _parse_delta_choice(choice: dict) -> MessageDelta | ParseError:
    delta = choice["delta"]
    if not _valid_choice(choice, delta):
        return _unexpected(choice)
    tool_calls = None
    if delta.get("tool_calls"):
        tool_calls = []
        for position, raw in enumerate(delta["tool_calls"]):
            fragment = _parse_tool_call_delta(raw, position)
            if fragment is None:
                return _unexpected(choice)
            tool_calls.append(fragment)
    role = delta.get("role")
    return MessageDelta(
        role=MessageRole.parse(role) if role else MessageRole.UNKNOWN,
        content=delta.get("content"),
        tool_calls=tool_calls,
        index=choice.get("index") or 0,
        status=_status(choice),
    )


def _parse_tool_call_delta(raw: Any, position: int = 0) -> ToolCallDelta | None:
    if not isinstance(raw, dict):
        return None
    function = raw.get("function") or {}
    if not isinstance(function, dict):
        return None
    index = raw.get("index")
    fields = (raw.get("id"), raw.get("type"), function.get("name"), function.get("arguments"))
    if not all(_is_text(value) for value in fields) or not _is_index(index):
        return None
    return ToolCallDelta(
        index=position if index is None else index,
        id=raw.get("id"),
        name=function.get("name"),
        # an empty arguments fragment carries nothing to concatenate
        arguments=function.get("arguments") or None,
        type=raw.get("type") or "function",
    )


def _parse_message_choice(choice: dict) -> Message | ParseError:
    message = choice["message"]
    if not _valid_choice(choice, message):
        return _unexpected(choice)
    tool_calls = None
    if message.get("tool_calls"):
        tool_calls = []
        for position, raw in enumerate(message["tool_calls"]):
            call = _parse_complete_tool_call(raw, position)
            if isinstance(call, ParseError):
                if call.kind is ErrorKind.INVALID_TOOL_ARGUMENTS:
                    return ParseError(
                        ErrorKind.INVALID_TOOL_ARGUMENTS, INVALID_TOOL_CALL_ARGUMENTS,
                    )
                return call
            tool_calls.append(call)
    return Message(
        role=MessageRole.parse(message.get("role")),
        content=message.get("content"),
        tool_calls=tool_calls,
        index=choice.get("index") or 0,
        status=_status(choice),
    )


def _parse_complete_tool_call(raw: Any, position: int | None = None) -> ToolCall | ParseError:
    if not isinstance(raw, dict) or not isinstance(raw.get("function") or {}, dict):
        return _unexpected(raw)
    function = raw.get("function") or {}
    name = function.get("name")
    arguments = function.get("arguments")
    if isinstance(arguments, dict):
        arguments = json.dumps(arguments)
    index = raw.get("index")
    if not (_is_text(raw.get("id")) and _is_text(name) and _is_text(arguments) and _is_index(index)):
        return _unexpected(raw)
    try:
        parsed = json.loads(arguments) if arguments else None
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in arguments for {name}: {e}")
        return ParseError(ErrorKind.INVALID_TOOL_ARGUMENTS, INVALID_ARGUMENTS)
    return ToolCall(
        tool_id=raw.get("id") or "",
        name=name or "",
        arguments=parsed,
        status=ToolCallStatus.COMPLETE,
        index=position if index is None else index,
    )


def _parse_tool_call_object(raw: dict) -> ToolCall | MessageDelta | ParseError:
    function = raw["function"]
    if "index" not in raw and "name" in function and "arguments" in function:
        return _parse_complete_tool_call(raw)
    # explicit index or partial fields: a fragment for choice 0
    fragment = _parse_tool_call_delta(raw)
    if fragment is None:
        return _unexpected(raw)
    return MessageDelta(tool_calls=[fragment])
