"""Streaming deltas and the engine that merges them.

The parser yields :class:`MessageDelta` objects, one per choice per
chunk.  :func:`merge_delta` folds them left to right; the
:class:`ToolCallAccumulator` reassembles tool calls whose arguments
arrive in fragments, and :class:`MergeEngine` keeps one accumulator per
choice index until that choice finishes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace

from chatdelta.errors import INVALID_TOOL_CALL_ARGUMENTS, ErrorKind, ParseError
from chatdelta.message import (
    Message,
    MessageRole,
    MessageStatus,
    ToolCall,
    ToolCallStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class ToolCallDelta:
    """A fragment of one tool call, identified by its position ``index``."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None
    type: str = "function"
    status: ToolCallStatus = ToolCallStatus.INCOMPLETE


@dataclass
class MessageDelta:
    """One slice of one choice's evolving message."""

    role: MessageRole = MessageRole.UNKNOWN
    content: str | None = None
    tool_calls: list[ToolCallDelta] | None = None
    index: int = 0
    status: MessageStatus = MessageStatus.INCOMPLETE


class ToolCallAccumulator:
    """Assembles tool calls from streaming fragments, keyed by index."""

    def __init__(self) -> None:
        self._pending: dict[int, ToolCallDelta] = {}

    def feed(self, fragment: ToolCallDelta) -> None:
        if fragment.index not in self._pending:
            self._pending[fragment.index] = ToolCallDelta(index=fragment.index)
        tc = self._pending[fragment.index]
        if tc.id is None:
            tc.id = fragment.id
        if tc.name is None:
            tc.name = fragment.name
        if fragment.arguments is not None:
            tc.arguments = (tc.arguments or "") + fragment.arguments
        if fragment.status is ToolCallStatus.COMPLETE:
            tc.status = fragment.status

    def snapshot(self) -> list[ToolCallDelta]:
        """Return copies of the accumulated calls in index order."""
        return [replace(self._pending[i]) for i in sorted(self._pending)]

    def finalize(self, parse_arguments: bool = True) -> list[ToolCall] | ParseError:
        """Turn the accumulated fragments into terminal tool calls.

        Every call is attempted even when a sibling fails, so each bad
        call gets logged; any failure fails the whole set.
        """
        calls: list[ToolCall] = []
        failed = False
        for tc in self.snapshot():
            call = ToolCall(
                tool_id=tc.id or "",
                name=tc.name or "",
                arguments=tc.arguments,
                status=ToolCallStatus.INCOMPLETE,
                index=tc.index,
            )
            if parse_arguments:
                try:
                    if tc.arguments is not None:
                        call.arguments = json.loads(tc.arguments)
                    call.status = ToolCallStatus.COMPLETE
                except json.JSONDecodeError as e:
                    logger.warning(
                        f"Invalid JSON in arguments for tool call "
                        f"{tc.index} ({tc.id}): {e}"
                    )
                    failed = True
            calls.append(call)
        if failed:
            return ParseError(ErrorKind.INVALID_TOOL_ARGUMENTS, INVALID_TOOL_CALL_ARGUMENTS)
        return calls


def merge_delta(acc: MessageDelta | None, delta: MessageDelta) -> MessageDelta:
    """Fold ``delta`` into ``acc`` without mutating either."""
    if acc is None:
        return replace(
            delta,
            tool_calls=_merge_tool_calls(None, delta.tool_calls),
        )
    if acc.index != delta.index:
        raise ValueError(
            f"Cannot merge delta for choice {delta.index} into choice {acc.index}"
        )

    if acc.content is None:
        content = delta.content
    elif delta.content is None:
        content = acc.content
    else:
        content = acc.content + delta.content

    return MessageDelta(
        role=acc.role if acc.role is not MessageRole.UNKNOWN else delta.role,
        content=content,
        tool_calls=_merge_tool_calls(acc.tool_calls, delta.tool_calls),
        index=acc.index,
        status=delta.status if delta.status.is_terminal else acc.status,
    )


def _merge_tool_calls(
    existing: list[ToolCallDelta] | None,
    incoming: list[ToolCallDelta] | None,
) -> list[ToolCallDelta] | None:
    if existing is None and incoming is None:
        return None
    acc = ToolCallAccumulator()
    for fragment in (existing or []) + (incoming or []):
        acc.feed(fragment)
    return acc.snapshot()


def to_message(delta: MessageDelta) -> Message | ParseError:
    """Convert a terminated accumulation into a :class:`Message`.

    Tool call arguments are parsed for COMPLETE and LENGTH; a CANCELLED
    choice keeps them as raw text.
    """
    tool_calls = None
    if delta.tool_calls:
        acc = ToolCallAccumulator()
        for fragment in delta.tool_calls:
            acc.feed(fragment)
        parse = delta.status in (MessageStatus.COMPLETE, MessageStatus.LENGTH)
        tool_calls = acc.finalize(parse_arguments=parse)
        if isinstance(tool_calls, ParseError):
            return tool_calls
    return Message(
        role=delta.role,
        content=delta.content,
        tool_calls=tool_calls,
        index=delta.index,
        status=delta.status,
    )


def merge(
    acc: Message | MessageDelta | None, delta: MessageDelta,
) -> Message | MessageDelta | ParseError:
    """Merge one delta and convert the result once the choice terminates."""
    if isinstance(acc, Message):
        logger.warning(
            f"Ignoring delta for choice {delta.index}: message already complete"
        )
        return acc
    merged = merge_delta(acc, delta)
    if merged.status.is_terminal:
        return to_message(merged)
    return merged


@dataclass
class MergeEngine:
    """Per-response merge state: one accumulator per choice index."""

    _accumulators: dict[int, MessageDelta] = field(default_factory=dict)
    _completed: dict[int, Message] = field(default_factory=dict)

    def add(self, delta: MessageDelta) -> Message | ParseError | None:
        """Merge ``delta``; return the terminal message when its choice ends."""
        if delta.index in self._completed:
            logger.warning(
                f"Ignoring delta for choice {delta.index} after completion"
            )
            return None
        result = merge(self._accumulators.get(delta.index), delta)
        if isinstance(result, MessageDelta):
            self._accumulators[delta.index] = result
            return None
        self._accumulators.pop(delta.index, None)
        if isinstance(result, Message):
            self._completed[delta.index] = result
        return result

    def add_message(self, message: Message) -> None:
        """Record a message that arrived already complete."""
        self._accumulators.pop(message.index, None)
        self._completed[message.index] = message

    @property
    def messages(self) -> list[Message]:
        return [self._completed[i] for i in sorted(self._completed)]

    @property
    def pending(self) -> list[int]:
        return sorted(self._accumulators)

    @property
    def is_complete(self) -> bool:
        return bool(self._completed) and not self._accumulators
