"""Events yielded while a response is being dispatched."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from chatdelta.message import Message
from chatdelta.streaming import MessageDelta


@dataclass
class StreamEvent:
    """Base for all dispatcher events."""


@dataclass
class DeltaEvent(StreamEvent):
    """One parsed delta, exactly as it arrived."""

    delta: MessageDelta = field(default_factory=MessageDelta)


@dataclass
class MessageEvent(StreamEvent):
    """A choice reached a terminal status."""

    message: Message | None = None


@dataclass
class ResponseCompleteEvent(StreamEvent):
    """Final event, always the last one yielded."""

    result: Any = None
