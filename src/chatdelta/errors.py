"""Failure values and the exception raised when a response call fails.

The parser and merge engine never raise on bad provider data; they return
a :class:`ParseError`.  The dispatcher turns that value into a
:class:`ResponseError` and aborts the call.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(Enum):
    MALFORMED_FRAME = "malformed_frame"
    UNRECOGNIZED_SHAPE = "unrecognized_shape"
    INVALID_TOOL_ARGUMENTS = "invalid_tool_arguments"
    UPSTREAM_ERROR = "upstream_error"
    TRANSPORT_TIMEOUT = "transport_timeout"
    INCOMPLETE_STREAM = "incomplete_stream"


UNEXPECTED_RESPONSE = "Unexpected response"
INVALID_JSON_PREFIX = "Received invalid JSON: "
INVALID_TOOL_CALL_ARGUMENTS = "tool_calls: arguments: invalid json"
INVALID_ARGUMENTS = "arguments: invalid json"
REQUEST_TIMED_OUT = "Request timed out"
STREAM_ENDED_EARLY = "Stream ended before completion"


@dataclass(frozen=True)
class ParseError:
    """A parse or merge failure returned as a value."""

    kind: ErrorKind
    reason: str


class ResponseError(Exception):
    """Raised when a response call cannot produce its messages.

    ``str(error)`` is the plain-text reason; ``kind`` tells recoverable
    transport conditions apart from malformed provider output.
    """

    def __init__(self, kind: ErrorKind, reason: str):
        super().__init__(reason)
        self.kind = kind
        self.reason = reason

    @classmethod
    def from_parse_error(cls, error: ParseError) -> ResponseError:
        return cls(error.kind, error.reason)
