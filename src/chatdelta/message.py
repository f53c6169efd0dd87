from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, field_serializer


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> "MessageRole":
        """Map a provider role string to a role; anything else is UNKNOWN."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class MessageStatus(Enum):
    INCOMPLETE = "incomplete"
    COMPLETE = "complete"
    LENGTH = "length"
    CANCELLED = "cancelled"

    @classmethod
    def from_finish_reason(cls, finish_reason: str | None) -> "MessageStatus":
        if finish_reason is None:
            return cls.INCOMPLETE
        if finish_reason in ("stop", "tool_calls"):
            return cls.COMPLETE
        if finish_reason == "length":
            return cls.LENGTH
        return cls.CANCELLED

    @property
    def is_terminal(self) -> bool:
        return self is not MessageStatus.INCOMPLETE


class ToolCallStatus(Enum):
    INCOMPLETE = "incomplete"
    COMPLETE = "complete"


class ToolCall(BaseModel):
    """A tool call from a finished message.

    ``arguments`` holds the decoded JSON when ``status`` is COMPLETE and
    the raw accumulated text otherwise.
    """

    tool_id: str = ""
    type: Literal["function"] = "function"
    name: str = ""
    arguments: Any = None
    status: ToolCallStatus = ToolCallStatus.COMPLETE
    index: int | None = None

    @field_serializer("status")
    def serialize_status(self, status: ToolCallStatus, _info) -> str:
        return status.value


class Message(BaseModel):
    role: MessageRole
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    index: int = 0
    status: MessageStatus = MessageStatus.COMPLETE

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @field_serializer("status")
    def serialize_status(self, status: MessageStatus, _info) -> str:
        return status.value


class TokenUsage(BaseModel):
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
