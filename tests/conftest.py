import json

import pytest


# ---------------------------------------------------------------------------
# Provider chunk builders (mirror the OpenAI chat.completion.chunk shape)
# ---------------------------------------------------------------------------

def make_chunk(
    delta: dict,
    finish_reason: str | None = None,
    index: int = 0,
    **extra,
) -> dict:
    """A streamed ``chat.completion.chunk`` with a single choice."""
    return {
        "id": "chatcmpl-9BqOELc5ktxtKeK1BtTBG2t0aaDty",
        "object": "chat.completion.chunk",
        "created": 1712610022,
        "model": "gpt-3.5-turbo-0125",
        "choices": [
            {
                "delta": delta,
                "finish_reason": finish_reason,
                "index": index,
                "logprobs": None,
            }
        ],
        **extra,
    }


def make_tool_call_chunk(
    call_index: int,
    arguments: str = "",
    name: str | None = None,
    call_id: str | None = None,
) -> dict:
    """A chunk carrying one streamed tool-call fragment."""
    raw = {"index": call_index, "function": {"arguments": arguments}}
    if name is not None:
        raw["function"]["name"] = name
        raw["type"] = "function"
    if call_id is not None:
        raw["id"] = call_id
    return make_chunk({"tool_calls": [raw]})


def make_completion(choices: list[dict], **extra) -> dict:
    """A complete, non-streamed ``chat.completion`` body."""
    return {
        "id": "chatcmpl-9BpTdyN883PR9yKpIK2wYYypgWw1Q",
        "object": "chat.completion",
        "created": 1712606513,
        "model": "gpt-4-1106-preview",
        "choices": choices,
        **extra,
    }


def make_raw_tool_call(name: str, args: str, call_id: str) -> dict:
    return {
        "function": {"arguments": args, "name": name},
        "id": call_id,
        "type": "function",
    }


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------

def sse_encode(payloads: list, done: bool = True) -> str:
    """Encode payloads as ``data:`` events, optionally ending with [DONE]."""
    events = [
        f"data: {p if isinstance(p, str) else json.dumps(p, ensure_ascii=False)}\n\n"
        for p in payloads
    ]
    if done:
        events.append("data: [DONE]\n\n")
    return "".join(events)


def split_every(text: str, size: int) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


async def async_chunks(chunks):
    for chunk in chunks:
        yield chunk


# ---------------------------------------------------------------------------
# Recorded streams
# ---------------------------------------------------------------------------

def basic_text_chunks() -> list[dict]:
    return [
        make_chunk({"content": "", "role": "assistant"}),
        make_chunk({"content": "Colorful"}),
        make_chunk({"content": " Threads"}),
        make_chunk({}, finish_reason="stop"),
    ]


def multiple_tool_call_chunks() -> list[dict]:
    return [
        make_chunk({"content": None, "role": "assistant"}),
        make_tool_call_chunk(0, name="get_weather", call_id="call_fFRRtPwaroz9wbs2eWR7dpcW"),
        make_tool_call_chunk(0, '{"ci'),
        make_tool_call_chunk(0, 'ty": "Moab", "state": "UT"}'),
        make_tool_call_chunk(1, name="get_weather", call_id="call_sEmznyM1sGqYQ4dbNGdubmxa"),
        make_tool_call_chunk(1, '{"ci'),
        make_tool_call_chunk(1, 'ty": "Portland", "state": "OR"}'),
        make_tool_call_chunk(2, name="get_weather", call_id="call_cPufqMGm4TOFtqiqFPfz7pcp"),
        make_tool_call_chunk(2, '{"city": "Baltimore", "state": "MD"}'),
        make_chunk({}, finish_reason="tool_calls"),
    ]


@pytest.fixture
def text_chunks():
    return basic_text_chunks()


@pytest.fixture
def tool_call_chunks():
    return multiple_tool_call_chunks()


@pytest.fixture
def text_stream(text_chunks):
    return sse_encode(text_chunks)


@pytest.fixture
def tool_call_stream(tool_call_chunks):
    return sse_encode(tool_call_chunks)
