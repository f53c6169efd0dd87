"""Server-Sent Events frame decoding for streamed completions.

Network chunks can end anywhere: mid-line, mid-prefix or inside a JSON
string.  :func:`decode_stream` only releases an event once its
terminating blank line has arrived and hands everything after the last
complete event back as the tail for the next call.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
IGNORED_FIELDS = ("event:", "id:", "retry:")


def decode_stream(data: str, tail: str = "") -> tuple[list[str], str]:
    """Split ``tail + data`` into complete event payloads and a new tail.

    Every ``data:`` line of one event is stripped of its prefix and the
    remainders are joined without a separator, so a JSON document wrapped
    over several prefixed lines comes back whole.  The unterminated event
    at the end of the buffer is returned verbatim as the new tail.

    A line starting with ":" is a comment only before the event has any
    payload; inside a payload it is a re-wrapped continuation.

    The tail is rescanned on every call, so callers holding back chunks
    that contain no newline avoid quadratic work on long events.

    Never raises: payloads are not validated here.

    Args:
        data: Newly received text.
        tail: The tail returned by the previous call, ``""`` at the start.

    Returns:
        ``(frames, new_tail)`` with the ``[DONE]`` sentinel left out of
        ``frames``.
    """
    buffer = tail + data
    lines = buffer.split("\n")
    frames: list[str] = []
    parts: list[str] = []
    event_start = 0
    offset = 0

    # The last element is never newline-terminated, so it stays pending.
    for line in lines[:-1]:
        offset += len(line) + 1
        if line.endswith("\r"):
            line = line[:-1]
        field = line.lstrip()

        if not field:
            if parts:
                _emit(parts, frames)
                parts = []
            event_start = offset
            continue

        if field.startswith(DATA_PREFIX):
            value = field[len(DATA_PREFIX):]
            if value.startswith(" "):
                value = value[1:]
            parts.append(value)
        elif field.startswith(IGNORED_FIELDS):
            continue
        elif field.startswith(":") and not parts:
            continue
        else:
            # re-wrapped continuation of the current payload
            parts.append(line)

    return frames, buffer[event_start:]


def flush(tail: str) -> list[str]:
    """Terminate a stream whose last event never got its blank line."""
    if not tail.strip():
        return []
    frames, _ = decode_stream("\n\n", tail)
    return frames


def _emit(parts: list[str], frames: list[str]) -> None:
    payload = "".join(parts)
    if payload.strip() == DONE_SENTINEL:
        logger.debug("Received end-of-stream sentinel")
        return
    frames.append(payload)
