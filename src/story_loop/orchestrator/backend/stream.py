"""Parser for the agent CLI ``--output-format stream-json`` lines."""

from __future__ import annotations

import json
from typing import Any

from story_loop.orchestrator.backend.base import AgentEvent, EventKind

_MESSAGE_ENVELOPE_TYPES = frozenset({"assistant", "user"})


def parse_stream_line(line: str) -> list[AgentEvent]:
    """Flatten one NDJSON line into zero or more events.

    Assistant and user envelopes carry a list of content blocks; each text,
    tool_use and tool_result block becomes its own event. Thinking and other
    block kinds are dropped. Lines that are not JSON objects turn into a
    single error event so the caller can mark the attempt failed.
    """

    try:
        top = json.loads(line)
    except ValueError as error:
        return [AgentEvent(kind=EventKind.ERROR.value, message=f"failed to parse stream JSON: {error}")]
    if not isinstance(top, dict):
        return [
            AgentEvent(kind=EventKind.ERROR.value, message="stream JSON line is not an object"),
        ]

    event_type = str(top.get("type", ""))
    session_id = str(top.get("session_id") or "")

    if event_type in _MESSAGE_ENVELOPE_TYPES:
        return _parse_message_blocks(session_id=session_id, message=top.get("message"))

    if event_type == EventKind.RESULT.value:
        return [
            AgentEvent(
                kind=EventKind.RESULT.value,
                session_id=session_id,
                message=_result_text(top),
                payload=_result_payload(top),
            ),
        ]

    message = top.get("message")
    return [
        AgentEvent(
            kind=event_type or EventKind.SYSTEM.value,
            session_id=session_id,
            message=message if isinstance(message, str) else "",
        ),
    ]


def _parse_message_blocks(*, session_id: str, message: object) -> list[AgentEvent]:
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []

    events: list[AgentEvent] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            events.append(
                AgentEvent(
                    kind=EventKind.ASSISTANT.value,
                    session_id=session_id,
                    message=str(block.get("text", "")),
                ),
            )
        elif block_type == "tool_use":
            tool_input = block.get("input")
            events.append(
                AgentEvent(
                    kind=EventKind.TOOL_USE.value,
                    session_id=session_id,
                    tool_name=str(block.get("name", "")),
                    tool_id=str(block.get("id", "")),
                    payload={"input": tool_input} if tool_input is not None else {},
                ),
            )
        elif block_type == "tool_result":
            events.append(
                AgentEvent(
                    kind=EventKind.TOOL_RESULT.value,
                    session_id=session_id,
                    tool_id=str(block.get("tool_use_id", "")),
                ),
            )
    return events


def _result_text(top: dict[str, Any]) -> str:
    result = top.get("result")
    return result if isinstance(result, str) else ""


def _result_payload(top: dict[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in ("subtype", "is_error", "num_turns", "total_cost_usd", "duration_ms"):
        if key in top:
            payload[key] = top[key]
    return payload
