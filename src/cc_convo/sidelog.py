"""Parse a background subagent's own side-log.

A side-log is a JSONL file in the same format as the main session log. Only
two things are read from it: the tool calls the subagent made, and the text
of its final answer.
"""

import json
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from .correlation import get_content_blocks, result_content_to_text
from .merger import parse_timestamp_ms
from .models import ToolCallInfo, ToolStatus


@dataclass
class ToolEvent:
    kind: str  # "tool_use" | "tool_result"
    tool_use_id: str
    timestamp: int
    name: str = ""
    input: dict[str, Any] | None = None
    content: str = ""
    is_error: bool = False


def iter_records(text: str) -> Iterator[dict]:
    for line in text.splitlines():
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            yield record


def parse_tool_events(record: dict) -> list[ToolEvent]:
    message = record.get("message")
    if not isinstance(message, dict):
        return []
    timestamp = parse_timestamp_ms(record.get("timestamp"))
    events = []
    for block in get_content_blocks(message.get("content")):
        if block.get("type") == "tool_use":
            if not isinstance(block.get("id"), str) or not isinstance(block.get("name"), str):
                continue
            tool_input = block.get("input")
            events.append(
                ToolEvent(
                    kind="tool_use",
                    tool_use_id=block["id"],
                    timestamp=timestamp,
                    name=block["name"],
                    input=tool_input if isinstance(tool_input, dict) else {},
                )
            )
        elif block.get("type") == "tool_result":
            if not isinstance(block.get("tool_use_id"), str):
                continue
            events.append(
                ToolEvent(
                    kind="tool_result",
                    tool_use_id=block["tool_use_id"],
                    timestamp=timestamp,
                    content=result_content_to_text(block.get("content")),
                    is_error=block.get("is_error") is True,
                )
            )
    return events


def build_tool_calls(events: list[ToolEvent]) -> list[ToolCallInfo]:
    """Pair tool_use and tool_result events by id.

    Results whose tool_use never appeared are dropped. Calls are ordered by
    the timestamp of their tool_use.
    """
    calls: dict[str, ToolCallInfo] = {}
    use_times: dict[str, int] = {}
    results: dict[str, ToolEvent] = {}

    for event in events:
        if event.kind == "tool_use":
            calls[event.tool_use_id] = ToolCallInfo(
                id=event.tool_use_id,
                name=event.name,
                input=dict(event.input or {}),
                status=ToolStatus.RUNNING,
            )
            use_times[event.tool_use_id] = event.timestamp
        else:
            results[event.tool_use_id] = event

    for tool_id, event in results.items():
        call = calls.get(tool_id)
        if call is None:
            continue
        call.status = ToolStatus.ERROR if event.is_error else ToolStatus.COMPLETED
        call.result = event.content

    return sorted(calls.values(), key=lambda c: use_times[c.id])


def parse_side_log_tool_calls(text: str | None) -> list[ToolCallInfo]:
    if not text:
        return []
    seen: set[tuple[str, str]] = set()
    events: list[ToolEvent] = []
    for record in iter_records(text):
        for event in parse_tool_events(record):
            key = (event.kind, event.tool_use_id)
            if key in seen:
                continue
            seen.add(key)
            events.append(event)
    return build_tool_calls(events)


def extract_final_result(text: str | None) -> str | None:
    """Latest non-empty assistant text, else the latest ``result`` record's text."""
    if not text:
        return None

    last_text: str | None = None
    last_result: str | None = None
    for record in iter_records(text):
        if record.get("type") == "assistant":
            message = record.get("message") or {}
            content = message.get("content") if isinstance(message, dict) else None
            if isinstance(content, str):
                parts = [content]
            else:
                parts = [
                    b.get("text", "")
                    for b in get_content_blocks(content)
                    if b.get("type") == "text" and isinstance(b.get("text"), str)
                ]
            joined = "\n".join(p for p in parts if p.strip()).strip()
            if joined:
                last_text = joined
        elif record.get("type") == "result" and isinstance(record.get("result"), str):
            if record["result"].strip():
                last_result = record["result"].strip()

    return last_text or last_result
