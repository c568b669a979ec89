"""Lookup tables that correlate tool calls with results found elsewhere in the log."""

import json
import re
from dataclasses import dataclass, field
from typing import Any

from .models import EntryKind, RawEntry


@dataclass
class ToolResult:
    content: str
    is_error: bool = False


@dataclass
class AsyncResult:
    """A background task's completion, taken from its queue notification."""

    result: str
    status: str = "completed"


@dataclass
class CorrelationIndex:
    tool_results: dict[str, ToolResult] = field(default_factory=dict)
    side_payloads: dict[str, Any] = field(default_factory=dict)
    async_results: dict[str, AsyncResult] = field(default_factory=dict)


def get_content_blocks(content: Any) -> list[dict]:
    """Content as a list of block dicts. Plain strings have no blocks."""
    if not isinstance(content, list):
        return []
    return [b for b in content if isinstance(b, dict)]


def result_content_to_text(content: Any) -> str:
    """Render tool_result content as text.

    Results are usually strings; list results of text blocks are joined,
    anything else is kept as compact JSON.
    """
    if isinstance(content, str):
        return content
    if content is None:
        return ""
    if isinstance(content, list) and all(
        isinstance(b, dict) and b.get("type") == "text" for b in content
    ):
        return "\n".join(b.get("text", "") for b in content)
    return json.dumps(content, ensure_ascii=False)


def extract_xml_tag(text: str, tag: str) -> str | None:
    """Return the trimmed body of ``<tag>...</tag>``, or None if absent or empty."""
    match = re.search(rf"<{tag}>\s*([\s\S]*?)\s*</{tag}>", text, re.IGNORECASE)
    if not match:
        return None
    body = match.group(1).strip()
    return body or None


def parse_task_notification(entry: RawEntry) -> tuple[str, AsyncResult] | None:
    if entry.kind != EntryKind.QUEUE_OPERATION.value or entry.operation != "enqueue":
        return None
    if not isinstance(entry.content, str) or "<task-notification>" not in entry.content:
        return None

    task_id = extract_xml_tag(entry.content, "task-id")
    result = extract_xml_tag(entry.content, "result")
    if not task_id or not result:
        return None
    status = extract_xml_tag(entry.content, "status") or "completed"
    return task_id, AsyncResult(result=result, status=status)


def build_correlation_index(entries: list[RawEntry]) -> CorrelationIndex:
    """Single pass over the active branch building all three lookup tables."""
    index = CorrelationIndex()

    for entry in entries:
        notification = parse_task_notification(entry)
        if notification:
            task_id, async_result = notification
            index.async_results[task_id] = async_result
            continue

        blocks = get_content_blocks(entry.message_content)
        carries_payload = entry.kind == EntryKind.USER.value and entry.has_tool_use_result

        for block in blocks:
            if block.get("type") != "tool_result" or not block.get("tool_use_id"):
                continue
            tool_use_id = block["tool_use_id"]
            index.tool_results[tool_use_id] = ToolResult(
                content=result_content_to_text(block.get("content")),
                is_error=bool(block.get("is_error", False)),
            )
            if carries_payload:
                index.side_payloads[tool_use_id] = entry.tool_use_result

    return index
