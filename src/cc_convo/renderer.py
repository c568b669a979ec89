"""JSON export of a reconstructed conversation."""

import json
from datetime import datetime, timezone

from .models import ChatMessage, ContentBlockType, SessionLoadResult, SubagentInfo, ToolCallInfo


def _timestamp_iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def subagent_to_dict(subagent: SubagentInfo) -> dict:
    return {
        "id": subagent.id,
        "description": subagent.description,
        "mode": subagent.mode.value,
        "status": subagent.status.value,
        "async_status": subagent.async_status.value if subagent.async_status else None,
        "agent_id": subagent.agent_id,
        "result": subagent.result,
        "tool_calls": [tool_call_to_dict(tc) for tc in subagent.tool_calls],
    }


def tool_call_to_dict(tool_call: ToolCallInfo) -> dict:
    data = {
        "id": tool_call.id,
        "name": tool_call.name,
        "input": tool_call.input,
        "status": tool_call.status.value,
        "result": tool_call.result,
    }
    if tool_call.diff_data:
        data["diff"] = {
            "file_path": tool_call.diff_data.file_path,
            "added": tool_call.diff_data.stats.added,
            "removed": tool_call.diff_data.stats.removed,
            "lines": [line.model_dump() for line in tool_call.diff_data.diff_lines],
        }
    if tool_call.resolved_answers:
        data["resolved_answers"] = tool_call.resolved_answers
    if tool_call.subagent:
        data["subagent"] = subagent_to_dict(tool_call.subagent)
    return data


def message_to_dict(message: ChatMessage) -> dict:
    """Convert a ChatMessage to a plain dict for JSON serialization."""
    blocks = []
    for block in message.content_blocks:
        item = {"type": block.type.value}
        if block.type in (ContentBlockType.TEXT, ContentBlockType.THINKING):
            item["content"] = block.content
        if block.duration_seconds is not None:
            item["duration_seconds"] = block.duration_seconds
        if block.tool_id:
            item["tool_id"] = block.tool_id
        blocks.append(item)

    return {
        "id": message.id,
        "role": message.role,
        "timestamp": _timestamp_iso(message.timestamp),
        "content": message.content,
        "display_content": message.display_content,
        "blocks": blocks,
        "tool_calls": [tool_call_to_dict(tc) for tc in message.tool_calls],
        "images": [
            {"id": img.id, "name": img.name, "media_type": img.media_type, "size": img.size}
            for img in message.images
        ],
        "is_interrupt": message.is_interrupt,
        "is_rebuilt_context": message.is_rebuilt_context,
    }


def messages_to_dict(messages: list[ChatMessage]) -> list[dict]:
    return [message_to_dict(m) for m in messages]


def compute_metadata(
    messages: list[ChatMessage], session_id: str | None, skipped_lines: int = 0
) -> dict:
    """Compute summary metadata for the conversation."""
    tool_calls = [tc for m in messages for tc in m.tool_calls]
    compactions = sum(
        1
        for m in messages
        for b in m.content_blocks
        if b.type == ContentBlockType.COMPACT_BOUNDARY
    )

    return {
        "session_id": session_id,
        "started": _timestamp_iso(messages[0].timestamp) if messages else None,
        "total_messages": len(messages),
        "user_messages": sum(1 for m in messages if m.role == "user"),
        "assistant_messages": sum(1 for m in messages if m.role == "assistant"),
        "total_tool_calls": len(tool_calls),
        "total_subagents": sum(1 for tc in tool_calls if tc.subagent is not None),
        "compactions": compactions,
        "skipped_lines": skipped_lines,
    }


def render_json(result: SessionLoadResult, session_id: str | None, compact: bool = False) -> str:
    """Render a load result as a JSON string, metadata first."""
    ordered = {
        "metadata": compute_metadata(result.messages, session_id, result.skipped_lines),
        "messages": messages_to_dict(result.messages),
    }
    if result.error:
        ordered["error"] = result.error

    return json.dumps(ordered, indent=None if compact else 2)
