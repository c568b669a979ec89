"""Fold raw log entries into ChatMessage turns."""

import logging
import re
import time
import uuid
from datetime import datetime
from typing import Any

from .correlation import CorrelationIndex, ToolResult, get_content_blocks
from .diff import extract_diff_data
from .models import (
    ChatMessage,
    ContentBlock,
    ContentBlockType,
    EntryKind,
    ImageAttachment,
    RawEntry,
    ToolCallInfo,
    ToolStatus,
)
from .tools import (
    TOOL_ASK_USER_QUESTION,
    extract_resolved_answers,
    extract_resolved_answers_from_result_text,
    is_write_edit_tool,
)

logger = logging.getLogger(__name__)

NO_CONTENT_PLACEHOLDER = "(no content)"
SYNTHETIC_MODEL = "<synthetic>"
CONTINUATION_PREFIX = "This session is being continued from a previous conversation"
INTERRUPT_PREFIXES = ("[Request interrupted by user", "[Request interrupted")
COMPACTION_CANCELED_MARKER = "Compaction canceled"

COMMAND_NAME_PATTERN = re.compile(r"<command-name>(/[^<]+)</command-name>")
CONTEXT_TAG_PATTERN = re.compile(
    r"\s*<(current_note|editor_selection|context_files|browser_selection)>", re.IGNORECASE
)
REBUILT_CONTEXT_PATTERN = re.compile(r"^(User|Assistant):\s")


def parse_timestamp_ms(raw: str | None) -> int:
    """ISO timestamp to epoch milliseconds; unparseable or missing means now."""
    if raw:
        try:
            return int(datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            logger.debug("Unparseable timestamp %r", raw)
    return int(time.time() * 1000)


def extract_text_content(content: Any) -> str:
    if not content:
        return ""
    if isinstance(content, str):
        return content
    return "\n".join(
        b["text"]
        for b in get_content_blocks(content)
        if b.get("type") == "text"
        and isinstance(b.get("text"), str)
        and b["text"].strip() != NO_CONTENT_PLACEHOLDER
    )


def is_system_injected(entry: RawEntry) -> bool:
    """Check if a user record is plumbing rather than something the user typed.

    Covers tool result carriers, injected skill prompts, meta records,
    compaction summaries and echoes of slash commands and their output.
    """
    if entry.kind != EntryKind.USER.value:
        return False
    if (
        entry.has_tool_use_result
        or "source_tool_use_id" in entry.model_fields_set
        or entry.is_meta
        or entry.is_compact_summary
        or entry.is_visible_in_transcript_only
    ):
        return True

    text = extract_text_content(entry.message_content)
    if not text:
        return False

    # A slash command the user actually invoked carries both tags
    if "<command-name>" in text and "<command-message>" in text:
        return False
    if is_compaction_canceled_stderr(text):
        return False
    if text.startswith(CONTINUATION_PREFIX):
        return True
    if "<command-name>" in text:
        return True
    if "<local-command-stdout>" in text or "<local-command-stderr>" in text:
        return True
    return False


def is_compaction_canceled_stderr(text: str) -> bool:
    """A cancelled /compact reports through stderr; the user should see it."""
    return "<local-command-stderr>" in text and COMPACTION_CANCELED_MARKER in text


def is_rebuilt_context(text: str) -> bool:
    """History replayed to the model after a session reset, not a new prompt."""
    if not REBUILT_CONTEXT_PATTERN.match(text):
        return False
    return any(marker in text for marker in ("\n\nUser:", "\n\nAssistant:", "\n\nA:"))


def is_interrupt_text(text: str) -> bool:
    return text.strip().startswith(INTERRUPT_PREFIXES)


def extract_display_content(text: str) -> str:
    """User text without the editor context appended after it."""
    match = CONTEXT_TAG_PATTERN.search(text)
    if not match:
        return text
    return text[: match.start()].rstrip()


def extract_images(content: Any) -> list[ImageAttachment]:
    images = []
    for i, block in enumerate(b for b in get_content_blocks(content) if b.get("type") == "image"):
        source = block.get("source") or {}
        data = source.get("data")
        if not data:
            continue
        images.append(
            ImageAttachment(
                id=f"img-{uuid.uuid4().hex[:12]}",
                name=f"image-{i + 1}",
                media_type=source.get("media_type", "image/png"),
                data=data,
                size=(len(data) * 3) // 4,  # approximate decoded size
            )
        )
    return images


def build_tool_call(block: dict, tool_results: dict[str, ToolResult]) -> ToolCallInfo:
    """A tool call with no recorded result is assumed completed."""
    result = tool_results.get(block["id"])
    status = ToolStatus.COMPLETED
    if result and result.is_error:
        status = ToolStatus.ERROR
    return ToolCallInfo(
        id=block["id"],
        name=block["name"],
        input=block.get("input") or {},
        status=status,
        result=result.content if result else None,
    )


def extract_tool_calls(content: Any, tool_results: dict[str, ToolResult]) -> list[ToolCallInfo]:
    return [
        build_tool_call(b, tool_results)
        for b in get_content_blocks(content)
        if b.get("type") == "tool_use" and b.get("id") and b.get("name")
    ]


def map_content_blocks(content: Any) -> list[ContentBlock]:
    blocks: list[ContentBlock] = []
    for b in get_content_blocks(content):
        block_type = b.get("type")
        if block_type == "text":
            text = (b.get("text") or "").strip()
            if text and text != NO_CONTENT_PLACEHOLDER:
                blocks.append(ContentBlock(type=ContentBlockType.TEXT, content=text))
        elif block_type == "thinking":
            if b.get("thinking"):
                blocks.append(ContentBlock(type=ContentBlockType.THINKING, content=b["thinking"]))
        elif block_type == "tool_use":
            if b.get("id") and b.get("name"):
                blocks.append(ContentBlock(type=ContentBlockType.TOOL_USE, tool_id=b["id"]))
        # tool_result blocks belong to tool calls, not to display order
    return blocks


def entry_to_message(
    entry: RawEntry, tool_results: dict[str, ToolResult] | None = None
) -> ChatMessage | None:
    """Convert one raw entry to a message, or None if it has nothing to show."""
    tool_results = tool_results or {}
    timestamp = parse_timestamp_ms(entry.timestamp)

    if entry.kind == EntryKind.SYSTEM.value:
        if entry.subtype != "compact_boundary":
            return None
        return ChatMessage(
            id=entry.id or f"compact-{timestamp}-{uuid.uuid4().hex[:8]}",
            role="assistant",
            timestamp=timestamp,
            content_blocks=[ContentBlock(type=ContentBlockType.COMPACT_BOUNDARY)],
        )

    if entry.kind not in (EntryKind.USER.value, EntryKind.ASSISTANT.value):
        return None

    content = entry.message_content
    text = extract_text_content(content)
    is_user = entry.kind == EntryKind.USER.value
    images = extract_images(content) if is_user else []
    has_tool_use = any(b.get("type") == "tool_use" for b in get_content_blocks(content))
    if not text and not has_tool_use and not images and not isinstance(content, list):
        return None

    message = ChatMessage(
        id=entry.id or f"sdk-{timestamp}-{uuid.uuid4().hex[:8]}",
        role=entry.kind,
        content=text,
        timestamp=timestamp,
        images=images,
    )

    if is_user:
        command = COMMAND_NAME_PATTERN.search(text)
        message.display_content = command.group(1) if command else extract_display_content(text)
        message.is_interrupt = is_interrupt_text(text)
        message.is_rebuilt_context = is_rebuilt_context(text)
        message.sdk_user_uuid = entry.id
    else:
        message.tool_calls = extract_tool_calls(content, tool_results)
        message.content_blocks = map_content_blocks(content)
        message.sdk_assistant_uuid = entry.id

    return message


def merge_assistant_message(target: ChatMessage, source: ChatMessage) -> None:
    """Append ``source`` to ``target``, keeping arrival order."""
    if source.content:
        if target.content:
            target.content = f"{target.content}\n\n{source.content}"
        else:
            target.content = source.content
    target.tool_calls = [*target.tool_calls, *source.tool_calls]
    target.content_blocks = [*target.content_blocks, *source.content_blocks]
    if source.sdk_assistant_uuid:
        target.sdk_assistant_uuid = source.sdk_assistant_uuid


def is_compact_boundary(message: ChatMessage) -> bool:
    return any(b.type == ContentBlockType.COMPACT_BOUNDARY for b in message.content_blocks)


def merge_messages(entries: list[RawEntry], index: CorrelationIndex) -> list[ChatMessage]:
    """Merge consecutive assistant entries into single turns.

    A compaction boundary always stands alone: whatever assistant turn is
    pending is closed first, and merging starts fresh after it.
    """
    messages: list[ChatMessage] = []
    pending: ChatMessage | None = None

    for entry in entries:
        if is_system_injected(entry):
            continue
        if entry.kind == EntryKind.ASSISTANT.value and entry.model == SYNTHETIC_MODEL:
            continue

        message = entry_to_message(entry, index.tool_results)
        if message is None:
            continue

        if message.role == "assistant":
            if is_compact_boundary(message):
                if pending:
                    messages.append(pending)
                messages.append(message)
                pending = None
            elif pending:
                merge_assistant_message(pending, message)
            else:
                pending = message
        else:
            if pending:
                messages.append(pending)
                pending = None
            messages.append(message)

    if pending:
        messages.append(pending)

    return messages


def attach_side_payloads(messages: list[ChatMessage], side_payloads: dict[str, Any]) -> None:
    """Second pass: diff data and resolved answers from side payloads.

    Runs after message construction because the payload can describe a tool
    whose result blocks were synthesized separately.
    """
    for message in messages:
        if message.role != "assistant":
            continue
        for tool_call in message.tool_calls:
            payload = side_payloads.get(tool_call.id)
            if payload is not None:
                if tool_call.diff_data is None and is_write_edit_tool(tool_call.name):
                    tool_call.diff_data = extract_diff_data(payload, tool_call)
                if tool_call.name == TOOL_ASK_USER_QUESTION:
                    answers = extract_resolved_answers(payload)
                    if answers:
                        tool_call.resolved_answers = answers

            if tool_call.name == TOOL_ASK_USER_QUESTION and tool_call.resolved_answers is None:
                tool_call.resolved_answers = extract_resolved_answers_from_result_text(
                    tool_call.result
                )


def sort_messages(messages: list[ChatMessage]) -> list[ChatMessage]:
    return sorted(messages, key=lambda m: m.timestamp)
