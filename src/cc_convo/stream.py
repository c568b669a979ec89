"""Live path: fold streamed chunks into the assistant message being built.

Regular tool calls join the message as they arrive, but their rendering is
held back until some other output arrives, so a burst of parallel tool calls
renders together and before the text that follows it. Text and thinking
accumulate into one open buffer at a time; switching kinds closes the open
buffer into a content block.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any

from .diff import extract_diff_data
from .live_subagents import LiveSubagentRouter
from .models import (
    ChatMessage,
    ChunkType,
    ContentBlock,
    ContentBlockType,
    StreamChunk,
    SubagentInfo,
    SubagentMode,
    ToolCallInfo,
    ToolStatus,
    UsageInfo,
)
from .subagents import SubagentHydrator, apply_subagent_to_tool_call
from .tools import (
    TOOL_AGENT_OUTPUT,
    TOOL_ASK_USER_QUESTION,
    extract_resolved_answers,
    extract_resolved_answers_from_result_text,
    is_blocked_tool_result,
    is_subagent_tool,
    is_write_edit_tool,
    skips_blocked_detection,
)

logger = logging.getLogger(__name__)

# (event, payload) -> None
Listener = Callable[[str, Any], None]


class StreamAggregator:
    """Builds one assistant ChatMessage from a chunk stream.

    Args:
        message: The message to fill in. Mutated in place.
        listener: Called with ``(event, payload)`` on every visible change.
        session_id: Active session; usage reported for another session is
            ignored.
        hydrator: Reads side-logs of background subagents once they finish.
        clock: Monotonic clock used for thinking durations.
    """

    def __init__(
        self,
        message: ChatMessage,
        listener: Listener | None = None,
        session_id: str | None = None,
        hydrator: SubagentHydrator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.message = message
        self.listener = listener
        self.session_id = session_id
        self.hydrator = hydrator
        self.clock = clock
        self.router = LiveSubagentRouter()

        self.pending_tools: dict[str, ToolCallInfo] = {}
        self.text_buffer: str | None = None
        self.thinking_buffer: str | None = None
        self.thinking_started: float | None = None

        self.usage: UsageInfo | None = None
        self.ignore_usage = False
        self.finished = False
        self.interrupted = False

        if hydrator is not None and hydrator.on_change is None:
            hydrator.on_change = self._on_subagent_hydrated

    def _emit(self, event: str, payload: Any = None) -> None:
        if self.listener:
            self.listener(event, payload)

    # Chunk dispatch

    def handle_chunk(self, chunk: StreamChunk) -> None:
        if self.finished:
            logger.debug("Ignoring %s chunk after the stream finished", chunk.type)
            return

        if chunk.parent_tool_use_id:
            self._handle_subagent_chunk(chunk)
            return

        kind = chunk.type
        if kind == ChunkType.THINKING.value:
            self.flush_pending_tools()
            self._append_thinking(chunk.content)
        elif kind == ChunkType.TEXT.value:
            self.flush_pending_tools()
            self.message.content += chunk.content
            self._append_text(chunk.content)
        elif kind == ChunkType.TOOL_USE.value:
            self._handle_tool_use(chunk)
        elif kind == ChunkType.TOOL_RESULT.value:
            self._handle_tool_result(chunk)
        elif kind == ChunkType.BLOCKED.value:
            self.flush_pending_tools()
            self._append_text(f"\n\n**Blocked:** {chunk.content}")
        elif kind == ChunkType.ERROR.value:
            self.flush_pending_tools()
            self._append_text(f"\n\n**Error:** {chunk.content}")
        elif kind == ChunkType.COMPACT_BOUNDARY.value:
            self.flush_pending_tools()
            self._close_buffers()
            self.message.content_blocks.append(
                ContentBlock(type=ContentBlockType.COMPACT_BOUNDARY)
            )
            self._emit("compact_boundary", self.message)
        elif kind == ChunkType.USAGE.value:
            self._handle_usage(chunk)
        elif kind == ChunkType.SDK_ASSISTANT_UUID.value:
            self.message.sdk_assistant_uuid = chunk.uuid or chunk.content or None
        elif kind == ChunkType.DONE.value:
            self.finish()
        else:
            logger.debug("Ignoring unknown chunk type %r", kind)

    # Text and thinking buffers

    def _append_text(self, text: str) -> None:
        self._finalize_thinking()
        self.text_buffer = (self.text_buffer or "") + text
        self._emit("text", self.text_buffer)

    def _append_thinking(self, text: str) -> None:
        self._finalize_text()
        if self.thinking_buffer is None:
            self.thinking_buffer = ""
            self.thinking_started = self.clock()
        self.thinking_buffer += text
        self._emit("thinking", self.thinking_buffer)

    def _finalize_text(self) -> None:
        if self.text_buffer:
            block = ContentBlock(type=ContentBlockType.TEXT, content=self.text_buffer)
            self.message.content_blocks.append(block)
            self._emit("block_finalized", block)
        self.text_buffer = None

    def _finalize_thinking(self) -> None:
        if self.thinking_buffer:
            duration = None
            if self.thinking_started is not None:
                duration = round(self.clock() - self.thinking_started, 1)
            block = ContentBlock(
                type=ContentBlockType.THINKING,
                content=self.thinking_buffer,
                duration_seconds=duration,
            )
            self.message.content_blocks.append(block)
            self._emit("block_finalized", block)
        self.thinking_buffer = None
        self.thinking_started = None

    def _close_buffers(self) -> None:
        self._finalize_thinking()
        self._finalize_text()

    # Tool calls

    def _append_tool_call(self, tool_call: ToolCallInfo) -> None:
        self.message.tool_calls.append(tool_call)
        self.message.content_blocks.append(
            ContentBlock(type=ContentBlockType.TOOL_USE, tool_id=tool_call.id)
        )

    def _commit_tool_call(self, tool_call: ToolCallInfo) -> None:
        self._append_tool_call(tool_call)
        self._emit("tool_rendered", tool_call)

    def flush_pending_tools(self) -> None:
        """Render buffered tool calls in the order they arrived."""
        if not self.pending_tools:
            return
        self._close_buffers()
        pending = list(self.pending_tools.values())
        self.pending_tools.clear()
        for tool_call in pending:
            self._emit("tool_rendered", tool_call)

    def _handle_tool_use(self, chunk: StreamChunk) -> None:
        if not chunk.id or not chunk.name:
            logger.debug("Ignoring tool_use chunk without id or name")
            return

        if is_subagent_tool(chunk.name):
            self._handle_task_tool_use(chunk)
            return
        if chunk.name == TOOL_AGENT_OUTPUT:
            tool_call = ToolCallInfo(id=chunk.id, name=chunk.name, input=chunk.input)
            subagent = self.router.handle_agent_output_tool_use(tool_call)
            if subagent is not None:
                self._emit("subagent_updated", subagent)
                return

        existing = self.message.find_tool_call(chunk.id)
        if existing is not None:
            if chunk.input:
                existing.input = {**existing.input, **chunk.input}
                if chunk.id not in self.pending_tools:
                    self._emit("tool_updated", existing)
            return

        self._close_buffers()
        tool_call = ToolCallInfo(id=chunk.id, name=chunk.name, input=chunk.input)
        self._append_tool_call(tool_call)
        self.pending_tools[chunk.id] = tool_call

    def _ensure_task_tool_call(self, chunk: StreamChunk) -> ToolCallInfo:
        tool_call = self.message.find_tool_call(chunk.id)
        if tool_call is None:
            tool_call = ToolCallInfo(id=chunk.id, name=chunk.name, input=chunk.input)
            self._commit_tool_call(tool_call)
        elif chunk.input:
            tool_call.input = {**tool_call.input, **chunk.input}
        return tool_call

    def _handle_task_tool_use(self, chunk: StreamChunk) -> None:
        self.flush_pending_tools()
        self._close_buffers()
        tool_call = self._ensure_task_tool_call(chunk)
        subagent = self.router.handle_task_tool_use(
            ToolCallInfo(id=chunk.id, name=chunk.name, input=tool_call.input)
        )
        if subagent is not None:
            self._link_subagent(subagent)

    def _link_subagent(self, subagent: SubagentInfo) -> None:
        tool_call = self.message.find_tool_call(subagent.id)
        if tool_call is not None:
            apply_subagent_to_tool_call(tool_call, subagent)
        self._emit("subagent_updated", subagent)

    def _on_subagent_hydrated(self, subagent: SubagentInfo) -> None:
        self._emit("subagent_updated", subagent)

    def _handle_tool_result(self, chunk: StreamChunk) -> None:
        tool_id = chunk.id
        if not tool_id:
            logger.debug("Ignoring tool_result chunk without id")
            return
        content = chunk.content
        payload = chunk.tool_use_result

        if self.router.has_pending_task(tool_id):
            subagent = self.router.resolve_pending_from_result(tool_id, payload)
            if subagent is not None:
                self._link_subagent(subagent)

        if self.router.get_sync_subagent(tool_id) is not None:
            subagent = self.router.finalize_sync_subagent(tool_id, content, chunk.is_error)
            self._link_subagent(subagent)
            return

        if self.router.is_pending_async_task(tool_id):
            subagent = self.router.handle_task_launch_result(
                tool_id, content, chunk.is_error, payload
            )
            self._link_subagent(subagent)
            return

        if self.router.is_linked_agent_output_tool(tool_id):
            subagent = self.router.handle_agent_output_tool_result(
                tool_id, content, chunk.is_error, payload
            )
            if subagent is not None:
                self._link_subagent(subagent)
                if subagent.is_terminal and self.hydrator is not None:
                    self.hydrator.schedule(subagent, self.message.find_tool_call(subagent.id))
            return

        if tool_id in self.pending_tools:
            self._emit("tool_rendered", self.pending_tools.pop(tool_id))

        tool_call = self.message.find_tool_call(tool_id)
        if tool_call is None:
            logger.debug("tool_result for unknown tool call %s", tool_id)
            return

        if chunk.is_error:
            tool_call.status = ToolStatus.ERROR
        elif not skips_blocked_detection(tool_call.name) and is_blocked_tool_result(content):
            tool_call.status = ToolStatus.BLOCKED
        else:
            tool_call.status = ToolStatus.COMPLETED
        tool_call.result = content

        if tool_call.name == TOOL_ASK_USER_QUESTION:
            tool_call.resolved_answers = extract_resolved_answers(
                payload
            ) or extract_resolved_answers_from_result_text(content)

        if (
            is_write_edit_tool(tool_call.name)
            and tool_call.status == ToolStatus.COMPLETED
            and payload is not None
        ):
            tool_call.diff_data = extract_diff_data(payload, tool_call)

        self._emit("tool_updated", tool_call)

    def _handle_subagent_chunk(self, chunk: StreamChunk) -> None:
        parent_id = chunk.parent_tool_use_id
        if self.router.has_pending_task(parent_id):
            subagent = self.router.resolve_pending_task(parent_id, SubagentMode.SYNC)
            if subagent is not None:
                self._link_subagent(subagent)

        subagent = self.router.get_sync_subagent(parent_id)
        if subagent is None:
            logger.debug("Chunk for unknown subagent %s", parent_id)
            return

        if chunk.type == ChunkType.TOOL_USE.value and chunk.id and chunk.name:
            self.router.add_sync_tool_call(
                parent_id, ToolCallInfo(id=chunk.id, name=chunk.name, input=chunk.input)
            )
            self._emit("subagent_updated", subagent)
        elif chunk.type == ChunkType.TOOL_RESULT.value and chunk.id:
            updated = self.router.update_sync_tool_result(
                parent_id, chunk.id, chunk.content, chunk.is_error
            )
            if updated is not None:
                self._emit("subagent_updated", subagent)

    # Usage

    def _handle_usage(self, chunk: StreamChunk) -> None:
        if chunk.usage is None or self.ignore_usage:
            return
        # Subagent traffic inflates the counts reported for this turn
        if self.router.subagents_spawned > 0:
            return
        if chunk.session_id and chunk.session_id != self.session_id:
            logger.debug("Ignoring usage for session %s", chunk.session_id)
            return
        self.usage = chunk.usage
        self._emit("usage", chunk.usage)

    # Lifecycle

    def finish(self) -> ChatMessage:
        """Normal end of stream: commit everything still buffered."""
        if self.finished:
            return self.message
        self.flush_pending_tools()
        self._close_buffers()
        self.finished = True
        self._emit("done", self.message)
        return self.message

    def interrupt(self) -> ChatMessage:
        """User cancellation: keep what arrived and mark the turn interrupted."""
        if self.finished:
            return self.message
        self.flush_pending_tools()
        self._close_buffers()
        for tool_id in list(self.router.pending_tasks):
            subagent = self.router.resolve_pending_task(tool_id, SubagentMode.SYNC)
            if subagent is not None:
                self._link_subagent(subagent)
        self.message.is_interrupt = True
        self.interrupted = True
        self.finished = True
        self._emit("interrupted", self.message)
        return self.message

    def close(self) -> None:
        """Release timers and routing state. The message is left as is."""
        if self.hydrator is not None:
            self.hydrator.close()
        self.router.reset()

    async def consume(
        self, chunks: AsyncIterable[StreamChunk], cancel: asyncio.Event | None = None
    ) -> ChatMessage:
        """Feed an async chunk source until ``done``, exhaustion or cancel.

        Setting ``cancel`` stops consumption at the next chunk boundary and
        interrupts the message. Cancelling the awaiting task does the same
        and re-raises.
        """
        iterator = aiter(chunks)
        try:
            while not self.finished:
                if cancel is None:
                    ok, chunk = await _pull(iterator)
                else:
                    ok, chunk = await _pull_or_cancel(iterator, cancel)
                    if cancel.is_set():
                        self.interrupt()
                        break
                if not ok:
                    break
                self.handle_chunk(chunk)
        except asyncio.CancelledError:
            self.interrupt()
            raise

        if not self.finished:
            self.finish()
        return self.message


async def _pull(iterator: AsyncIterator[StreamChunk]) -> tuple[bool, StreamChunk | None]:
    try:
        return True, await anext(iterator)
    except StopAsyncIteration:
        return False, None


async def _pull_or_cancel(
    iterator: AsyncIterator[StreamChunk], cancel: asyncio.Event
) -> tuple[bool, StreamChunk | None]:
    if cancel.is_set():
        return False, None
    pull = asyncio.ensure_future(_pull(iterator))
    cancelled = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({pull, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        pull.cancel()
        raise
    finally:
        cancelled.cancel()
    if pull.done():
        return pull.result()
    pull.cancel()
    return False, None
