"""Unit tests for the stream aggregator."""

import asyncio
from collections.abc import AsyncIterator

import pytest

from cc_convo.models import (
    AsyncSubagentStatus,
    ChatMessage,
    ContentBlockType,
    StreamChunk,
    SubagentMode,
    SubagentStatus,
    ToolStatus,
    UsageInfo,
)
from cc_convo.stream import StreamAggregator
from cc_convo.subagents import SubagentHydrator


class Recorder:
    """Listener that records (event, payload) pairs."""

    def __init__(self):
        self.events: list[tuple[str, object]] = []

    def __call__(self, event: str, payload: object) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


def chunk(kind: str, **fields) -> StreamChunk:
    return StreamChunk(type=kind, **fields)


def new_aggregator(**kwargs) -> tuple[StreamAggregator, Recorder]:
    recorder = Recorder()
    message = ChatMessage(id="m1", role="assistant", timestamp=0)
    return StreamAggregator(message, listener=recorder, **kwargs), recorder


def block_types(aggregator: StreamAggregator) -> list[ContentBlockType]:
    return [b.type for b in aggregator.message.content_blocks]


async def feed(*chunks: StreamChunk) -> AsyncIterator[StreamChunk]:
    for c in chunks:
        yield c


class TestTextAndThinking:
    """Tests for text and thinking accumulation."""

    def test_text_accumulates(self) -> None:
        """Text chunks grow one block, finalized on finish."""
        aggregator, recorder = new_aggregator()
        aggregator.handle_chunk(chunk("text", content="Hel"))
        aggregator.handle_chunk(chunk("text", content="lo"))
        aggregator.finish()
        assert aggregator.message.content == "Hello"
        assert [b.content for b in aggregator.message.content_blocks] == ["Hello"]
        assert recorder.names() == ["text", "text", "block_finalized", "done"]

    def test_thinking_then_text(self) -> None:
        """Switching from thinking to text closes the thinking block with its duration."""
        ticks = iter([10.0, 12.5])
        aggregator, _ = new_aggregator(clock=lambda: next(ticks))
        aggregator.handle_chunk(chunk("thinking", content="hmm"))
        aggregator.handle_chunk(chunk("text", content="answer"))
        aggregator.finish()
        thinking = aggregator.message.content_blocks[0]
        assert thinking.type == ContentBlockType.THINKING
        assert thinking.duration_seconds == 2.5
        assert block_types(aggregator) == [ContentBlockType.THINKING, ContentBlockType.TEXT]
        assert aggregator.message.content == "answer"

    def test_error_and_blocked_annotations(self) -> None:
        """Error and blocked chunks become annotated text."""
        aggregator, _ = new_aggregator()
        aggregator.handle_chunk(chunk("blocked", content="rm -rf"))
        aggregator.handle_chunk(chunk("error", content="timeout"))
        aggregator.finish()
        assert aggregator.message.content_blocks[0].content == (
            "\n\n**Blocked:** rm -rf\n\n**Error:** timeout"
        )

    def test_unknown_chunk_ignored(self) -> None:
        """Unknown chunk kinds change nothing."""
        aggregator, recorder = new_aggregator()
        aggregator.handle_chunk(chunk("heartbeat"))
        assert recorder.events == []

    def test_compact_boundary(self) -> None:
        """A boundary closes open text and adds a boundary block."""
        aggregator, _ = new_aggregator()
        aggregator.handle_chunk(chunk("text", content="before"))
        aggregator.handle_chunk(chunk("compact_boundary"))
        assert block_types(aggregator) == [ContentBlockType.TEXT, ContentBlockType.COMPACT_BOUNDARY]

    def test_sdk_assistant_uuid(self) -> None:
        """The runtime's assistant uuid is recorded on the message."""
        aggregator, _ = new_aggregator()
        aggregator.handle_chunk(chunk("sdk_assistant_uuid", uuid="abc"))
        assert aggregator.message.sdk_assistant_uuid == "abc"


class TestToolBuffering:
    """Tests for pending tool buffering."""

    def test_live_buffering_property(self) -> None:
        """Two tool calls render in order before the following text opens."""
        aggregator, recorder = new_aggregator()
        aggregator.handle_chunk(chunk("tool_use", id="A", name="Read", input={"file_path": "a"}))
        aggregator.handle_chunk(chunk("tool_use", id="B", name="Grep", input={"pattern": "x"}))
        assert [tc.id for tc in aggregator.message.tool_calls] == ["A", "B"]
        assert recorder.events == []

        aggregator.handle_chunk(chunk("text", content="hi"))
        rendered = [p.id for name, p in recorder.events if name == "tool_rendered"]
        assert rendered == ["A", "B"]
        assert recorder.names()[:3] == ["tool_rendered", "tool_rendered", "text"]
        assert all(tc.status == ToolStatus.RUNNING for tc in aggregator.message.tool_calls)

        aggregator.finish()
        assert block_types(aggregator) == [
            ContentBlockType.TOOL_USE,
            ContentBlockType.TOOL_USE,
            ContentBlockType.TEXT,
        ]

    def test_result_for_later_tool_keeps_arrival_order(self) -> None:
        """A result for the second buffered tool does not move it ahead of the first."""
        aggregator, recorder = new_aggregator()
        aggregator.handle_chunk(chunk("tool_use", id="A", name="Read"))
        aggregator.handle_chunk(chunk("tool_use", id="B", name="Grep"))
        aggregator.handle_chunk(chunk("tool_result", id="B", content="match"))
        aggregator.handle_chunk(chunk("text", content="hi"))
        aggregator.finish()

        blocks = [b.tool_id or b.type.value for b in aggregator.message.content_blocks]
        assert blocks == ["A", "B", "text"]
        assert [tc.id for tc in aggregator.message.tool_calls] == ["A", "B"]
        rendered = [p.id for name, p in recorder.events if name == "tool_rendered"]
        assert rendered == ["B", "A"]

    def test_follow_up_input_merges(self) -> None:
        """A repeated tool_use id merges its input into the pending call."""
        aggregator, _ = new_aggregator()
        aggregator.handle_chunk(chunk("tool_use", id="A", name="Bash", input={"command": "ls"}))
        aggregator.handle_chunk(chunk("tool_use", id="A", name="Bash", input={"timeout": 5}))
        aggregator.finish()
        assert aggregator.message.tool_calls[0].input == {"command": "ls", "timeout": 5}
        assert len(aggregator.message.tool_calls) == 1

    def test_result_renders_pending_tool(self) -> None:
        """A result for a buffered tool renders it first."""
        aggregator, recorder = new_aggregator()
        aggregator.handle_chunk(chunk("tool_use", id="A", name="Read"))
        aggregator.handle_chunk(chunk("tool_result", id="A", content="file text"))
        assert recorder.names() == ["tool_rendered", "tool_updated"]
        tool_call = aggregator.message.tool_calls[0]
        assert tool_call.status == ToolStatus.COMPLETED
        assert tool_call.result == "file text"

    def test_result_statuses(self) -> None:
        """Errors, denials and callback-resolved tools get the right status."""
        aggregator, _ = new_aggregator()
        for tool_id, name in [("e", "Bash"), ("b", "Bash"), ("q", "AskUserQuestion")]:
            aggregator.handle_chunk(chunk("tool_use", id=tool_id, name=name))
        aggregator.handle_chunk(chunk("tool_result", id="e", content="exit 1", isError=True))
        aggregator.handle_chunk(chunk("tool_result", id="b", content="Access denied"))
        aggregator.handle_chunk(chunk("tool_result", id="q", content='"Approval mode?"="yes"'))
        calls = {tc.id: tc for tc in aggregator.message.tool_calls}
        assert calls["e"].status == ToolStatus.ERROR
        assert calls["b"].status == ToolStatus.BLOCKED
        assert calls["q"].status == ToolStatus.COMPLETED
        assert calls["q"].resolved_answers == {"Approval mode?": "yes"}

    def test_write_diff(self) -> None:
        """Completed write results attach diff data from their payload."""
        aggregator, _ = new_aggregator()
        aggregator.handle_chunk(
            chunk("tool_use", id="w", name="Write", input={"file_path": "n.py"})
        )
        aggregator.handle_chunk(
            chunk(
                "tool_result",
                id="w",
                content="created",
                toolUseResult={"type": "create", "content": "x"},
            )
        )
        diff = aggregator.message.tool_calls[0].diff_data
        assert diff.file_path == "n.py"
        assert diff.stats.added == 1

    def test_result_for_unknown_tool(self) -> None:
        """Results for calls never seen are ignored."""
        aggregator, recorder = new_aggregator()
        aggregator.handle_chunk(chunk("tool_result", id="ghost", content="?"))
        assert recorder.events == []

    def test_done_flushes(self) -> None:
        """Done commits tools still waiting in the buffer."""
        aggregator, recorder = new_aggregator()
        aggregator.handle_chunk(chunk("tool_use", id="A", name="Read"))
        aggregator.handle_chunk(chunk("done"))
        assert [tc.id for tc in aggregator.message.tool_calls] == ["A"]
        assert recorder.names() == ["tool_rendered", "done"]
        assert aggregator.finished is True


class TestSubagentRouting:
    """Tests for Task calls in the live stream."""

    def test_sync_subagent(self) -> None:
        """The first child chunk binds sync; the Task result finalizes it."""
        aggregator, recorder = new_aggregator()
        aggregator.handle_chunk(
            chunk("tool_use", id="T", name="Task", input={"description": "Scan"})
        )
        task = aggregator.message.tool_calls[0]
        assert task.subagent is None

        aggregator.handle_chunk(chunk("tool_use", id="r1", name="Read", parentToolUseId="T"))
        aggregator.handle_chunk(chunk("tool_result", id="r1", content="ok", parentToolUseId="T"))
        assert task.subagent.mode == SubagentMode.SYNC
        assert [tc.status for tc in task.subagent.tool_calls] == [ToolStatus.COMPLETED]

        aggregator.handle_chunk(chunk("tool_result", id="T", content="Scan finished"))
        assert task.subagent.status == SubagentStatus.COMPLETED
        assert task.status == ToolStatus.COMPLETED
        assert task.result == "Scan finished"
        assert "subagent_updated" in recorder.names()

    def test_task_flushes_pending_tools(self) -> None:
        """A Task call renders buffered tools before itself."""
        aggregator, _ = new_aggregator()
        aggregator.handle_chunk(chunk("tool_use", id="A", name="Read"))
        aggregator.handle_chunk(chunk("tool_use", id="T", name="Task"))
        assert [tc.id for tc in aggregator.message.tool_calls] == ["A", "T"]

    def test_child_text_not_in_parent(self) -> None:
        """Subagent text does not leak into the main message."""
        aggregator, _ = new_aggregator()
        aggregator.handle_chunk(chunk("tool_use", id="T", name="Task"))
        aggregator.handle_chunk(chunk("text", content="inner", parentToolUseId="T"))
        assert aggregator.message.content == ""

    def test_async_subagent_lifecycle(self) -> None:
        """Background Tasks go pending, running, then completed via TaskOutput."""
        aggregator, _ = new_aggregator()
        aggregator.handle_chunk(
            chunk(
                "tool_use",
                id="T",
                name="Task",
                input={"description": "Bg", "run_in_background": True},
            )
        )
        task = aggregator.message.tool_calls[0]
        assert task.subagent.async_status == AsyncSubagentStatus.PENDING

        aggregator.handle_chunk(
            chunk(
                "tool_result",
                id="T",
                content="launched",
                toolUseResult={"isAsync": True, "agentId": "ag1"},
            )
        )
        assert task.subagent.async_status == AsyncSubagentStatus.RUNNING
        assert task.status == ToolStatus.RUNNING

        aggregator.handle_chunk(
            chunk("tool_use", id="O", name="TaskOutput", input={"task_id": "ag1"})
        )
        aggregator.handle_chunk(
            chunk("tool_result", id="O", content="<output>Done: 3 files</output>")
        )
        assert task.subagent.async_status == AsyncSubagentStatus.COMPLETED
        assert task.status == ToolStatus.COMPLETED
        assert task.result == "Done: 3 files"
        assert [tc.id for tc in aggregator.message.tool_calls] == ["T"]

    def test_launch_payload_binds_pending_task_async(self) -> None:
        """A Task with no hints becomes async when its result is a launch payload."""
        aggregator, _ = new_aggregator()
        aggregator.handle_chunk(chunk("tool_use", id="T", name="Task"))
        aggregator.handle_chunk(
            chunk(
                "tool_result",
                id="T",
                content="launched\nagentId: ag9",
                toolUseResult={"isAsync": True},
            )
        )
        subagent = aggregator.message.tool_calls[0].subagent
        assert subagent.mode == SubagentMode.ASYNC
        assert subagent.agent_id == "ag9"

    @pytest.mark.asyncio
    async def test_completed_async_is_hydrated(self) -> None:
        """A finished background subagent reads its side-log through the hydrator."""
        side_log = (
            '{"type": "assistant", '
            '"message": {"content": [{"type": "text", "text": "Full"}]}}\n'
        )

        async def load(agent_id: str) -> str | None:
            return side_log

        aggregator, recorder = new_aggregator(hydrator=SubagentHydrator(load, delays=(0.01,)))
        aggregator.handle_chunk(
            chunk("tool_use", id="T", name="Task", input={"run_in_background": True})
        )
        aggregator.handle_chunk(
            chunk("tool_result", id="T", content="x", toolUseResult={"agentId": "ag1"})
        )
        aggregator.handle_chunk(
            chunk("tool_use", id="O", name="TaskOutput", input={"task_id": "ag1"})
        )
        aggregator.handle_chunk(chunk("tool_result", id="O", content="<output>Short</output>"))
        await asyncio.sleep(0.05)

        task = aggregator.message.tool_calls[0]
        assert task.subagent.result == "Full"
        assert task.result == "Full"
        aggregator.close()


class TestUsage:
    """Tests for usage accounting."""

    def usage(self, **fields) -> StreamChunk:
        return chunk("usage", usage=UsageInfo(input_tokens=100, output_tokens=20), **fields)

    def test_usage_recorded(self) -> None:
        """Usage for the active session is kept."""
        aggregator, recorder = new_aggregator(session_id="s1")
        aggregator.handle_chunk(self.usage(sessionId="s1"))
        assert aggregator.usage.input_tokens == 100
        assert recorder.names() == ["usage"]

    def test_other_session_ignored(self) -> None:
        """Usage tagged with another session is dropped."""
        aggregator, _ = new_aggregator(session_id="s1")
        aggregator.handle_chunk(self.usage(sessionId="s2"))
        assert aggregator.usage is None

    def test_session_tag_without_active_session(self) -> None:
        """Tagged usage is dropped when no session is active."""
        aggregator, _ = new_aggregator()
        aggregator.handle_chunk(self.usage(sessionId="s2"))
        assert aggregator.usage is None

    def test_ignored_after_subagent(self) -> None:
        """Usage is not trusted once a subagent ran in this stream."""
        aggregator, _ = new_aggregator()
        aggregator.handle_chunk(
            chunk("tool_use", id="T", name="Task", input={"run_in_background": True})
        )
        aggregator.handle_chunk(self.usage())
        assert aggregator.usage is None

    def test_ignore_flag(self) -> None:
        """The host can turn usage off."""
        aggregator, _ = new_aggregator()
        aggregator.ignore_usage = True
        aggregator.handle_chunk(self.usage())
        assert aggregator.usage is None


class TestCancellation:
    """Tests for interruption and consume."""

    def test_cancellation_flush_property(self) -> None:
        """Interrupting with a buffered tool still yields its ToolCallInfo first."""
        aggregator, recorder = new_aggregator()
        aggregator.handle_chunk(chunk("text", content="Working"))
        aggregator.handle_chunk(chunk("tool_use", id="A", name="Bash", input={"command": "make"}))
        aggregator.interrupt()

        assert [tc.id for tc in aggregator.message.tool_calls] == ["A"]
        assert aggregator.message.is_interrupt is True
        names = recorder.names()
        assert names.index("tool_rendered") < names.index("interrupted")

    def test_interrupt_resolves_pending_task(self) -> None:
        """A Task still waiting for its mode is bound sync on interrupt."""
        aggregator, _ = new_aggregator()
        aggregator.handle_chunk(chunk("tool_use", id="T", name="Task"))
        aggregator.interrupt()
        assert aggregator.message.tool_calls[0].subagent.mode == SubagentMode.SYNC

    def test_chunks_after_finish_ignored(self) -> None:
        """Nothing changes once the stream is finished."""
        aggregator, _ = new_aggregator()
        aggregator.interrupt()
        aggregator.handle_chunk(chunk("text", content="late"))
        aggregator.finish()
        assert aggregator.message.content == ""

    @pytest.mark.asyncio
    async def test_consume_until_done(self) -> None:
        """consume stops at done."""
        aggregator, _ = new_aggregator()
        message = await aggregator.consume(
            feed(chunk("text", content="hi"), chunk("done"), chunk("text", content="ignored"))
        )
        assert message.content == "hi"
        assert message.is_interrupt is False

    @pytest.mark.asyncio
    async def test_consume_exhausted_without_done(self) -> None:
        """A stream that ends without done is still finalized."""
        aggregator, recorder = new_aggregator()
        await aggregator.consume(feed(chunk("tool_use", id="A", name="Read")))
        assert [tc.id for tc in aggregator.message.tool_calls] == ["A"]
        assert recorder.names()[-1] == "done"

    @pytest.mark.asyncio
    async def test_consume_cancel_event(self) -> None:
        """Setting the cancel event interrupts a stalled stream."""
        cancel = asyncio.Event()

        async def stalled() -> AsyncIterator[StreamChunk]:
            yield chunk("tool_use", id="A", name="Bash")
            await asyncio.sleep(10)
            yield chunk("done")

        aggregator, _ = new_aggregator()
        asyncio.get_running_loop().call_later(0.02, cancel.set)
        message = await asyncio.wait_for(aggregator.consume(stalled(), cancel=cancel), timeout=2)
        assert message.is_interrupt is True
        assert [tc.id for tc in message.tool_calls] == ["A"]

    @pytest.mark.asyncio
    async def test_consume_task_cancelled(self) -> None:
        """Cancelling the consuming task interrupts the message and re-raises."""

        async def stalled() -> AsyncIterator[StreamChunk]:
            yield chunk("tool_use", id="A", name="Bash")
            await asyncio.sleep(10)
            yield chunk("done")

        aggregator, _ = new_aggregator()
        task = asyncio.ensure_future(aggregator.consume(stalled()))
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert aggregator.message.is_interrupt is True
        assert [tc.id for tc in aggregator.message.tool_calls] == ["A"]
