"""Attach subagent detail to the tool calls that spawned them.

Two shapes reach the persisted log:

* sync: the subagent ran inside the turn. Its tool traffic is in the main
  log, tagged with the spawning tool call's id, and the spawning call's own
  result is the subagent's answer.
* async: the subagent runs in the background. The spawning call only
  returns a launch marker with an agent id; the full answer arrives later as
  a queue notification, and the subagent's tool calls live in a side-log
  that may not have been flushed yet.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_result,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
    wait_none,
)

from . import config
from .correlation import AsyncResult, CorrelationIndex, get_content_blocks
from .merger import build_tool_call
from .models import (
    AsyncSubagentStatus,
    ChatMessage,
    EntryKind,
    RawEntry,
    SubagentInfo,
    SubagentMode,
    SubagentStatus,
    ToolCallInfo,
    ToolStatus,
)
from .sidelog import extract_final_result, parse_side_log_tool_calls
from .tools import extract_agent_id, is_async_launch_payload, is_subagent_tool

logger = logging.getLogger(__name__)

# agent id -> side-log text, or None while it is not available
SideLogLoader = Callable[[str], Awaitable[str | None]]
ChangeCallback = Callable[[SubagentInfo], None]


def partition_by_parent_tool(
    entries: list[RawEntry],
) -> tuple[list[RawEntry], dict[str, list[RawEntry]]]:
    """Split entries into top-level ones and nested sync subagent traffic.

    Returns:
        Tuple of (main_entries, {parent_tool_use_id: entries})
    """
    main_entries = []
    nested: dict[str, list[RawEntry]] = defaultdict(list)

    for entry in entries:
        if entry.parent_tool_use_id:
            nested[entry.parent_tool_use_id].append(entry)
        else:
            main_entries.append(entry)

    return main_entries, dict(nested)


def classify_subagent_mode(tool_call: ToolCallInfo, payload: Any = None) -> SubagentMode:
    if tool_call.input.get("run_in_background") is True or is_async_launch_payload(payload):
        return SubagentMode.ASYNC
    return SubagentMode.SYNC


def status_from_tool_status(status: ToolStatus) -> SubagentStatus:
    if status == ToolStatus.ERROR:
        return SubagentStatus.ERROR
    if status == ToolStatus.RUNNING:
        return SubagentStatus.RUNNING
    return SubagentStatus.COMPLETED


def collect_nested_tool_calls(
    entries: list[RawEntry], index: CorrelationIndex
) -> list[ToolCallInfo]:
    calls = []
    for entry in entries:
        if entry.kind != EntryKind.ASSISTANT.value:
            continue
        for block in get_content_blocks(entry.message_content):
            if block.get("type") == "tool_use" and block.get("id") and block.get("name"):
                calls.append(build_tool_call(block, index.tool_results))
    return calls


def build_sync_subagent_info(
    tool_call: ToolCallInfo, nested_entries: list[RawEntry], index: CorrelationIndex
) -> SubagentInfo:
    return SubagentInfo(
        id=tool_call.id,
        description=tool_call.input.get("description") or "",
        prompt=tool_call.input.get("prompt") or "",
        mode=SubagentMode.SYNC,
        status=status_from_tool_status(tool_call.status),
        tool_calls=collect_nested_tool_calls(nested_entries, index),
        result=tool_call.result,
    )


def build_async_subagent_info(
    tool_call: ToolCallInfo, payload: Any, async_results: dict[str, AsyncResult]
) -> SubagentInfo | None:
    """Build the background subagent for a launch, or None without an agent id.

    The queue notification's text is the full answer and wins over the short
    summary in the tool result; its status wins over the tool call's.
    """
    agent_id = extract_agent_id(payload)
    if not agent_id:
        return None

    notification = async_results.get(agent_id)
    result = notification.result if notification else tool_call.result

    if notification and notification.status == "error":
        status = SubagentStatus.ERROR
    elif notification and notification.status == "completed":
        status = SubagentStatus.COMPLETED
    else:
        status = status_from_tool_status(tool_call.status)

    return SubagentInfo(
        id=tool_call.id,
        description=tool_call.input.get("description") or "Background task",
        prompt=tool_call.input.get("prompt") or "",
        mode=SubagentMode.ASYNC,
        status=status,
        async_status=AsyncSubagentStatus(status.value),
        agent_id=agent_id,
        result=result,
    )


def apply_subagent_to_tool_call(tool_call: ToolCallInfo, subagent: SubagentInfo) -> None:
    tool_call.subagent = subagent
    if subagent.status == SubagentStatus.COMPLETED:
        tool_call.status = ToolStatus.COMPLETED
    elif subagent.status == SubagentStatus.ERROR:
        tool_call.status = ToolStatus.ERROR
    else:
        tool_call.status = ToolStatus.RUNNING
    if subagent.result is not None:
        tool_call.result = subagent.result


def link_subagents(
    messages: list[ChatMessage], nested: dict[str, list[RawEntry]], index: CorrelationIndex
) -> list[tuple[ToolCallInfo, SubagentInfo]]:
    """Attach a SubagentInfo to every spawning tool call.

    Returns the async subagents (with their tool calls), which still need
    their side-logs read.
    """
    pending_hydration = []
    for message in messages:
        if message.role != "assistant":
            continue
        for tool_call in message.tool_calls:
            if not is_subagent_tool(tool_call.name) or tool_call.subagent is not None:
                continue

            payload = index.side_payloads.get(tool_call.id)
            if classify_subagent_mode(tool_call, payload) == SubagentMode.ASYNC:
                subagent = build_async_subagent_info(tool_call, payload, index.async_results)
                if subagent is None:
                    logger.debug("Background task %s has no agent id yet", tool_call.id)
                    continue
                pending_hydration.append((tool_call, subagent))
            else:
                subagent = build_sync_subagent_info(
                    tool_call, nested.get(tool_call.id, []), index
                )
            apply_subagent_to_tool_call(tool_call, subagent)
    return pending_hydration


@dataclass
class HydrationState:
    """Retry bookkeeping for one background subagent."""

    subagent: SubagentInfo
    tool_call: ToolCallInfo | None = None
    task: asyncio.Task | None = None


class SubagentHydrator:
    """Loads background subagent detail from side-logs, retrying with backoff.

    The side-log writer can finish slightly after the completion notice is
    seen, so a terminal subagent without a final result is retried once per
    entry in ``delays`` before its partial result is accepted as final.
    Each subagent's attempts run as one task on the running event loop;
    ``close`` cancels them.
    """

    def __init__(
        self,
        load_side_log: SideLogLoader,
        delays: tuple[float, ...] | None = None,
        on_change: ChangeCallback | None = None,
    ):
        self.load_side_log = load_side_log
        self.delays = config.ASYNC_RESULT_RETRY_DELAYS if delays is None else delays
        self.on_change = on_change
        self._states: dict[str, HydrationState] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def is_scheduled(self, subagent_id: str) -> bool:
        return subagent_id in self._states

    async def _load(self, agent_id: str) -> str | None:
        try:
            return await self.load_side_log(agent_id)
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("Side-log for %s not readable: %s", agent_id, e)
            return None

    async def hydrate(
        self, subagent: SubagentInfo, hydrate_tool_calls: bool = True, keep_result: bool = False
    ) -> tuple[bool, bool]:
        """One attempt. Returns (changed, final_result_available).

        With ``keep_result`` the current result is authoritative and only the
        tool calls are filled in.
        """
        if not subagent.agent_id:
            return False, False

        text = await self._load(subagent.agent_id)
        changed = False

        if hydrate_tool_calls and not subagent.tool_calls:
            tool_calls = parse_side_log_tool_calls(text)
            if tool_calls:
                subagent.tool_calls = tool_calls
                changed = True

        if keep_result:
            return changed, True

        final = extract_final_result(text)
        if not final:
            return changed, False
        if final != subagent.result:
            subagent.result = final
            changed = True
        return changed, True

    def _notify(self, state: HydrationState) -> None:
        if state.tool_call is not None:
            apply_subagent_to_tool_call(state.tool_call, state.subagent)
        if self.on_change:
            self.on_change(state.subagent)

    def _retrying(self, delays: tuple[float, ...]) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(len(delays) + 1),
            wait=wait_chain(*(wait_fixed(delay) for delay in delays)) if delays else wait_none(),
            retry=retry_if_result(lambda found: not found),
        )

    def _start(
        self,
        subagent: SubagentInfo,
        tool_call: ToolCallInfo | None,
        delays: tuple[float, ...],
        first_delay: float | None = None,
    ) -> None:
        if self._closed or not subagent.agent_id or subagent.id in self._states:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, skipping hydration of %s", subagent.id)
            return
        state = HydrationState(subagent=subagent, tool_call=tool_call)
        self._states[subagent.id] = state
        state.task = loop.create_task(self._run(state, delays, first_delay))

    def schedule(self, subagent: SubagentInfo, tool_call: ToolCallInfo | None = None) -> None:
        """Immediate attempt in the background, then retries if still needed."""
        self._start(subagent, tool_call, self.delays)

    def schedule_retry(self, subagent: SubagentInfo, tool_call: ToolCallInfo | None = None) -> None:
        """Start the retry sequence for a subagent already tried once."""
        if not self.delays:
            return
        self._start(subagent, tool_call, self.delays[1:], first_delay=self.delays[0])

    async def _run(
        self, state: HydrationState, delays: tuple[float, ...], first_delay: float | None
    ) -> None:
        subagent = state.subagent
        # Tool calls are read on the first attempt only
        hydrate_tool_calls = first_delay is None
        try:
            if first_delay is not None:
                await asyncio.sleep(first_delay)
            async for attempt in self._retrying(delays):
                with attempt:
                    if not subagent.is_terminal:
                        return
                    changed, found = await self.hydrate(
                        subagent, hydrate_tool_calls=hydrate_tool_calls
                    )
                    hydrate_tool_calls = False
                    if changed:
                        self._notify(state)
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(found)
        except RetryError:
            logger.debug(
                "Giving up on final result for %s after %d retries", subagent.id, len(delays)
            )
        finally:
            if self._states.get(subagent.id) is state:
                del self._states[subagent.id]

    def close(self) -> None:
        """Cancel all pending and in-flight attempts."""
        self._closed = True
        for state in self._states.values():
            if state.task is not None:
                state.task.cancel()
        self._states.clear()
