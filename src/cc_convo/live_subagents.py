"""Subagent bookkeeping for a live stream.

A Task tool call does not say up front whether it will run inline or in
the background. The mode is bound by the first thing that happens to it:

* ``run_in_background`` in its input, or a launch payload in its result,
  makes it async;
* a chunk routed to it as parent, or a plain result, makes it sync.

Until then it waits in ``pending_tasks``.
"""

import logging
import time
from typing import Any

from .correlation import extract_xml_tag
from .models import (
    AsyncSubagentStatus,
    SubagentInfo,
    SubagentMode,
    SubagentStatus,
    ToolCallInfo,
    ToolStatus,
)
from .tools import (
    extract_agent_id,
    extract_agent_id_from_text,
    is_async_launch_payload,
    is_blocked_tool_result,
)

logger = logging.getLogger(__name__)

RUNNING_OUTPUT_STATUSES = ("running", "pending", "not_ready")


class LiveSubagentRouter:
    """Tracks pending, sync and async subagents of one streaming turn."""

    def __init__(self):
        self.pending_tasks: dict[str, ToolCallInfo] = {}
        self.sync_subagents: dict[str, SubagentInfo] = {}
        self.async_subagents: dict[str, SubagentInfo] = {}
        self._by_agent_id: dict[str, SubagentInfo] = {}
        self._output_tools: dict[str, str] = {}  # output tool id -> subagent id
        self.subagents_spawned = 0

    # Task tool_use

    def handle_task_tool_use(self, tool_call: ToolCallInfo) -> SubagentInfo | None:
        """Register a Task call, or fold a follow-up chunk for one into it.

        Returns the subagent when the mode is already known.
        """
        known = self.sync_subagents.get(tool_call.id) or self.async_subagents.get(tool_call.id)
        if known is not None:
            self._update_labels(known, tool_call.input)
            return known

        if tool_call.id in self.pending_tasks:
            pending = self.pending_tasks[tool_call.id]
            pending.input = {**pending.input, **tool_call.input}
            if pending.input.get("run_in_background") is True:
                return self.resolve_pending_task(tool_call.id, SubagentMode.ASYNC)
            return None

        if tool_call.input.get("run_in_background") is True:
            self.pending_tasks[tool_call.id] = tool_call
            return self.resolve_pending_task(tool_call.id, SubagentMode.ASYNC)

        self.pending_tasks[tool_call.id] = tool_call
        return None

    def has_pending_task(self, tool_id: str) -> bool:
        return tool_id in self.pending_tasks

    def resolve_pending_task(self, tool_id: str, mode: SubagentMode) -> SubagentInfo | None:
        tool_call = self.pending_tasks.pop(tool_id, None)
        if tool_call is None:
            return None

        subagent = SubagentInfo(
            id=tool_id,
            mode=mode,
            status=SubagentStatus.RUNNING,
            started_at=time.time(),
        )
        self._update_labels(subagent, tool_call.input)
        if mode == SubagentMode.ASYNC:
            subagent.async_status = AsyncSubagentStatus.PENDING
            if not subagent.description:
                subagent.description = "Background task"
            self.async_subagents[tool_id] = subagent
        else:
            self.sync_subagents[tool_id] = subagent
        self.subagents_spawned += 1
        logger.debug("Task %s bound as %s subagent", tool_id, mode.value)
        return subagent

    def resolve_pending_from_result(self, tool_id: str, payload: Any = None) -> SubagentInfo | None:
        """A pending Task's own result arrived before any child chunk."""
        mode = SubagentMode.ASYNC if is_async_launch_payload(payload) else SubagentMode.SYNC
        return self.resolve_pending_task(tool_id, mode)

    def _update_labels(self, subagent: SubagentInfo, tool_input: dict[str, Any]) -> None:
        if tool_input.get("description"):
            subagent.description = tool_input["description"]
        if tool_input.get("prompt"):
            subagent.prompt = tool_input["prompt"]

    # Sync subagents

    def get_sync_subagent(self, tool_id: str) -> SubagentInfo | None:
        return self.sync_subagents.get(tool_id)

    def add_sync_tool_call(self, parent_id: str, tool_call: ToolCallInfo) -> ToolCallInfo | None:
        subagent = self.sync_subagents.get(parent_id)
        if subagent is None:
            return None
        for existing in subagent.tool_calls:
            if existing.id == tool_call.id:
                existing.input = {**existing.input, **tool_call.input}
                return existing
        subagent.tool_calls.append(tool_call)
        return tool_call

    def update_sync_tool_result(
        self, parent_id: str, tool_id: str, content: str, is_error: bool = False
    ) -> ToolCallInfo | None:
        subagent = self.sync_subagents.get(parent_id)
        if subagent is None:
            return None
        for tool_call in subagent.tool_calls:
            if tool_call.id == tool_id:
                if is_blocked_tool_result(content, is_error):
                    tool_call.status = ToolStatus.BLOCKED
                elif is_error:
                    tool_call.status = ToolStatus.ERROR
                else:
                    tool_call.status = ToolStatus.COMPLETED
                tool_call.result = content
                return tool_call
        return None

    def finalize_sync_subagent(
        self, tool_id: str, content: str, is_error: bool = False
    ) -> SubagentInfo | None:
        subagent = self.sync_subagents.pop(tool_id, None)
        if subagent is None:
            return None
        subagent.status = SubagentStatus.ERROR if is_error else SubagentStatus.COMPLETED
        subagent.result = content
        subagent.completed_at = time.time()
        return subagent

    # Async subagents

    def is_pending_async_task(self, tool_id: str) -> bool:
        subagent = self.async_subagents.get(tool_id)
        return subagent is not None and subagent.async_status == AsyncSubagentStatus.PENDING

    def handle_task_launch_result(
        self, tool_id: str, content: str, is_error: bool = False, payload: Any = None
    ) -> SubagentInfo | None:
        """The Task call of a background subagent returned its launch marker."""
        subagent = self.async_subagents.get(tool_id)
        if subagent is None:
            return None

        if is_error:
            subagent.status = SubagentStatus.ERROR
            subagent.async_status = AsyncSubagentStatus.ERROR
            subagent.result = content
            subagent.completed_at = time.time()
            return subagent

        agent_id = extract_agent_id(payload) or extract_agent_id_from_text(content)
        if not agent_id:
            logger.warning("Background task %s launched without an agent id", tool_id)
            subagent.status = SubagentStatus.ERROR
            subagent.async_status = AsyncSubagentStatus.ORPHANED
            subagent.result = content
            return subagent

        subagent.agent_id = agent_id
        subagent.async_status = AsyncSubagentStatus.RUNNING
        self._by_agent_id[agent_id] = subagent
        return subagent

    def handle_agent_output_tool_use(self, tool_call: ToolCallInfo) -> SubagentInfo | None:
        """Link a TaskOutput call to the background subagent it polls."""
        task_id = (
            tool_call.input.get("task_id")
            or tool_call.input.get("agentId")
            or tool_call.input.get("agent_id")
        )
        subagent = self._by_agent_id.get(task_id) if isinstance(task_id, str) else None
        if subagent is None:
            logger.debug("TaskOutput %s does not match a known background task", tool_call.id)
            return None
        subagent.output_tool_id = tool_call.id
        self._output_tools[tool_call.id] = subagent.id
        return subagent

    def is_linked_agent_output_tool(self, tool_id: str) -> bool:
        return tool_id in self._output_tools

    def handle_agent_output_tool_result(
        self, tool_id: str, content: str, is_error: bool = False, payload: Any = None
    ) -> SubagentInfo | None:
        """Apply a TaskOutput result. Still-running reports leave state alone."""
        subagent_id = self._output_tools.get(tool_id)
        subagent = self.async_subagents.get(subagent_id) if subagent_id else None
        if subagent is None:
            return None

        status = extract_xml_tag(content, "status") or extract_xml_tag(content, "retrieval_status")
        if isinstance(payload, dict) and isinstance(payload.get("status"), str):
            status = status or payload["status"]
        if not is_error and status and status.lower() in RUNNING_OUTPUT_STATUSES:
            return subagent

        output = extract_xml_tag(content, "output") or extract_xml_tag(content, "result")
        subagent.result = output or content
        failed = is_error or (status or "").lower() in ("error", "failed")
        subagent.status = SubagentStatus.ERROR if failed else SubagentStatus.COMPLETED
        subagent.async_status = (
            AsyncSubagentStatus.ERROR if failed else AsyncSubagentStatus.COMPLETED
        )
        subagent.completed_at = time.time()
        return subagent

    def reset(self) -> None:
        self.pending_tasks.clear()
        self.sync_subagents.clear()
        self.async_subagents.clear()
        self._by_agent_id.clear()
        self._output_tools.clear()
        self.subagents_spawned = 0
