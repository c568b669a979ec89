"""Persisted path: session log -> ordered ChatMessage list."""

import asyncio
import logging

from .branches import filter_active_branch
from .correlation import build_correlation_index
from .merger import attach_side_payloads, merge_messages, sort_messages
from .models import SessionLoadResult
from .reader import read_log
from .store import InvalidSessionIdError, SessionStore
from .subagents import (
    SubagentHydrator,
    apply_subagent_to_tool_call,
    link_subagents,
    partition_by_parent_tool,
)

logger = logging.getLogger(__name__)


async def load_session_messages(
    store: SessionStore,
    session_id: str,
    resume_at: str | None = None,
    hydrator: SubagentHydrator | None = None,
) -> SessionLoadResult:
    """Main entry point: session id -> reconstructed conversation.

    Steps: read the log, keep the active branch, index tool results and
    notifications, merge turns, attach side payloads, link subagents and
    read background subagents' side-logs concurrently.

    Args:
        store: Storage collaborator supplying log text.
        session_id: Key of the session log.
        resume_at: Entry id the conversation was rewound to, if any.
        hydrator: When given, background subagents whose final result is
            not in their side-log yet are handed to it for bounded retries.
            Without one, each side-log is read exactly once and a late flush
            is not picked up.
    """

    async def read(key: str) -> str | None:
        return await store.read_session(key)

    try:
        read_result = await read_log(session_id, read)
    except InvalidSessionIdError as e:
        return SessionLoadResult(error=str(e))

    if read_result.error:
        return SessionLoadResult(skipped_lines=read_result.skipped_lines, error=read_result.error)

    entries = filter_active_branch(read_result.entries, resume_at)
    index = build_correlation_index(entries)
    main_entries, nested = partition_by_parent_tool(entries)

    messages = merge_messages(main_entries, index)
    attach_side_payloads(messages, index.side_payloads)
    pending = link_subagents(messages, nested, index)

    if pending:

        async def load_side_log(agent_id: str) -> str | None:
            return await store.read_side_log(session_id, agent_id)

        first_pass = SubagentHydrator(load_side_log)
        outcomes = await asyncio.gather(
            *(
                first_pass.hydrate(subagent, keep_result=subagent.agent_id in index.async_results)
                for _, subagent in pending
            )
        )
        for (tool_call, subagent), (changed, found) in zip(pending, outcomes):
            if changed:
                apply_subagent_to_tool_call(tool_call, subagent)
            if not found and subagent.is_terminal and hydrator is not None:
                hydrator.schedule_retry(subagent, tool_call)

    logger.debug(
        "Loaded %d messages from %d active entries of session %s",
        len(messages),
        len(entries),
        session_id,
    )
    return SessionLoadResult(
        messages=sort_messages(messages), skipped_lines=read_result.skipped_lines
    )
