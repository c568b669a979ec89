"""Tool names and helpers for reading tool inputs and results."""

import re
from typing import Any

TOOL_TASK = "Task"
TOOL_AGENT = "Agent"
TOOL_AGENT_OUTPUT = "TaskOutput"
TOOL_ASK_USER_QUESTION = "AskUserQuestion"
TOOL_EXIT_PLAN_MODE = "ExitPlanMode"
TOOL_TODO_WRITE = "TodoWrite"
TOOL_WRITE = "Write"
TOOL_EDIT = "Edit"
TOOL_MULTI_EDIT = "MultiEdit"
TOOL_NOTEBOOK_EDIT = "NotebookEdit"

SUBAGENT_TOOLS = frozenset({TOOL_TASK, TOOL_AGENT})
WRITE_EDIT_TOOLS = frozenset({TOOL_WRITE, TOOL_EDIT, TOOL_MULTI_EDIT, TOOL_NOTEBOOK_EDIT})

# Tools resolved through their own callbacks; their status comes from is_error only
SKIP_BLOCKED_DETECTION = frozenset({TOOL_ASK_USER_QUESTION, TOOL_EXIT_PLAN_MODE})

BLOCKED_MARKERS = (
    "blocked by blocklist",
    "outside the vault",
    "access denied",
    "user denied",
    "approval",
)

ANSWER_PAIR_PATTERN = re.compile(r'"([^"]+)"\s*=\s*"([^"]*)"')
AGENT_ID_PATTERN = re.compile(r"agentId:\s*([A-Za-z0-9_-]+)")
SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def is_subagent_tool(name: str) -> bool:
    return name in SUBAGENT_TOOLS


def is_write_edit_tool(name: str) -> bool:
    return name in WRITE_EDIT_TOOLS


def skips_blocked_detection(name: str) -> bool:
    return name in SKIP_BLOCKED_DETECTION


def is_blocked_tool_result(content: str | None, is_error: bool = False) -> bool:
    """Check if a tool result reports a denial rather than a real outcome.

    "deny" on its own is too common in ordinary output, so it only counts
    when the runtime flagged the result as an error.
    """
    if not content:
        return False
    lowered = content.lower()
    if any(marker in lowered for marker in BLOCKED_MARKERS):
        return True
    return is_error and "deny" in lowered


def extract_resolved_answers(payload: Any) -> dict[str, Any] | None:
    """Return the ``answers`` mapping of an AskUserQuestion result payload."""
    if not isinstance(payload, dict):
        return None
    answers = payload.get("answers")
    if not isinstance(answers, dict) or not answers:
        return None
    return answers


def extract_resolved_answers_from_result_text(text: str | None) -> dict[str, str] | None:
    """Recover answers from result text of the form ``"question"="answer"``."""
    if not text:
        return None
    answers = {q: a for q, a in ANSWER_PAIR_PATTERN.findall(text)}
    return answers or None


def extract_agent_id(payload: Any) -> str | None:
    """Extract the background agent id from an async launch payload."""
    if not isinstance(payload, dict):
        return None
    direct = payload.get("agentId") or payload.get("agent_id")
    if isinstance(direct, str) and direct:
        return direct
    data = payload.get("data")
    if isinstance(data, dict):
        nested = data.get("agent_id") or data.get("agentId")
        if isinstance(nested, str) and nested:
            return nested
    return None


def extract_agent_id_from_text(text: str | None) -> str | None:
    """Extract agentId from launch result text ("agentId: abc123")."""
    if not text:
        return None
    match = AGENT_ID_PATTERN.search(text)
    return match.group(1) if match else None


def is_async_launch_payload(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    return payload.get("isAsync") is True or extract_agent_id(payload) is not None


def is_valid_agent_id(agent_id: str | None) -> bool:
    """Agent ids become file names, so only a safe character set is allowed."""
    if not agent_id or len(agent_id) > 128:
        return False
    return bool(SAFE_ID_PATTERN.match(agent_id))


def is_valid_session_id(session_id: str | None) -> bool:
    if not session_id or len(session_id) > 128:
        return False
    return bool(SAFE_ID_PATTERN.match(session_id))
