"""File-backed access to session logs and subagent side-logs.

This is the storage collaborator: the reconstruction code only sees the
``SessionStore`` protocol and never opens files itself.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Protocol

from . import config
from .tools import is_valid_agent_id, is_valid_session_id

logger = logging.getLogger(__name__)


class InvalidSessionIdError(ValueError):
    """Session id that could escape the session directory."""


class SessionStore(Protocol):
    async def read_session(self, session_id: str) -> str | None:
        """Return the log text, None if it does not exist. OSError on failure."""
        ...

    async def read_side_log(self, session_id: str, agent_id: str) -> str | None:
        """Return a subagent side-log, None if it is not (yet) available."""
        ...


def encode_workspace_path(workspace: Path | str) -> str:
    """Encode a workspace path the way the runtime names project directories.

    Every non-alphanumeric character of the absolute path becomes ``-``.
    """
    absolute = str(Path(workspace).expanduser().resolve())
    return re.sub(r"[^a-zA-Z0-9]", "-", absolute)


def session_dir_for_workspace(workspace: Path | str, projects_dir: Path | None = None) -> Path:
    return (projects_dir or config.PROJECTS_DIR) / encode_workspace_path(workspace)


def _read_text(path: Path) -> str | None:
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


class FileSessionStore:
    """Sessions stored as ``<dir>/<session>.jsonl``.

    Side-logs live at ``<dir>/<session>/subagents/agent-<agent>.jsonl``.
    """

    def __init__(self, session_dir: Path):
        self.session_dir = session_dir

    @classmethod
    def for_workspace(
        cls, workspace: Path | str, projects_dir: Path | None = None
    ) -> "FileSessionStore":
        return cls(session_dir_for_workspace(workspace, projects_dir))

    def session_path(self, session_id: str) -> Path:
        if not is_valid_session_id(session_id):
            raise InvalidSessionIdError(f"Invalid session ID: {session_id}")
        return self.session_dir / f"{session_id}.jsonl"

    def side_log_path(self, session_id: str, agent_id: str) -> Path | None:
        if not is_valid_session_id(session_id) or not is_valid_agent_id(agent_id):
            return None
        return self.session_dir / session_id / "subagents" / f"agent-{agent_id}.jsonl"

    def exists(self, session_id: str) -> bool:
        try:
            return self.session_path(session_id).exists()
        except InvalidSessionIdError:
            return False

    async def read_session(self, session_id: str) -> str | None:
        return await asyncio.to_thread(_read_text, self.session_path(session_id))

    async def read_side_log(self, session_id: str, agent_id: str) -> str | None:
        path = self.side_log_path(session_id, agent_id)
        if path is None:
            logger.debug("Refusing side-log lookup for %s/%s", session_id, agent_id)
            return None
        try:
            return await asyncio.to_thread(_read_text, path)
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("Side-log %s not readable yet: %s", path, e)
            return None
