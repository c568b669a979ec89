"""cc-convo: Reconstruct agent conversations from session logs and live streams."""

from .loader import load_session_messages
from .models import (
    ChatMessage,
    ContentBlock,
    ContentBlockType,
    RawEntry,
    StreamChunk,
    SubagentInfo,
    ToolCallInfo,
)
from .store import FileSessionStore, SessionStore
from .stream import StreamAggregator

__all__ = [
    "ChatMessage",
    "ContentBlock",
    "ContentBlockType",
    "FileSessionStore",
    "RawEntry",
    "SessionStore",
    "StreamAggregator",
    "StreamChunk",
    "SubagentInfo",
    "ToolCallInfo",
    "load_session_messages",
]
