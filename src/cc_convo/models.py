"""Domain models for cc-convo."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EntryKind(str, Enum):
    """Known record types in a persisted session log."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    RESULT = "result"
    QUEUE_OPERATION = "queue-operation"
    SNAPSHOT = "file-history-snapshot"


class RawEntry(BaseModel):
    """One line of the append-only session log.

    ``kind`` stays a plain string so records of types we do not know about
    still take part in branch resolution.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    kind: str = Field(alias="type")
    id: str | None = Field(default=None, alias="uuid")
    parent_id: str | None = Field(default=None, alias="parentUuid")
    timestamp: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")
    request_id: str | None = Field(default=None, alias="requestId")
    message: dict[str, Any] | None = None
    subtype: str | None = None
    tool_use_result: Any = Field(default=None, alias="toolUseResult")
    source_tool_use_id: str | None = Field(default=None, alias="sourceToolUseID")
    is_meta: bool = Field(default=False, alias="isMeta")
    is_compact_summary: bool = Field(default=False, alias="isCompactSummary")
    is_visible_in_transcript_only: bool = Field(
        default=False, alias="isVisibleInTranscriptOnly"
    )
    operation: str | None = None
    content: Any = None  # queue-operation payload
    parent_tool_use_id: str | None = Field(default=None, alias="parentToolUseID")

    @property
    def has_tool_use_result(self) -> bool:
        """True if the record carries a ``toolUseResult`` key, even a null one."""
        return "tool_use_result" in self.model_fields_set

    @property
    def message_content(self) -> str | list[dict[str, Any]] | None:
        if not self.message:
            return None
        return self.message.get("content")

    @property
    def model(self) -> str | None:
        if not self.message:
            return None
        return self.message.get("model")


class ContentBlockType(str, Enum):
    """Types of content blocks in a reconstructed message."""

    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    COMPACT_BOUNDARY = "compact_boundary"


class ContentBlock(BaseModel):
    """An ordered display block. Block order is the render order."""

    type: ContentBlockType
    content: str | None = None  # text / thinking
    duration_seconds: float | None = None  # thinking, once finalized
    tool_id: str | None = None  # tool_use


class ToolStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    BLOCKED = "blocked"


class DiffLine(BaseModel):
    type: str  # "equal" | "insert" | "delete"
    text: str
    old_line_num: int | None = None
    new_line_num: int | None = None


class DiffStats(BaseModel):
    added: int = 0
    removed: int = 0


class ToolDiffData(BaseModel):
    """Diff for Write/Edit tool calls, pre-computed from a structured patch."""

    file_path: str
    diff_lines: list[DiffLine] = []
    stats: DiffStats = DiffStats()


class SubagentMode(str, Enum):
    SYNC = "sync"
    ASYNC = "async"


class SubagentStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class AsyncSubagentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    ORPHANED = "orphaned"


class ToolCallInfo(BaseModel):
    """A tool invocation and whatever is known about its outcome."""

    id: str
    name: str
    input: dict[str, Any] = {}
    status: ToolStatus = ToolStatus.RUNNING
    result: str | None = None
    diff_data: ToolDiffData | None = None
    resolved_answers: dict[str, Any] | None = None  # AskUserQuestion
    subagent: "SubagentInfo | None" = None


class SubagentInfo(BaseModel):
    """A nested sub-conversation spawned by a Task tool call.

    ``id`` is the spawning tool call's id; ``agent_id`` locates the side-log
    of a background (async) subagent.
    """

    id: str
    description: str = ""
    prompt: str = ""
    mode: SubagentMode = SubagentMode.SYNC
    status: SubagentStatus = SubagentStatus.RUNNING
    async_status: AsyncSubagentStatus | None = None
    agent_id: str | None = None
    output_tool_id: str | None = None
    tool_calls: list[ToolCallInfo] = []
    result: str | None = None
    started_at: float | None = None
    completed_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        status = self.async_status.value if self.async_status else self.status.value
        return status in ("completed", "error")


class ImageAttachment(BaseModel):
    id: str
    name: str
    media_type: str
    data: str
    size: int


class ChatMessage(BaseModel):
    """A reconstructed logical turn."""

    id: str
    role: str  # "user" | "assistant"
    content: str = ""
    display_content: str | None = None
    timestamp: int  # epoch milliseconds
    content_blocks: list[ContentBlock] = []
    tool_calls: list[ToolCallInfo] = []
    images: list[ImageAttachment] = []
    is_interrupt: bool = False
    is_rebuilt_context: bool = False
    sdk_user_uuid: str | None = None
    sdk_assistant_uuid: str | None = None

    def find_tool_call(self, tool_id: str) -> ToolCallInfo | None:
        for tool_call in self.tool_calls:
            if tool_call.id == tool_id:
                return tool_call
        return None


class UsageInfo(BaseModel):
    model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    context_window: int | None = None


class ChunkType(str, Enum):
    """Chunk kinds understood by the stream aggregator."""

    THINKING = "thinking"
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    BLOCKED = "blocked"
    ERROR = "error"
    DONE = "done"
    COMPACT_BOUNDARY = "compact_boundary"
    USAGE = "usage"
    SDK_ASSISTANT_UUID = "sdk_assistant_uuid"


class StreamChunk(BaseModel):
    """One record of the live feed.

    ``type`` is a plain string: chunk kinds the aggregator does not know are
    ignored rather than rejected.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    content: str = ""
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] = {}
    is_error: bool = Field(default=False, alias="isError")
    tool_use_result: Any = Field(default=None, alias="toolUseResult")
    parent_tool_use_id: str | None = Field(default=None, alias="parentToolUseId")
    usage: UsageInfo | None = None
    session_id: str | None = Field(default=None, alias="sessionId")
    uuid: str | None = None


class LogReadResult(BaseModel):
    entries: list[RawEntry] = []
    skipped_lines: int = 0
    error: str | None = None


class SessionLoadResult(BaseModel):
    messages: list[ChatMessage] = []
    skipped_lines: int = 0
    error: str | None = None


ToolCallInfo.model_rebuild()
