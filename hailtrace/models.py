"""Pydantic models for the HAIL canonical session format."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    model_serializer,
    model_validator,
)

from hailtrace.config import HAIL_VERSION
from hailtrace.date_utils import EPOCH, format_datetime_utc

# ── Attribute keys ──────────────────────────────────────────────────

ATTR_SOURCE_SCHEMA_VERSION = "source.schema_version"
ATTR_SOURCE_RAW_TYPE = "source.raw_type"
ATTR_SEMANTIC_GROUP_ID = "semantic.group_id"
ATTR_SEMANTIC_CALL_ID = "semantic.call_id"
ATTR_SEMANTIC_TOOL_KIND = "semantic.tool_kind"
ATTR_SEMANTIC_TOOL_NAME = "semantic.tool_name"
ATTR_TASK_PARENT_ID = "task.parent_id"
ATTR_INPUT_TOKENS = "input_tokens"
ATTR_OUTPUT_TOKENS = "output_tokens"


def _sorted_map(value: dict[str, Any]) -> dict[str, Any]:
    return {key: value[key] for key in sorted(value)}


# ── Content blocks ──────────────────────────────────────────────────

class _BlockBase(BaseModel):
    """Internally tagged by variant name: ``{"type": "Text", "text": ...}``."""

    @model_serializer(mode="wrap")
    def _drop_unset_optionals(self, handler: Any) -> dict[str, Any]:
        dumped = handler(self)
        return {key: value for key, value in dumped.items() if value is not None or key == "data"}


class TextBlock(_BlockBase):
    type: Literal["Text"] = "Text"
    text: str


class CodeBlock(_BlockBase):
    type: Literal["Code"] = "Code"
    code: str
    language: Optional[str] = None
    start_line: Optional[int] = None


class ImageBlock(_BlockBase):
    type: Literal["Image"] = "Image"
    url: str
    alt: Optional[str] = None
    mime: str = "image/png"


class VideoBlock(_BlockBase):
    type: Literal["Video"] = "Video"
    url: str
    mime: str = "video/mp4"


class AudioBlock(_BlockBase):
    type: Literal["Audio"] = "Audio"
    url: str
    mime: str = "audio/mpeg"


class FileBlock(_BlockBase):
    type: Literal["File"] = "File"
    path: str
    content: Optional[str] = None


class JsonBlock(_BlockBase):
    type: Literal["Json"] = "Json"
    data: Any = None


class ReferenceBlock(_BlockBase):
    type: Literal["Reference"] = "Reference"
    uri: str
    media_type: str


ContentBlock = Annotated[
    Union[TextBlock, CodeBlock, ImageBlock, VideoBlock, AudioBlock, FileBlock, JsonBlock, ReferenceBlock],
    Field(discriminator="type"),
]


class Content(BaseModel):
    blocks: list[ContentBlock] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> Content:
        return cls()

    @classmethod
    def text(cls, text: str) -> Content:
        return cls(blocks=[TextBlock(text=text)])

    @classmethod
    def code(cls, code: str, language: str | None = None, start_line: int | None = None) -> Content:
        return cls(blocks=[CodeBlock(code=code, language=language, start_line=start_line)])

    def first_text(self) -> str:
        """Return the first non-blank text block, trimmed, or an empty string."""
        for block in self.blocks:
            if isinstance(block, TextBlock) and block.text.strip():
                return block.text.strip()
        return ""


# ── Event types ─────────────────────────────────────────────────────

class _EventTypeBase(BaseModel):
    """Adjacently tagged variant: ``{"type": <name>, "data": {...}}``."""

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _unwrap_data(cls, value: Any) -> Any:
        if isinstance(value, dict) and isinstance(value.get("data"), dict):
            merged = dict(value["data"])
            if "type" in value:
                merged["type"] = value["type"]
            return merged
        return value

    @model_serializer(mode="wrap")
    def _wrap_data(self, handler: Any) -> dict[str, Any]:
        dumped = handler(self)
        kind = dumped.pop("type")
        payload = {key: value for key, value in dumped.items() if value is not None}
        if not payload:
            return {"type": kind}
        return {"type": kind, "data": payload}


class UserMessage(_EventTypeBase):
    type: Literal["UserMessage"] = "UserMessage"


class AgentMessage(_EventTypeBase):
    type: Literal["AgentMessage"] = "AgentMessage"


class SystemMessage(_EventTypeBase):
    type: Literal["SystemMessage"] = "SystemMessage"


class Thinking(_EventTypeBase):
    type: Literal["Thinking"] = "Thinking"


class ToolCall(_EventTypeBase):
    type: Literal["ToolCall"] = "ToolCall"
    name: str


class ToolResult(_EventTypeBase):
    type: Literal["ToolResult"] = "ToolResult"
    name: str
    is_error: bool = False
    call_id: Optional[str] = None


class FileRead(_EventTypeBase):
    type: Literal["FileRead"] = "FileRead"
    path: str


class FileEdit(_EventTypeBase):
    type: Literal["FileEdit"] = "FileEdit"
    path: str
    diff: Optional[str] = None


class FileCreate(_EventTypeBase):
    type: Literal["FileCreate"] = "FileCreate"
    path: str


class FileDelete(_EventTypeBase):
    type: Literal["FileDelete"] = "FileDelete"
    path: str


class CodeSearch(_EventTypeBase):
    type: Literal["CodeSearch"] = "CodeSearch"
    query: str


class FileSearch(_EventTypeBase):
    type: Literal["FileSearch"] = "FileSearch"
    pattern: str


class ShellCommand(_EventTypeBase):
    type: Literal["ShellCommand"] = "ShellCommand"
    command: str
    exit_code: Optional[int] = None


class WebSearch(_EventTypeBase):
    type: Literal["WebSearch"] = "WebSearch"
    query: str


class WebFetch(_EventTypeBase):
    type: Literal["WebFetch"] = "WebFetch"
    url: str


class ImageGenerate(_EventTypeBase):
    type: Literal["ImageGenerate"] = "ImageGenerate"
    prompt: str


class VideoGenerate(_EventTypeBase):
    type: Literal["VideoGenerate"] = "VideoGenerate"
    prompt: str


class AudioGenerate(_EventTypeBase):
    type: Literal["AudioGenerate"] = "AudioGenerate"
    prompt: str


class TaskStart(_EventTypeBase):
    type: Literal["TaskStart"] = "TaskStart"
    title: Optional[str] = None


class TaskEnd(_EventTypeBase):
    type: Literal["TaskEnd"] = "TaskEnd"
    summary: Optional[str] = None


class Custom(_EventTypeBase):
    type: Literal["Custom"] = "Custom"
    kind: str


EventType = Annotated[
    Union[
        UserMessage,
        AgentMessage,
        SystemMessage,
        Thinking,
        ToolCall,
        ToolResult,
        FileRead,
        FileEdit,
        FileCreate,
        FileDelete,
        CodeSearch,
        FileSearch,
        ShellCommand,
        WebSearch,
        WebFetch,
        ImageGenerate,
        VideoGenerate,
        AudioGenerate,
        TaskStart,
        TaskEnd,
        Custom,
    ],
    Field(discriminator="type"),
]

# Operational events that stand in for a tool invocation.
TOOL_CALL_TYPES = frozenset(
    {
        "ToolCall",
        "FileRead",
        "FileEdit",
        "FileCreate",
        "FileDelete",
        "CodeSearch",
        "FileSearch",
        "ShellCommand",
        "WebSearch",
        "WebFetch",
    }
)
MESSAGE_TYPES = frozenset({"UserMessage", "AgentMessage"})
STATS_TOOL_CALL_TYPES = frozenset({"ToolCall", "FileRead", "CodeSearch", "FileSearch"})
FILE_CHANGE_TYPES = frozenset({"FileEdit", "FileCreate", "FileDelete"})


# ── Session-related models ──────────────────────────────────────────

class Event(BaseModel):
    event_id: str
    timestamp: datetime
    event_type: EventType
    task_id: Optional[str] = None
    content: Content = Field(default_factory=Content)
    duration_ms: Optional[int] = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> str:
        return self.event_type.type

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: datetime) -> str:
        return format_datetime_utc(value)

    @field_serializer("attributes")
    def _serialize_attributes(self, value: dict[str, Any]) -> dict[str, Any]:
        return _sorted_map(value)


class Agent(BaseModel):
    provider: str
    model: str
    tool: str
    tool_version: Optional[str] = None


class SessionContext(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = EPOCH
    updated_at: datetime = EPOCH
    related_session_ids: list[str] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_serializer("created_at", "updated_at")
    def _serialize_times(self, value: datetime) -> str:
        return format_datetime_utc(value)

    @field_serializer("attributes")
    def _serialize_attributes(self, value: dict[str, Any]) -> dict[str, Any]:
        return _sorted_map(value)


class Stats(BaseModel):
    event_count: int = 0
    message_count: int = 0
    tool_call_count: int = 0
    task_count: int = 0
    duration_seconds: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    user_message_count: int = 0
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: str = HAIL_VERSION
    session_id: str
    agent: Agent
    context: SessionContext = Field(default_factory=SessionContext)
    events: list[Event] = Field(default_factory=list)
    stats: Stats = Field(default_factory=Stats)


def _token_value(attributes: dict[str, Any], key: str) -> int:
    value = attributes.get(key)
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float):
        return max(int(value), 0)
    return 0


def _count_diff_lines(diff: str) -> tuple[int, int]:
    added = 0
    removed = 0
    for line in diff.splitlines():
        if line.startswith("+") and not line.startswith("+++"):
            added += 1
        elif line.startswith("-") and not line.startswith("---"):
            removed += 1
    return added, removed


def compute_stats(events: list[Event]) -> Stats:
    """Aggregate session statistics in one pass over the final event list."""
    message_count = 0
    user_message_count = 0
    tool_call_count = 0
    input_tokens = 0
    output_tokens = 0
    lines_added = 0
    lines_removed = 0
    task_ids: set[str] = set()
    changed_files: set[str] = set()

    for event in events:
        event_type = event.event_type
        kind = event_type.type
        if kind in MESSAGE_TYPES:
            message_count += 1
            if kind == "UserMessage":
                user_message_count += 1
        elif kind == "TaskEnd" and (event_type.summary or "").strip():
            message_count += 1
        if kind in STATS_TOOL_CALL_TYPES:
            tool_call_count += 1
        if kind in FILE_CHANGE_TYPES:
            changed_files.add(event_type.path)
            if kind == "FileEdit" and event_type.diff:
                added, removed = _count_diff_lines(event_type.diff)
                lines_added += added
                lines_removed += removed
        if event.task_id:
            task_ids.add(event.task_id)
        input_tokens += _token_value(event.attributes, ATTR_INPUT_TOKENS)
        output_tokens += _token_value(event.attributes, ATTR_OUTPUT_TOKENS)

    duration_seconds = 0
    if events:
        delta = (events[-1].timestamp - events[0].timestamp).total_seconds()
        duration_seconds = max(int(delta), 0)

    return Stats(
        event_count=len(events),
        message_count=message_count,
        tool_call_count=tool_call_count,
        task_count=len(task_ids),
        duration_seconds=duration_seconds,
        total_input_tokens=input_tokens,
        total_output_tokens=output_tokens,
        user_message_count=user_message_count,
        files_changed=len(changed_files),
        lines_added=lines_added,
        lines_removed=lines_removed,
    )
