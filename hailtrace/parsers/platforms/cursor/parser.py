"""Parse Cursor composer conversations into canonical HAIL events.

Input is the ``(key, value)`` rows of a Cursor ``state.vscdb`` key/value table:
``composerData:<id>`` holds a conversation, ``bubbleId:<composer>:<bubble>``
holds the separately stored bubbles of v3 composers, and
``composer.composerData`` carries the metadata index of modern workspaces.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from hailtrace.date_utils import EPOCH, parse_timestamp
from hailtrace.models import (
    AgentMessage,
    CodeBlock,
    CodeSearch,
    Content,
    FileEdit,
    FileRead,
    FileSearch,
    JsonBlock,
    ShellCommand,
    TaskEnd,
    TaskStart,
    TextBlock,
    Thinking,
    ToolCall,
    ToolResult,
    UserMessage,
    WebSearch,
)
from hailtrace.parsers.common import (
    AdapterOutput,
    EventSink,
    RawTranscript,
    SessionMetadata,
    call_attributes,
    detect_language,
    first_str,
    infer_provider,
    truncate_title,
)
from hailtrace.parsers.errors import AdapterError

logger = logging.getLogger("hailtrace.parsers")

ADAPTER_ID = "cursor"
SCHEMA_VERSION = "cursor-vscdb-v1"

COMPOSER_PREFIX = "composerData:"
BUBBLE_PREFIX = "bubbleId:"
COMPOSER_INDEX_KEY = "composer.composerData"

_TOOL_NAMES_BY_ID = {
    3: "grep_search",
    5: "read_file",
    6: "list_dir",
    7: "edit_file",
    8: "file_search",
    12: "reapply",
    15: "run_terminal_cmd",
    18: "web_search",
}

# Bubbles without timing are spaced this far apart from the composer's creation time.
_FALLBACK_STEP = timedelta(milliseconds=100)


# ── Raw record models ───────────────────────────────────────────────

def _string_or_number(value: Any) -> Any:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    return value


class _RawModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RawThinking(_RawModel):
    text: Optional[str] = None
    signature: Optional[str] = None


class RawToolFormerData(_RawModel):
    tool: Optional[int] = None
    name: Optional[str] = None
    status: Optional[str] = None
    raw_args: Optional[str] = Field(default=None, alias="rawArgs")
    result: Optional[str] = None
    user_decision: Optional[str] = Field(default=None, alias="userDecision")


class RawTimingInfo(_RawModel):
    start_time: Optional[float] = Field(default=None, alias="startTime")
    end_time: Optional[float] = Field(default=None, alias="endTime")
    client_start_time: Optional[float] = Field(default=None, alias="clientStartTime")
    client_end_time: Optional[float] = Field(default=None, alias="clientEndTime")

    @property
    def start(self) -> Optional[float]:
        return self.client_start_time if self.client_start_time is not None else self.start_time

    @property
    def end(self) -> Optional[float]:
        return self.client_end_time if self.client_end_time is not None else self.end_time


class RawBubble(_RawModel):
    bubble_type: int = Field(alias="type")
    bubble_id: Optional[str] = Field(default=None, alias="bubbleId")
    text: Optional[str] = None
    thinking: Optional[RawThinking] = None
    tool_former_data: Optional[RawToolFormerData] = Field(default=None, alias="toolFormerData")
    timing_info: Optional[RawTimingInfo] = Field(default=None, alias="timingInfo")
    model_type: Optional[str] = Field(default=None, alias="modelType")


class RawBubbleHeader(_RawModel):
    bubble_id: str = Field(alias="bubbleId")


class RawComposerMeta(_RawModel):
    composer_id: str = Field(alias="composerId")
    name: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    last_updated_at: Optional[str] = Field(default=None, alias="lastUpdatedAt")

    @field_validator("created_at", "last_updated_at", mode="before")
    @classmethod
    def _coerce_times(cls, value: Any) -> Any:
        return _string_or_number(value)


class RawComposerData(RawComposerMeta):
    conversation: list[RawBubble] = Field(default_factory=list)
    is_agentic: Optional[bool] = Field(default=None, alias="isAgentic")
    version: Optional[int] = Field(default=None, alias="_v")
    headers_only: Optional[list[RawBubbleHeader]] = Field(default=None, alias="fullConversationHeadersOnly")


# ── Tool mapping ────────────────────────────────────────────────────

def resolve_tool_name(tool_id: int | None, name: str | None) -> str:
    """Resolve Cursor's numeric tool id, falling back to the recorded name."""
    if tool_id is not None:
        if tool_id in _TOOL_NAMES_BY_ID:
            return _TOOL_NAMES_BY_ID[tool_id]
        return name or f"tool_{tool_id}"
    return name or "unknown_tool"


def classify_cursor_tool(tool_name: str, args: dict[str, Any]) -> tuple[Any, Content]:
    if tool_name in {"edit_file", "reapply"}:
        path = first_str(args, "target_file", default="unknown")
        blocks: list[Any] = [TextBlock(text=path)]
        edit = first_str(args, "code_edit")
        if edit:
            blocks.append(CodeBlock(code=edit, language=detect_language(path)))
        return FileEdit(path=path), Content(blocks=blocks)
    if tool_name == "read_file":
        path = first_str(args, "target_file", "file_path", default="unknown")
        return FileRead(path=path), Content.text(path)
    if tool_name == "list_dir":
        path = first_str(args, "relative_workspace_path", "path", default=".")
        return ToolCall(name=f"list_dir: {path}"), Content.text(path)
    if tool_name == "run_terminal_cmd":
        command = first_str(args, "command")
        return ShellCommand(command=command), Content.code(command, "bash")
    if tool_name == "grep_search":
        query = first_str(args, "query", "search_term")
        return CodeSearch(query=query), Content.text(query)
    if tool_name == "file_search":
        pattern = first_str(args, "query", "pattern", default="*")
        return FileSearch(pattern=pattern), Content.text(pattern)
    if tool_name == "web_search":
        query = first_str(args, "query", "search_query")
        return WebSearch(query=query), Content.text(query)
    if args:
        return ToolCall(name=tool_name), Content(blocks=[JsonBlock(data=args)])
    return ToolCall(name=tool_name), Content.empty()


def parse_tool_result(tool_name: str, result: str) -> Content:
    """Structure a tool result string, which is usually JSON."""
    try:
        decoded = json.loads(result)
    except json.JSONDecodeError:
        stripped = result.strip()
        return Content.text(stripped) if stripped else Content.empty()

    if isinstance(decoded, dict):
        if tool_name in {"edit_file", "reapply"} and "diff" in decoded:
            blocks: list[Any] = []
            if decoded.get("isApplied") is True:
                blocks.append(TextBlock(text="Applied"))
            blocks.append(JsonBlock(data=decoded["diff"]))
            return Content(blocks=blocks)
        if tool_name == "run_terminal_cmd" and isinstance(decoded.get("output"), str):
            return Content.code(decoded["output"], "text")
    return Content(blocks=[JsonBlock(data=decoded)])


def extract_model_from_signature(signature: str) -> str | None:
    # Long or base64-looking signatures are opaque tokens, not model names.
    if len(signature) > 30 or any(char in signature for char in "=+/"):
        return None
    lower = signature.lower()
    if "claude" in lower:
        for family in ("opus", "sonnet", "haiku"):
            if family in lower:
                return f"claude-{family}"
        return "claude"
    if "gpt-4" in lower:
        return "gpt-4"
    if lower.startswith(("o1", "o3")):
        return lower
    return None


# ── Composer selection ──────────────────────────────────────────────

def _decode(key: str, value: str, model: type[_RawModel]) -> Any:
    try:
        return model.model_validate_json(value)
    except ValidationError as exc:
        logger.debug("cursor: skipping unparseable entry %s: %s", key, exc.error_count())
        return None


def _load_composers(rows: list[tuple[str, str]]) -> list[RawComposerData]:
    bubbles: dict[str, str] = {}
    composers: list[RawComposerData] = []
    index: dict[str, RawComposerMeta] = {}

    for key, value in rows:
        if key.startswith(BUBBLE_PREFIX):
            bubbles[key] = value
        elif key == COMPOSER_INDEX_KEY:
            try:
                payload = json.loads(value)
            except json.JSONDecodeError:
                logger.debug("cursor: skipping unparseable composer index")
                continue
            entries = payload.get("allComposers") if isinstance(payload, dict) else None
            for entry in entries or []:
                try:
                    meta = RawComposerMeta.model_validate(entry)
                except ValidationError:
                    continue
                index.setdefault(meta.composer_id, meta)

    seen: set[str] = set()
    for key, value in rows:
        if not key.startswith(COMPOSER_PREFIX):
            continue
        data = _decode(key, value, RawComposerData)
        if data is None or data.composer_id in seen:
            continue
        seen.add(data.composer_id)
        if (data.version or 0) >= 3 and data.headers_only:
            resolved: list[RawBubble] = []
            for header in data.headers_only:
                bubble_key = f"{BUBBLE_PREFIX}{data.composer_id}:{header.bubble_id}"
                if bubble_key not in bubbles:
                    logger.debug("cursor: bubble %s not found", bubble_key)
                    continue
                bubble = _decode(bubble_key, bubbles[bubble_key], RawBubble)
                if bubble is not None:
                    resolved.append(bubble)
            data.conversation = resolved
        meta = index.get(data.composer_id)
        if meta is not None:
            data.name = data.name or meta.name
            data.created_at = data.created_at or meta.created_at
            data.last_updated_at = data.last_updated_at or meta.last_updated_at
        if data.conversation:
            composers.append(data)
    return composers


def select_composer(composers: list[RawComposerData]) -> RawComposerData:
    """Most recently updated composer wins; ties go to the longer conversation."""

    def sort_key(data: RawComposerData) -> tuple[datetime, int]:
        updated = parse_timestamp(data.last_updated_at or data.created_at)
        return (updated or EPOCH, len(data.conversation))

    return max(composers, key=sort_key)


# ── Conversion ──────────────────────────────────────────────────────

def parse(raw: RawTranscript) -> AdapterOutput:
    """Parse the best composer conversation out of a Cursor store's rows."""
    composers = _load_composers(raw.rows)
    if not composers:
        raise AdapterError(ADAPTER_ID, "no composer conversations found")
    data = select_composer(composers)
    sink = EventSink(ADAPTER_ID, SCHEMA_VERSION)

    created_at = parse_timestamp(data.created_at)
    updated_at = parse_timestamp(data.last_updated_at) or created_at
    base_ts = created_at or sink.timestamp(None)

    for counter, bubble in enumerate(data.conversation):
        bubble_id = bubble.bubble_id or f"bubble-{counter}"
        timing = bubble.timing_info
        start = timing.start if timing else None
        ts = parse_timestamp(start) or base_ts + _FALLBACK_STEP * counter
        duration_ms = None
        if timing is not None and timing.start is not None and timing.end is not None and timing.end > timing.start:
            duration_ms = int(timing.end - timing.start)

        if bubble.bubble_type == 1:
            text = (bubble.text or "").strip()
            if text:
                sink.emit(f"{bubble_id}-user", ts, UserMessage(), raw_type="bubble.user", content=Content.text(text))
            continue

        if bubble.bubble_type != 2:
            sink.unmapped(f"{bubble_id}-unknown", ts, f"bubble.type-{bubble.bubble_type}")
            continue

        if bubble.thinking is not None and (bubble.thinking.text or "").strip():
            attrs: dict[str, Any] = {}
            if bubble.thinking.signature:
                attrs["signature"] = bubble.thinking.signature
            sink.emit(
                f"{bubble_id}-thinking",
                ts,
                Thinking(),
                raw_type="bubble.thinking",
                content=Content.text(bubble.thinking.text.strip()),
                attributes=attrs,
            )

        tool_data = bubble.tool_former_data
        if tool_data is not None:
            tool_name = resolve_tool_name(tool_data.tool, tool_data.name)
            task_id = f"cursor-task-{bubble_id}"
            call_id = f"{bubble_id}-call"
            title = (tool_data.name or "").strip() or tool_name
            try:
                args = json.loads(tool_data.raw_args) if tool_data.raw_args else {}
            except json.JSONDecodeError:
                args = {}
            if not isinstance(args, dict):
                args = {}
            event_type, content = classify_cursor_tool(tool_name, args)

            status_attrs: dict[str, Any] = {}
            if tool_data.status:
                status_attrs["status"] = tool_data.status
            if tool_data.user_decision:
                status_attrs["user_decision"] = tool_data.user_decision

            sink.emit(f"{bubble_id}-task-start", ts, TaskStart(title=title), raw_type="bubble.tool", task_id=task_id)
            sink.emit(
                call_id,
                ts,
                event_type,
                raw_type="bubble.tool",
                content=content,
                task_id=task_id,
                duration_ms=duration_ms,
                attributes={**status_attrs, **call_attributes(tool_name, call_id)},
            )
            if tool_data.result is not None:
                sink.emit(
                    f"{bubble_id}-result",
                    ts,
                    ToolResult(
                        name=tool_name,
                        is_error=tool_data.status in {"error", "failed"},
                        call_id=call_id,
                    ),
                    raw_type="bubble.tool",
                    content=parse_tool_result(tool_name, tool_data.result),
                    task_id=task_id,
                    attributes={**status_attrs, **call_attributes(tool_name, call_id)},
                )
            status = (tool_data.status or "").strip()
            summary = f"{tool_name} {status}" if status else f"{tool_name} finished"
            sink.emit(f"{bubble_id}-task-end", ts, TaskEnd(summary=summary), raw_type="bubble.tool", task_id=task_id)
            continue

        text = (bubble.text or "").strip()
        if text:
            attrs = {"model": bubble.model_type} if bubble.model_type else {}
            sink.emit(
                f"{bubble_id}-agent",
                ts,
                AgentMessage(),
                raw_type="bubble.assistant",
                content=Content.text(text),
                duration_ms=duration_ms,
                attributes=attrs,
            )

    model = next((bubble.model_type for bubble in data.conversation if bubble.model_type), None)
    if model is None:
        for bubble in data.conversation:
            if bubble.thinking is not None and bubble.thinking.signature:
                model = extract_model_from_signature(bubble.thinking.signature)
                if model:
                    break
    model = model or "unknown"

    attributes: dict[str, Any] = {"composer_id": data.composer_id}
    if raw.filename:
        attributes["source"] = raw.filename
    if data.is_agentic is not None:
        attributes["is_agentic"] = data.is_agentic

    return sink.output(
        SessionMetadata(
            session_id=data.composer_id,
            provider=infer_provider(model),
            model=model,
            tool=ADAPTER_ID,
            title=truncate_title(data.name) if data.name else None,
            tags=[ADAPTER_ID],
            created_at=created_at,
            updated_at=updated_at,
            attributes=attributes,
        )
    )
