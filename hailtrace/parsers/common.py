"""Shared contract and helpers for the per-tool source adapters."""
from __future__ import annotations

import json
import logging
import re
from collections import Counter
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from hailtrace import config
from hailtrace.date_utils import EPOCH, parse_timestamp
from hailtrace.models import (
    ATTR_SEMANTIC_CALL_ID,
    ATTR_SEMANTIC_GROUP_ID,
    ATTR_SEMANTIC_TOOL_KIND,
    ATTR_SEMANTIC_TOOL_NAME,
    ATTR_SOURCE_RAW_TYPE,
    ATTR_SOURCE_SCHEMA_VERSION,
    CodeBlock,
    Content,
    Custom,
    Event,
    TextBlock,
)

logger = logging.getLogger("hailtrace.parsers")

_SYSTEM_REMINDER_PATTERN = re.compile(r"<system-reminder>.*?</system-reminder>", re.DOTALL)
_LINE_NUMBER_PATTERN = re.compile(r"^ *\d+[→|]")
_LINE_NUMBER_CAPTURE_PATTERN = re.compile(r"^ *(\d+)(?:→|\| ?)(.*)$")
_CONTINUATION_PREFIXES = (
    "This session is",
    "Here is the conversation so far",
    "Here's the conversation so far",
)

_LANGUAGE_BY_EXTENSION: dict[str, str] = {
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "py": "python",
    "rs": "rust",
    "go": "go",
    "java": "java",
    "kt": "kotlin",
    "kts": "kotlin",
    "gradle": "kotlin",
    "swift": "swift",
    "rb": "ruby",
    "c": "cpp",
    "cpp": "cpp",
    "h": "cpp",
    "hpp": "cpp",
    "cs": "csharp",
    "css": "css",
    "scss": "css",
    "html": "html",
    "svelte": "html",
    "vue": "html",
    "xml": "xml",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "toml": "toml",
    "md": "markdown",
    "sql": "sql",
    "sh": "bash",
    "bash": "bash",
    "zsh": "bash",
    "diff": "diff",
    "properties": "properties",
}
_LANGUAGE_BY_BASENAME = {
    "Dockerfile": "bash",
    "Makefile": "bash",
    "Cargo.toml": "toml",
    "pyproject.toml": "toml",
}

_FILE_READ_TOOLS = {"read", "read_file", "view", "cat", "open", "fileread", "readfile", "list_dir", "ls"}
_FILE_WRITE_TOOLS = {
    "edit",
    "multiedit",
    "write",
    "create",
    "delete",
    "apply_patch",
    "str_replace_editor",
    "edit_file",
    "reapply",
    "write_file",
    "create_file",
    "fileedit",
    "notebookedit",
    "replace",
}
_SHELL_TOOLS = {"bash", "shell", "exec_command", "run_terminal_cmd", "execute_command", "run_shell_command"}
_SEARCH_TOOLS = {
    "grep",
    "search",
    "code_search",
    "grep_search",
    "file_search",
    "glob",
    "find",
    "search_file_content",
}


# ── Adapter contract ────────────────────────────────────────────────

class RawTranscript(BaseModel):
    """A transcript as handed over by an upstream reader; the engine does no I/O itself."""

    filename: str = ""
    text: str = ""
    rows: list[tuple[str, str]] = Field(default_factory=list)
    tree: Optional[dict[str, Any]] = None
    schema_hint: Optional[str] = None


class SessionMetadata(BaseModel):
    session_id: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    tool: Optional[str] = None
    tool_version: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    related_session_ids: list[str] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)


class Diagnostic(BaseModel):
    code: str  # "unmapped_record" | "unparseable_line" | "skipped_record"
    message: str
    raw_type: str = ""
    line: Optional[int] = None


class AdapterOutput(BaseModel):
    adapter: str
    events: list[Event] = Field(default_factory=list)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    diagnostics: list[Diagnostic] = Field(default_factory=list)


class EventSink:
    """Accumulates one adapter run's events, diagnostics and derived call ids."""

    def __init__(self, adapter: str, schema_version: str) -> None:
        self.adapter = adapter
        self.schema_version = schema_version
        self.events: list[Event] = []
        self.diagnostics: list[Diagnostic] = []
        self._call_counts: Counter[str] = Counter()
        self._last_ts: datetime | None = None

    def timestamp(self, value: Any) -> datetime:
        """Parse a raw timestamp, falling back to the previous event's time."""
        parsed = parse_timestamp(value)
        if parsed is not None:
            return parsed
        return self._last_ts or EPOCH

    def emit(
        self,
        event_id: str,
        timestamp: datetime,
        event_type: Any,
        *,
        raw_type: str,
        content: Content | None = None,
        task_id: str | None = None,
        duration_ms: int | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> Event:
        attrs = dict(attributes or {})
        attrs[ATTR_SOURCE_SCHEMA_VERSION] = self.schema_version
        if raw_type.strip():
            attrs[ATTR_SOURCE_RAW_TYPE] = raw_type.strip()
        event = Event(
            event_id=event_id,
            timestamp=timestamp,
            event_type=event_type,
            task_id=task_id,
            content=content or Content.empty(),
            duration_ms=duration_ms,
            attributes=attrs,
        )
        self.events.append(event)
        self._last_ts = timestamp
        return event

    def derive_call_id(self, name: str) -> str:
        label = name.strip() or "tool"
        self._call_counts[label] += 1
        return f"{label}#{self._call_counts[label]}"

    def unmapped(
        self,
        event_id: str,
        timestamp: datetime,
        raw_type: str,
        *,
        kind: str | None = None,
        content: Content | None = None,
        line: int | None = None,
        code: str = "unmapped_record",
    ) -> Event:
        label = (kind or raw_type or "unknown").strip() or "unknown"
        self.diagnostics.append(
            Diagnostic(
                code=code,
                message=f"{self.adapter}: no canonical mapping for {label!r}",
                raw_type=raw_type,
                line=line,
            )
        )
        logger.debug("%s: mapped raw record %r to Custom", self.adapter, label)
        return self.emit(event_id, timestamp, Custom(kind=label), raw_type=raw_type or label, content=content)

    def skipped(self, raw_type: str, reason: str, *, line: int | None = None) -> None:
        """Record a raw record that was deliberately not turned into an event."""
        self.diagnostics.append(
            Diagnostic(code="skipped_record", message=f"{self.adapter}: {reason}", raw_type=raw_type, line=line)
        )
        logger.debug("%s: skipped %s (%s)", self.adapter, raw_type or "record", reason)

    def output(self, metadata: SessionMetadata) -> AdapterOutput:
        return AdapterOutput(
            adapter=self.adapter,
            events=self.events,
            metadata=metadata,
            diagnostics=self.diagnostics,
        )


def call_attributes(tool_name: str, call_id: str | None, group_id: str | None = None) -> dict[str, Any]:
    """Pairing hints for a tool invocation or its outcome."""
    attrs: dict[str, Any] = {
        ATTR_SEMANTIC_TOOL_NAME: tool_name,
        ATTR_SEMANTIC_TOOL_KIND: infer_tool_kind(tool_name),
    }
    if call_id and call_id.strip():
        attrs[ATTR_SEMANTIC_CALL_ID] = call_id.strip()
    if group_id and group_id.strip():
        attrs[ATTR_SEMANTIC_GROUP_ID] = group_id.strip()
    return attrs


# ── Text helpers ────────────────────────────────────────────────────

def normalize_role_label(role: Any) -> str | None:
    token = str(role or "").strip().lower()
    if token in {"user", "human"}:
        return "user"
    if token in {"assistant", "agent", "model", "gemini"}:
        return "assistant"
    if token in {"system", "developer"}:
        return "system"
    if token in {"thinking", "reasoning", "thought"}:
        return "thinking"
    return None


def infer_tool_kind(name: str) -> str:
    lower = name.strip().lower()
    if not lower:
        return "other"
    if lower in _FILE_READ_TOOLS:
        return "file_read"
    if lower in _FILE_WRITE_TOOLS:
        return "file_write"
    if lower in _SHELL_TOOLS:
        return "shell"
    if lower in _SEARCH_TOOLS:
        return "search"
    if lower.startswith("web") or lower in {"fetch", "browser", "google_web_search"} or lower.startswith("web_"):
        return "web"
    if "task" in lower or "subagent" in lower:
        return "task"
    return "other"


def strip_system_reminders(text: str) -> str:
    return _SYSTEM_REMINDER_PATTERN.sub("", text).strip()


def is_continuation_preamble(text: str) -> bool:
    return text.lstrip().startswith(_CONTINUATION_PREFIXES)


def truncate_title(text: str, max_chars: int | None = None) -> str:
    limit = max_chars or config.TITLE_MAX_CHARS
    cleaned = " ".join(text.split())
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[: limit - 3] + "..."


def detect_language(path: str) -> str | None:
    basename = path.replace("\\", "/").rsplit("/", 1)[-1]
    if basename in _LANGUAGE_BY_BASENAME:
        return _LANGUAGE_BY_BASENAME[basename]
    if "." not in basename:
        return None
    return _LANGUAGE_BY_EXTENSION.get(basename.rsplit(".", 1)[-1].lower())


def is_line_numbered_output(text: str) -> bool:
    lines = text.splitlines()[: config.LINE_NUMBER_SAMPLE_LINES]
    if not lines:
        return False
    matches = sum(1 for line in lines if _LINE_NUMBER_PATTERN.match(line) or not line.strip())
    return matches >= len(lines) * config.LINE_NUMBER_MIN_RATIO


def parse_line_numbered_output(text: str) -> tuple[str, int]:
    """Strip ``cat -n`` style prefixes, returning the code and its first line number."""
    start_line = 1
    code_lines: list[str] = []
    for line in text.splitlines():
        match = _LINE_NUMBER_CAPTURE_PATTERN.match(line)
        if match:
            if not code_lines:
                start_line = int(match.group(1))
            code_lines.append(match.group(2))
        elif not line.strip():
            code_lines.append("")
    return "\n".join(code_lines).rstrip(), start_line


def tool_output_content(text: str, path: str | None = None) -> Content:
    """Build result content, turning numbered file listings into a code block."""
    cleaned = strip_system_reminders(text)
    if not cleaned:
        return Content.empty()
    if is_line_numbered_output(cleaned):
        code, start_line = parse_line_numbered_output(cleaned)
        return Content(blocks=[CodeBlock(code=code, language=detect_language(path or ""), start_line=start_line)])
    return Content(blocks=[TextBlock(text=cleaned)])


def payload_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for block in content:
            if isinstance(block, str):
                chunks.append(block)
            elif isinstance(block, dict):
                text = block.get("text")
                if isinstance(text, str) and text.strip():
                    chunks.append(text)
                elif isinstance(block.get("content"), str):
                    chunks.append(block["content"])
        return "\n".join(chunks)
    if content is None:
        return ""
    return json.dumps(content, ensure_ascii=False, sort_keys=True)


def load_json_object(raw: Any) -> dict[str, Any]:
    """Decode a JSON object from a string, returning an empty dict for anything else."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def first_str(payload: dict[str, Any], *keys: str, default: str = "") -> str:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return default


def coerce_int(value: Any, default: int | None = 0) -> int | None:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def infer_provider(model: str) -> str:
    lower = model.lower()
    if "claude" in lower or "anthropic" in lower:
        return "anthropic"
    if "gpt" in lower or "codex" in lower or lower.startswith(("o1", "o3", "o4")):
        return "openai"
    if "gemini" in lower:
        return "google"
    if "llama" in lower:
        return "meta"
    if "deepseek" in lower:
        return "deepseek"
    return "unknown"
