"""Parse Claude Code JSONL transcripts into canonical HAIL events."""
from __future__ import annotations

import difflib
import json
from datetime import datetime
from typing import Any

from hailtrace.date_utils import millis_between
from hailtrace.models import (
    ATTR_INPUT_TOKENS,
    ATTR_OUTPUT_TOKENS,
    ATTR_SEMANTIC_GROUP_ID,
    AgentMessage,
    CodeBlock,
    CodeSearch,
    Content,
    Custom,
    FileCreate,
    FileEdit,
    FileRead,
    FileSearch,
    ImageBlock,
    JsonBlock,
    ShellCommand,
    SystemMessage,
    TaskEnd,
    TaskStart,
    TextBlock,
    Thinking,
    ToolCall,
    ToolResult,
    UserMessage,
    WebFetch,
    WebSearch,
)
from hailtrace.parsers.common import (
    AdapterOutput,
    EventSink,
    RawTranscript,
    SessionMetadata,
    call_attributes,
    coerce_int,
    detect_language,
    first_str,
    infer_provider,
    is_continuation_preamble,
    payload_to_text,
    strip_system_reminders,
    tool_output_content,
    truncate_title,
)

ADAPTER_ID = "claude-code"
SCHEMA_VERSION = "claude-code-jsonl-v1"

# Records that only carry bookkeeping; kept as Custom events without a diagnostic.
_BOOKKEEPING_TYPES = {"file-history-snapshot"}
_SYSTEM_TYPES = {"system", "progress", "queue-operation", "summary"}
_SYNTHETIC_MODEL = "<synthetic>"


def _edit_diff(path: str, old: str, new: str) -> str:
    lines = difflib.unified_diff(
        old.splitlines(),
        new.splitlines(),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
        lineterm="",
    )
    return "\n".join(lines)


def _classify_tool(name: str, tool_input: dict[str, Any]) -> tuple[Any, Content]:
    """Map a Claude Code tool_use onto a canonical event type and call content."""
    if name == "Read":
        path = first_str(tool_input, "file_path", "path", default="unknown")
        return FileRead(path=path), Content.text(path)
    if name in {"Edit", "MultiEdit"}:
        path = first_str(tool_input, "file_path", "path", default="unknown")
        edits = tool_input.get("edits") if name == "MultiEdit" else [tool_input]
        chunks = [
            _edit_diff(path, str(edit.get("old_string") or ""), str(edit.get("new_string") or ""))
            for edit in edits or []
            if isinstance(edit, dict)
        ]
        diff = "\n".join(chunk for chunk in chunks if chunk) or None
        content = Content.code(diff, "diff") if diff else Content.text(path)
        return FileEdit(path=path, diff=diff), content
    if name == "NotebookEdit":
        path = first_str(tool_input, "notebook_path", "file_path", default="unknown")
        source = str(tool_input.get("new_source") or "")
        return FileEdit(path=path), Content.code(source, "python") if source else Content.text(path)
    if name == "Write":
        path = first_str(tool_input, "file_path", "path", default="unknown")
        body = str(tool_input.get("content") or "")
        content = Content(blocks=[TextBlock(text=path)])
        if body:
            content.blocks.append(CodeBlock(code=body, language=detect_language(path)))
        return FileCreate(path=path), content
    if name == "Grep":
        query = first_str(tool_input, "pattern", "query")
        return CodeSearch(query=query), Content.text(query)
    if name == "Glob":
        pattern = first_str(tool_input, "pattern", default="*")
        return FileSearch(pattern=pattern), Content.text(pattern)
    if name == "Bash":
        command = first_str(tool_input, "command", "cmd", "script")
        return ShellCommand(command=command), Content.code(command, "bash")
    if name == "WebSearch":
        query = first_str(tool_input, "query")
        return WebSearch(query=query), Content.text(query)
    if name == "WebFetch":
        url = first_str(tool_input, "url")
        return WebFetch(url=url), Content.text(url)
    if name == "Task":
        description = first_str(tool_input, "description", "prompt")
        return ToolCall(name=name), Content.text(description) if description else Content.empty()
    if tool_input:
        return ToolCall(name=name), Content(blocks=[JsonBlock(data=tool_input)])
    return ToolCall(name=name), Content.empty()


def _image_block(block: dict[str, Any]) -> ImageBlock | None:
    source = block.get("source")
    if not isinstance(source, dict):
        return None
    mime = str(source.get("media_type") or "image/png")
    if source.get("type") == "base64" and isinstance(source.get("data"), str):
        return ImageBlock(url=f"data:{mime};base64,{source['data']}", mime=mime)
    if isinstance(source.get("url"), str):
        return ImageBlock(url=source["url"], mime=mime)
    return None


def _usage_attributes(usage: Any) -> dict[str, Any]:
    if not isinstance(usage, dict):
        return {}
    attrs: dict[str, Any] = {}
    input_tokens = coerce_int(usage.get("input_tokens"), None)
    output_tokens = coerce_int(usage.get("output_tokens"), None)
    if input_tokens is not None:
        attrs[ATTR_INPUT_TOKENS] = input_tokens
    if output_tokens is not None:
        attrs[ATTR_OUTPUT_TOKENS] = output_tokens
    for key in ("cache_creation_input_tokens", "cache_read_input_tokens"):
        value = coerce_int(usage.get(key), None)
        if value:
            attrs[key] = value
    return attrs


def _system_text(record_type: str, record: dict[str, Any]) -> str:
    if record_type == "system":
        text = record.get("content")
        if isinstance(text, str) and text.strip():
            return strip_system_reminders(text) or text.strip()
        return f"System event: {record.get('subtype') or 'unknown'}"
    if record_type == "progress":
        data = record.get("data")
        if isinstance(data, dict):
            label = data.get("type") or "progress"
            message = first_str(data, "message", "text", "status")
            return f"Progress ({label}): {message}" if message else f"Progress: {label}"
        return "Progress"
    if record_type == "queue-operation":
        operation = str(record.get("operation") or "unknown").strip() or "unknown"
        queued = record.get("content")
        if operation == "enqueue" and isinstance(queued, str) and queued.strip():
            return f"Queued input: {queued.strip()}"
        return f"Queue operation: {operation}"
    summary = str(record.get("summary") or "").strip()
    return f"Summary: {summary}" if summary else "Summary"


def parse(raw: RawTranscript) -> AdapterOutput:
    """Parse one Claude Code session file."""
    sink = EventSink(ADAPTER_ID, SCHEMA_VERSION)

    session_id = ""
    model = ""
    tool_version = ""
    cwd = ""
    git_branch = ""
    agent_id = ""
    slug = ""
    first_user_text = ""
    summary_title = ""

    tools_by_id: dict[str, tuple[str, str]] = {}
    last_tool: tuple[str, str] | None = None
    seen_usage_ids: set[str] = set()
    id_counts: dict[str, int] = {}

    def next_id(base: str) -> str:
        count = id_counts.get(base, 0)
        id_counts[base] = count + 1
        return base if count == 0 else f"{base}-{count}"

    def emit_tool_result(block: dict[str, Any], base_id: str, ts: datetime, group_id: str) -> None:
        tool_use_id = block.get("tool_use_id")
        call_id = tool_use_id if isinstance(tool_use_id, str) and tool_use_id.strip() else None
        name, path = tools_by_id.get(call_id or "", last_tool or ("", ""))
        text = payload_to_text(block.get("content"))
        content = tool_output_content(text, path if name == "Read" else None)
        sink.emit(
            next_id(base_id),
            ts,
            ToolResult(name=name, is_error=bool(block.get("is_error")), call_id=call_id),
            raw_type="user.tool_result",
            content=content,
            attributes=call_attributes(name, call_id, group_id) if name else {},
        )

    def emit_user_text(parts: list[Any], base_id: str, ts: datetime, is_meta: bool, group_id: str) -> None:
        nonlocal first_user_text
        if not parts:
            return
        texts = [part.text for part in parts if isinstance(part, TextBlock)]
        joined = "\n".join(texts)
        if is_meta or (joined and is_continuation_preamble(joined)):
            event_type: Any = SystemMessage()
        else:
            event_type = UserMessage()
            if joined and not first_user_text:
                first_user_text = joined
        sink.emit(
            next_id(base_id),
            ts,
            event_type,
            raw_type="user",
            content=Content(blocks=list(parts)),
            attributes={ATTR_SEMANTIC_GROUP_ID: group_id} if group_id else {},
        )

    def handle_user(record: dict[str, Any], base_id: str, ts: datetime) -> None:
        message = record.get("message") if isinstance(record.get("message"), dict) else {}
        body = message.get("content")
        is_meta = bool(record.get("isMeta"))
        group_id = str(record.get("uuid") or "")
        if isinstance(body, str):
            cleaned = strip_system_reminders(body)
            if cleaned:
                emit_user_text([TextBlock(text=cleaned)], base_id, ts, is_meta, group_id)
            elif body.strip():
                sink.emit(next_id(base_id), ts, SystemMessage(), raw_type="user", content=Content.text(body.strip()))
            else:
                sink.unmapped(next_id(base_id), ts, "user", kind="empty-user-record")
            return
        if not isinstance(body, list):
            sink.unmapped(next_id(base_id), ts, "user", kind="empty-user-record")
            return

        pending: list[Any] = []
        for block in body:
            if isinstance(block, str):
                block = {"type": "text", "text": block}
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                cleaned = strip_system_reminders(str(block.get("text") or ""))
                if cleaned:
                    pending.append(TextBlock(text=cleaned))
            elif block_type == "image":
                image = _image_block(block)
                if image is not None:
                    pending.append(image)
            elif block_type == "tool_result":
                emit_user_text(pending, base_id, ts, is_meta, group_id)
                pending = []
                emit_tool_result(block, base_id, ts, group_id)
            else:
                sink.unmapped(
                    next_id(base_id),
                    ts,
                    f"user.{block_type}",
                    content=Content(blocks=[JsonBlock(data=block)]),
                )
        emit_user_text(pending, base_id, ts, is_meta, group_id)

    def handle_assistant(record: dict[str, Any], base_id: str, ts: datetime) -> None:
        nonlocal model, last_tool
        message = record.get("message") if isinstance(record.get("message"), dict) else {}
        record_model = str(message.get("model") or "")
        if record_model and record_model != _SYNTHETIC_MODEL:
            model = model or record_model

        usage_attrs: dict[str, Any] = {}
        message_id = str(message.get("id") or record.get("requestId") or base_id)
        if message_id not in seen_usage_ids:
            usage_attrs = _usage_attributes(message.get("usage") or record.get("usage"))
            if usage_attrs:
                seen_usage_ids.add(message_id)

        group_id = str(record.get("uuid") or "")
        body = message.get("content")
        if isinstance(body, str):
            body = [{"type": "text", "text": body}]
        if not isinstance(body, list):
            body = []

        for block in body:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            attrs: dict[str, Any] = {ATTR_SEMANTIC_GROUP_ID: group_id} if group_id else {}
            if block_type == "text":
                cleaned = strip_system_reminders(str(block.get("text") or ""))
                if not cleaned:
                    continue
                attrs.update(usage_attrs)
                usage_attrs = {}
                sink.emit(next_id(base_id), ts, AgentMessage(), raw_type="assistant.text", content=Content.text(cleaned), attributes=attrs)
            elif block_type in {"thinking", "redacted_thinking"}:
                thought = str(block.get("thinking") or "").strip()
                if block_type == "redacted_thinking":
                    attrs["thinking.redacted"] = True
                sink.emit(
                    next_id(base_id),
                    ts,
                    Thinking(),
                    raw_type=f"assistant.{block_type}",
                    content=Content.text(thought) if thought else Content.empty(),
                    attributes=attrs,
                )
            elif block_type == "tool_use":
                name = str(block.get("name") or "unknown")
                tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
                raw_id = block.get("id")
                call_id = raw_id if isinstance(raw_id, str) and raw_id.strip() else sink.derive_call_id(name)
                event_type, content = _classify_tool(name, tool_input)
                path = getattr(event_type, "path", "")
                tools_by_id[call_id] = (name, path)
                last_tool = (name, path)
                attrs.update(call_attributes(name, call_id, group_id))
                sink.emit(next_id(base_id), ts, event_type, raw_type="assistant.tool_use", content=content, attributes=attrs)
            else:
                sink.unmapped(
                    next_id(base_id),
                    ts,
                    f"assistant.{block_type}",
                    content=Content(blocks=[JsonBlock(data=block)]),
                )

        if usage_attrs and sink.events:
            # No text block carried the usage; keep it on the record's last event.
            last = sink.events[-1]
            last.attributes.update(usage_attrs)

    for line_no, line in enumerate(raw.text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            record = None
        if not isinstance(record, dict):
            sink.unmapped(
                f"line-{line_no}",
                sink.timestamp(None),
                "unparseable-line",
                content=Content.text(line.strip()[:2000]),
                line=line_no,
                code="unparseable_line",
            )
            continue

        record_type = str(record.get("type") or "")
        ts = sink.timestamp(record.get("timestamp"))
        base_id = str(record.get("uuid") or record.get("leafUuid") or f"line-{line_no}")

        session_id = session_id or str(record.get("sessionId") or "")
        tool_version = tool_version or str(record.get("version") or "")
        cwd = cwd or str(record.get("cwd") or "")
        git_branch = git_branch or str(record.get("gitBranch") or "")
        agent_id = agent_id or str(record.get("agentId") or "")
        slug = slug or str(record.get("slug") or "")

        if record_type == "user":
            handle_user(record, base_id, ts)
        elif record_type == "assistant":
            handle_assistant(record, base_id, ts)
        elif record_type in _SYSTEM_TYPES:
            attrs: dict[str, Any] = {}
            if record_type == "system" and record.get("subtype"):
                attrs["system.subtype"] = str(record["subtype"])
            if record_type == "summary":
                summary_title = summary_title or str(record.get("summary") or "").strip()
            sink.emit(
                next_id(base_id),
                ts,
                SystemMessage(),
                raw_type=record_type,
                content=Content.text(_system_text(record_type, record)),
                attributes=attrs,
            )
        elif record_type in _BOOKKEEPING_TYPES:
            sink.emit(next_id(base_id), ts, Custom(kind=record_type), raw_type=record_type)
        else:
            sink.unmapped(
                next_id(base_id),
                ts,
                record_type or "unknown",
                content=Content(blocks=[JsonBlock(data=record)]),
                line=line_no,
            )

    attributes: dict[str, Any] = {}
    if cwd:
        attributes["cwd"] = cwd
    if git_branch:
        attributes["git_branch"] = git_branch
    if agent_id:
        attributes["agent_id"] = agent_id
    if slug:
        attributes["slug"] = slug

    title = summary_title or first_user_text
    metadata = SessionMetadata(
        session_id=session_id or None,
        provider=infer_provider(model) if model else "anthropic",
        model=model or None,
        tool=ADAPTER_ID,
        tool_version=tool_version or None,
        title=truncate_title(title) if title else None,
        tags=[ADAPTER_ID],
        attributes=attributes,
    )
    return sink.output(metadata)


def parse_subagent(raw: RawTranscript, task_id: str | None = None, title: str | None = None) -> AdapterOutput:
    """Parse a sub-agent transcript and wrap it in a TaskStart/TaskEnd pair."""
    inner = parse(raw)
    stem = raw.filename.replace("\\", "/").rsplit("/", 1)[-1].rsplit(".", 1)[0]
    task = task_id or str(inner.metadata.attributes.get("agent_id") or "") or stem or "subagent"
    task_title = title or str(inner.metadata.attributes.get("slug") or "") or task
    if not inner.events:
        return inner

    events = []
    for event in inner.events:
        attributes = {**event.attributes, "subagent_id": task, "merged_subagent": True}
        events.append(
            event.model_copy(
                update={
                    "event_id": f"{task}:{event.event_id}",
                    "task_id": event.task_id or task,
                    "attributes": attributes,
                }
            )
        )

    count = len(events)
    summary = f"{count} events, {inner.metadata.model}" if inner.metadata.model else f"{count} events"
    sink = EventSink(ADAPTER_ID, SCHEMA_VERSION)
    start_attributes: dict[str, Any] = {"subagent_id": task, "merged_subagent": True}
    if inner.metadata.model:
        start_attributes["model"] = inner.metadata.model
    start = sink.emit(
        f"{task}-start",
        events[0].timestamp,
        TaskStart(title=task_title),
        raw_type="subagent",
        task_id=task,
        attributes=start_attributes,
    )
    end = sink.emit(
        f"{task}-end",
        events[-1].timestamp,
        TaskEnd(summary=summary),
        raw_type="subagent",
        task_id=task,
        duration_ms=max(millis_between(events[0].timestamp, events[-1].timestamp), 0),
        attributes={"subagent_id": task, "merged_subagent": True},
    )
    return inner.model_copy(update={"events": [start, *events, end]})
