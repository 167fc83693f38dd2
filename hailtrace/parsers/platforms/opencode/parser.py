"""Parse OpenCode session part trees into canonical HAIL events.

The tree mirrors ``opencode export`` output::

    {"info": {"id", "version", "title", "time": {"created", "updated"}},
     "messages": [{"info": {"id", "role", "modelID", "providerID", "time"}, "parts": [...]}]}

All times are epoch milliseconds.
"""
from __future__ import annotations

from typing import Any

from hailtrace.date_utils import millis_between
from hailtrace.models import (
    ATTR_INPUT_TOKENS,
    ATTR_OUTPUT_TOKENS,
    AgentMessage,
    CodeSearch,
    Content,
    Custom,
    FileBlock,
    FileCreate,
    FileEdit,
    FileRead,
    FileSearch,
    ImageBlock,
    JsonBlock,
    ShellCommand,
    SystemMessage,
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
    first_str,
    load_json_object,
    normalize_role_label,
    tool_output_content,
    truncate_title,
)
from hailtrace.parsers.errors import AdapterError

ADAPTER_ID = "opencode"
SCHEMA_VERSION = "opencode-parts-v1"

# Internal step markers: kept in the stream as Custom events without a diagnostic.
_MARKER_PARTS = {"step-start", "step-finish", "snapshot", "patch", "agent", "subtask", "retry", "compaction"}


def _classify_tool(name: str, args: dict[str, Any], metadata: dict[str, Any]) -> tuple[Any, Content]:
    if name in {"bash", "shell"}:
        command = first_str(args, "command")
        return ShellCommand(command=command, exit_code=coerce_int(metadata.get("exit"), None)), Content.code(command, "bash")
    if name in {"edit", "str_replace_editor", "multiedit"}:
        path = first_str(args, "filePath", "path", "file_path", default="unknown")
        diff = first_str(metadata, "diff")
        return FileEdit(path=path, diff=diff or None), Content.code(diff, "diff") if diff else Content.text(path)
    if name in {"write", "create"}:
        path = first_str(args, "filePath", "path", "file_path", default="unknown")
        return FileCreate(path=path), Content.text(path)
    if name in {"read", "view"}:
        path = first_str(args, "filePath", "path", "file_path", default="unknown")
        return FileRead(path=path), Content.text(path)
    if name in {"grep", "search"}:
        query = first_str(args, "pattern", "query")
        return CodeSearch(query=query), Content.text(query)
    if name in {"glob", "find"}:
        pattern = first_str(args, "pattern", "path", default="*")
        return FileSearch(pattern=pattern), Content.text(pattern)
    if name in {"webfetch", "web_fetch"}:
        url = first_str(args, "url")
        return WebFetch(url=url), Content.text(url)
    if name in {"websearch", "web_search"}:
        query = first_str(args, "query")
        return WebSearch(query=query), Content.text(query)
    if args:
        return ToolCall(name=name), Content(blocks=[JsonBlock(data=args)])
    return ToolCall(name=name), Content.empty()


def _time_of(node: dict[str, Any], *keys: str) -> Any:
    time_info = node.get("time") if isinstance(node.get("time"), dict) else {}
    for key in keys:
        if time_info.get(key) is not None:
            return time_info[key]
    return None


def _file_block(part: dict[str, Any]) -> Any:
    mime = str(part.get("mime") or "")
    url = str(part.get("url") or "")
    filename = str(part.get("filename") or url or "file")
    if mime.startswith("image/") and url:
        return ImageBlock(url=url, mime=mime, alt=part.get("filename"))
    return FileBlock(path=filename)


def parse(raw: RawTranscript) -> AdapterOutput:
    """Parse one OpenCode session tree."""
    tree = raw.tree if raw.tree is not None else load_json_object(raw.text)
    if not isinstance(tree, dict) or not isinstance(tree.get("info"), dict):
        raise AdapterError(ADAPTER_ID, "expected a session tree with an 'info' object")

    sink = EventSink(ADAPTER_ID, SCHEMA_VERSION)
    info = tree["info"]
    model = ""
    provider = ""
    first_user_text = ""

    messages = [message for message in tree.get("messages") or [] if isinstance(message, dict)]
    messages.sort(key=lambda message: coerce_int(_time_of(message.get("info") or {}, "created"), 0) or 0)

    for message in messages:
        message_info = message.get("info") if isinstance(message.get("info"), dict) else {}
        message_id = str(message_info.get("id") or f"message-{len(sink.events)}")
        role = normalize_role_label(message_info.get("role")) or "system"
        message_ts = sink.timestamp(_time_of(message_info, "created"))
        model = model or str(message_info.get("modelID") or "")
        provider = provider or str(message_info.get("providerID") or "")
        first_agent_index: int | None = None

        parts = [part for part in message.get("parts") or [] if isinstance(part, dict)]
        parts.sort(key=lambda part: coerce_int(_time_of(part, "start"), 0) or 0)

        if not parts:
            if role == "user":
                sink.emit(message_id, message_ts, UserMessage(), raw_type="message")
            continue

        pending_files: list[Any] = []
        for offset, part in enumerate(parts):
            part_id = str(part.get("id") or f"{message_id}-part-{offset}")
            part_type = str(part.get("type") or "")
            start = _time_of(part, "start")
            part_ts = sink.timestamp(start) if start is not None else message_ts
            end = _time_of(part, "end")
            duration_ms = millis_between(part_ts, sink.timestamp(end)) if end is not None else None

            if part_type == "text":
                text = str(part.get("text") or "").strip()
                if not text and not pending_files:
                    continue
                blocks: list[Any] = [*pending_files]
                pending_files = []
                if text:
                    blocks.insert(0, Content.text(text).blocks[0])
                if part.get("synthetic") or role == "system":
                    event_type: Any = SystemMessage()
                elif role == "user":
                    event_type = UserMessage()
                    first_user_text = first_user_text or text
                else:
                    event_type = AgentMessage()
                sink.emit(part_id, part_ts, event_type, raw_type="text", content=Content(blocks=blocks), duration_ms=duration_ms)
                if event_type.type == "AgentMessage" and first_agent_index is None:
                    first_agent_index = len(sink.events) - 1
            elif part_type == "reasoning":
                text = str(part.get("text") or "").strip()
                if text:
                    sink.emit(part_id, part_ts, Thinking(), raw_type="reasoning", content=Content.text(text), duration_ms=duration_ms)
            elif part_type == "file":
                pending_files.append(_file_block(part))
            elif part_type == "tool":
                name = str(part.get("tool") or "unknown")
                state = part.get("state") if isinstance(part.get("state"), dict) else {}
                args = state.get("input") if isinstance(state.get("input"), dict) else {}
                metadata = state.get("metadata") if isinstance(state.get("metadata"), dict) else {}
                status = str(state.get("status") or "unknown")
                raw_call_id = part.get("callID")
                call_id = raw_call_id if isinstance(raw_call_id, str) and raw_call_id.strip() else f"{part_id}-call"
                state_start = _time_of(state, "start")
                call_ts = sink.timestamp(state_start) if state_start is not None else part_ts
                state_end = _time_of(state, "end")
                tool_duration = millis_between(call_ts, sink.timestamp(state_end)) if state_end is not None else duration_ms
                event_type, content = _classify_tool(name, args, metadata)
                attrs = call_attributes(name, call_id)
                attrs["status"] = status
                if state.get("title"):
                    attrs["tool.title"] = str(state["title"])
                sink.emit(f"{part_id}-call", call_ts, event_type, raw_type="tool", content=content, duration_ms=tool_duration, attributes=attrs)
                if status in {"completed", "error"}:
                    output = first_str(state, "output", "error")
                    result_ts = sink.timestamp(state_end) if state_end is not None else call_ts
                    sink.emit(
                        f"{part_id}-result",
                        result_ts,
                        ToolResult(name=name, is_error=status == "error", call_id=call_id),
                        raw_type="tool",
                        content=tool_output_content(output, args.get("filePath") if name == "read" else None),
                        attributes=call_attributes(name, call_id),
                    )
            elif part_type in _MARKER_PARTS:
                marker_attrs: dict[str, Any] = {}
                if part_type == "step-finish":
                    tokens = part.get("tokens") if isinstance(part.get("tokens"), dict) else {}
                    input_tokens = coerce_int(tokens.get("input"), 0) or 0
                    output_tokens = coerce_int(tokens.get("output"), 0) or 0
                    if first_agent_index is not None and (input_tokens or output_tokens):
                        target = sink.events[first_agent_index].attributes
                        target[ATTR_INPUT_TOKENS] = target.get(ATTR_INPUT_TOKENS, 0) + input_tokens
                        target[ATTR_OUTPUT_TOKENS] = target.get(ATTR_OUTPUT_TOKENS, 0) + output_tokens
                    elif input_tokens or output_tokens:
                        marker_attrs[ATTR_INPUT_TOKENS] = input_tokens
                        marker_attrs[ATTR_OUTPUT_TOKENS] = output_tokens
                    if part.get("cost") is not None:
                        marker_attrs["cost"] = part["cost"]
                sink.emit(part_id, part_ts, Custom(kind=part_type), raw_type=part_type, attributes=marker_attrs)
            else:
                sink.unmapped(part_id, part_ts, part_type or "unknown", content=Content(blocks=[JsonBlock(data=part)]))

        if pending_files:
            event_type = UserMessage() if role == "user" else AgentMessage()
            sink.emit(f"{message_id}-files", message_ts, event_type, raw_type="file", content=Content(blocks=pending_files))

    title = str(info.get("title") or "").strip() or first_user_text
    created = _time_of(info, "created")
    updated = _time_of(info, "updated")
    return sink.output(
        SessionMetadata(
            session_id=str(info.get("id") or "") or None,
            provider=provider or None,
            model=model or None,
            tool=ADAPTER_ID,
            tool_version=str(info.get("version") or "") or None,
            title=truncate_title(title) if title else None,
            tags=[ADAPTER_ID],
            created_at=sink.timestamp(created) if created is not None else None,
            updated_at=sink.timestamp(updated) if updated is not None else None,
        )
    )
