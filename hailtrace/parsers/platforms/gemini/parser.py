"""Parse Gemini CLI chat recordings (JSON document or JSONL stream)."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from hailtrace.models import (
    ATTR_INPUT_TOKENS,
    ATTR_OUTPUT_TOKENS,
    AgentMessage,
    CodeSearch,
    Content,
    FileCreate,
    FileEdit,
    FileRead,
    FileSearch,
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
    payload_to_text,
    tool_output_content,
    truncate_title,
)
from hailtrace.parsers.errors import AdapterError

ADAPTER_ID = "gemini"
JSON_SCHEMA_VERSION = "gemini-json-v1"
JSONL_SCHEMA_VERSION = "gemini-jsonl-v1"


def _classify_tool(name: str, args: dict[str, Any]) -> tuple[Any, Content]:
    if name == "read_file" or name == "read_many_files":
        path = first_str(args, "absolute_path", "file_path", "path", default="unknown")
        return FileRead(path=path), Content.text(path)
    if name == "write_file":
        path = first_str(args, "file_path", "absolute_path", "path", default="unknown")
        return FileCreate(path=path), Content.text(path)
    if name in {"replace", "edit"}:
        path = first_str(args, "file_path", "absolute_path", "path", default="unknown")
        old = str(args.get("old_string") or "")
        new = str(args.get("new_string") or "")
        diff = "\n".join([*(f"-{line}" for line in old.splitlines()), *(f"+{line}" for line in new.splitlines())])
        return FileEdit(path=path, diff=diff or None), Content.text(path)
    if name == "run_shell_command":
        command = first_str(args, "command")
        return ShellCommand(command=command), Content.code(command, "bash")
    if name == "glob":
        pattern = first_str(args, "pattern", default="*")
        return FileSearch(pattern=pattern), Content.text(pattern)
    if name in {"search_file_content", "grep"}:
        query = first_str(args, "pattern", "query")
        return CodeSearch(query=query), Content.text(query)
    if name == "google_web_search":
        query = first_str(args, "query")
        return WebSearch(query=query), Content.text(query)
    if name == "web_fetch":
        url = first_str(args, "url", "prompt")
        return WebFetch(url=url), Content.text(url)
    if args:
        return ToolCall(name=name), Content(blocks=[JsonBlock(data=args)])
    return ToolCall(name=name), Content.empty()


def _token_attributes(tokens: Any) -> dict[str, Any]:
    if not isinstance(tokens, dict):
        return {}
    attrs: dict[str, Any] = {}
    input_tokens = coerce_int(tokens.get("input"), None)
    output_tokens = coerce_int(tokens.get("output"), None)
    if input_tokens is not None:
        attrs[ATTR_INPUT_TOKENS] = input_tokens
    if output_tokens is not None:
        attrs[ATTR_OUTPUT_TOKENS] = output_tokens
    for key in ("cached", "thoughts", "tool"):
        value = coerce_int(tokens.get(key), None)
        if value:
            attrs[f"tokens.{key}"] = value
    return attrs


def _tool_call_output(call: dict[str, Any]) -> str:
    display = call.get("resultDisplay")
    if isinstance(display, str) and display.strip():
        return display
    result = call.get("result")
    chunks: list[str] = []
    if isinstance(result, list):
        for item in result:
            response = item.get("functionResponse") if isinstance(item, dict) else None
            payload = response.get("response") if isinstance(response, dict) else None
            if isinstance(payload, dict):
                chunks.append(payload_to_text(payload.get("output", payload.get("error", payload))))
    return "\n".join(chunk for chunk in chunks if chunk)


def _parse_document(document: dict[str, Any], sink: EventSink) -> SessionMetadata:
    model = ""
    first_user_text = ""

    for index, message in enumerate(document.get("messages") or [], start=1):
        if not isinstance(message, dict):
            continue
        msg_type = str(message.get("type") or "")
        ts = sink.timestamp(message.get("timestamp"))
        base_id = str(message.get("id") or f"gemini-{index}")
        text = payload_to_text(message.get("content")).strip()

        if msg_type == "user":
            if not text:
                continue
            first_user_text = first_user_text or text
            sink.emit(base_id, ts, UserMessage(), raw_type="user", content=Content.text(text))
        elif msg_type == "gemini":
            model = model or str(message.get("model") or "")
            for offset, thought in enumerate(message.get("thoughts") or [], start=1):
                if not isinstance(thought, dict):
                    continue
                subject = str(thought.get("subject") or "").strip()
                description = str(thought.get("description") or "").strip()
                body = "\n".join(part for part in (subject, description) if part)
                if body:
                    sink.emit(
                        f"{base_id}-thought-{offset}",
                        sink.timestamp(thought.get("timestamp") or message.get("timestamp")),
                        Thinking(),
                        raw_type="gemini.thought",
                        content=Content.text(body),
                    )
            if text:
                attrs = _token_attributes(message.get("tokens"))
                if message.get("model"):
                    attrs["model"] = str(message["model"])
                sink.emit(base_id, ts, AgentMessage(), raw_type="gemini", content=Content.text(text), attributes=attrs)
            for offset, call in enumerate(message.get("toolCalls") or [], start=1):
                if not isinstance(call, dict):
                    continue
                name = str(call.get("name") or "unknown")
                args = call.get("args") if isinstance(call.get("args"), dict) else {}
                raw_id = call.get("id")
                call_id = raw_id if isinstance(raw_id, str) and raw_id.strip() else sink.derive_call_id(name)
                call_ts = sink.timestamp(call.get("timestamp") or message.get("timestamp"))
                event_type, content = _classify_tool(name, args)
                sink.emit(
                    f"{base_id}-call-{offset}",
                    call_ts,
                    event_type,
                    raw_type="gemini.toolCall",
                    content=content,
                    attributes=call_attributes(name, call_id),
                )
                status = str(call.get("status") or "").lower()
                if status or call.get("result") is not None:
                    sink.emit(
                        f"{base_id}-result-{offset}",
                        call_ts,
                        ToolResult(name=name, is_error=status in {"error", "cancelled"}, call_id=call_id),
                        raw_type="gemini.toolResult",
                        content=tool_output_content(_tool_call_output(call)),
                        attributes={**call_attributes(name, call_id), "status": status} if status else call_attributes(name, call_id),
                    )
        elif msg_type in {"error", "info", "warning"}:
            attrs = {"level": msg_type}
            sink.emit(base_id, ts, SystemMessage(), raw_type=msg_type, content=Content.text(text) if text else Content.empty(), attributes=attrs)
        else:
            sink.unmapped(base_id, ts, msg_type or "unknown", content=Content(blocks=[JsonBlock(data=message)]))

    attributes: dict[str, Any] = {}
    if document.get("projectHash"):
        attributes["project_hash"] = str(document["projectHash"])
    return SessionMetadata(
        session_id=str(document.get("sessionId") or "") or None,
        provider="google",
        model=model or None,
        tool=ADAPTER_ID,
        title=truncate_title(first_user_text) if first_user_text else None,
        tags=[ADAPTER_ID],
        created_at=sink.timestamp(document["startTime"]) if document.get("startTime") else None,
        updated_at=sink.timestamp(document["lastUpdated"]) if document.get("lastUpdated") else None,
        attributes=attributes,
    )


def _parse_stream(text: str, sink: EventSink) -> SessionMetadata:
    session_id = ""
    started_at: datetime | None = None
    model = ""
    first_user_text = ""
    agent_event_by_message: dict[str, int] = {}
    counter = 0

    used_ids: set[str] = set()

    def next_id(preferred: str = "") -> str:
        nonlocal counter
        counter += 1
        candidate = preferred or f"gemini-{counter}"
        if candidate in used_ids:
            candidate = f"{candidate}-{counter}"
        used_ids.add(candidate)
        return candidate

    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            record = None
        if not isinstance(record, dict):
            sink.unmapped(
                next_id(),
                sink.timestamp(None),
                "unparseable-line",
                content=Content.text(line.strip()[:2000]),
                line=line_no,
                code="unparseable_line",
            )
            continue

        record_type = str(record.get("type") or "")
        message_id = str(record.get("id") or "")
        blocks = record.get("content") if isinstance(record.get("content"), list) else []

        if record_type == "session_metadata":
            session_id = session_id or str(record.get("sessionId") or "")
            if record.get("startTime"):
                started_at = started_at or sink.timestamp(record.get("startTime"))
            continue

        if record_type == "message_update":
            index = agent_event_by_message.get(message_id)
            token_attrs = _token_attributes(record.get("tokens"))
            if index is not None and token_attrs:
                sink.events[index].attributes.update(token_attrs)
            elif token_attrs:
                sink.unmapped(next_id(), sink.timestamp(None), "message_update", content=Content(blocks=[JsonBlock(data=record)]))
            continue

        ts = sink.timestamp(record.get("timestamp"))
        if record_type not in {"user", "gemini"}:
            sink.unmapped(next_id(), ts, record_type or "unknown", content=Content(blocks=[JsonBlock(data=record)]), line=line_no)
            continue

        if record_type == "gemini":
            model = model or str(record.get("model") or "")
        texts = [str(block.get("text") or "") for block in blocks if isinstance(block, dict) and block.get("type") == "text"]
        joined = "\n".join(part for part in texts if part.strip()).strip()

        for block in blocks:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "thinking":
                thought = str(block.get("text") or "").strip()
                if thought:
                    sink.emit(next_id(), ts, Thinking(), raw_type="gemini.thinking", content=Content.text(thought))

        if joined:
            if record_type == "user":
                first_user_text = first_user_text or joined
                sink.emit(next_id(message_id), ts, UserMessage(), raw_type="user", content=Content.text(joined))
            else:
                sink.emit(next_id(message_id), ts, AgentMessage(), raw_type="gemini", content=Content.text(joined))
                if message_id:
                    agent_event_by_message[message_id] = len(sink.events) - 1

        for block in blocks:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "functionCall":
                name = str(block.get("name") or "unknown")
                args = block.get("args") if isinstance(block.get("args"), dict) else {}
                raw_id = block.get("id")
                call_id = raw_id if isinstance(raw_id, str) and raw_id.strip() else sink.derive_call_id(name)
                event_type, content = _classify_tool(name, args)
                sink.emit(next_id(), ts, event_type, raw_type=f"{record_type}.functionCall", content=content, attributes=call_attributes(name, call_id))
            elif block_type == "functionResponse":
                name = str(block.get("name") or "")
                raw_id = block.get("id")
                call_id = raw_id if isinstance(raw_id, str) and raw_id.strip() else None
                response = block.get("response")
                is_error = isinstance(response, dict) and "error" in response
                content = Content(blocks=[JsonBlock(data=response)]) if response is not None else Content.empty()
                sink.emit(
                    next_id(),
                    ts,
                    ToolResult(name=name, is_error=is_error, call_id=call_id),
                    raw_type=f"{record_type}.functionResponse",
                    content=content,
                    attributes=call_attributes(name, call_id) if name else {},
                )
            elif block_type not in {"text", "thinking"}:
                sink.unmapped(next_id(), ts, f"{record_type}.{block_type}", content=Content(blocks=[JsonBlock(data=block)]))

    return SessionMetadata(
        session_id=session_id or None,
        provider="google",
        model=model or None,
        tool=ADAPTER_ID,
        title=truncate_title(first_user_text) if first_user_text else None,
        tags=[ADAPTER_ID],
        created_at=started_at,
    )


def _looks_like_document(text: str) -> bool:
    stripped = text.lstrip()
    if not stripped.startswith("{"):
        return False
    first_line = stripped.splitlines()[0].strip()
    # A JSONL stream has a complete object on its first line.
    try:
        json.loads(first_line)
    except json.JSONDecodeError:
        return True
    return '"messages"' in first_line


def parse(raw: RawTranscript) -> AdapterOutput:
    """Parse a Gemini recording; the JSONL stream is chosen by extension or shape."""
    is_stream = raw.filename.endswith(".jsonl") or not _looks_like_document(raw.text)
    if is_stream:
        sink = EventSink(ADAPTER_ID, JSONL_SCHEMA_VERSION)
        metadata = _parse_stream(raw.text, sink)
        return sink.output(metadata)

    try:
        document = json.loads(raw.text)
    except json.JSONDecodeError as exc:
        raise AdapterError(ADAPTER_ID, f"invalid JSON document: {exc.msg}") from exc
    if not isinstance(document, dict):
        raise AdapterError(ADAPTER_ID, "document root is not an object")
    sink = EventSink(ADAPTER_ID, JSON_SCHEMA_VERSION)
    metadata = _parse_document(document, sink)
    return sink.output(metadata)
