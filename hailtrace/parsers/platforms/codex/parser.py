"""Parse Codex CLI rollout JSONL files into canonical HAIL events."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from hailtrace.models import (
    ATTR_INPUT_TOKENS,
    ATTR_OUTPUT_TOKENS,
    AgentMessage,
    Content,
    FileCreate,
    FileEdit,
    FileRead,
    JsonBlock,
    ShellCommand,
    SystemMessage,
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
    coerce_int,
    first_str,
    infer_provider,
    load_json_object,
    normalize_role_label,
    strip_system_reminders,
    tool_output_content,
    truncate_title,
)

ADAPTER_ID = "codex"
SCHEMA_VERSION = "codex-jsonl-v1"

_MESSAGE_TEXT_TYPES = {"input_text", "output_text", "text"}


def _command_text(args: dict[str, Any]) -> str:
    raw = args.get("cmd", args.get("command"))
    if isinstance(raw, list):
        parts = [str(part) for part in raw]
        # ["bash", "-lc", "<script>"] carries the real command last.
        if len(parts) >= 3 and parts[1] in {"-lc", "-c"}:
            return parts[-1]
        return " ".join(parts)
    return str(raw or "")


def _classify_function(name: str, args: dict[str, Any]) -> tuple[Any, Content]:
    if name in {"exec_command", "shell", "shell_command"}:
        command = _command_text(args)
        return ShellCommand(command=command), Content.code(command, "bash")
    if name in {"apply_patch", "apply_diff"}:
        path = first_str(args, "path", "file", default="unknown")
        patch = first_str(args, "input", "patch")
        return FileEdit(path=path, diff=patch or None), Content.code(patch, "diff") if patch else Content.text(path)
    if name in {"create_file", "write_file"}:
        path = first_str(args, "path", "file_path", default="unknown")
        return FileCreate(path=path), Content.text(path)
    if name == "read_file":
        path = first_str(args, "path", "file_path", default="unknown")
        return FileRead(path=path), Content.text(path)
    if args:
        return ToolCall(name=name), Content(blocks=[JsonBlock(data=args)])
    return ToolCall(name=name), Content.empty()


def _decode_output(raw_output: Any) -> tuple[str, int | None]:
    """Unwrap ``{"output": ..., "metadata": {"exit_code": ...}}`` envelopes."""
    if isinstance(raw_output, dict):
        envelope = raw_output
    else:
        envelope = load_json_object(raw_output)
    if envelope and "output" in envelope:
        metadata = envelope.get("metadata") if isinstance(envelope.get("metadata"), dict) else {}
        return str(envelope.get("output") or ""), coerce_int(metadata.get("exit_code"), None)
    if isinstance(raw_output, str):
        return raw_output, None
    return json.dumps(raw_output, ensure_ascii=False, sort_keys=True) if raw_output is not None else "", None


def _message_text(payload: dict[str, Any]) -> str:
    body = payload.get("content")
    if isinstance(body, str):
        return body
    chunks: list[str] = []
    if isinstance(body, list):
        for block in body:
            if isinstance(block, dict) and block.get("type") in _MESSAGE_TEXT_TYPES:
                text = block.get("text")
                if isinstance(text, str):
                    chunks.append(text)
    return "\n".join(chunks)


def parse(raw: RawTranscript) -> AdapterOutput:
    """Parse one Codex rollout file."""
    sink = EventSink(ADAPTER_ID, SCHEMA_VERSION)

    session_id = ""
    cwd = ""
    cli_version = ""
    model_provider = ""
    model = ""
    first_user_text = ""
    started_at: datetime | None = None
    counter = 0
    call_names: dict[str, str] = {}

    def next_id() -> str:
        nonlocal counter
        counter += 1
        return f"codex-{counter}"

    def is_echo(kind: str, text: str, raw_type: str, line: int | None) -> bool:
        # Rollouts echo each turn and each reasoning summary as both a
        # response_item and an event_msg.
        if not sink.events:
            return False
        previous = sink.events[-1]
        if previous.kind != kind or previous.content.first_text() != text:
            return False
        sink.skipped(raw_type, f"echo of {previous.event_id}", line=line)
        return True

    def emit_message(role: str, text: str, ts: datetime, raw_type: str, line: int | None = None) -> None:
        nonlocal first_user_text
        cleaned = strip_system_reminders(text)
        if not cleaned:
            return
        if role == "user":
            event_type: Any = UserMessage()
        elif role == "assistant":
            event_type = AgentMessage()
        else:
            event_type = SystemMessage()
        if is_echo(event_type.type, cleaned, raw_type, line):
            return
        if role == "user" and not first_user_text and not cleaned.startswith("<"):
            first_user_text = cleaned
        sink.emit(next_id(), ts, event_type, raw_type=raw_type, content=Content.text(cleaned))

    def emit_thinking(text: str, ts: datetime, raw_type: str, line: int | None = None) -> None:
        if not text or is_echo("Thinking", text, raw_type, line):
            return
        sink.emit(next_id(), ts, Thinking(), raw_type=raw_type, content=Content.text(text))

    def emit_call(name: str, args: dict[str, Any], raw_call_id: Any, ts: datetime, raw_type: str) -> None:
        call_id = raw_call_id if isinstance(raw_call_id, str) and raw_call_id.strip() else sink.derive_call_id(name)
        call_names[call_id] = name
        event_type, content = _classify_function(name, args)
        sink.emit(next_id(), ts, event_type, raw_type=raw_type, content=content, attributes=call_attributes(name, call_id))

    def emit_output(payload: dict[str, Any], ts: datetime, raw_type: str) -> None:
        raw_call_id = payload.get("call_id")
        call_id = raw_call_id if isinstance(raw_call_id, str) and raw_call_id.strip() else None
        name = call_names.get(call_id or "", "")
        text, exit_code = _decode_output(payload.get("output"))
        is_error = (exit_code is not None and exit_code != 0) or text.lstrip().lower().startswith("failed")
        attrs = call_attributes(name, call_id) if name else {}
        if exit_code is not None:
            attrs["exit_code"] = exit_code
        sink.emit(
            next_id(),
            ts,
            ToolResult(name=name, is_error=is_error, call_id=call_id),
            raw_type=raw_type,
            content=tool_output_content(text),
            attributes=attrs,
        )

    def attach_tokens(payload: dict[str, Any], ts: datetime) -> None:
        info = payload.get("info") if isinstance(payload.get("info"), dict) else {}
        usage = info.get("last_token_usage") if isinstance(info.get("last_token_usage"), dict) else {}
        input_tokens = coerce_int(usage.get("input_tokens"), 0) or 0
        output_tokens = coerce_int(usage.get("output_tokens"), 0) or 0
        if not (input_tokens or output_tokens):
            return
        for event in reversed(sink.events):
            if event.kind == "AgentMessage" and ATTR_INPUT_TOKENS not in event.attributes:
                event.attributes[ATTR_INPUT_TOKENS] = input_tokens
                event.attributes[ATTR_OUTPUT_TOKENS] = output_tokens
                return
        sink.unmapped(next_id(), ts, "event_msg.token_count", content=Content(blocks=[JsonBlock(data=usage)]))

    for line_no, line in enumerate(raw.text.splitlines(), start=1):
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

        entry_type = str(record.get("type") or "")
        payload = record.get("payload") if isinstance(record.get("payload"), dict) else {}
        ts = sink.timestamp(record.get("timestamp"))
        payload_type = str(payload.get("type") or "")

        if entry_type == "session_meta":
            session_id = session_id or str(payload.get("id") or "")
            cwd = cwd or str(payload.get("cwd") or "")
            cli_version = cli_version or str(payload.get("cli_version") or "")
            model_provider = model_provider or str(payload.get("model_provider") or "")
            started_at = started_at or sink.timestamp(payload.get("timestamp") or record.get("timestamp"))
            continue
        if entry_type == "turn_context":
            model = model or str(payload.get("model") or "")
            continue

        if entry_type == "event_msg":
            if payload_type == "user_message":
                emit_message("user", str(payload.get("message") or ""), ts, "event_msg.user_message", line_no)
            elif payload_type == "agent_message":
                emit_message("assistant", str(payload.get("message") or ""), ts, "event_msg.agent_message", line_no)
            elif payload_type == "agent_reasoning":
                emit_thinking(str(payload.get("text") or "").strip(), ts, "event_msg.agent_reasoning", line_no)
            elif payload_type == "token_count":
                attach_tokens(payload, ts)
            else:
                sink.unmapped(next_id(), ts, f"event_msg.{payload_type or 'unknown'}", line=line_no)
            continue

        if entry_type == "response_item":
            raw_type = f"response_item.{payload_type or 'unknown'}"
            if payload_type == "message":
                role = normalize_role_label(payload.get("role")) or "system"
                emit_message(role, _message_text(payload), ts, raw_type, line_no)
            elif payload_type == "reasoning":
                summaries = payload.get("summary") if isinstance(payload.get("summary"), list) else []
                text = "\n".join(
                    str(item.get("text") or "")
                    for item in summaries
                    if isinstance(item, dict) and item.get("type") == "summary_text"
                ).strip()
                emit_thinking(text, ts, raw_type, line_no)
            elif payload_type == "function_call":
                name = str(payload.get("name") or "unknown")
                emit_call(name, load_json_object(payload.get("arguments")), payload.get("call_id"), ts, raw_type)
            elif payload_type == "custom_tool_call":
                name = str(payload.get("name") or "custom_tool")
                custom_input = payload.get("input")
                args = {"input": custom_input} if isinstance(custom_input, str) else load_json_object(custom_input)
                emit_call(name, args, payload.get("call_id"), ts, raw_type)
            elif payload_type in {"function_call_output", "custom_tool_call_output"}:
                emit_output(payload, ts, raw_type)
            elif payload_type == "web_search_call":
                action = payload.get("action") if isinstance(payload.get("action"), dict) else {}
                query = first_str(payload, "query") or first_str(action, "query")
                call_id = sink.derive_call_id("web_search")
                sink.emit(
                    next_id(),
                    ts,
                    WebSearch(query=query),
                    raw_type=raw_type,
                    content=Content.text(query) if query else Content.empty(),
                    attributes=call_attributes("web_search", call_id),
                )
            else:
                sink.unmapped(next_id(), ts, raw_type, content=Content(blocks=[JsonBlock(data=payload)]), line=line_no)
            continue

        sink.unmapped(next_id(), ts, entry_type or "unknown", content=Content(blocks=[JsonBlock(data=record)]), line=line_no)

    attributes: dict[str, Any] = {}
    if cwd:
        attributes["cwd"] = cwd
    if model_provider:
        attributes["model_provider"] = model_provider

    provider = model_provider or (infer_provider(model) if model else "openai")
    metadata = SessionMetadata(
        session_id=session_id or None,
        provider=provider,
        model=model or None,
        tool=ADAPTER_ID,
        tool_version=cli_version or None,
        title=truncate_title(first_user_text) if first_user_text else None,
        tags=[ADAPTER_ID],
        created_at=started_at,
        attributes=attributes,
    )
    return sink.output(metadata)
