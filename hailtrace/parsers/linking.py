"""Two-phase recovery of tool call/result correlation ids.

Phase 1 pairs every result that carries an id naming a known call. Phase 2
walks the results that carry no id at all and binds each to the earliest
unmatched call of the same name that precedes it (FIFO). A result without a
name accepts any call name and adopts it. Results whose explicit id names no
call in this stream keep that id untouched.
"""
from __future__ import annotations

from typing import Any

from hailtrace.models import (
    ATTR_SEMANTIC_CALL_ID,
    ATTR_SEMANTIC_TOOL_KIND,
    ATTR_SEMANTIC_TOOL_NAME,
    TOOL_CALL_TYPES,
    Event,
    ToolCall,
    ToolResult,
)
from hailtrace.parsers.common import infer_tool_kind

ATTR_LINKING_METHOD = "linking.method"
_LEGACY_CALL_ID = "call_id"


def _explicit_call_id(event: Event) -> str | None:
    candidates: list[Any] = [
        event.event_type.call_id,
        event.attributes.get(ATTR_SEMANTIC_CALL_ID),
        event.attributes.get(_LEGACY_CALL_ID),
    ]
    for value in candidates:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def call_name(event: Event) -> str:
    name = event.attributes.get(ATTR_SEMANTIC_TOOL_NAME)
    if isinstance(name, str) and name.strip():
        return name.strip()
    if isinstance(event.event_type, ToolCall):
        return event.event_type.name
    return event.kind


def link_tool_results(events: list[Event]) -> list[Event]:
    linked = list(events)
    call_index_by_id: dict[str, int] = {}
    call_indexes: list[int] = []

    for idx, event in enumerate(linked):
        if event.kind not in TOOL_CALL_TYPES:
            continue
        call_id = event.attributes.get(ATTR_SEMANTIC_CALL_ID)
        if not isinstance(call_id, str) or not call_id.strip():
            call_id = f"{event.event_id}:call"
            linked[idx] = event.model_copy(
                update={"attributes": {**event.attributes, ATTR_SEMANTIC_CALL_ID: call_id}}
            )
        call_index_by_id.setdefault(call_id, idx)
        call_indexes.append(idx)

    matched_calls: set[int] = set()
    pending: list[int] = []

    # Phase 1: explicit ids.
    for idx, event in enumerate(linked):
        if not isinstance(event.event_type, ToolResult):
            continue
        call_id = _explicit_call_id(event)
        if call_id is None:
            pending.append(idx)
            continue
        call_idx = call_index_by_id.get(call_id)
        if call_idx is None or call_idx in matched_calls:
            continue
        matched_calls.add(call_idx)
        linked[idx] = _bind(event, linked[call_idx], call_id, "explicit")

    # Phase 2: earliest unmatched preceding call with the same name.
    for idx in pending:
        event = linked[idx]
        wanted = event.event_type.name.strip()
        for call_idx in call_indexes:
            if call_idx >= idx:
                break
            if call_idx in matched_calls:
                continue
            if wanted and call_name(linked[call_idx]) != wanted:
                continue
            matched_calls.add(call_idx)
            call_id = linked[call_idx].attributes[ATTR_SEMANTIC_CALL_ID]
            linked[idx] = _bind(event, linked[call_idx], call_id, "fifo")
            break

    return linked


def _bind(result: Event, call: Event, call_id: str, method: str) -> Event:
    name = result.event_type.name.strip() or call_name(call)
    attributes = {
        **result.attributes,
        ATTR_SEMANTIC_CALL_ID: call_id,
        ATTR_SEMANTIC_TOOL_NAME: result.attributes.get(ATTR_SEMANTIC_TOOL_NAME) or call_name(call),
        ATTR_SEMANTIC_TOOL_KIND: result.attributes.get(ATTR_SEMANTIC_TOOL_KIND) or infer_tool_kind(call_name(call)),
        ATTR_LINKING_METHOD: method,
    }
    event_type = ToolResult(name=name, is_error=result.event_type.is_error, call_id=call_id)
    return result.model_copy(update={"event_type": event_type, "attributes": attributes})
