"""Turn adapter output into a canonical, balanced ``Session``."""
from __future__ import annotations

import hashlib
import heapq
import logging
import time
from collections import Counter
from typing import Any, Iterable

from hailtrace.models import Agent, Custom, Event, Session, SessionContext, TaskEnd, compute_stats
from hailtrace.observability import otel
from hailtrace.parsers.common import AdapterOutput, RawTranscript, SessionMetadata
from hailtrace.parsers.errors import AdapterError, EmptyTranscriptError, HailParseError, InvalidParserHintError
from hailtrace.parsers.linking import link_tool_results
from hailtrace.parsers.platforms import registry

logger = logging.getLogger("hailtrace.normalize")

ATTR_SYNTHETIC = "normalize.synthetic"
ATTR_ORPHAN_TASK_ID = "normalize.orphan_task_id"
ORPHAN_TASK_END_KIND = "orphan-task-end"
CONTEXT_SYNTHETIC_TASK_ENDS = "normalize.synthetic_task_ends"
CONTEXT_ORPHAN_TASK_ENDS = "normalize.orphan_task_ends"
CONTEXT_UNMAPPED_RAW_TYPES = "normalize.unmapped_raw_types"
CONTEXT_ADAPTERS = "normalize.adapters"

_UNMAPPED_CODES = {"unmapped_record", "unparseable_line"}


def merge_outputs(outputs: list[AdapterOutput]) -> list[Event]:
    """Interleave each output's linked events by timestamp.

    Source order inside one output is preserved; equal timestamps across
    outputs fall back to the order the outputs were supplied in.
    """
    streams = [_keyed(index, link_tool_results(output.events)) for index, output in enumerate(outputs)]
    return [item[3] for item in heapq.merge(*streams, key=lambda item: item[:3])]


def _keyed(index: int, events: list[Event]) -> list[tuple[Any, int, int, Event]]:
    return [(event.timestamp, index, position, event) for position, event in enumerate(events)]


def unique_event_ids(events: list[Event]) -> list[Event]:
    seen: set[str] = set()
    counts: Counter[str] = Counter()
    result: list[Event] = []
    for event in events:
        event_id = event.event_id
        if event_id in seen:
            while event_id in seen:
                counts[event.event_id] += 1
                event_id = f"{event.event_id}#{counts[event.event_id] + 1}"
            event = event.model_copy(update={"event_id": event_id})
        seen.add(event_id)
        result.append(event)
    return result


def _synthetic_end(task_id: str, anchor: Event) -> Event:
    return Event(
        event_id=f"{task_id}:synthetic-end",
        timestamp=anchor.timestamp,
        event_type=TaskEnd(),
        task_id=task_id,
        attributes={ATTR_SYNTHETIC: True},
    )


def _orphan_end(event: Event) -> Event:
    return event.model_copy(
        update={
            "event_type": Custom(kind=ORPHAN_TASK_END_KIND),
            "task_id": None,
            "attributes": {**event.attributes, ATTR_ORPHAN_TASK_ID: event.task_id},
        }
    )


def balance_task_boundaries(events: list[Event]) -> tuple[list[Event], list[str], list[str]]:
    """Pair every TaskStart with exactly one TaskEnd.

    Returns the balanced events, the ids that needed a synthetic end and the
    ids of ends that matched no open task. A task started twice without an
    end is closed right before its second start; tasks still open at the end
    of the stream are closed innermost first, stamped with the last event's
    timestamp. An orphan or duplicate TaskEnd becomes a
    ``Custom(kind="orphan-task-end")`` event outside any task.
    """
    open_tasks: dict[str, Event] = {}
    closed: list[str] = []
    orphaned: list[str] = []
    balanced: list[Event] = []

    for event in events:
        task_id = event.task_id
        if task_id and event.kind == "TaskStart":
            if task_id in open_tasks:
                balanced.append(_synthetic_end(task_id, balanced[-1]))
                closed.append(task_id)
            open_tasks[task_id] = event
        elif task_id and event.kind == "TaskEnd":
            if open_tasks.pop(task_id, None) is None:
                logger.debug("TaskEnd %s for %s has no open TaskStart", event.event_id, task_id)
                orphaned.append(task_id)
                event = _orphan_end(event)
        balanced.append(event)

    if open_tasks and balanced:
        last = balanced[-1]
        for task_id in reversed(list(open_tasks)):
            balanced.append(_synthetic_end(task_id, last))
            closed.append(task_id)
    return balanced, closed, orphaned


def _merge_metadata(outputs: list[AdapterOutput]) -> SessionMetadata:
    merged = SessionMetadata()
    tags: list[str] = []
    related: list[str] = []
    attributes: dict[str, Any] = {}
    for output in outputs:
        metadata = output.metadata
        for field in ("session_id", "provider", "model", "tool", "tool_version", "title", "description", "created_at"):
            if getattr(merged, field) is None and getattr(metadata, field) is not None:
                setattr(merged, field, getattr(metadata, field))
        if metadata.updated_at is not None and (merged.updated_at is None or metadata.updated_at > merged.updated_at):
            merged.updated_at = metadata.updated_at
        tags.extend(tag for tag in metadata.tags if tag not in tags)
        related.extend(value for value in metadata.related_session_ids if value not in related)
        for key, value in metadata.attributes.items():
            attributes.setdefault(key, value)
    merged.tags = tags
    merged.related_session_ids = related
    merged.attributes = attributes
    return merged


def _derived_session_id(adapter: str, events: list[Event]) -> str:
    first = events[0]
    digest = hashlib.sha256(f"{adapter}|{first.event_id}|{first.timestamp.isoformat()}".encode("utf-8"))
    return f"{adapter}-{digest.hexdigest()[:16]}"


def _unmapped_counts(outputs: Iterable[AdapterOutput]) -> dict[str, int]:
    counts: Counter[str] = Counter()
    for output in outputs:
        for diagnostic in output.diagnostics:
            if diagnostic.code in _UNMAPPED_CODES:
                counts[diagnostic.raw_type or "unknown"] += 1
    return {key: counts[key] for key in sorted(counts)}


def build_session(outputs: list[AdapterOutput], *, session_id: str | None = None) -> Session:
    """Link, merge, balance and summarize adapter output into one session."""
    if not outputs:
        raise EmptyTranscriptError("unknown", "no adapter output supplied")
    adapter = outputs[0].adapter
    if not any(output.events for output in outputs):
        raise EmptyTranscriptError(adapter)

    events, closed, orphaned = balance_task_boundaries(merge_outputs(outputs))
    events = unique_event_ids(events)
    metadata = _merge_metadata(outputs)

    attributes = dict(metadata.attributes)
    if len(outputs) > 1:
        attributes[CONTEXT_ADAPTERS] = [output.adapter for output in outputs]
    if closed:
        attributes[CONTEXT_SYNTHETIC_TASK_ENDS] = closed
        logger.info("%s: closed %d unterminated task(s): %s", adapter, len(closed), ", ".join(closed))
        otel.record_synthetic_task_end(adapter, len(closed))
    if orphaned:
        attributes[CONTEXT_ORPHAN_TASK_ENDS] = orphaned
        logger.warning("%s: %d TaskEnd(s) without an open task: %s", adapter, len(orphaned), ", ".join(orphaned))
    unmapped = _unmapped_counts(outputs)
    if unmapped:
        attributes[CONTEXT_UNMAPPED_RAW_TYPES] = unmapped
        for raw_type, count in unmapped.items():
            otel.record_unmapped_record(adapter, raw_type, count)

    context = SessionContext(
        title=metadata.title,
        description=metadata.description,
        tags=metadata.tags,
        created_at=metadata.created_at or events[0].timestamp,
        updated_at=metadata.updated_at or events[-1].timestamp,
        related_session_ids=metadata.related_session_ids,
        attributes=attributes,
    )
    agent = Agent(
        provider=metadata.provider or "unknown",
        model=metadata.model or "unknown",
        tool=metadata.tool or adapter,
        tool_version=metadata.tool_version,
    )
    return Session(
        session_id=session_id or metadata.session_id or _derived_session_id(adapter, events),
        agent=agent,
        context=context,
        events=events,
        stats=compute_stats(events),
    )


def parse_transcript(raw: RawTranscript, adapter: str) -> Session:
    """Run one adapter and the normalization pipeline, reporting failures as ``HailParseError``."""
    if adapter not in registry.ADAPTER_IDS:
        raise InvalidParserHintError(adapter, list(registry.ADAPTER_IDS))

    started = time.perf_counter()
    with otel.start_span("hailtrace.parse", {"hailtrace.adapter": adapter, "hailtrace.filename": raw.filename}):
        try:
            output = registry.run_adapter(raw, adapter)
            session = build_session([output])
        except HailParseError as exc:
            logger.warning("%s adapter failed on %s: %s", adapter, raw.filename or "<memory>", exc)
            otel.record_adapter_failure(adapter, type(exc).__name__)
            raise
        except Exception as exc:
            logger.warning("%s adapter failed on %s: %s", adapter, raw.filename or "<memory>", exc)
            otel.record_adapter_failure(adapter, type(exc).__name__)
            raise AdapterError(adapter, str(exc) or type(exc).__name__) from exc

    otel.record_parse(adapter, (time.perf_counter() - started) * 1000, session.stats.event_count)
    return session
