"""Line-oriented HAIL serialization.

Layout::

    {"type":"header","version":"hail-1.0.0","session_id":...,"agent":{...},"context":{...}}
    {"type":"event","event_id":...,"timestamp":...,"event_type":{...},...}
    {"type":"stats","event_count":...,...}

The stats line is always written and is recomputed on read when absent.
"""
from __future__ import annotations

import json
from typing import Any, IO, Iterable, Optional

from pydantic import ValidationError

from hailtrace.models import Agent, Event, Session, SessionContext, Stats, compute_stats


class JsonlError(ValueError):
    def __init__(self, message: str, line: int | None = None) -> None:
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class MissingHeaderError(JsonlError):
    pass


class UnexpectedLineError(JsonlError):
    pass


class InvalidLineError(JsonlError):
    pass


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _header_record(session: Session) -> dict[str, Any]:
    return {
        "type": "header",
        "version": session.version,
        "session_id": session.session_id,
        "agent": session.agent.model_dump(mode="json", exclude_none=True),
        "context": session.context.model_dump(mode="json", exclude_none=True),
    }


def _event_record(event: Event) -> dict[str, Any]:
    return {"type": "event", **event.model_dump(mode="json", exclude_none=True)}


def _stats_record(stats: Stats) -> dict[str, Any]:
    return {"type": "stats", **stats.model_dump(mode="json")}


def iter_lines(session: Session) -> Iterable[str]:
    yield _dumps(_header_record(session))
    for event in session.events:
        yield _dumps(_event_record(event))
    yield _dumps(_stats_record(session.stats))


def to_jsonl(session: Session) -> str:
    """Serialize a session; identical sessions always produce identical text."""
    return "".join(f"{line}\n" for line in iter_lines(session))


def write_jsonl(session: Session, fp: IO[str]) -> None:
    for line in iter_lines(session):
        fp.write(line)
        fp.write("\n")


def _load_line(raw: str, line_no: int) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidLineError(f"invalid JSON: {exc.msg}", line_no) from exc
    if not isinstance(payload, dict):
        raise InvalidLineError("record is not a JSON object", line_no)
    return payload


def _meaningful_lines(text: str) -> Iterable[tuple[int, str]]:
    for index, raw in enumerate(text.splitlines(), start=1):
        if raw.strip():
            yield index, raw


def from_jsonl(text: str) -> Session:
    header: Optional[dict[str, Any]] = None
    events: list[Event] = []
    stats: Optional[Stats] = None

    for line_no, raw in _meaningful_lines(text):
        record = _load_line(raw, line_no)
        record_type = record.pop("type", None)
        if header is None:
            if record_type != "header":
                raise UnexpectedLineError(f"expected header, found {record_type!r}", line_no)
            header = record
            continue
        try:
            if record_type == "event":
                events.append(Event.model_validate(record))
            elif record_type == "stats":
                stats = Stats.model_validate(record)
            elif record_type == "header":
                # Concatenated exports repeat the header; the first one wins.
                continue
            else:
                raise UnexpectedLineError(f"unknown record type {record_type!r}", line_no)
        except ValidationError as exc:
            raise InvalidLineError(f"malformed {record_type} record: {exc.error_count()} error(s)", line_no) from exc

    if header is None:
        raise MissingHeaderError("no header record found")

    try:
        session = Session(
            version=header.get("version", ""),
            session_id=header.get("session_id", ""),
            agent=Agent.model_validate(header.get("agent") or {}),
            context=SessionContext.model_validate(header.get("context") or {}),
            events=events,
            stats=stats if stats is not None else compute_stats(events),
        )
    except ValidationError as exc:
        raise InvalidLineError(f"malformed header record: {exc.error_count()} error(s)", 1) from exc
    return session


def read_jsonl(fp: IO[str]) -> Session:
    return from_jsonl(fp.read())


def read_header_and_stats(text: str) -> tuple[dict[str, Any], Optional[Stats]]:
    """Return the header record and trailing stats without validating events."""
    lines = list(_meaningful_lines(text))
    if not lines:
        raise MissingHeaderError("no header record found")
    line_no, raw = lines[0]
    header = _load_line(raw, line_no)
    if header.pop("type", None) != "header":
        raise UnexpectedLineError("expected header", line_no)

    stats: Optional[Stats] = None
    if len(lines) > 1:
        _, last_raw = lines[-1]
        try:
            tail = json.loads(last_raw)
        except json.JSONDecodeError:
            tail = None
        if isinstance(tail, dict) and tail.pop("type", None) == "stats":
            try:
                stats = Stats.model_validate(tail)
            except ValidationError:
                stats = None
    return header, stats
