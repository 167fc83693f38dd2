"""Structural checks for canonical sessions."""
from __future__ import annotations

from pydantic import BaseModel

from hailtrace.models import Session


class ValidationIssue(BaseModel):
    code: str  # "invalid_version" | "missing_field" | "empty_session" | "duplicate_event_id" | "out_of_order"
    message: str
    event_id: str | None = None


def _check_version(session: Session) -> list[ValidationIssue]:
    if session.version.startswith("hail-"):
        return []
    return [ValidationIssue(code="invalid_version", message=f"unsupported version {session.version!r}")]


def _check_required_fields(session: Session) -> list[ValidationIssue]:
    required = {
        "session_id": session.session_id,
        "agent.provider": session.agent.provider,
        "agent.tool": session.agent.tool,
    }
    return [
        ValidationIssue(code="missing_field", message=f"{field} is empty")
        for field, value in required.items()
        if not value.strip()
    ]


def _check_not_empty(session: Session) -> list[ValidationIssue]:
    if session.events:
        return []
    return [ValidationIssue(code="empty_session", message="session has no events")]


def _check_events(session: Session) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    seen: set[str] = set()
    previous = None
    for event in session.events:
        if event.event_id in seen:
            issues.append(
                ValidationIssue(
                    code="duplicate_event_id",
                    message=f"duplicate event id {event.event_id!r}",
                    event_id=event.event_id,
                )
            )
        seen.add(event.event_id)
        if previous is not None and event.timestamp < previous:
            issues.append(
                ValidationIssue(
                    code="out_of_order",
                    message=f"event {event.event_id!r} precedes the event before it",
                    event_id=event.event_id,
                )
            )
        previous = event.timestamp
    return issues


_VALIDATORS = (_check_version, _check_required_fields, _check_not_empty, _check_events)


def validate_session(session: Session) -> list[ValidationIssue]:
    """Collect every structural problem; an empty list means the session is valid."""
    issues: list[ValidationIssue] = []
    for validator in _VALIDATORS:
        issues.extend(validator(session))
    return issues
