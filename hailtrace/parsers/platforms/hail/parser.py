"""Re-ingest canonical HAIL JSONL so normalized sessions can pass through the pipeline again."""
from __future__ import annotations

from pydantic import ValidationError

from hailtrace.config import HAIL_VERSION
from hailtrace.date_utils import EPOCH
from hailtrace.hail_jsonl import JsonlError, from_jsonl
from hailtrace.models import ATTR_SOURCE_RAW_TYPE, ATTR_SOURCE_SCHEMA_VERSION, Session
from hailtrace.parsers.common import AdapterOutput, RawTranscript, SessionMetadata
from hailtrace.parsers.errors import AdapterError

ADAPTER_ID = "hail"
SCHEMA_VERSION = HAIL_VERSION


def parse(raw: RawTranscript) -> AdapterOutput:
    try:
        session = from_jsonl(raw.text)
    except JsonlError as exc:
        # A whole session may also arrive as one JSON document.
        try:
            session = Session.model_validate_json(raw.text)
        except ValidationError:
            raise AdapterError(ADAPTER_ID, f"input is neither HAIL JSONL nor HAIL JSON: {exc}") from exc

    events = []
    for event in session.events:
        attributes = dict(event.attributes)
        attributes.setdefault(ATTR_SOURCE_SCHEMA_VERSION, session.version or SCHEMA_VERSION)
        attributes.setdefault(ATTR_SOURCE_RAW_TYPE, "event")
        events.append(event.model_copy(update={"attributes": attributes}))

    context = session.context
    metadata = SessionMetadata(
        session_id=session.session_id,
        provider=session.agent.provider,
        model=session.agent.model,
        tool=session.agent.tool,
        tool_version=session.agent.tool_version,
        title=context.title,
        description=context.description,
        tags=list(context.tags),
        # EPOCH marks a context written without real times.
        created_at=None if context.created_at == EPOCH else context.created_at,
        updated_at=None if context.updated_at == EPOCH else context.updated_at,
        related_session_ids=list(context.related_session_ids),
        attributes=dict(context.attributes),
    )
    return AdapterOutput(adapter=ADAPTER_ID, events=events, metadata=metadata)
