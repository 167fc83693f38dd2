import unittest
from datetime import datetime, timezone

from hailtrace.hail_jsonl import to_jsonl
from hailtrace.models import (
    ATTR_SOURCE_RAW_TYPE,
    ATTR_SOURCE_SCHEMA_VERSION,
    Agent,
    Content,
    Event,
    Session,
    SessionContext,
    UserMessage,
)
from hailtrace.parsers.common import RawTranscript
from hailtrace.parsers.errors import AdapterError
from hailtrace.parsers.platforms.hail.parser import parse

TS = datetime(2026, 2, 16, 10, 0, 0, tzinfo=timezone.utc)


def _session(context: SessionContext) -> Session:
    return Session(
        session_id="hail-1",
        agent=Agent(provider="openai", model="gpt-5", tool="codex", tool_version="0.40.0"),
        context=context,
        events=[Event(event_id="e1", timestamp=TS, event_type=UserMessage(), content=Content.text("hi"))],
    )


class HailParserTests(unittest.TestCase):
    def test_jsonl_is_reingested_with_metadata(self) -> None:
        session = _session(SessionContext(title="t", tags=["x"], created_at=TS, updated_at=TS, related_session_ids=["parent"]))
        output = parse(RawTranscript(filename="s.hail.jsonl", text=to_jsonl(session)))

        self.assertEqual(output.adapter, "hail")
        self.assertEqual(output.metadata.session_id, "hail-1")
        self.assertEqual(output.metadata.tool, "codex")
        self.assertEqual(output.metadata.tool_version, "0.40.0")
        self.assertEqual(output.metadata.created_at, TS)
        self.assertEqual(output.metadata.related_session_ids, ["parent"])
        attributes = output.events[0].attributes
        self.assertEqual(attributes[ATTR_SOURCE_SCHEMA_VERSION], "hail-1.0.0")
        self.assertEqual(attributes[ATTR_SOURCE_RAW_TYPE], "event")

    def test_epoch_context_times_are_treated_as_absent(self) -> None:
        output = parse(RawTranscript(filename="s.hail.jsonl", text=to_jsonl(_session(SessionContext()))))
        self.assertIsNone(output.metadata.created_at)
        self.assertIsNone(output.metadata.updated_at)

    def test_whole_session_json_document_is_accepted(self) -> None:
        session = _session(SessionContext(title="doc"))
        output = parse(RawTranscript(filename="s.json", text=session.model_dump_json()))
        self.assertEqual(output.metadata.title, "doc")
        self.assertEqual(len(output.events), 1)

    def test_other_input_is_an_adapter_error(self) -> None:
        with self.assertRaises(AdapterError):
            parse(RawTranscript(filename="s.jsonl", text='{"type":"session_meta"}'))


if __name__ == "__main__":
    unittest.main()
