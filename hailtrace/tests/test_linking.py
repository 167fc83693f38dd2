import unittest
from datetime import datetime, timezone

from hailtrace.models import ATTR_SEMANTIC_CALL_ID, ATTR_SEMANTIC_TOOL_NAME, Event, ToolCall, ToolResult
from hailtrace.parsers.linking import ATTR_LINKING_METHOD, link_tool_results

TS = datetime(2026, 2, 16, 10, 0, 0, tzinfo=timezone.utc)


def _call(event_id: str, name: str, call_id: str | None = None) -> Event:
    attributes = {ATTR_SEMANTIC_TOOL_NAME: name}
    if call_id:
        attributes[ATTR_SEMANTIC_CALL_ID] = call_id
    return Event(event_id=event_id, timestamp=TS, event_type=ToolCall(name=name), attributes=attributes)


def _result(event_id: str, name: str, call_id: str | None = None) -> Event:
    return Event(event_id=event_id, timestamp=TS, event_type=ToolResult(name=name, call_id=call_id))


class LinkToolResultsTests(unittest.TestCase):
    def test_explicit_ids_are_matched_first(self) -> None:
        events = link_tool_results(
            [
                _call("c1", "Bash", "a"),
                _call("c2", "Bash", "b"),
                _result("r2", "Bash", "b"),
                _result("r1", "Bash"),
            ]
        )
        self.assertEqual(events[2].event_type.call_id, "b")
        self.assertEqual(events[2].attributes[ATTR_LINKING_METHOD], "explicit")
        # Only c1 is left for the id-less result.
        self.assertEqual(events[3].event_type.call_id, "a")
        self.assertEqual(events[3].attributes[ATTR_LINKING_METHOD], "fifo")

    def test_fifo_binds_earliest_unmatched_call_with_same_name(self) -> None:
        events = link_tool_results(
            [
                _call("c1", "Read"),
                _call("c2", "Grep"),
                _call("c3", "Read"),
                _result("r1", "Read"),
                _result("r2", "Read"),
            ]
        )
        self.assertEqual(events[3].event_type.call_id, "c1:call")
        self.assertEqual(events[4].event_type.call_id, "c3:call")

    def test_nameless_result_adopts_call_name(self) -> None:
        events = link_tool_results([_call("c1", "list_dir"), _result("r1", "")])
        self.assertEqual(events[1].event_type.name, "list_dir")
        self.assertEqual(events[1].attributes[ATTR_SEMANTIC_CALL_ID], "c1:call")

    def test_result_before_any_call_stays_unlinked(self) -> None:
        events = link_tool_results([_result("r1", "Bash"), _call("c1", "Bash")])
        self.assertIsNone(events[0].event_type.call_id)
        self.assertNotIn(ATTR_LINKING_METHOD, events[0].attributes)

    def test_unknown_explicit_id_is_left_alone(self) -> None:
        events = link_tool_results([_call("c1", "Bash", "a"), _result("r1", "Bash", "zzz")])
        self.assertEqual(events[1].event_type.call_id, "zzz")
        self.assertNotIn(ATTR_LINKING_METHOD, events[1].attributes)


if __name__ == "__main__":
    unittest.main()
