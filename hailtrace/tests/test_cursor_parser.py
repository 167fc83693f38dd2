import json
import unittest

from hailtrace.models import ATTR_SEMANTIC_CALL_ID, JsonBlock, TextBlock
from hailtrace.parsers.common import RawTranscript
from hailtrace.parsers.errors import AdapterError
from hailtrace.parsers.platforms.cursor.parser import (
    extract_model_from_signature,
    parse,
    parse_tool_result,
    resolve_tool_name,
)

CREATED_MS = 1_771_236_000_000


def _composer(composer_id: str, conversation: list[dict], **extra) -> tuple[str, str]:
    payload = {"composerId": composer_id, "conversation": conversation, **extra}
    return f"composerData:{composer_id}", json.dumps(payload)


class CursorHelperTests(unittest.TestCase):
    def test_resolve_tool_name(self) -> None:
        self.assertEqual(resolve_tool_name(15, None), "run_terminal_cmd")
        self.assertEqual(resolve_tool_name(5, "whatever"), "read_file")
        self.assertEqual(resolve_tool_name(99, "custom_tool"), "custom_tool")
        self.assertEqual(resolve_tool_name(99, None), "tool_99")
        self.assertEqual(resolve_tool_name(None, None), "unknown_tool")

    def test_extract_model_from_signature(self) -> None:
        self.assertEqual(extract_model_from_signature("claude-3-5-sonnet"), "claude-sonnet")
        self.assertEqual(extract_model_from_signature("gpt-4o"), "gpt-4")
        self.assertEqual(extract_model_from_signature("o3-mini"), "o3-mini")
        self.assertIsNone(extract_model_from_signature("QUJDREVGR0hJSktMTU5PUFFSU1RVVldYWVo="))
        self.assertIsNone(extract_model_from_signature("mystery"))

    def test_parse_tool_result(self) -> None:
        edit = parse_tool_result("edit_file", json.dumps({"diff": {"chunks": []}, "isApplied": True}))
        self.assertIsInstance(edit.blocks[0], TextBlock)
        self.assertIsInstance(edit.blocks[1], JsonBlock)
        terminal = parse_tool_result("run_terminal_cmd", json.dumps({"output": "ok\n"}))
        self.assertEqual(terminal.blocks[0].code, "ok\n")
        self.assertEqual(parse_tool_result("grep_search", "  plain text ").first_text(), "plain text")


class CursorParserTests(unittest.TestCase):
    def test_conversation_maps_bubbles_and_wraps_tools_in_tasks(self) -> None:
        rows = [
            _composer(
                "comp-1",
                [
                    {"type": 1, "bubbleId": "b1", "text": "Run the tests"},
                    {"type": 2, "bubbleId": "b2", "thinking": {"text": "Use the terminal", "signature": "claude-sonnet"}},
                    {
                        "type": 2,
                        "bubbleId": "b3",
                        "toolFormerData": {"tool": 15, "status": "completed", "rawArgs": json.dumps({"command": "pytest"}), "result": json.dumps({"output": "1 passed"})},
                        "timingInfo": {"clientStartTime": CREATED_MS + 5000, "clientEndTime": CREATED_MS + 6500},
                    },
                    {"type": 2, "bubbleId": "b4", "text": "All green."},
                    {"type": 7, "bubbleId": "b5"},
                ],
                name="Testing",
                createdAt=CREATED_MS,
                isAgentic=True,
            )
        ]
        output = parse(RawTranscript(filename="state.vscdb", rows=rows))

        ids = [event.event_id for event in output.events]
        self.assertEqual(
            ids,
            ["b1-user", "b2-thinking", "b3-task-start", "b3-call", "b3-result", "b3-task-end", "b4-agent", "b5-unknown"],
        )
        call = output.events[3]
        self.assertEqual(call.kind, "ShellCommand")
        self.assertEqual(call.task_id, "cursor-task-b3")
        self.assertEqual(call.duration_ms, 1500)
        self.assertEqual(call.attributes[ATTR_SEMANTIC_CALL_ID], "b3-call")
        self.assertEqual(output.events[5].event_type.summary, "run_terminal_cmd completed")
        # Untimed bubbles are spaced 100ms apart from the composer's creation time.
        self.assertEqual((output.events[1].timestamp - output.events[0].timestamp).total_seconds(), 0.1)
        self.assertEqual((output.events[3].timestamp - output.events[0].timestamp).total_seconds(), 5.0)

        self.assertEqual(output.metadata.session_id, "comp-1")
        self.assertEqual(output.metadata.model, "claude-sonnet")
        self.assertEqual(output.metadata.provider, "anthropic")
        self.assertEqual(output.metadata.title, "Testing")
        self.assertTrue(output.metadata.attributes["is_agentic"])

    def test_v3_headers_resolve_bubble_rows_and_latest_composer_wins(self) -> None:
        rows = [
            _composer("old", [{"type": 1, "bubbleId": "x", "text": "old"}], lastUpdatedAt=CREATED_MS),
            _composer("new", [], _v=3, fullConversationHeadersOnly=[{"bubbleId": "h1"}, {"bubbleId": "missing"}]),
            ("bubbleId:new:h1", json.dumps({"type": 1, "bubbleId": "h1", "text": "from bubble row"})),
            (
                "composer.composerData",
                json.dumps({"allComposers": [{"composerId": "new", "name": "Indexed", "lastUpdatedAt": CREATED_MS + 60_000}]}),
            ),
        ]
        output = parse(RawTranscript(filename="state.vscdb", rows=rows))
        self.assertEqual(output.metadata.session_id, "new")
        self.assertEqual(output.metadata.title, "Indexed")
        self.assertEqual(output.events[0].content.first_text(), "from bubble row")

    def test_store_without_conversations_is_an_adapter_error(self) -> None:
        with self.assertRaises(AdapterError):
            parse(RawTranscript(filename="state.vscdb", rows=[("composerData:empty", "not json")]))


if __name__ == "__main__":
    unittest.main()
