import json
import unittest

from hailtrace.models import ATTR_SEMANTIC_CALL_ID, ATTR_SOURCE_SCHEMA_VERSION, CodeBlock
from hailtrace.parsers.common import RawTranscript
from hailtrace.parsers.platforms.claude_code.parser import parse, parse_subagent


def _raw(records: list[dict], filename: str = "session.jsonl") -> RawTranscript:
    return RawTranscript(filename=filename, text="\n".join(json.dumps(record) for record in records))


def _assistant(uuid: str, ts: str, content: list[dict], usage: dict | None = None, message_id: str = "msg_1") -> dict:
    message: dict = {"id": message_id, "role": "assistant", "model": "claude-sonnet-4", "content": content}
    if usage:
        message["usage"] = usage
    return {"type": "assistant", "uuid": uuid, "sessionId": "sess-1", "timestamp": ts, "message": message}


def _user(uuid: str, ts: str, content) -> dict:
    return {"type": "user", "uuid": uuid, "sessionId": "sess-1", "timestamp": ts, "message": {"role": "user", "content": content}}


class ClaudeCodeParserTests(unittest.TestCase):
    def test_messages_tools_and_results_map_to_canonical_events(self) -> None:
        output = parse(
            _raw(
                [
                    _user("u1", "2026-02-16T10:00:00Z", "Fix the README <system-reminder>ignore</system-reminder>"),
                    _assistant(
                        "a1",
                        "2026-02-16T10:00:01Z",
                        [
                            {"type": "thinking", "thinking": "Look first."},
                            {"type": "text", "text": "Reading it."},
                            {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"file_path": "/repo/README.md"}},
                        ],
                        usage={"input_tokens": 10, "output_tokens": 20},
                    ),
                    _user(
                        "u2",
                        "2026-02-16T10:00:02Z",
                        [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "     1→# Title\n     2→body\n"}],
                    ),
                ]
            )
        )

        kinds = [event.kind for event in output.events]
        self.assertEqual(kinds, ["UserMessage", "Thinking", "AgentMessage", "FileRead", "ToolResult"])
        self.assertEqual(output.events[0].content.first_text(), "Fix the README")
        self.assertEqual(output.events[2].attributes["input_tokens"], 10)
        self.assertEqual(output.events[3].event_type.path, "/repo/README.md")
        self.assertEqual(output.events[3].attributes[ATTR_SEMANTIC_CALL_ID], "toolu_1")

        result = output.events[4]
        self.assertEqual(result.event_type.name, "Read")
        self.assertEqual(result.event_type.call_id, "toolu_1")
        block = result.content.blocks[0]
        self.assertIsInstance(block, CodeBlock)
        self.assertEqual(block.language, "markdown")
        self.assertEqual(block.start_line, 1)

        self.assertEqual(output.metadata.session_id, "sess-1")
        self.assertEqual(output.metadata.model, "claude-sonnet-4")
        self.assertEqual(output.metadata.title, "Fix the README")
        self.assertTrue(all(e.attributes[ATTR_SOURCE_SCHEMA_VERSION] == "claude-code-jsonl-v1" for e in output.events))

    def test_usage_is_counted_once_per_message_id(self) -> None:
        usage = {"input_tokens": 5, "output_tokens": 6}
        output = parse(
            _raw(
                [
                    _assistant("a1", "2026-02-16T10:00:00Z", [{"type": "text", "text": "one"}], usage=usage),
                    _assistant("a2", "2026-02-16T10:00:01Z", [{"type": "text", "text": "two"}], usage=usage),
                ]
            )
        )
        tokens = [event.attributes.get("input_tokens") for event in output.events]
        self.assertEqual(tokens, [5, None])

    def test_edit_builds_a_diff(self) -> None:
        output = parse(
            _raw(
                [
                    _assistant(
                        "a1",
                        "2026-02-16T10:00:00Z",
                        [{"type": "tool_use", "id": "t1", "name": "Edit", "input": {"file_path": "a.py", "old_string": "x = 1", "new_string": "x = 2"}}],
                    )
                ]
            )
        )
        edit = output.events[0].event_type
        self.assertEqual(edit.type, "FileEdit")
        self.assertIn("-x = 1", edit.diff)
        self.assertIn("+x = 2", edit.diff)

    def test_tool_without_id_gets_derived_call_id(self) -> None:
        output = parse(
            _raw(
                [
                    _assistant(
                        "a1",
                        "2026-02-16T10:00:00Z",
                        [
                            {"type": "tool_use", "name": "Bash", "input": {"command": "ls"}},
                            {"type": "tool_use", "name": "Bash", "input": {"command": "pwd"}},
                        ],
                    )
                ]
            )
        )
        self.assertEqual([e.attributes[ATTR_SEMANTIC_CALL_ID] for e in output.events], ["Bash#1", "Bash#2"])
        self.assertEqual(output.events[0].event_id, "a1")
        self.assertEqual(output.events[1].event_id, "a1-1")

    def test_unknown_records_and_bad_lines_become_custom_with_diagnostics(self) -> None:
        raw = RawTranscript(
            filename="session.jsonl",
            text="\n".join(
                [
                    json.dumps(_user("u1", "2026-02-16T10:00:00Z", "hello")),
                    "{broken",
                    json.dumps({"type": "mystery", "uuid": "m1", "timestamp": "not a time"}),
                ]
            ),
        )
        output = parse(raw)
        self.assertEqual([e.kind for e in output.events], ["UserMessage", "Custom", "Custom"])
        self.assertEqual(output.events[1].event_type.kind, "unparseable-line")
        self.assertEqual(output.events[2].event_type.kind, "mystery")
        # Unparseable timestamps reuse the previous event's time.
        self.assertEqual(output.events[2].timestamp, output.events[0].timestamp)
        self.assertEqual([d.code for d in output.diagnostics], ["unparseable_line", "unmapped_record"])
        self.assertEqual(output.diagnostics[0].line, 2)

    def test_summary_record_sets_title_and_system_message(self) -> None:
        output = parse(
            _raw(
                [
                    {"type": "summary", "summary": "Refactor session", "leafUuid": "leaf-1"},
                    _user("u1", "2026-02-16T10:00:00Z", "start"),
                ]
            )
        )
        self.assertEqual(output.events[0].kind, "SystemMessage")
        self.assertEqual(output.metadata.title, "Refactor session")

    def test_subagent_transcript_is_wrapped_in_a_task(self) -> None:
        output = parse_subagent(
            _raw(
                [
                    {**_user("u1", "2026-02-16T10:00:00Z", "Explore"), "agentId": "agent-7"},
                    _assistant("a1", "2026-02-16T10:00:03Z", [{"type": "text", "text": "Found it."}]),
                ],
                filename="agent-7.jsonl",
            )
        )
        kinds = [event.kind for event in output.events]
        self.assertEqual(kinds, ["TaskStart", "UserMessage", "AgentMessage", "TaskEnd"])
        self.assertTrue(all(event.task_id == "agent-7" for event in output.events))
        self.assertEqual(output.events[1].event_id, "agent-7:u1")
        self.assertEqual(output.events[-1].event_type.summary, "2 events, claude-sonnet-4")
        self.assertEqual(output.events[1].attributes["subagent_id"], "agent-7")

    def test_subagent_task_boundaries_carry_ids_and_duration(self) -> None:
        output = parse_subagent(
            _raw(
                [
                    _user("u1", "2026-02-16T10:00:00Z", "Explore"),
                    _assistant("a1", "2026-02-16T10:00:03.250Z", [{"type": "text", "text": "Found it."}]),
                ],
                filename="agent-7.jsonl",
            ),
            task_id="agent-7",
        )
        start, end = output.events[0], output.events[-1]
        self.assertEqual((start.event_id, end.event_id), ("agent-7-start", "agent-7-end"))
        self.assertIsNone(start.duration_ms)
        self.assertEqual(end.duration_ms, 3250)
        self.assertEqual(start.attributes["model"], "claude-sonnet-4")
        self.assertTrue(end.attributes["merged_subagent"])


if __name__ == "__main__":
    unittest.main()
