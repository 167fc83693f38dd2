import io
import json
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import patch

from hailtrace.hail_jsonl import from_jsonl
from hailtrace.scripts import convert

CODEX_RECORDS = [
    {"timestamp": "2026-02-16T10:00:00Z", "type": "session_meta", "payload": {"id": "r-1"}},
    {"timestamp": "2026-02-16T10:00:01Z", "type": "event_msg", "payload": {"type": "user_message", "message": "hi"}},
    {"timestamp": "2026-02-16T10:00:02Z", "type": "event_msg", "payload": {"type": "agent_message", "message": "hello"}},
]


def _write_codex(directory: Path) -> Path:
    path = directory / "rollout.jsonl"
    path.write_text("\n".join(json.dumps(record) for record in CODEX_RECORDS), encoding="utf-8")
    return path


class ConvertScriptTests(unittest.TestCase):
    def setUp(self) -> None:
        patcher = patch.multiple(convert, initialize_observability=lambda: None, shutdown_observability=lambda: None)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_writes_hail_jsonl_to_output_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            source = _write_codex(Path(tmp))
            target = Path(tmp) / "out.hail.jsonl"
            code = convert.main([str(source), "-o", str(target), "--validate"])
            session = from_jsonl(target.read_text(encoding="utf-8"))

        self.assertEqual(code, 0)
        self.assertEqual(session.session_id, "r-1")
        self.assertEqual([event.kind for event in session.events], ["UserMessage", "AgentMessage"])

    def test_timeline_prints_one_line_per_item(self) -> None:
        stdout = io.StringIO()
        with tempfile.TemporaryDirectory() as tmp:
            source = _write_codex(Path(tmp))
            with redirect_stdout(stdout):
                code = convert.main([str(source), "--timeline"])

        self.assertEqual(code, 0)
        self.assertEqual(stdout.getvalue().splitlines(), ["UserMessage: hi", "AgentMessage: hello"])

    def test_missing_file_and_bad_hint_are_reported(self) -> None:
        stderr = io.StringIO()
        with tempfile.TemporaryDirectory() as tmp, redirect_stderr(stderr):
            self.assertEqual(convert.main([str(Path(tmp) / "absent.jsonl")]), 1)
            source = _write_codex(Path(tmp))
            self.assertEqual(convert.main([str(source), "--parser", "aider"]), 2)
        self.assertIn("unknown parser hint 'aider'", stderr.getvalue())


if __name__ == "__main__":
    unittest.main()
