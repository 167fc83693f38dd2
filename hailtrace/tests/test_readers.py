import json
import tempfile
import unittest
from pathlib import Path

import aiosqlite

from hailtrace.readers import (
    companion_global_store,
    discover_claude_subagents,
    load_claude_session,
    load_transcript,
    read_cursor_store,
    read_opencode_storage,
)


async def _create_store(path: Path, rows: list[tuple[str, object]], table: str = "cursorDiskKV") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(path) as db:
        await db.execute(f"CREATE TABLE {table} (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
        await db.executemany(f"INSERT INTO {table} (key, value) VALUES (?, ?)", rows)
        await db.commit()


def _write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


def _claude_lines(session_id: str, text: str, ts: str) -> str:
    return json.dumps(
        {
            "type": "user",
            "uuid": f"{session_id}-u1",
            "sessionId": session_id,
            "timestamp": ts,
            "message": {"role": "user", "content": text},
        }
    )


class CursorStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_rows_are_read_and_blobs_decoded(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = Path(tmp) / "state.vscdb"
            await _create_store(
                store,
                [
                    ("composerData:c1", '{"composerId":"c1"}'),
                    ("bubbleId:c1:b1", b'{"type":1,"text":"hi"}'),
                    ("unrelated:key", "ignored"),
                ],
            )
            raw = await read_cursor_store(store)

        self.assertEqual(raw.schema_hint, "cursor")
        self.assertEqual(raw.filename, "state.vscdb")
        self.assertEqual(
            sorted(raw.rows),
            [("bubbleId:c1:b1", '{"type":1,"text":"hi"}'), ("composerData:c1", '{"composerId":"c1"}')],
        )

    async def test_workspace_store_pulls_in_global_rows(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            user_dir = Path(tmp) / "User"
            workspace = user_dir / "workspaceStorage" / "abc123" / "state.vscdb"
            await _create_store(workspace, [("composer.composerData", '{"allComposers":[]}')], table="ItemTable")
            await _create_store(user_dir / "globalStorage" / "state.vscdb", [("bubbleId:c1:b1", "{}")])

            self.assertEqual(companion_global_store(workspace), user_dir / "globalStorage" / "state.vscdb")
            raw = await load_transcript(workspace)

        self.assertEqual([key for key, _ in raw.rows], ["composer.composerData", "bubbleId:c1:b1"])

    def test_non_workspace_store_has_no_companion(self) -> None:
        self.assertIsNone(companion_global_store(Path("/data/cursor/state.vscdb")))


class OpenCodeStorageTests(unittest.TestCase):
    def test_tree_is_assembled_in_creation_order(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            session_dir = Path(tmp) / "storage" / "session"
            info_path = session_dir / "info" / "ses_1.json"
            _write_json(info_path, {"id": "ses_1", "title": "demo"})
            _write_json(session_dir / "message" / "ses_1" / "msg_b.json", {"id": "msg_b", "time": {"created": 2000}})
            _write_json(session_dir / "message" / "ses_1" / "msg_a.json", {"id": "msg_a", "time": {"created": 1000}})
            _write_json(session_dir / "part" / "ses_1" / "msg_a" / "prt_1.json", {"id": "prt_1", "type": "text"})
            (session_dir / "part" / "ses_1" / "msg_a" / "prt_2.json").write_text("{broken", encoding="utf-8")

            raw = read_opencode_storage(info_path)

        self.assertEqual(raw.schema_hint, "opencode")
        self.assertEqual(raw.tree["info"]["title"], "demo")
        messages = raw.tree["messages"]
        self.assertEqual([message["info"]["id"] for message in messages], ["msg_a", "msg_b"])
        self.assertEqual([part["id"] for part in messages[0]["parts"]], ["prt_1"])
        self.assertEqual(messages[1]["parts"], [])

    def test_info_without_id_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            info_path = Path(tmp) / "session" / "info" / "x.json"
            _write_json(info_path, {"title": "no id"})
            with self.assertRaises(ValueError):
                read_opencode_storage(info_path)


class ClaudeSessionTests(unittest.TestCase):
    def test_subagents_are_discovered_and_merged(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            project = Path(tmp) / ".claude" / "projects" / "repo"
            main = project / "sess-1.jsonl"
            main.parent.mkdir(parents=True)
            main.write_text(_claude_lines("sess-1", "Plan the work", "2026-02-16T10:00:00Z"), encoding="utf-8")
            own = project / "sess-1" / "subagents" / "agent-a1.jsonl"
            own.parent.mkdir(parents=True)
            own.write_text(_claude_lines("sess-1", "Search the repo", "2026-02-16T10:00:05Z"), encoding="utf-8")
            shared = project / "subagents"
            shared.mkdir()
            (shared / "agent-b2.jsonl").write_text(
                _claude_lines("sess-1", "Read the docs", "2026-02-16T10:00:07Z"), encoding="utf-8"
            )
            (shared / "notes.jsonl").write_text("", encoding="utf-8")

            found = discover_claude_subagents(main)
            session = load_claude_session(main)

        self.assertEqual([path.name for path in found], ["agent-a1.jsonl", "agent-b2.jsonl"])
        self.assertEqual(session.session_id, "sess-1")
        self.assertEqual(session.stats.task_count, 2)
        kinds = [event.kind for event in session.events]
        self.assertEqual(kinds.count("TaskStart"), 2)
        self.assertEqual(kinds.count("TaskEnd"), 2)


class LoadTranscriptTests(unittest.IsolatedAsyncioTestCase):
    async def test_schema_hint_follows_the_path(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            cases = {
                root / "out" / "s.hail.jsonl": "hail",
                root / ".codex" / "sessions" / "rollout.jsonl": "codex",
                root / ".gemini" / "tmp" / "chat.json": "gemini",
                root / ".claude" / "projects" / "x.jsonl": "claude-code",
                root / "misc" / "log.jsonl": None,
            }
            for path, expected in cases.items():
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text("{}\n", encoding="utf-8")
                raw = await load_transcript(path)
                self.assertEqual(raw.schema_hint, expected, path)
                self.assertEqual(raw.text, "{}\n")


if __name__ == "__main__":
    unittest.main()
