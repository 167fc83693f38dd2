"""Upstream readers that turn files on disk into ``RawTranscript`` inputs.

These are the only places that touch the file system; the adapters and the
normalization pipeline work on already-loaded data.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import aiosqlite

from hailtrace.models import Session
from hailtrace.parsers.common import RawTranscript
from hailtrace.parsers.normalize import build_session
from hailtrace.parsers.platforms.claude_code import parser as claude_code_parser

logger = logging.getLogger("hailtrace.readers")

CURSOR_TABLES = ("cursorDiskKV", "ItemTable")
_SUBAGENT_PREFIXES = ("agent-", "agent_", "subagent-", "subagent_")


def read_text_transcript(path: Path | str, schema_hint: str | None = None) -> RawTranscript:
    path = Path(path)
    return RawTranscript(
        filename=path.name,
        text=path.read_text(encoding="utf-8", errors="replace"),
        schema_hint=schema_hint,
    )


def _load_json_dict(path: Path) -> dict[str, Any] | None:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("Skipping unreadable JSON file %s: %s", path, exc)
        return None
    return raw if isinstance(raw, dict) else None


def _created_ms(node: dict[str, Any]) -> int:
    time = node.get("time")
    if isinstance(time, dict) and isinstance(time.get("created"), (int, float)):
        return int(time["created"])
    return 0


def read_opencode_storage(session_info_path: Path | str) -> RawTranscript:
    """Assemble an OpenCode part tree from its on-disk storage layout.

    ``session_info_path`` points at ``storage/session/info/<id>.json``; messages
    live under ``storage/session/message/<id>/`` and parts under
    ``storage/session/part/<id>/<message id>/``. Unreadable message and part
    files are skipped.
    """
    info_path = Path(session_info_path)
    info = json.loads(info_path.read_text(encoding="utf-8"))
    if not isinstance(info, dict) or not info.get("id"):
        raise ValueError(f"OpenCode session info has no id: {info_path}")

    session_dir = info_path.parent.parent
    session_id = str(info["id"])
    message_dir = session_dir / "message" / session_id
    part_dir = session_dir / "part" / session_id

    messages: list[dict[str, Any]] = []
    if message_dir.is_dir():
        for message_file in sorted(message_dir.glob("*.json")):
            message = _load_json_dict(message_file)
            if message is not None:
                messages.append(message)
    messages.sort(key=_created_ms)

    tree_messages: list[dict[str, Any]] = []
    for message in messages:
        message_id = str(message.get("id") or "")
        parts: list[dict[str, Any]] = []
        message_parts_dir = part_dir / message_id
        if message_id and message_parts_dir.is_dir():
            for part_file in sorted(message_parts_dir.glob("*.json")):
                part = _load_json_dict(part_file)
                if part is not None:
                    parts.append(part)
        tree_messages.append({"info": message, "parts": parts})

    logger.debug("Loaded OpenCode session %s with %d messages", session_id, len(tree_messages))
    return RawTranscript(
        filename=info_path.name,
        tree={"info": info, "messages": tree_messages},
        schema_hint="opencode",
    )


def _decode_value(value: Any) -> str:
    # Cursor stores values as TEXT in some versions and BLOB in others.
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return "" if value is None else str(value)


async def _table_exists(db: aiosqlite.Connection, table: str) -> bool:
    async with db.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ) as cur:
        row = await cur.fetchone()
    return bool(row and row[0])


async def _read_cursor_rows(path: Path) -> list[tuple[str, str]]:
    rows: list[tuple[str, str]] = []
    async with aiosqlite.connect(f"file:{path}?mode=ro", uri=True) as db:
        for table in CURSOR_TABLES:
            if not await _table_exists(db, table):
                continue
            async with db.execute(
                f"SELECT key, value FROM {table} "
                "WHERE key LIKE 'composerData:%' OR key LIKE 'bubbleId:%' OR key = 'composer.composerData'"
            ) as cur:
                async for key, value in cur:
                    rows.append((str(key), _decode_value(value)))
    return rows


def companion_global_store(path: Path) -> Path | None:
    """``User/globalStorage/state.vscdb`` for a ``User/workspaceStorage/<hash>/state.vscdb`` path."""
    workspace_storage = path.parent.parent
    if workspace_storage.name.lower() != "workspacestorage":
        return None
    return workspace_storage.parent / "globalStorage" / "state.vscdb"


async def read_cursor_store(path: Path | str) -> RawTranscript:
    """Collect composer and bubble rows from a Cursor ``state.vscdb``.

    Workspace stores often only hold the composer index; the conversation
    bodies then live in the companion global store, whose rows are appended.
    """
    path = Path(path)
    rows = await _read_cursor_rows(path)
    global_store = companion_global_store(path)
    if global_store is not None and global_store.is_file():
        try:
            rows.extend(await _read_cursor_rows(global_store))
        except aiosqlite.Error as exc:
            logger.warning("Failed to read Cursor global store %s: %s", global_store, exc)
    logger.debug("Read %d Cursor rows from %s", len(rows), path)
    return RawTranscript(filename=path.name, rows=rows, schema_hint="cursor")


def discover_claude_subagents(path: Path | str) -> list[Path]:
    """Sub-agent transcripts next to a Claude session file, sorted by path.

    Looks in ``<session stem>/subagents/`` and in a sibling ``subagents/``
    directory; the latter only yields files named like sub-agent logs.
    """
    path = Path(path)
    found: set[Path] = set()
    own_dir = path.with_suffix("") / "subagents"
    if own_dir.is_dir():
        found.update(p for p in own_dir.glob("*.jsonl") if p.is_file())
    shared_dir = path.parent / "subagents"
    if shared_dir.is_dir() and shared_dir != own_dir:
        found.update(
            p
            for p in shared_dir.glob("*.jsonl")
            if p.is_file() and p.name.lower().startswith(_SUBAGENT_PREFIXES)
        )
    return sorted(found)


def load_claude_session(path: Path | str) -> Session:
    """Parse a Claude session together with its sub-agent transcripts into one session."""
    path = Path(path)
    outputs = [claude_code_parser.parse(read_text_transcript(path, "claude-code"))]
    for subagent_path in discover_claude_subagents(path):
        output = claude_code_parser.parse_subagent(read_text_transcript(subagent_path, "claude-code"))
        if output.events:
            outputs.append(output)
    return build_session(outputs)


async def load_transcript(path: Path | str) -> RawTranscript:
    """Read ``path`` with the reader its layout calls for, setting the schema hint."""
    path = Path(path)
    name = path.name.lower()
    if name.endswith(".vscdb"):
        return await read_cursor_store(path)
    if name.endswith(".json") and path.parent.name == "info" and path.parent.parent.name == "session":
        return read_opencode_storage(path)

    hint: str | None = None
    if name.endswith(".hail.jsonl"):
        hint = "hail"
    elif ".claude" in path.parts or "subagents" in path.parts:
        hint = "claude-code"
    elif ".codex" in path.parts:
        hint = "codex"
    elif ".gemini" in path.parts:
        hint = "gemini"
    return read_text_transcript(path, hint)
