#!/usr/bin/env python3
"""Convert a captured agent transcript into a HAIL session.

Usage:
  python -m hailtrace.scripts.convert ~/.codex/sessions/2026/02/16/rollout.jsonl
  python -m hailtrace.scripts.convert session.jsonl --parser claude-code -o session.hail.jsonl
  python -m hailtrace.scripts.convert state.vscdb --validate
  python -m hailtrace.scripts.convert session.jsonl --timeline --summary-start
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from hailtrace import config
from hailtrace.hail_jsonl import write_jsonl
from hailtrace.models import Session
from hailtrace.observability import initialize as initialize_observability, shutdown as shutdown_observability
from hailtrace.parsers.errors import HailParseError, ParserSelectionRequiredError
from hailtrace.parsers.ingest import preview_parse
from hailtrace.readers import discover_claude_subagents, load_claude_session, load_transcript
from hailtrace.timeline.display import (
    CollapsedTaskItem,
    ConsecutiveGroupItem,
    DisplayItem,
    PairedToolCallItem,
    build_display_items,
    consecutive_group_display_name,
    consecutive_group_summary,
    format_ms,
)
from hailtrace.validate import validate_session

logger = logging.getLogger("hailtrace.scripts")


def _describe(item: DisplayItem) -> str:
    if isinstance(item, CollapsedTaskItem):
        return f"[task] {item.info.title} ({item.info.event_count} events, {format_ms(item.info.duration_ms)})"
    if isinstance(item, PairedToolCallItem):
        label = consecutive_group_summary([item.call.event])
        return f"{item.call.event.kind} -> {item.result.event.event_type.name}" + (f": {label}" if label else "")
    if isinstance(item, ConsecutiveGroupItem):
        return f"{consecutive_group_display_name(item.group_key, item.count)}: {item.summary}"
    label = consecutive_group_summary([item.event]) or item.event.content.first_text() or ""
    return f"{item.event.kind}: {label[:80]}" if label else item.event.kind


def render_timeline(session: Session, summary_start: bool = False) -> list[str]:
    """One line per display item, indented by lane."""
    items = build_display_items(session.events, mode="summary-start" if summary_start else "chronological")
    return [f"{'  ' * item.lane}{_describe(item)}" for item in items]


async def _load_session(path: Path, parser_hint: str | None) -> tuple[Session, str]:
    raw = await load_transcript(path)
    if parser_hint in (None, "claude-code") and raw.schema_hint == "claude-code" and discover_claude_subagents(path):
        return load_claude_session(path), "claude-code"
    preview = preview_parse(raw, parser_hint)
    for warning in preview.warnings:
        logger.warning("%s", warning)
    return preview.session, preview.parser_used


async def _run(args: argparse.Namespace) -> int:
    path = Path(args.path).expanduser()
    if not path.exists():
        print(f"Transcript not found: {path}", file=sys.stderr)
        return 1

    try:
        session, parser_used = await _load_session(path, args.parser or None)
    except ParserSelectionRequiredError as exc:
        print(f"{exc}; try --parser with one of:", file=sys.stderr)
        for candidate in exc.candidates:
            print(f"  {candidate.parser_id} ({candidate.confidence}): {candidate.reason}", file=sys.stderr)
        return 2
    except HailParseError as exc:
        print(f"Parse failed: {exc}", file=sys.stderr)
        return 2
    logger.info("Parsed %s with %s: %d events", path, parser_used, session.stats.event_count)

    if args.validate:
        issues = validate_session(session)
        for issue in issues:
            print(f"{issue.code}: {issue.message}", file=sys.stderr)
        if issues:
            return 1

    if args.timeline:
        for line in render_timeline(session, args.summary_start):
            print(line)
        return 0

    if args.output:
        with open(args.output, "w", encoding="utf-8") as fp:
            write_jsonl(session, fp)
    else:
        write_jsonl(session, sys.stdout)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Convert an agent transcript to HAIL JSONL.")
    parser.add_argument("path", help="Transcript file, OpenCode session info file, or Cursor state.vscdb")
    parser.add_argument("--parser", default="", help="Adapter id to try first (default: auto-detect)")
    parser.add_argument("-o", "--output", default="", help="Write HAIL JSONL here instead of stdout")
    parser.add_argument("--validate", action="store_true", help="Fail on structural validation issues")
    parser.add_argument("--timeline", action="store_true", help="Print the lane timeline instead of JSONL")
    parser.add_argument("--summary-start", action="store_true", help="Collapse every task in --timeline output")
    args = parser.parse_args(argv)

    logging.basicConfig(level=config.LOG_LEVEL)
    initialize_observability()
    try:
        return asyncio.run(_run(args))
    finally:
        shutdown_observability()


if __name__ == "__main__":
    raise SystemExit(main())
