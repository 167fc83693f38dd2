"""Schema sniffing and hint-aware preview parsing for uploaded transcripts."""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

from pydantic import BaseModel, Field

from hailtrace.models import Session
from hailtrace.parsers.common import RawTranscript
from hailtrace.parsers.errors import (
    HailParseError,
    InvalidParserHintError,
    ParseFailedError,
    ParserSelectionRequiredError,
)
from hailtrace.parsers.normalize import parse_transcript
from hailtrace.parsers.platforms.registry import ADAPTER_IDS, NATIVE_ADAPTERS

logger = logging.getLogger("hailtrace.parsers")


class ParserCandidate(BaseModel):
    parser_id: str
    confidence: int
    reason: str


class ParsePreview(BaseModel):
    parser_used: str
    candidates: list[ParserCandidate] = Field(default_factory=list)
    session: Session
    warnings: list[str] = Field(default_factory=list)
    native_adapter: Optional[str] = None


def _add(candidates: dict[str, ParserCandidate], parser_id: str, confidence: int, reason: str) -> None:
    existing = candidates.get(parser_id)
    if existing is None or confidence > existing.confidence:
        candidates[parser_id] = ParserCandidate(parser_id=parser_id, confidence=confidence, reason=reason)


def _first_record(text: str) -> Any:
    for line in text.splitlines():
        if line.strip():
            try:
                return json.loads(line)
            except json.JSONDecodeError:
                return None
    return None


def _looks_like_hail_jsonl(text: str) -> bool:
    record = _first_record(text)
    return (
        isinstance(record, dict)
        and record.get("type") == "header"
        and "version" in record
        and "session_id" in record
    )


def _looks_like_hail_json(text: str) -> bool:
    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        return False
    return isinstance(document, dict) and all(
        key in document for key in ("version", "session_id", "agent", "context", "events")
    )


def _looks_like_codex(text: str) -> bool:
    return any(
        marker in text
        for marker in (
            '"type":"session_meta"',
            '"type": "session_meta"',
            '"type":"response_item"',
            '"type":"event_msg"',
        )
    )


def _looks_like_claude(text: str) -> bool:
    return ('"type":"user"' in text or '"type":"assistant"' in text) and '"message"' in text


def _looks_like_gemini(text: str) -> bool:
    return '"messages"' in text and ('"session_id"' in text or '"sessionId"' in text)


def _looks_like_opencode(text: str) -> bool:
    return any(marker in text for marker in ('"providerID"', '"providerId"', '"modelID"', '"modelId"'))


def _looks_like_opencode_tree(tree: Any) -> bool:
    return isinstance(tree, dict) and isinstance(tree.get("info"), dict) and isinstance(tree.get("messages"), list)


def detect_candidates(raw: RawTranscript) -> list[ParserCandidate]:
    """Rank adapters for ``raw`` by filename suffix and content markers."""
    candidates: dict[str, ParserCandidate] = {}
    name = raw.filename.lower()
    text = raw.text.strip()

    if name.endswith(".hail.jsonl"):
        _add(candidates, "hail", 95, "filename suffix .hail.jsonl")
    if name.endswith(".jsonl"):
        _add(candidates, "hail", 70, "jsonl extension")
        _add(candidates, "codex", 64, "jsonl extension")
        _add(candidates, "claude-code", 62, "jsonl extension")
        _add(candidates, "gemini", 50, "jsonl extension")
    if name.endswith(".json"):
        _add(candidates, "gemini", 56, "json extension")
        _add(candidates, "opencode", 44, "json extension")
        _add(candidates, "hail", 34, "json extension")
    if name.endswith(".vscdb") or raw.rows:
        _add(candidates, "cursor", 92, "vscdb key/value store")

    if text:
        if _looks_like_hail_jsonl(text):
            _add(candidates, "hail", 100, "HAIL header line")
        if _looks_like_hail_json(text):
            _add(candidates, "hail", 86, "HAIL JSON object fields")
        if _looks_like_codex(text):
            _add(candidates, "codex", 90, "Codex event markers")
        if _looks_like_claude(text):
            _add(candidates, "claude-code", 88, "Claude message record markers")
        if _looks_like_gemini(text):
            _add(candidates, "gemini", 84, "Gemini session schema fields")
        if _looks_like_opencode(text):
            _add(candidates, "opencode", 60, "OpenCode provider/model schema fields")
    if _looks_like_opencode_tree(raw.tree):
        _add(candidates, "opencode", 60, "OpenCode session part tree")

    if raw.schema_hint in ADAPTER_IDS:
        _add(candidates, raw.schema_hint, 98, "reader schema hint")
    elif raw.schema_hint:
        logger.debug("ignoring unknown schema hint %r", raw.schema_hint)

    return sorted(candidates.values(), key=lambda candidate: (-candidate.confidence, candidate.parser_id))


def native_adapter_for(parser_id: str) -> str | None:
    return parser_id if parser_id in NATIVE_ADAPTERS else None


def preview_parse(raw: RawTranscript, parser_hint: str | None = None) -> ParsePreview:
    """Parse ``raw`` with the hinted adapter, falling back to detected candidates.

    Raises:
        InvalidParserHintError: the hint names no registered adapter.
        ParserSelectionRequiredError: detection was ambiguous and every attempt failed.
        ParseFailedError: nothing matched, or the only candidate failed.
    """
    candidates = detect_candidates(raw)
    warnings: list[str] = []
    failures: list[tuple[str, str]] = []
    hint = (parser_hint or "").strip()

    if hint:
        if hint not in ADAPTER_IDS:
            raise InvalidParserHintError(hint, list(ADAPTER_IDS))
        try:
            session = parse_transcript(raw, hint)
        except HailParseError as exc:
            warnings.append(f"parser_hint '{hint}' failed: {exc}")
            failures.append((hint, str(exc)))
        else:
            return ParsePreview(
                parser_used=hint,
                candidates=candidates,
                session=session,
                warnings=warnings,
                native_adapter=native_adapter_for(hint),
            )

    attempted: list[str] = []
    for candidate in candidates:
        if candidate.parser_id == hint:
            continue
        attempted.append(candidate.parser_id)
        try:
            session = parse_transcript(raw, candidate.parser_id)
        except HailParseError as exc:
            warnings.append(f"parser '{candidate.parser_id}' failed: {exc}")
            failures.append((candidate.parser_id, str(exc)))
            continue
        return ParsePreview(
            parser_used=candidate.parser_id,
            candidates=candidates,
            session=session,
            warnings=warnings,
            native_adapter=native_adapter_for(candidate.parser_id),
        )

    if len(candidates) > 1 or (len(candidates) == 1 and hint):
        message = (
            "auto-detection failed; choose a parser and retry"
            if attempted
            else "could not determine parser from source"
        )
        raise ParserSelectionRequiredError(candidates, message)
    raise ParseFailedError(failures, candidates)
