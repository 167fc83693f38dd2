"""Closed registry of source adapters.

Every supported tool family is listed here; nothing registers itself at
runtime, so the adapter set can be enumerated and sniffed exhaustively.
"""
from __future__ import annotations

from typing import Callable, Literal, get_args

from hailtrace.parsers.common import AdapterOutput, RawTranscript
from hailtrace.parsers.platforms.claude_code import parser as claude_code_parser
from hailtrace.parsers.platforms.codex import parser as codex_parser
from hailtrace.parsers.platforms.cursor import parser as cursor_parser
from hailtrace.parsers.platforms.gemini import parser as gemini_parser
from hailtrace.parsers.platforms.hail import parser as hail_parser
from hailtrace.parsers.platforms.opencode import parser as opencode_parser

AdapterId = Literal["hail", "codex", "claude-code", "gemini", "opencode", "cursor"]
ADAPTER_IDS: tuple[str, ...] = get_args(AdapterId)

# Adapters whose sessions can be browsed by tool-native semantic groups.
NATIVE_ADAPTERS = frozenset({"codex", "claude-code", "gemini", "cursor", "opencode"})

_PARSERS: dict[str, Callable[[RawTranscript], AdapterOutput]] = {
    hail_parser.ADAPTER_ID: hail_parser.parse,
    codex_parser.ADAPTER_ID: codex_parser.parse,
    claude_code_parser.ADAPTER_ID: claude_code_parser.parse,
    gemini_parser.ADAPTER_ID: gemini_parser.parse,
    opencode_parser.ADAPTER_ID: opencode_parser.parse,
    cursor_parser.ADAPTER_ID: cursor_parser.parse,
}


def get_parser(adapter: str) -> Callable[[RawTranscript], AdapterOutput]:
    """Return the parse function for ``adapter``; raises ``KeyError`` when it is not registered."""
    return _PARSERS[adapter]


def run_adapter(raw: RawTranscript, adapter: str) -> AdapterOutput:
    return get_parser(adapter)(raw)
