"""Typed failures raised while turning a raw transcript into a session."""
from __future__ import annotations

from typing import Any


class HailParseError(Exception):
    """Base class for every reportable transcript failure."""


class AdapterError(HailParseError):
    def __init__(self, adapter: str, reason: str) -> None:
        self.adapter = adapter
        self.reason = reason
        super().__init__(f"{adapter}: {reason}")


class EmptyTranscriptError(AdapterError):
    """The adapter ran cleanly but produced no events."""

    def __init__(self, adapter: str, reason: str = "transcript produced zero events") -> None:
        super().__init__(adapter, reason)


class InvalidParserHintError(HailParseError):
    def __init__(self, hint: str, valid: list[str]) -> None:
        self.hint = hint
        self.valid = valid
        super().__init__(f"unknown parser hint {hint!r}; expected one of {', '.join(valid)}")


class ParserSelectionRequiredError(HailParseError):
    def __init__(self, candidates: list[Any], message: str = "could not detect a parser for this transcript") -> None:
        self.candidates = candidates
        super().__init__(message)


class ParseFailedError(HailParseError):
    def __init__(self, failures: list[tuple[str, str]], candidates: list[Any] | None = None) -> None:
        self.failures = failures
        self.candidates = candidates or []
        if failures:
            detail = "; ".join(f"{parser}: {reason}" for parser, reason in failures)
            message = f"all parser attempts failed ({detail})"
        else:
            message = "no parser candidate matched the input"
        super().__init__(message)
