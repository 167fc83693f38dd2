"""Event filtering by raw event type or by coarse native group."""
from __future__ import annotations

from collections import Counter
from typing import Callable, Iterable, Literal, Optional

from pydantic import BaseModel

from hailtrace.models import Event
from hailtrace.parsers.platforms.registry import NATIVE_ADAPTERS

SessionViewMode = Literal["unified", "native"]

CUSTOM_KEY_PREFIX = "Custom:"

NATIVE_GROUP_LABELS: dict[str, str] = {
    "message": "Messages",
    "tool": "Tool Calls",
    "file": "File Events",
    "reasoning": "Reasoning",
    "shell": "Shell",
    "task": "Tasks",
    "web": "Web",
    "media": "Media",
    "custom": "Custom",
    "other": "Other",
}

_NATIVE_GROUPS: dict[str, str] = {
    "UserMessage": "message",
    "AgentMessage": "message",
    "SystemMessage": "message",
    "ToolCall": "tool",
    "ToolResult": "tool",
    "FileRead": "file",
    "FileEdit": "file",
    "FileCreate": "file",
    "FileDelete": "file",
    "FileSearch": "file",
    "CodeSearch": "file",
    "Thinking": "reasoning",
    "ShellCommand": "shell",
    "TaskStart": "task",
    "TaskEnd": "task",
    "WebSearch": "web",
    "WebFetch": "web",
    "ImageGenerate": "media",
    "VideoGenerate": "media",
    "AudioGenerate": "media",
    "Custom": "custom",
}


class FilterOption(BaseModel):
    key: str
    label: str
    count: int


def unified_filter_key(event: Event) -> str:
    if event.kind == "Custom":
        return f"{CUSTOM_KEY_PREFIX}{event.event_type.kind}"
    return event.kind


def native_group_for_event(event: Event) -> str:
    return _NATIVE_GROUPS.get(event.kind, "other")


def is_native_adapter_supported(adapter: Optional[str]) -> bool:
    return bool(adapter) and adapter in NATIVE_ADAPTERS


def filter_events_by_unified_keys(events: Iterable[Event], enabled_keys: set[str]) -> list[Event]:
    """Keep events whose unified key is enabled; no enabled keys means nothing is shown."""
    if not enabled_keys:
        return []
    return [event for event in events if unified_filter_key(event) in enabled_keys]


def filter_events_by_native_groups(events: Iterable[Event], enabled_groups: set[str]) -> list[Event]:
    if not enabled_groups:
        return []
    return [event for event in events if native_group_for_event(event) in enabled_groups]


def _sorted_options(counts: Counter[str], label_for: Callable[[str], str]) -> list[FilterOption]:
    ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [FilterOption(key=key, label=label_for(key), count=count) for key, count in ordered]


def build_unified_filter_options(events: Iterable[Event]) -> list[FilterOption]:
    counts = Counter(unified_filter_key(event) for event in events)
    return _sorted_options(counts, lambda key: key)


def build_native_filter_options(events: Iterable[Event]) -> list[FilterOption]:
    counts = Counter(native_group_for_event(event) for event in events)
    return _sorted_options(counts, lambda key: NATIVE_GROUP_LABELS.get(key, key))
