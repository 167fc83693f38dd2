"""Display grouping over lane-annotated events.

The transforms run in a fixed order: task collapsing, redundant FileRead
elision, call/result pairing, then consecutive collapsing. Each one only
reshapes the display projection; the canonical session is never touched.
"""
from __future__ import annotations

import re
from collections import Counter
from typing import Any, Callable, Iterable, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel

from hailtrace import config
from hailtrace.models import ATTR_TASK_PARENT_ID, Event
from hailtrace.timeline.lanes import LaneEvent, TaskInfo, reconstruct_lanes

TaskViewMode = Literal["chronological", "summary-start"]

# Result names accepted after each specialized operational event.
SPECIALIZED_RESULT_NAMES: dict[str, frozenset[str]] = {
    "FileRead": frozenset({"Read", "read_file", "read", "view"}),
    "FileEdit": frozenset({"Edit", "MultiEdit", "Write", "NotebookEdit", "apply_patch", "edit", "replace", "edit_file"}),
    "FileCreate": frozenset({"Write", "create_file", "write_file", "write"}),
    "FileSearch": frozenset({"Glob", "glob", "file_search"}),
    "CodeSearch": frozenset({"Grep", "grep", "search_file_content", "grep_search"}),
    "ShellCommand": frozenset(
        {"Bash", "bash", "shell", "exec_command", "shell_command", "run_shell_command", "run_terminal_cmd"}
    ),
    "WebSearch": frozenset({"WebSearch", "web_search", "websearch", "google_web_search"}),
    "WebFetch": frozenset({"WebFetch", "web_fetch", "webfetch"}),
}

_ELISION_BARRIERS = frozenset({"UserMessage", "AgentMessage", "TaskStart", "TaskEnd"})
_PLAIN_GROUP_KEYS = frozenset({"FileRead", "CodeSearch", "FileSearch", "WebSearch", "WebFetch"})
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class CollapsedTaskItem(BaseModel):
    kind: Literal["collapsed"] = "collapsed"
    task_id: str
    info: TaskInfo
    lane: int
    active_lanes: list[int]


class PairedToolCallItem(BaseModel):
    kind: Literal["paired"] = "paired"
    call: LaneEvent
    result: LaneEvent
    lane: int
    active_lanes: list[int]


class ConsecutiveGroupItem(BaseModel):
    kind: Literal["consecutive"] = "consecutive"
    group_key: str
    events: list[LaneEvent]
    count: int
    summary: str
    lane: int
    active_lanes: list[int]


DisplayItem = Union[LaneEvent, CollapsedTaskItem, PairedToolCallItem, ConsecutiveGroupItem]


# ── Step 1: task view mode ──────────────────────────────────────────

def apply_task_view_mode(
    lane_events: list[LaneEvent],
    mode: TaskViewMode,
    collapsed_tasks: Iterable[str],
    task_infos: dict[str, TaskInfo],
    matches_filter: Optional[Callable[[Event], bool]] = None,
) -> list[Union[LaneEvent, CollapsedTaskItem]]:
    """Replace collapsed tasks with one placeholder each.

    ``summary-start`` collapses every task; ``chronological`` collapses only
    the ids in ``collapsed_tasks``. Each TaskStart is handled on its own, so
    overlapping sibling tasks keep their own placeholder or rows. A task whose
    ``task.parent_id`` attribute names a collapsed task is skipped wholesale.
    Task boundaries bypass ``matches_filter`` so lanes stay consistent.
    """
    collapsed = set(collapsed_tasks)
    skipping: set[str] = set()
    result: list[Union[LaneEvent, CollapsedTaskItem]] = []

    for lane_event in lane_events:
        event = lane_event.event
        task_id = event.task_id

        if event.kind == "TaskStart" and task_id:
            parent_id = event.attributes.get(ATTR_TASK_PARENT_ID)
            if isinstance(parent_id, str) and parent_id in skipping:
                # Child of a collapsed task; the parent placeholder covers it.
                skipping.add(task_id)
                continue
            if mode == "summary-start" or task_id in collapsed:
                skipping.add(task_id)
                info = task_infos.get(task_id)
                if info is not None:
                    result.append(
                        CollapsedTaskItem(
                            task_id=task_id,
                            info=info,
                            lane=lane_event.fork_lane if lane_event.fork_lane is not None else 0,
                            active_lanes=lane_event.active_lanes,
                        )
                    )
                continue
            result.append(lane_event)
            continue

        if event.kind == "TaskEnd" and task_id:
            if task_id in skipping:
                skipping.discard(task_id)
                continue
            result.append(lane_event)
            continue

        if task_id and task_id in skipping:
            continue
        if matches_filter is not None and not matches_filter(event):
            continue
        result.append(lane_event)

    return result


# ── Step 2: redundant FileRead elision ──────────────────────────────

def elide_redundant_file_reads(
    items: list[Union[LaneEvent, CollapsedTaskItem]],
    lookahead: int | None = None,
) -> list[Union[LaneEvent, CollapsedTaskItem]]:
    """Drop a FileRead when an edit of the same path follows shortly after."""
    window = config.FILEREAD_LOOKAHEAD if lookahead is None else lookahead
    result: list[Union[LaneEvent, CollapsedTaskItem]] = []

    for index, item in enumerate(items):
        if isinstance(item, LaneEvent) and item.event.kind == "FileRead":
            read_path = item.event.event_type.path
            if _edited_soon(items, index, read_path, window):
                continue
        result.append(item)
    return result


def _edited_soon(items: list[Any], index: int, path: str, window: int) -> bool:
    for following in items[index + 1 : index + 1 + window]:
        if not isinstance(following, LaneEvent):
            return False
        kind = following.event.kind
        if kind in _ELISION_BARRIERS:
            return False
        if kind == "FileEdit" and following.event.event_type.path == path:
            return True
    return False


# ── Step 3: call/result pairing ─────────────────────────────────────

def _pairs_with(call: Event, result: Event) -> bool:
    if result.kind != "ToolResult":
        return False
    result_name = result.event_type.name
    if call.kind == "ToolCall":
        return call.event_type.name == result_name
    expected = SPECIALIZED_RESULT_NAMES.get(call.kind)
    return expected is not None and result_name in expected


def pair_tool_call_results(
    items: list[Union[LaneEvent, CollapsedTaskItem]],
) -> list[Union[LaneEvent, CollapsedTaskItem, PairedToolCallItem]]:
    """Merge a call with the ToolResult immediately after it; no lookahead beyond one item."""
    result: list[Union[LaneEvent, CollapsedTaskItem, PairedToolCallItem]] = []
    index = 0
    while index < len(items):
        item = items[index]
        following = items[index + 1] if index + 1 < len(items) else None
        if (
            isinstance(item, LaneEvent)
            and isinstance(following, LaneEvent)
            and _pairs_with(item.event, following.event)
        ):
            result.append(
                PairedToolCallItem(call=item, result=following, lane=item.lane, active_lanes=item.active_lanes)
            )
            index += 2
            continue
        result.append(item)
        index += 1
    return result


# ── Step 4: consecutive collapsing ──────────────────────────────────

def consecutive_group_key(event: Event) -> str | None:
    kind = event.kind
    if kind in _PLAIN_GROUP_KEYS:
        return kind
    if kind in {"ToolCall", "ToolResult"}:
        return f"{kind}:{event.event_type.name}"
    return None


def consecutive_group_display_name(group_key: str, count: int | None = None) -> str:
    if group_key.startswith("ToolCall:"):
        name = group_key[len("ToolCall:") :]
    elif group_key.startswith("ToolResult:"):
        name = f"{group_key[len('ToolResult:'):]} result"
    else:
        name = _CAMEL_BOUNDARY.sub(" ", group_key)
    if count is None:
        return name
    return f"{name} ({count})"


def _summary_label(event: Event) -> str:
    event_type = event.event_type
    kind = event.kind
    if kind in {"FileRead", "FileEdit", "FileCreate", "FileDelete"}:
        return event_type.path.rsplit("/", 1)[-1]
    if kind in {"CodeSearch", "WebSearch"}:
        return event_type.query
    if kind == "FileSearch":
        return event_type.pattern
    if kind == "WebFetch":
        return urlparse(event_type.url).hostname or event_type.url
    if kind == "ShellCommand":
        command = event_type.command
        limit = config.SUMMARY_COMMAND_MAX
        return command if len(command) <= limit else f"{command[: limit - 3]}..."
    return ""


def consecutive_group_summary(events: Iterable[Event]) -> str:
    """Short label list: all names up to the limit, else the first two plus a count."""
    names = [label for label in (_summary_label(event) for event in events) if label]
    if len(names) <= config.SUMMARY_MAX_NAMES:
        return ", ".join(names)
    return f"{', '.join(names[:2])}, +{len(names) - 2} more"


def collapse_consecutive_events(
    items: list[Union[LaneEvent, CollapsedTaskItem, PairedToolCallItem]],
    group_key: Callable[[Event], str | None] = consecutive_group_key,
) -> list[DisplayItem]:
    result: list[DisplayItem] = []
    index = 0
    while index < len(items):
        item = items[index]
        key = group_key(item.event) if isinstance(item, LaneEvent) else None
        if key is None:
            result.append(item)
            index += 1
            continue

        group = [item]
        cursor = index + 1
        while cursor < len(items):
            following = items[cursor]
            if not isinstance(following, LaneEvent) or following.lane != item.lane:
                break
            if group_key(following.event) != key:
                break
            group.append(following)
            cursor += 1

        if len(group) > 1:
            result.append(
                ConsecutiveGroupItem(
                    group_key=key,
                    events=group,
                    count=len(group),
                    summary=consecutive_group_summary(member.event for member in group),
                    lane=item.lane,
                    active_lanes=item.active_lanes,
                )
            )
        else:
            result.append(item)
        index = cursor
    return result


# ── Helpers for task rows ───────────────────────────────────────────

_BREAKDOWN_LABELS = (
    ("edit", "edits", ("FileEdit", "FileCreate")),
    ("read", "reads", ("FileRead",)),
    ("shell", "shell", ("ShellCommand",)),
    ("tool", "tools", ("ToolCall",)),
    ("msg", "msgs", ("AgentMessage",)),
)


def task_breakdown(events: Iterable[Union[Event, LaneEvent]], task_id: str) -> str:
    """Summarize what a task did, e.g. ``"2 edits, 1 read, 3 shell"``."""
    counts: Counter[str] = Counter()
    for item in events:
        event = item.event if isinstance(item, LaneEvent) else item
        if event.task_id == task_id:
            counts[event.kind] += 1
    parts: list[str] = []
    for singular, plural, kinds in _BREAKDOWN_LABELS:
        total = sum(counts[kind] for kind in kinds)
        if total:
            parts.append(f"{total} {singular if total == 1 else plural}")
    return ", ".join(parts)


def format_ms(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    seconds = round(ms / 1000)
    if seconds < 60:
        return f"{seconds}s"
    return f"{seconds // 60}m {seconds % 60}s"


def build_display_items(
    events: list[Event],
    *,
    mode: TaskViewMode = "chronological",
    collapsed_tasks: Iterable[str] = (),
    matches_filter: Optional[Callable[[Event], bool]] = None,
) -> list[DisplayItem]:
    """Reconstruct lanes and run the display transforms in order."""
    lane_events, task_infos = reconstruct_lanes(events)
    visible = apply_task_view_mode(lane_events, mode, collapsed_tasks, task_infos, matches_filter)
    visible = elide_redundant_file_reads(visible)
    paired = pair_tool_call_results(visible)
    return collapse_consecutive_events(paired)
