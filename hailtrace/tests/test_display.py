import unittest
from datetime import datetime, timedelta, timezone

from hailtrace.models import (
    ATTR_TASK_PARENT_ID,
    AgentMessage,
    Event,
    FileEdit,
    FileRead,
    ShellCommand,
    TaskEnd,
    TaskStart,
    ToolCall,
    ToolResult,
    UserMessage,
    WebFetch,
    compute_stats,
)
from hailtrace.timeline.display import (
    CollapsedTaskItem,
    ConsecutiveGroupItem,
    PairedToolCallItem,
    build_display_items,
    consecutive_group_display_name,
    consecutive_group_summary,
    format_ms,
    task_breakdown,
)
from hailtrace.timeline.lanes import LaneEvent

BASE = datetime(2026, 2, 16, 10, 0, 0, tzinfo=timezone.utc)


def _events(*entries) -> list[Event]:
    events = []
    for index, entry in enumerate(entries):
        event_type, task_id, attributes = (*entry, {})[:3] if isinstance(entry, tuple) else (entry, None, {})
        events.append(
            Event(
                event_id=f"e{index}",
                timestamp=BASE + timedelta(seconds=index),
                event_type=event_type,
                task_id=task_id,
                attributes=attributes,
            )
        )
    return events


def _kinds(items) -> list[str]:
    return [item.event.kind if isinstance(item, LaneEvent) else item.kind for item in items]


class FileReadElisionTests(unittest.TestCase):
    def test_read_followed_by_edit_of_same_path_is_hidden(self) -> None:
        events = _events(FileRead(path="a.rs"), FileEdit(path="a.rs"))
        items = build_display_items(events)
        self.assertEqual(_kinds(items), ["FileEdit"])
        # Display-only: the canonical stats still see both events.
        self.assertEqual(compute_stats(events).event_count, 2)

    def test_edit_of_other_path_keeps_the_read(self) -> None:
        items = build_display_items(_events(FileRead(path="a.rs"), FileEdit(path="b.rs")))
        self.assertEqual(_kinds(items), ["FileRead", "FileEdit"])

    def test_message_boundary_stops_the_lookahead(self) -> None:
        items = build_display_items(_events(FileRead(path="a.rs"), AgentMessage(), FileEdit(path="a.rs")))
        self.assertEqual(_kinds(items), ["FileRead", "AgentMessage", "FileEdit"])

    def test_edit_beyond_the_window_keeps_the_read(self) -> None:
        fillers = [ShellCommand(command=f"echo {n}") for n in range(5)]
        items = build_display_items(_events(FileRead(path="a.rs"), *fillers, FileEdit(path="a.rs")))
        self.assertEqual(_kinds(items)[0], "FileRead")


class PairingTests(unittest.TestCase):
    def test_specialized_call_pairs_with_adjacent_result(self) -> None:
        items = build_display_items(_events(FileRead(path="x"), ToolResult(name="Read")))
        self.assertEqual(len(items), 1)
        self.assertIsInstance(items[0], PairedToolCallItem)
        self.assertEqual(items[0].call.event.kind, "FileRead")
        self.assertEqual(items[0].result.event.kind, "ToolResult")

    def test_lone_call_renders_standalone(self) -> None:
        items = build_display_items(_events(ToolCall(name="Bash"), UserMessage()))
        self.assertEqual(_kinds(items), ["ToolCall", "UserMessage"])

    def test_generic_call_requires_same_name(self) -> None:
        items = build_display_items(_events(ToolCall(name="Task"), ToolResult(name="Other")))
        self.assertEqual(_kinds(items), ["ToolCall", "ToolResult"])
        items = build_display_items(_events(ToolCall(name="Task"), ToolResult(name="Task")))
        self.assertEqual(_kinds(items), ["paired"])


class ConsecutiveCollapseTests(unittest.TestCase):
    def test_five_reads_collapse_into_one_group(self) -> None:
        reads = [FileRead(path=f"src/file{n}.py") for n in range(5)]
        items = build_display_items(_events(*reads))
        self.assertEqual(len(items), 1)
        group = items[0]
        self.assertIsInstance(group, ConsecutiveGroupItem)
        self.assertEqual(group.count, 5)
        self.assertEqual(group.group_key, "FileRead")
        self.assertEqual(group.summary, "file0.py, file1.py, +3 more")

    def test_different_lanes_are_not_merged(self) -> None:
        events = _events(
            FileRead(path="a"),
            (TaskStart(), "t"),
            (FileRead(path="b"), "t"),
            (TaskEnd(), "t"),
        )
        items = build_display_items(events)
        self.assertEqual(_kinds(items), ["FileRead", "TaskStart", "FileRead", "TaskEnd"])

    def test_summary_variants(self) -> None:
        fetches = _events(WebFetch(url="https://docs.python.org/3/"), WebFetch(url="https://pypi.org/project/x"))
        self.assertEqual(consecutive_group_summary(e for e in fetches), "docs.python.org, pypi.org")
        long_command = _events(ShellCommand(command="x" * 40))
        self.assertEqual(consecutive_group_summary(long_command), "x" * 27 + "...")

    def test_display_names(self) -> None:
        self.assertEqual(consecutive_group_display_name("ToolCall:Bash"), "Bash")
        self.assertEqual(consecutive_group_display_name("ToolResult:Bash", 3), "Bash result (3)")
        self.assertEqual(consecutive_group_display_name("CodeSearch"), "Code Search")


class TaskViewModeTests(unittest.TestCase):
    def _nested(self, parent_link: bool = False) -> list[Event]:
        inner_attributes = {ATTR_TASK_PARENT_ID: "t1"} if parent_link else {}
        return _events(
            UserMessage(),
            (TaskStart(title="outer"), "t1"),
            (AgentMessage(), "t1"),
            (TaskStart(title="inner"), "t2", inner_attributes),
            (AgentMessage(), "t2"),
            (TaskEnd(), "t2"),
            (TaskEnd(summary="done"), "t1"),
            AgentMessage(),
        )

    def _siblings(self) -> list[Event]:
        return _events(
            (TaskStart(title="a"), "a"),
            (TaskStart(title="b"), "b"),
            (AgentMessage(), "b"),
            (TaskEnd(), "a"),
            (AgentMessage(), "b"),
            (TaskEnd(), "b"),
        )

    def test_summary_start_gives_every_task_a_placeholder(self) -> None:
        items = build_display_items(self._nested(), mode="summary-start")
        self.assertEqual(_kinds(items), ["UserMessage", "collapsed", "collapsed", "AgentMessage"])
        outer, inner = items[1], items[2]
        self.assertIsInstance(outer, CollapsedTaskItem)
        self.assertEqual((outer.task_id, outer.lane, outer.info.title), ("t1", 1, "outer"))
        self.assertEqual((inner.task_id, inner.lane), ("t2", 2))

    def test_chronological_collapses_only_toggled_tasks(self) -> None:
        items = build_display_items(self._nested(), collapsed_tasks={"t2"})
        self.assertEqual(
            _kinds(items),
            ["UserMessage", "TaskStart", "AgentMessage", "collapsed", "TaskEnd", "AgentMessage"],
        )
        self.assertEqual(items[3].task_id, "t2")
        self.assertEqual(items[3].lane, 2)

    def test_overlapping_sibling_stays_visible_when_other_task_collapses(self) -> None:
        items = build_display_items(self._siblings(), collapsed_tasks={"a"})
        self.assertEqual(_kinds(items), ["collapsed", "TaskStart", "AgentMessage", "AgentMessage", "TaskEnd"])
        self.assertEqual(items[0].task_id, "a")
        self.assertEqual({item.event.task_id for item in items[1:]}, {"b"})

    def test_overlapping_siblings_each_get_a_placeholder(self) -> None:
        items = build_display_items(self._siblings(), mode="summary-start")
        self.assertEqual([(item.kind, item.task_id) for item in items], [("collapsed", "a"), ("collapsed", "b")])

    def test_child_of_collapsed_task_is_skipped(self) -> None:
        for kwargs in ({"collapsed_tasks": {"t1"}}, {"mode": "summary-start"}):
            items = build_display_items(self._nested(parent_link=True), **kwargs)
            self.assertEqual(_kinds(items), ["UserMessage", "collapsed", "AgentMessage"], kwargs)
            self.assertEqual(items[1].task_id, "t1")

    def test_uncollapsed_task_inside_collapsed_one_without_parent_link_is_shown(self) -> None:
        items = build_display_items(self._nested(), collapsed_tasks={"t1"})
        self.assertEqual(_kinds(items), ["UserMessage", "collapsed", "TaskStart", "AgentMessage", "TaskEnd", "AgentMessage"])

    def test_filter_never_hides_task_boundaries(self) -> None:
        items = build_display_items(self._nested(), matches_filter=lambda event: event.kind == "UserMessage")
        self.assertEqual(_kinds(items), ["UserMessage", "TaskStart", "TaskStart", "TaskEnd", "TaskEnd"])


class FormattingTests(unittest.TestCase):
    def test_format_ms(self) -> None:
        self.assertEqual(format_ms(250), "250ms")
        self.assertEqual(format_ms(4200), "4s")
        self.assertEqual(format_ms(125_000), "2m 5s")

    def test_task_breakdown(self) -> None:
        events = _events(
            (TaskStart(), "t"),
            (FileEdit(path="a"), "t"),
            (FileEdit(path="b"), "t"),
            (FileRead(path="c"), "t"),
            (ShellCommand(command="ls"), "t"),
            (AgentMessage(), "t"),
            FileRead(path="outside"),
        )
        self.assertEqual(task_breakdown(events, "t"), "2 edits, 1 read, 1 shell, 1 msg")


if __name__ == "__main__":
    unittest.main()
