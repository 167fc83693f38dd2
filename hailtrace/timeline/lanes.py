"""Lane and task reconstruction over a canonical event stream.

Lane 0 is the main thread. Every sub-agent task gets its own lane for as
long as it is open; lanes freed by finished tasks are handed out again
first-in first-out, so the highest lane number tracks peak concurrency
rather than the total number of tasks.
"""
from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from hailtrace.date_utils import millis_between
from hailtrace.models import Event

logger = logging.getLogger("hailtrace.timeline")

MAIN_LANE = 0
DEFAULT_TASK_TITLE = "Sub-agent"


class LaneEvent(BaseModel):
    kind: Literal["event"] = "event"
    event: Event
    lane: int = MAIN_LANE
    active_lanes: list[int] = Field(default_factory=lambda: [MAIN_LANE])
    is_fork: bool = False
    fork_lane: Optional[int] = None
    is_merge: bool = False
    merge_lane: Optional[int] = None


class TaskInfo(BaseModel):
    task_id: str
    title: str
    purpose: str
    event_count: int = 0
    duration_ms: int = 0
    started_at: datetime
    ended_at: Optional[datetime] = None
    lane: int
    active_lanes_at_start: list[int] = Field(default_factory=list)
    active_lanes_at_end: list[int] = Field(default_factory=list)


def task_title(event: Event) -> str:
    """Title from the TaskStart payload, else its first text block, else a fixed fallback."""
    title = getattr(event.event_type, "title", None)
    if isinstance(title, str) and title.strip():
        return title.strip()
    return event.content.first_text() or DEFAULT_TASK_TITLE


class LaneAllocator:
    """Lane bookkeeping for one reconstruction run; released lanes are reused FIFO."""

    def __init__(self) -> None:
        self.active: set[int] = {MAIN_LANE}
        self.free_lanes: deque[int] = deque()
        self.next_lane = 1

    def allocate(self) -> int:
        if self.free_lanes:
            lane = self.free_lanes.popleft()
        else:
            lane = self.next_lane
            self.next_lane += 1
        self.active.add(lane)
        return lane

    def release(self, lane: int) -> None:
        if lane == MAIN_LANE or lane not in self.active:
            return
        self.active.discard(lane)
        self.free_lanes.append(lane)

    def snapshot(self) -> list[int]:
        return sorted(self.active)


def reconstruct_lanes(
    events: list[Event], lanes: LaneAllocator | None = None
) -> tuple[list[LaneEvent], dict[str, TaskInfo]]:
    """Annotate each event with its lane and collect per-task summaries in one pass.

    A fresh ``LaneAllocator`` is used unless one is passed in for inspection.
    """
    task_lanes: dict[str, int] = {}
    lanes = lanes if lanes is not None else LaneAllocator()
    tasks: dict[str, TaskInfo] = {}
    annotated: list[LaneEvent] = []

    for event in events:
        task_id = event.task_id
        lane = MAIN_LANE
        is_fork = is_merge = False
        fork_lane = merge_lane = None

        if event.kind == "TaskStart" and task_id:
            before = lanes.snapshot()
            fork_lane = lanes.allocate()
            task_lanes[task_id] = fork_lane
            is_fork = True
            title = task_title(event)
            tasks[task_id] = TaskInfo(
                task_id=task_id,
                title=title,
                purpose=title,
                started_at=event.timestamp,
                lane=fork_lane,
                active_lanes_at_start=before,
            )
        elif event.kind == "TaskEnd" and task_id:
            is_merge = True
            mapped = task_lanes.pop(task_id, None)
            if mapped is None:
                # Unbalanced input; the main lane is never released.
                logger.debug("TaskEnd for unknown task %s merged on the main lane", task_id)
                lane = merge_lane = MAIN_LANE
            else:
                lane = merge_lane = mapped
                lanes.release(mapped)
            info = tasks.get(task_id)
            if info is not None and info.ended_at is None:
                info.ended_at = event.timestamp
                info.duration_ms = max(millis_between(info.started_at, event.timestamp), 0)
                info.active_lanes_at_end = lanes.snapshot()
        elif task_id:
            lane = task_lanes.get(task_id, MAIN_LANE)
            if task_id in task_lanes:
                tasks[task_id].event_count += 1

        annotated.append(
            LaneEvent(
                event=event,
                lane=lane,
                active_lanes=lanes.snapshot(),
                is_fork=is_fork,
                fork_lane=fork_lane,
                is_merge=is_merge,
                merge_lane=merge_lane,
            )
        )

    return annotated, tasks


def compute_max_lane(lane_events: list[LaneEvent]) -> int:
    highest = MAIN_LANE
    for lane_event in lane_events:
        highest = max([highest, *lane_event.active_lanes])
        if lane_event.fork_lane is not None:
            highest = max(highest, lane_event.fork_lane)
    return highest
