from __future__ import annotations

import datetime as dt
from typing import Callable, Protocol

DEFAULT_ON_TIME_POINTS = 20
DEFAULT_LATE_POINTS = 10


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class SubmissionTiming(Protocol):
    max_points: int

    def points(self) -> int: ...

    def is_late(self) -> bool | None: ...

    def describe(self) -> str | None: ...


class FixedTiming:
    """Awards a constant number of timing points (used when no deadline is configured)."""

    def __init__(self, points: int = DEFAULT_ON_TIME_POINTS) -> None:
        self._points = points
        self.max_points = points

    def points(self) -> int:
        return self._points

    def is_late(self) -> bool | None:
        return None

    def describe(self) -> str | None:
        return None


class DeadlineTiming:
    def __init__(
        self,
        deadline: dt.datetime,
        *,
        on_time_points: int = DEFAULT_ON_TIME_POINTS,
        late_points: int = DEFAULT_LATE_POINTS,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        if deadline.tzinfo is None:
            raise ValueError("deadline must be timezone-aware")
        self.deadline = deadline
        self.on_time_points = on_time_points
        self.late_points = late_points
        self.max_points = on_time_points
        self._clock = clock

    def is_late(self) -> bool:
        return self._clock() > self.deadline

    def points(self) -> int:
        return self.late_points if self.is_late() else self.on_time_points

    def describe(self) -> str:
        return self.deadline.isoformat()


def timing_for(
    deadline: dt.datetime | None,
    *,
    on_time_points: int = DEFAULT_ON_TIME_POINTS,
    late_points: int = DEFAULT_LATE_POINTS,
) -> SubmissionTiming:
    if deadline is None:
        return FixedTiming(on_time_points)
    return DeadlineTiming(deadline, on_time_points=on_time_points, late_points=late_points)
