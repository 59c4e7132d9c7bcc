from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import pandas as pd

ONE_MS = pd.Timedelta(milliseconds=1)


def to_ms(delta: pd.Timedelta) -> int:
    return int(round(delta / ONE_MS))


class RecordValidationError(ValueError):
    """A task record is malformed (wrong type, negative duration, missing field)."""

    def __init__(self, task_id: Any, field_name: str, reason: str) -> None:
        self.task_id = task_id
        self.field = field_name
        self.reason = reason
        super().__init__(f"task {task_id!r}: {field_name}: {reason}")

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": None if self.task_id is None else str(self.task_id),
            "field": self.field,
            "reason": self.reason,
        }


class TaskFetchError(RuntimeError):
    """Acquisition of a task page failed after retries."""

    def __init__(self, page: int, message: str, status_code: int | None = None) -> None:
        self.page = page
        self.status_code = status_code
        super().__init__(f"page {page}: {message}")


@dataclass(frozen=True)
class TaskRecord:
    task_id: str
    started_at: pd.Timestamp
    execution_time_ms: int
    submitted_at: pd.Timestamp | None = None
    task_type: str | None = None
    status: str | None = None
    submitter_login: str | None = None
    branch_type: str | None = None
    warning_count: int | None = None
    component_key: str | None = None

    @property
    def end_at(self) -> pd.Timestamp:
        # Derived from the millisecond duration; executedAt is truncated to seconds.
        return self.started_at + pd.Timedelta(milliseconds=self.execution_time_ms)

    @property
    def queue_wait_ms(self) -> int | None:
        if self.submitted_at is None:
            return None
        return to_ms(self.started_at - self.submitted_at)


@dataclass
class NormalizationResult:
    records: list[TaskRecord]
    pending_count: int = 0
    pending_ids: list[str] = field(default_factory=list)
    duplicate_count: int = 0
    errors: list[RecordValidationError] = field(default_factory=list)

    @property
    def total_seen(self) -> int:
        return (
            len(self.records)
            + self.pending_count
            + self.duplicate_count
            + len(self.errors)
        )


class EventKind(Enum):
    START = "start"
    END = "end"

    @property
    def delta(self) -> int:
        if self is EventKind.START:
            return 1
        if self is EventKind.END:
            return -1
        raise AssertionError(f"Unhandled event kind: {self}")


@dataclass(frozen=True)
class Event:
    time: pd.Timestamp
    kind: EventKind
    task_id: str


@dataclass(frozen=True)
class ConcurrencySnapshot:
    time: pd.Timestamp
    level: int


@dataclass(frozen=True)
class HighConcurrencyInterval:
    start: pd.Timestamp
    end: pd.Timestamp
    peak: int
    closed_at_end: bool = False

    @property
    def duration_ms(self) -> int:
        return to_ms(self.end - self.start)

    def as_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "duration_ms": self.duration_ms,
            "peak": int(self.peak),
            "closed_at_end": bool(self.closed_at_end),
        }


@dataclass
class ConcurrencyResult:
    threshold: int
    max_concurrency: int = 0
    max_concurrency_at: pd.Timestamp | None = None
    level_histogram: dict[int, int] = field(default_factory=dict)
    level_durations_ms: dict[int, int] = field(default_factory=dict)
    high_concurrency_intervals: list[HighConcurrencyInterval] = field(
        default_factory=list
    )
    timeline: list[ConcurrencySnapshot] = field(default_factory=list)
    event_count: int = 0
    group_count: int = 0
    average_concurrency: float = 0.0
    first_at: pd.Timestamp | None = None
    last_at: pd.Timestamp | None = None
    is_empty: bool = False

    @classmethod
    def empty(cls, threshold: int) -> "ConcurrencyResult":
        return cls(threshold=threshold, is_empty=True)

    @property
    def observed_ms(self) -> int:
        if self.first_at is None or self.last_at is None:
            return 0
        return to_ms(self.last_at - self.first_at)

    def level_percentages(self) -> dict[int, float]:
        """Share of event-time groups at each level (groups, not events)."""

        if self.group_count <= 0:
            return {}
        return {
            level: count / self.group_count * 100.0
            for level, count in sorted(self.level_histogram.items())
        }

    def level_time_percentages(self) -> dict[int, float]:
        total = sum(self.level_durations_ms.values())
        if total <= 0:
            return {}
        return {
            level: duration / total * 100.0
            for level, duration in sorted(self.level_durations_ms.items())
        }

    def as_dict(self, include_timeline: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "threshold": int(self.threshold),
            "is_empty": bool(self.is_empty),
            "max_concurrency": int(self.max_concurrency),
            "max_concurrency_at": (
                self.max_concurrency_at.isoformat()
                if self.max_concurrency_at is not None
                else None
            ),
            "average_concurrency": float(self.average_concurrency),
            "event_count": int(self.event_count),
            "group_count": int(self.group_count),
            "first_at": self.first_at.isoformat() if self.first_at is not None else None,
            "last_at": self.last_at.isoformat() if self.last_at is not None else None,
            "level_histogram": {
                str(level): int(count)
                for level, count in sorted(self.level_histogram.items())
            },
            "level_percentages": {
                str(level): float(pct)
                for level, pct in self.level_percentages().items()
            },
            "level_durations_ms": {
                str(level): int(duration)
                for level, duration in sorted(self.level_durations_ms.items())
            },
            "level_time_percentages": {
                str(level): float(pct)
                for level, pct in self.level_time_percentages().items()
            },
            "high_concurrency_intervals": [
                interval.as_dict() for interval in self.high_concurrency_intervals
            ],
        }
        if include_timeline:
            payload["timeline"] = [
                {"time": snap.time.isoformat(), "level": int(snap.level)}
                for snap in self.timeline
            ]
        return payload


@dataclass
class RunResult:
    run_id: str
    run_dir: Path
    normalization: NormalizationResult
    concurrency: ConcurrencyResult
    summary: dict[str, Any]
    report: dict[str, Any]
