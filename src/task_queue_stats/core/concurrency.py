from __future__ import annotations

from itertools import groupby
from typing import Callable, Iterable

import pandas as pd

from .types import (
    ConcurrencyResult,
    ConcurrencySnapshot,
    Event,
    EventKind,
    HighConcurrencyInterval,
    TaskRecord,
    to_ms,
)

DEFAULT_THRESHOLD = 4

_KIND_ORDER = {EventKind.START: 0, EventKind.END: 1}


def _check_threshold(threshold: int) -> None:
    if isinstance(threshold, bool) or not isinstance(threshold, int):
        raise ValueError(f"threshold must be an integer, got {threshold!r}")
    if threshold < 0:
        raise ValueError(f"threshold must be >= 0, got {threshold}")


def build_events(records: Iterable[TaskRecord]) -> list[Event]:
    """Two events per record, sorted by time.

    Ties are ordered START before END and then by task id. The order inside
    a time group never changes the result; it only keeps enumeration stable.
    """

    events: list[Event] = []
    for record in records:
        events.append(Event(record.started_at, EventKind.START, record.task_id))
        events.append(Event(record.end_at, EventKind.END, record.task_id))
    events.sort(key=lambda event: (event.time, _KIND_ORDER[event.kind], event.task_id))
    return events


def group_events(events: list[Event]) -> list[tuple[pd.Timestamp, list[Event]]]:
    """Group time-sorted events sharing an identical timestamp."""

    return [(time, list(members)) for time, members in groupby(events, key=lambda e: e.time)]


def analyze_concurrency(
    records: Iterable[TaskRecord],
    threshold: int = DEFAULT_THRESHOLD,
    *,
    logger: Callable[[str], None] | None = None,
) -> ConcurrencyResult:
    """Sweep the execution intervals of `records` and measure concurrency.

    Every event-time group is applied as one state transition and evaluated
    once: peak, histogram, time-weighted level durations, and threshold
    crossings. An interval still open after the last group (possible only
    when threshold <= 0) is closed at the last event time and flagged with
    `closed_at_end`; a zero-length one is dropped.
    """

    _check_threshold(threshold)
    records = list(records)
    if not records:
        if logger:
            logger("concurrency: no executed tasks, returning empty result")
        return ConcurrencyResult.empty(threshold)

    events = build_events(records)
    groups = group_events(events)
    result = ConcurrencyResult(
        threshold=threshold,
        event_count=len(events),
        group_count=len(groups),
        first_at=groups[0][0],
        last_at=groups[-1][0],
    )

    current = 0
    weighted_ms = 0
    open_start: pd.Timestamp | None = None
    open_peak = 0
    for idx, (group_time, members) in enumerate(groups):
        for event in members:
            current += event.kind.delta
        if current < 0:
            raise AssertionError(f"negative concurrency at {group_time}")

        if result.max_concurrency_at is None or current > result.max_concurrency:
            result.max_concurrency = current
            result.max_concurrency_at = group_time
        result.level_histogram[current] = result.level_histogram.get(current, 0) + 1
        result.timeline.append(ConcurrencySnapshot(group_time, current))

        if idx + 1 < len(groups):
            held_ms = to_ms(groups[idx + 1][0] - group_time)
            if held_ms > 0:
                result.level_durations_ms[current] = (
                    result.level_durations_ms.get(current, 0) + held_ms
                )
                weighted_ms += current * held_ms

        if current >= threshold:
            if open_start is None:
                open_start = group_time
                open_peak = current
            else:
                open_peak = max(open_peak, current)
        elif open_start is not None:
            result.high_concurrency_intervals.append(
                HighConcurrencyInterval(start=open_start, end=group_time, peak=open_peak)
            )
            open_start = None

    if open_start is not None and result.last_at is not None and result.last_at > open_start:
        result.high_concurrency_intervals.append(
            HighConcurrencyInterval(
                start=open_start, end=result.last_at, peak=open_peak, closed_at_end=True
            )
        )

    observed = result.observed_ms
    result.average_concurrency = weighted_ms / observed if observed > 0 else 0.0

    if logger:
        logger(
            f"concurrency: {len(records)} tasks, {result.event_count} events, "
            f"{result.group_count} groups, peak {result.max_concurrency} at "
            f"{result.max_concurrency_at.isoformat() if result.max_concurrency_at is not None else '-'}, "
            f"{len(result.high_concurrency_intervals)} intervals >= {threshold}"
        )
    return result
