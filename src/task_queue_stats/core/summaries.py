from __future__ import annotations

from typing import Any, Iterable, Mapping

import pandas as pd

from .types import NormalizationResult, TaskRecord

NONE_LABEL = "(none)"

# Report key -> raw record field.
CATEGORY_FIELDS = {
    "type": "type",
    "status": "status",
    "submitter": "submitterLogin",
    "branch_type": "branchType",
    "warning_count": "warningCount",
    "project": "componentKey",
}


def _label(value: Any) -> str:
    if value is None:
        return NONE_LABEL
    if isinstance(value, float):
        if pd.isna(value):
            return NONE_LABEL
        if value.is_integer():
            # Integer columns with gaps come back from pandas as float.
            return str(int(value))
    text = str(value).strip()
    return text or NONE_LABEL


def category_counts(
    frame: pd.DataFrame, column: str, top: int | None = None
) -> list[dict[str, Any]]:
    if frame.empty:
        return []
    if column in frame.columns:
        values = frame[column].map(_label)
    else:
        values = pd.Series([NONE_LABEL] * len(frame), index=frame.index)
    counts = values.value_counts()
    items = sorted(
        ((str(key), int(count)) for key, count in counts.items()),
        key=lambda item: (-item[1], item[0]),
    )
    if top is not None and top > 0:
        items = items[:top]
    return [{"key": key, "count": count} for key, count in items]


def duration_stats(values: Iterable[int]) -> dict[str, Any]:
    series = pd.Series(list(values), dtype="float64")
    if series.empty:
        return {"count": 0, "mean_ms": None, "p50_ms": None, "p90_ms": None, "p95_ms": None, "max_ms": None}
    return {
        "count": int(series.count()),
        "mean_ms": float(series.mean()),
        "p50_ms": float(series.quantile(0.5)),
        "p90_ms": float(series.quantile(0.9)),
        "p95_ms": float(series.quantile(0.95)),
        "max_ms": float(series.max()),
    }


def _time_range(records: list[TaskRecord]) -> dict[str, str | None]:
    if not records:
        return {"first_submitted_at": None, "first_started_at": None, "last_end_at": None}
    submitted = [r.submitted_at for r in records if r.submitted_at is not None]
    return {
        "first_submitted_at": min(submitted).isoformat() if submitted else None,
        "first_started_at": min(r.started_at for r in records).isoformat(),
        "last_end_at": max(r.end_at for r in records).isoformat(),
    }


def summarize_tasks(
    raw_records: Iterable[Any],
    normalization: NormalizationResult,
    *,
    top: int | None = None,
) -> dict[str, Any]:
    """Counts per category over every task, plus duration stats over executed ones."""

    raw_list = list(raw_records)
    # Non-object entries are reported by the normalizer; they have no categories.
    frame = pd.DataFrame([dict(raw) for raw in raw_list if isinstance(raw, Mapping)])
    records = normalization.records
    waits = [r.queue_wait_ms for r in records if r.queue_wait_ms is not None]
    return {
        "total": len(raw_list),
        "executed": len(records),
        "pending": int(normalization.pending_count),
        "duplicates": int(normalization.duplicate_count),
        "invalid": len(normalization.errors),
        "by": {
            name: category_counts(frame, column, top)
            for name, column in CATEGORY_FIELDS.items()
        },
        "queue_wait": duration_stats(waits),
        "execution_time": duration_stats(r.execution_time_ms for r in records),
        "time_range": _time_range(records),
    }
