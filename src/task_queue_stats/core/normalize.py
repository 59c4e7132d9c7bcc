from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

import pandas as pd

from .types import NormalizationResult, RecordValidationError, TaskRecord

# Calendar date first; keeps pandas from reading "now" or "today" as wall-clock time.
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def parse_timestamp(value: Any, task_id: Any, field_name: str) -> pd.Timestamp:
    """Parse an ISO-8601 timestamp into a tz-aware UTC Timestamp.

    Naive values are taken as UTC; offsets such as `+0200` are honoured.
    """

    if isinstance(value, bool) or not isinstance(value, (str, datetime)):
        raise RecordValidationError(
            task_id, field_name, f"expected timestamp string, got {type(value).__name__}"
        )
    if isinstance(value, str) and not _ISO_DATE_RE.match(value.strip()):
        raise RecordValidationError(task_id, field_name, f"unparseable timestamp {value!r}")
    try:
        if isinstance(value, str):
            ts = pd.to_datetime(value.strip(), utc=True, format="ISO8601")
        else:
            ts = pd.to_datetime(value, utc=True)
    except (TypeError, ValueError) as exc:
        raise RecordValidationError(
            task_id, field_name, f"unparseable timestamp {value!r}"
        ) from exc
    if pd.isna(ts):
        raise RecordValidationError(task_id, field_name, f"unparseable timestamp {value!r}")
    return ts


def parse_duration_ms(value: Any, task_id: Any) -> int:
    if value is None:
        raise RecordValidationError(task_id, "executionTimeMs", "missing for a started task")
    if isinstance(value, bool):
        raise RecordValidationError(task_id, "executionTimeMs", "expected integer, got bool")
    if isinstance(value, float):
        if not value.is_integer():
            raise RecordValidationError(
                task_id, "executionTimeMs", f"expected integer, got {value!r}"
            )
        value = int(value)
    if not isinstance(value, int):
        raise RecordValidationError(
            task_id, "executionTimeMs", f"expected integer, got {type(value).__name__}"
        )
    if value < 0:
        raise RecordValidationError(task_id, "executionTimeMs", f"negative duration {value}")
    return value


def _check_end(started_at: pd.Timestamp, duration_ms: int, task_id: str) -> None:
    try:
        started_at + pd.Timedelta(milliseconds=duration_ms)
    except (OverflowError, pd.errors.OutOfBoundsTimedelta, pd.errors.OutOfBoundsDatetime) as exc:
        raise RecordValidationError(task_id, "executionTimeMs", "out of range") from exc


def _task_id(raw: Mapping[str, Any]) -> str:
    value = raw.get("id")
    if _is_missing(value):
        raise RecordValidationError(None, "id", "missing identifier")
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise RecordValidationError(value, "id", f"expected string or int, got {type(value).__name__}")
    return str(value)


def _optional_text(raw: Mapping[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if _is_missing(value):
        return None
    return str(value)


def _optional_int(raw: Mapping[str, Any], key: str, task_id: str) -> int | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RecordValidationError(task_id, key, f"expected integer, got {type(value).__name__}")
    return int(value)


def normalize_record(raw: Any) -> TaskRecord | None:
    """Normalize one raw record; return None for pending (never started) tasks."""

    if not isinstance(raw, Mapping):
        raise RecordValidationError(None, "record", f"expected object, got {type(raw).__name__}")
    task_id = _task_id(raw)
    started_raw = raw.get("startedAt")
    if _is_missing(started_raw):
        return None
    started_at = parse_timestamp(started_raw, task_id, "startedAt")
    submitted_raw = raw.get("submittedAt")
    submitted_at = (
        None
        if _is_missing(submitted_raw)
        else parse_timestamp(submitted_raw, task_id, "submittedAt")
    )
    duration_ms = parse_duration_ms(raw.get("executionTimeMs"), task_id)
    _check_end(started_at, duration_ms, task_id)
    return TaskRecord(
        task_id=task_id,
        started_at=started_at,
        execution_time_ms=duration_ms,
        submitted_at=submitted_at,
        task_type=_optional_text(raw, "type"),
        status=_optional_text(raw, "status"),
        submitter_login=_optional_text(raw, "submitterLogin"),
        branch_type=_optional_text(raw, "branchType"),
        warning_count=_optional_int(raw, "warningCount", task_id),
        component_key=_optional_text(raw, "componentKey"),
    )


def normalize_records(
    raw_records: Iterable[Any],
    *,
    strict: bool = True,
    logger: Callable[[str], None] | None = None,
) -> NormalizationResult:
    """Validate and coerce raw task records for concurrency analysis.

    Records without `startedAt` are pending and only counted. With
    `strict=True` the first malformed record raises RecordValidationError;
    otherwise malformed records are collected in `errors`.
    """

    result = NormalizationResult(records=[])
    seen: set[str] = set()
    for raw in raw_records:
        try:
            record = normalize_record(raw)
        except RecordValidationError as exc:
            if strict:
                raise
            result.errors.append(exc)
            if logger:
                logger(f"[WARN] skipped malformed record: {exc}")
            continue
        if record is None:
            result.pending_count += 1
            result.pending_ids.append(str(raw.get("id")))
            continue
        if record.task_id in seen:
            result.duplicate_count += 1
            continue
        seen.add(record.task_id)
        result.records.append(record)
    if logger:
        logger(
            f"normalized {len(result.records)} records "
            f"(pending={result.pending_count}, duplicates={result.duplicate_count}, "
            f"errors={len(result.errors)})"
        )
    return result
