from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from task_queue_stats.core.normalize import normalize_records
from task_queue_stats.core.types import TaskRecord


def make_task(
    task_id: str,
    started_at: str | None,
    execution_time_ms: int | None = None,
    *,
    submitted_at: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    task: dict[str, Any] = {
        "id": task_id,
        "type": "REPORT",
        "status": "SUCCESS",
        "submitterLogin": "ci-bot",
        "componentKey": "proj-a",
        "branchType": "BRANCH",
        "warningCount": 0,
        "submittedAt": submitted_at or started_at or "2024-03-01T09:59:00+0000",
    }
    if started_at is not None:
        task["startedAt"] = started_at
    if execution_time_ms is not None:
        task["executionTimeMs"] = execution_time_ms
    task.update(extra)
    return task


def make_records(*tasks: dict[str, Any]) -> list[TaskRecord]:
    return normalize_records(list(tasks)).records


def write_pages(directory: Path, pages: list[list[dict[str, Any]]]) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    total = sum(len(tasks) for tasks in pages)
    for index, tasks in enumerate(pages, start=1):
        payload = {
            "tasks": tasks,
            "paging": {"pageIndex": index, "pageSize": 100, "total": total},
        }
        (directory / f"tasks_page_{index:04d}.json").write_text(
            json.dumps(payload), encoding="utf-8"
        )
    return directory


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch) -> None:
    for name in ("TASK_STATS_THRESHOLD", "TASK_STATS_TOKEN", "TASK_STATS_OUTPUT", "TASK_STATS_CLI_PROGRESS"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def sample_tasks() -> list[dict[str, Any]]:
    return [
        make_task("T1", "2024-03-01T10:00:00+0000", 2000, submitted_at="2024-03-01T09:59:58+0000"),
        make_task(
            "T2",
            "2024-03-01T10:00:01+0000",
            1000,
            submitted_at="2024-03-01T10:00:00+0000",
            componentKey="proj-b",
            submitterLogin="alice",
        ),
        make_task(
            "T3",
            "2024-03-01T10:00:05+0000",
            500,
            type="ISSUE_SYNC",
            status="FAILED",
            warningCount=2,
        ),
        make_task("P1", None, submitted_at="2024-03-01T10:00:06+0000", status="PENDING"),
    ]


@pytest.fixture()
def pages_dir(tmp_path: Path, sample_tasks: list[dict[str, Any]]) -> Path:
    # Second page repeats T2, as overlapping pages do while the queue moves.
    return write_pages(
        tmp_path / "pages",
        [sample_tasks[:2], [sample_tasks[1], *sample_tasks[2:]]],
    )
