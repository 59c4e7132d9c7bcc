from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterator

from .utils import read_json, write_json

PAGE_PREFIX = "tasks_page_"


def page_path(out_dir: Path, index: int) -> Path:
    return out_dir / f"{PAGE_PREFIX}{int(index):04d}.json"


def write_page(out_dir: Path, index: int, payload: dict[str, Any]) -> Path:
    path = page_path(out_dir, index)
    write_json(path, payload)
    return path


def iter_page_files(directory: Path) -> list[Path]:
    if not directory.exists() or not directory.is_dir():
        raise FileNotFoundError(f"Task directory not found: {directory}")
    return sorted(path for path in directory.glob("*.json") if path.is_file())


def read_page_tasks(path: Path) -> list[dict[str, Any]]:
    try:
        payload = read_json(path)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {path.name}: {exc}") from exc
    tasks = payload.get("tasks") if isinstance(payload, dict) else None
    if not isinstance(tasks, list):
        raise ValueError(f"Missing 'tasks' list in {path.name}")
    return tasks


def iter_tasks(directory: Path) -> Iterator[dict[str, Any]]:
    for path in iter_page_files(directory):
        yield from read_page_tasks(path)


def dedupe_tasks(tasks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drop repeated task ids, keeping the first occurrence.

    Pages fetched while the queue is moving can overlap by a few tasks.
    Records without an id are kept so the normalizer can reject them.
    """

    seen: set[str] = set()
    unique: list[dict[str, Any]] = []
    for task in tasks:
        task_id = task.get("id") if isinstance(task, dict) else None
        if task_id is None:
            unique.append(task)
            continue
        key = str(task_id)
        if key in seen:
            continue
        seen.add(key)
        unique.append(task)
    return unique


def load_tasks(directory: Path) -> list[dict[str, Any]]:
    return dedupe_tasks(list(iter_tasks(directory)))
