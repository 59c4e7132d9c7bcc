from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any

from jsonschema import ValidationError

from task_queue_stats.core.concurrency import analyze_concurrency
from task_queue_stats.core.fetch import TaskFetcher
from task_queue_stats.core.normalize import normalize_records
from task_queue_stats.core.pipeline import Pipeline
from task_queue_stats.core.report import (
    format_duration_ms,
    render_concurrency,
    render_summary,
)
from task_queue_stats.core.settings import load_settings, resolve_settings
from task_queue_stats.core.summaries import summarize_tasks
from task_queue_stats.core.task_io import load_tasks
from task_queue_stats.core.types import RecordValidationError, TaskFetchError
from task_queue_stats.core.utils import get_output_root, json_dumps, make_run_logger


def _settings(settings_path: str | None) -> dict[str, Any]:
    try:
        return resolve_settings(load_settings(settings_path))
    except ValidationError as exc:
        raise SystemExit(f"Invalid settings: {exc.message}")
    except (OSError, ValueError) as exc:
        raise SystemExit(f"Cannot load settings: {exc}")


def _load_input(input_dir: str) -> list[dict[str, Any]]:
    try:
        return load_tasks(Path(input_dir))
    except FileNotFoundError as exc:
        raise SystemExit(str(exc))
    except ValueError as exc:
        raise SystemExit(f"Invalid task page: {exc}")


def _normalize(raw_tasks: list[dict[str, Any]], strict: bool):
    try:
        return normalize_records(raw_tasks, strict=strict)
    except RecordValidationError as exc:
        raise SystemExit(f"Malformed task record: {exc}")


def cmd_fetch(
    url: str | None,
    token: str | None,
    out_dir: str,
    settings_path: str | None,
    page_size: int | None,
    workers: int | None,
    max_pages: int | None,
    component: str | None,
) -> None:
    settings = _settings(settings_path)
    fetch_cfg = settings["fetch"]
    base_url = url or fetch_cfg.get("url")
    if not base_url:
        raise SystemExit("Missing --url (or fetch.url in settings)")
    filters = dict(fetch_cfg.get("filters") or {})
    if component:
        filters["component"] = component
    out_path = Path(out_dir)
    fetcher = TaskFetcher(
        base_url,
        token or fetch_cfg.get("token"),
        page_size=page_size or int(fetch_cfg["page_size"]),
        max_workers=workers or int(fetch_cfg["max_workers"]),
        timeout=float(fetch_cfg["timeout_s"]),
        retries=int(fetch_cfg["retries"]),
        max_pages=max_pages if max_pages is not None else fetch_cfg.get("max_pages"),
        filters=filters,
        logger=make_run_logger(out_path / "fetch.log", echo=True),
    )
    try:
        tasks = fetcher.fetch_all(out_path)
    except TaskFetchError as exc:
        raise SystemExit(f"Fetch failed: {exc}")
    print(f"{len(tasks)} task(s) written to {out_path}")


def cmd_summary(input_dir: str, top: int | None, as_json: bool, settings_path: str | None) -> None:
    settings = _settings(settings_path)
    raw_tasks = _load_input(input_dir)
    normalization = _normalize(raw_tasks, strict=False)
    summary = summarize_tasks(raw_tasks, normalization, top=top or int(settings["top"]))
    if as_json:
        print(json_dumps(summary))
        return
    print("\n".join(render_summary(summary)))


def cmd_concurrency(
    input_dir: str,
    threshold: int | None,
    lenient: bool,
    as_json: bool,
    settings_path: str | None,
) -> None:
    settings = _settings(settings_path)
    strict = bool(settings["strict"]) and not lenient
    raw_tasks = _load_input(input_dir)
    normalization = _normalize(raw_tasks, strict=strict)
    value = threshold if threshold is not None else int(settings["threshold"])
    try:
        result = analyze_concurrency(normalization.records, value)
    except ValueError as exc:
        raise SystemExit(str(exc))
    if as_json:
        payload = result.as_dict(include_timeline=bool(settings["include_timeline"]))
        payload["pending"] = normalization.pending_count
        print(json_dumps(payload))
        return
    print("\n".join(render_concurrency(result.as_dict())))
    if normalization.pending_count:
        print(f"\n{normalization.pending_count} pending task(s) excluded (never started).")
    if normalization.errors:
        print(f"{len(normalization.errors)} malformed task(s) skipped.")
    if result.high_concurrency_intervals:
        total_ms = sum(i.duration_ms for i in result.high_concurrency_intervals)
        print(f"Total time at or above {value}: {format_duration_ms(total_ms)}")


def cmd_run(
    input_dir: str,
    out_root: str | None,
    settings_path: str | None,
    threshold: int | None,
) -> None:
    root = Path(out_root) if out_root else get_output_root()
    try:
        pipeline = Pipeline(root, load_settings(settings_path))
    except ValidationError as exc:
        raise SystemExit(f"Invalid settings: {exc.message}")
    except (OSError, ValueError) as exc:
        raise SystemExit(f"Cannot load settings: {exc}")
    try:
        result = pipeline.run(Path(input_dir), threshold=threshold)
    except FileNotFoundError as exc:
        raise SystemExit(str(exc))
    except RecordValidationError as exc:
        raise SystemExit(f"Malformed task record: {exc}")
    except ValueError as exc:
        raise SystemExit(f"Run failed: {exc}")
    print(json.dumps({"run_id": result.run_id, "run_dir": str(result.run_dir)}, sort_keys=True))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="task-queue-stats")
    sub = parser.add_subparsers(dest="command", required=True)

    fetch_parser = sub.add_parser("fetch")
    fetch_parser.add_argument("--url")
    fetch_parser.add_argument("--token")
    fetch_parser.add_argument("--out", required=True)
    fetch_parser.add_argument("--settings")
    fetch_parser.add_argument("--page-size", type=int)
    fetch_parser.add_argument("--workers", type=int)
    fetch_parser.add_argument("--max-pages", type=int)
    fetch_parser.add_argument("--component")

    summary_parser = sub.add_parser("summary")
    summary_parser.add_argument("--input", required=True)
    summary_parser.add_argument("--top", type=int)
    summary_parser.add_argument("--json", action="store_true")
    summary_parser.add_argument("--settings")

    conc_parser = sub.add_parser("concurrency")
    conc_parser.add_argument("--input", required=True)
    conc_parser.add_argument("--threshold", type=int)
    conc_parser.add_argument("--lenient", action="store_true")
    conc_parser.add_argument("--json", action="store_true")
    conc_parser.add_argument("--settings")

    run_parser = sub.add_parser("run")
    run_parser.add_argument("--input", required=True)
    run_parser.add_argument("--out")
    run_parser.add_argument("--settings")
    run_parser.add_argument("--threshold", type=int)

    args = parser.parse_args(argv)

    if args.command == "fetch":
        cmd_fetch(
            args.url,
            args.token,
            args.out,
            args.settings,
            args.page_size,
            args.workers,
            args.max_pages,
            args.component,
        )
    elif args.command == "summary":
        cmd_summary(args.input, args.top, args.json, args.settings)
    elif args.command == "concurrency":
        cmd_concurrency(args.input, args.threshold, args.lenient, args.json, args.settings)
    elif args.command == "run":
        cmd_run(args.input, args.out, args.settings, args.threshold)
    else:
        raise SystemExit(2)


if __name__ == "__main__":
    main()
