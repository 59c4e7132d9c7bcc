from __future__ import annotations

from pathlib import Path
from typing import Any

import pandas as pd
from jsonschema import validate

from .types import ConcurrencyResult, NormalizationResult
from .utils import atomic_write_text, now_iso, read_json, write_json

REPORT_SCHEMA = Path(__file__).resolve().parent.parent / "schemas" / "report.schema.json"

# Cap on ids echoed back for pending tasks; the count is always exact.
MAX_PENDING_IDS = 50


def format_duration_ms(ms: int | float) -> str:
    ms = int(round(ms))
    sign = "-" if ms < 0 else ""
    ms = abs(ms)
    days, rem = divmod(ms, 86_400_000)
    hours, rem = divmod(rem, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds = rem / 1000.0
    if days:
        return f"{sign}{days}d {hours:02d}h {minutes:02d}m {seconds:06.3f}s"
    if hours:
        return f"{sign}{hours}h {minutes:02d}m {seconds:06.3f}s"
    if minutes:
        return f"{sign}{minutes}m {seconds:06.3f}s"
    return f"{sign}{seconds:.3f}s"


def format_timestamp(value: str | pd.Timestamp | None) -> str:
    if value is None:
        return "-"
    ts = pd.Timestamp(value)
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC")
    return ts.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3] + " UTC"


def normalization_payload(normalization: NormalizationResult) -> dict[str, Any]:
    return {
        "executed": len(normalization.records),
        "pending": int(normalization.pending_count),
        "pending_ids": list(normalization.pending_ids[:MAX_PENDING_IDS]),
        "duplicates": int(normalization.duplicate_count),
        "errors": [err.as_dict() for err in normalization.errors],
    }


def build_report(
    summary: dict[str, Any],
    normalization: NormalizationResult,
    concurrency: ConcurrencyResult,
    *,
    run_id: str,
    source: str | None = None,
    include_timeline: bool = False,
    schema_path: Path = REPORT_SCHEMA,
) -> dict[str, Any]:
    report = {
        "run_id": run_id,
        "generated_at": now_iso(),
        "source": source,
        "summary": summary,
        "normalization": normalization_payload(normalization),
        "concurrency": concurrency.as_dict(include_timeline=include_timeline),
    }
    validate(instance=report, schema=read_json(schema_path))
    return report


def _category_lines(title: str, items: list[dict[str, Any]], total: int) -> list[str]:
    lines = ["", f"### {title}"]
    if not items:
        lines.append("(no tasks)")
        return lines
    lines.append("| Value | Count | Share |")
    lines.append("| --- | ---: | ---: |")
    for item in items:
        share = (item["count"] / total * 100.0) if total else 0.0
        lines.append(f"| {item['key']} | {item['count']} | {share:.1f}% |")
    return lines


def _duration_line(label: str, stats: dict[str, Any]) -> str:
    if not stats or not stats.get("count"):
        return f"- {label}: n/a"
    return (
        f"- {label}: mean {format_duration_ms(stats['mean_ms'])}, "
        f"p50 {format_duration_ms(stats['p50_ms'])}, "
        f"p95 {format_duration_ms(stats['p95_ms'])}, "
        f"max {format_duration_ms(stats['max_ms'])} (n={stats['count']})"
    )


def render_concurrency(concurrency: dict[str, Any]) -> list[str]:
    lines = ["## Concurrency"]
    if concurrency.get("is_empty"):
        lines.append("No executed tasks; concurrency analysis is empty.")
        return lines
    threshold = concurrency["threshold"]
    lines.append(
        f"- Peak: {concurrency['max_concurrency']} concurrent task(s) at "
        f"{format_timestamp(concurrency['max_concurrency_at'])}"
    )
    lines.append(f"- Average (time weighted): {concurrency.get('average_concurrency', 0.0):.2f}")
    lines.append(
        f"- Observed: {format_timestamp(concurrency.get('first_at'))} to "
        f"{format_timestamp(concurrency.get('last_at'))} "
        f"({concurrency.get('group_count', 0)} event groups, {concurrency.get('event_count', 0)} events)"
    )
    lines.append("")
    lines.append("### Concurrency levels")
    lines.append("| Level | Event groups | Share of groups | Time | Share of time |")
    lines.append("| ---: | ---: | ---: | ---: | ---: |")
    histogram = concurrency.get("level_histogram") or {}
    percentages = concurrency.get("level_percentages") or {}
    durations = concurrency.get("level_durations_ms") or {}
    time_pct = concurrency.get("level_time_percentages") or {}
    levels = sorted({int(k) for k in histogram} | {int(k) for k in durations})
    for level in levels:
        key = str(level)
        lines.append(
            f"| {level} | {histogram.get(key, 0)} | {percentages.get(key, 0.0):.2f}% | "
            f"{format_duration_ms(durations.get(key, 0))} | {time_pct.get(key, 0.0):.2f}% |"
        )
    lines.append("")
    intervals = concurrency.get("high_concurrency_intervals") or []
    lines.append(f"### Intervals with {threshold} or more concurrent tasks")
    if not intervals:
        lines.append("None.")
        return lines
    for interval in intervals:
        suffix = " (data ends while still at or above threshold)" if interval.get("closed_at_end") else ""
        lines.append(
            f"- {format_timestamp(interval['start'])} to {format_timestamp(interval['end'])}: "
            f"{format_duration_ms(interval['duration_ms'])}, peak {interval['peak']}{suffix}"
        )
    return lines


def render_summary(summary: dict[str, Any]) -> list[str]:
    total = int(summary.get("total", 0))
    lines = [
        "## Tasks",
        f"- Total: {total}",
        f"- Executed: {summary.get('executed', 0)}",
        f"- Pending (never started): {summary.get('pending', 0)}",
    ]
    if summary.get("invalid"):
        lines.append(f"- Invalid (skipped): {summary['invalid']}")
    lines.append(_duration_line("Queue wait", summary.get("queue_wait") or {}))
    lines.append(_duration_line("Execution time", summary.get("execution_time") or {}))
    titles = {
        "type": "By type",
        "status": "By status",
        "submitter": "By submitter",
        "branch_type": "By branch type",
        "warning_count": "By warning count",
        "project": "By project",
    }
    by = summary.get("by") or {}
    for key, title in titles.items():
        if key in by:
            lines.extend(_category_lines(title, by[key], total))
    return lines


def render_markdown(report: dict[str, Any]) -> str:
    lines: list[str] = ["# Background Task Report", ""]
    lines.append(f"Run `{report.get('run_id')}` generated {report.get('generated_at')}.")
    if report.get("source"):
        lines.append(f"Source: `{report['source']}`")
    lines.append("")
    lines.extend(render_summary(report.get("summary") or {}))
    lines.append("")
    lines.extend(render_concurrency(report.get("concurrency") or {}))
    errors = (report.get("normalization") or {}).get("errors") or []
    if errors:
        lines.append("")
        lines.append("## Malformed records")
        for err in errors[:20]:
            lines.append(f"- {err.get('task_id')}: {err.get('field')}: {err.get('reason')}")
    return "\n".join(lines).rstrip() + "\n"


def write_report(run_dir: Path, report: dict[str, Any]) -> tuple[Path, Path]:
    json_path = run_dir / "report.json"
    md_path = run_dir / "report.md"
    write_json(json_path, report)
    atomic_write_text(md_path, render_markdown(report))
    return json_path, md_path
