from __future__ import annotations

import traceback
from pathlib import Path
from typing import Any, Callable

from .concurrency import analyze_concurrency
from .normalize import normalize_records
from .report import build_report, write_report
from .settings import resolve_settings
from .summaries import summarize_tasks
from .task_io import load_tasks
from .types import RunResult
from .utils import ensure_dir, make_run_id, make_run_logger, write_json


class Pipeline:
    """One offline analysis run over a directory of task pages."""

    def __init__(self, output_root: Path, settings: dict[str, Any] | None = None) -> None:
        self.output_root = output_root
        self.settings = resolve_settings(settings)

    def _threshold(self, override: int | None) -> int:
        # Settings already carry the TASK_STATS_THRESHOLD override.
        if override is not None:
            return override
        return int(self.settings["threshold"])

    def run(
        self,
        input_dir: Path,
        *,
        threshold: int | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        run_id = run_id or make_run_id()
        run_dir = self.output_root / "runs" / run_id
        ensure_dir(run_dir / "logs")
        logger = make_run_logger(run_dir / "logs" / "run.log")
        threshold_value = self._threshold(threshold)
        logger(f"[RUN] {run_id} input={input_dir} threshold={threshold_value}")
        try:
            return self._run_stages(input_dir, run_id, run_dir, threshold_value, logger)
        except Exception as exc:
            logger(f"[ERROR] {type(exc).__name__}: {exc}")
            logger(traceback.format_exc().rstrip())
            raise

    def _run_stages(
        self,
        input_dir: Path,
        run_id: str,
        run_dir: Path,
        threshold: int,
        logger: Callable[[str], None],
    ) -> RunResult:
        stage = _stage_logger(logger)
        stage("load")
        raw_tasks = load_tasks(input_dir)
        logger(f"loaded {len(raw_tasks)} task(s) from {input_dir}")

        stage("normalize")
        normalization = normalize_records(
            raw_tasks, strict=bool(self.settings["strict"]), logger=logger
        )

        stage("summarize")
        summary = summarize_tasks(raw_tasks, normalization, top=int(self.settings["top"]))

        stage("concurrency")
        concurrency = analyze_concurrency(normalization.records, threshold, logger=logger)

        stage("report")
        report = build_report(
            summary,
            normalization,
            concurrency,
            run_id=run_id,
            source=str(input_dir),
            include_timeline=bool(self.settings["include_timeline"]),
        )
        write_report(run_dir, report)
        write_json(
            run_dir / "run_manifest.json",
            {
                "run_id": run_id,
                "input_dir": str(input_dir),
                "threshold": threshold,
                "settings": {k: v for k, v in self.settings.items() if k != "fetch"},
                "artifacts": ["report.json", "report.md", "logs/run.log"],
            },
        )
        logger(f"[DONE] {run_id}")
        return RunResult(
            run_id=run_id,
            run_dir=run_dir,
            normalization=normalization,
            concurrency=concurrency,
            summary=summary,
            report=report,
        )


def _stage_logger(logger: Callable[[str], None]) -> Callable[[str], None]:
    def stage(label: str) -> None:
        logger(f"[STAGE] {label}")

    return stage
