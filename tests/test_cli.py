from __future__ import annotations

import json

import pytest

from task_queue_stats import cli
from task_queue_stats.core.fetch import TaskFetcher

from tests.conftest import make_task, write_pages


def test_concurrency_command_text(pages_dir, capsys) -> None:
    cli.main(["concurrency", "--input", str(pages_dir), "--threshold", "2"])
    out = capsys.readouterr().out
    assert "Peak: 2 concurrent task(s)" in out
    assert "1 pending task(s) excluded" in out
    assert "Total time at or above 2: 1.000s" in out


def test_concurrency_command_json(pages_dir, capsys) -> None:
    cli.main(["concurrency", "--input", str(pages_dir), "--threshold", "2", "--json"])
    payload = json.loads(capsys.readouterr().out)
    assert payload["max_concurrency"] == 2
    assert payload["pending"] == 1
    assert len(payload["high_concurrency_intervals"]) == 1


def test_concurrency_command_rejects_malformed(tmp_path) -> None:
    pages = write_pages(tmp_path / "p", [[make_task("BAD", "2024-03-01T10:00:00Z", -1)]])
    with pytest.raises(SystemExit, match="Malformed task record"):
        cli.main(["concurrency", "--input", str(pages)])


def test_concurrency_command_lenient(tmp_path, capsys) -> None:
    pages = write_pages(
        tmp_path / "p",
        [[make_task("BAD", "2024-03-01T10:00:00Z", -1), make_task("OK", "2024-03-01T10:00:00Z", 5)]],
    )
    cli.main(["concurrency", "--input", str(pages), "--lenient"])
    assert "1 malformed task(s) skipped" in capsys.readouterr().out


def test_negative_threshold_exits(pages_dir) -> None:
    with pytest.raises(SystemExit, match="threshold"):
        cli.main(["concurrency", "--input", str(pages_dir), "--threshold", "-1"])


def test_summary_command_json(pages_dir, capsys) -> None:
    cli.main(["summary", "--input", str(pages_dir), "--json", "--top", "1"])
    payload = json.loads(capsys.readouterr().out)
    assert payload["total"] == 4
    assert payload["by"]["type"] == [{"count": 3, "key": "REPORT"}]


def test_missing_input_directory_exits(tmp_path) -> None:
    with pytest.raises(SystemExit, match="not found"):
        cli.main(["summary", "--input", str(tmp_path / "nope")])


def test_run_command_prints_run_dir(pages_dir, tmp_path, capsys) -> None:
    settings = tmp_path / "settings.yaml"
    settings.write_text("threshold: 2\n", encoding="utf-8")
    cli.main(["run", "--input", str(pages_dir), "--out", str(tmp_path / "out"), "--settings", str(settings)])
    payload = json.loads(capsys.readouterr().out)
    assert (tmp_path / "out" / "runs" / payload["run_id"] / "report.json").exists()


def test_run_command_invalid_settings(pages_dir, tmp_path) -> None:
    settings = tmp_path / "settings.yaml"
    settings.write_text("threshold: lots\n", encoding="utf-8")
    with pytest.raises(SystemExit, match="Invalid settings"):
        cli.main(["run", "--input", str(pages_dir), "--out", str(tmp_path / "out"), "--settings", str(settings)])


def test_fetch_requires_url(tmp_path) -> None:
    with pytest.raises(SystemExit, match="Missing --url"):
        cli.main(["fetch", "--out", str(tmp_path)])


def test_fetch_command_uses_fetcher(tmp_path, monkeypatch, capsys) -> None:
    seen = {}

    def fake_fetch_all(self, out_dir=None):
        seen["base_url"] = self.base_url
        seen["page_size"] = self.page_size
        seen["filters"] = self.filters
        seen["out_dir"] = out_dir
        return [{"id": "T1"}, {"id": "T2"}]

    monkeypatch.setattr(TaskFetcher, "fetch_all", fake_fetch_all)
    cli.main(
        [
            "fetch",
            "--url",
            "https://ci.example.com",
            "--out",
            str(tmp_path / "pages"),
            "--page-size",
            "50",
            "--component",
            "proj-a",
        ]
    )
    assert seen["base_url"] == "https://ci.example.com"
    assert seen["page_size"] == 50
    assert seen["filters"] == {"component": "proj-a"}
    assert "2 task(s) written" in capsys.readouterr().out
