from __future__ import annotations

import threading
import time

import pytest
import requests

from task_queue_stats.core.fetch import TaskFetcher
from task_queue_stats.core.task_io import load_tasks
from task_queue_stats.core.types import TaskFetchError


class FakeResponse:
    def __init__(self, status_code: int, payload=None) -> None:
        self.status_code = status_code
        self._payload = payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    """Serves pages of a fixed task list; `failures` maps page -> queued responses."""

    def __init__(self, tasks, failures=None) -> None:
        self.tasks = tasks
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls: list[dict] = []
        self.auth = None
        self._lock = threading.Lock()

    def get(self, url, params=None, timeout=None):
        with self._lock:
            self.calls.append({"url": url, "params": dict(params or {}), "timeout": timeout})
            page = int(params["p"])
            queued = self.failures.get(page)
            if queued:
                item = queued.pop(0)
                if isinstance(item, Exception):
                    raise item
                return item
        size = int(params["ps"])
        chunk = self.tasks[(page - 1) * size : page * size]
        return FakeResponse(
            200,
            {"tasks": chunk, "paging": {"pageIndex": page, "pageSize": size, "total": len(self.tasks)}},
        )


def _tasks(count: int) -> list[dict]:
    return [{"id": f"T{i}", "status": "SUCCESS"} for i in range(count)]


def test_fetch_all_reads_every_page_in_order(tmp_path) -> None:
    session = FakeSession(_tasks(7))
    fetcher = TaskFetcher(
        "https://ci.example.com/",
        "secret",
        page_size=3,
        max_workers=3,
        session=session,
    )
    tasks = fetcher.fetch_all(tmp_path)

    assert [t["id"] for t in tasks] == [f"T{i}" for i in range(7)]
    assert sorted(c["params"]["p"] for c in session.calls) == [1, 2, 3]
    assert all(c["url"] == "https://ci.example.com/api/ce/activity" for c in session.calls)
    assert session.auth == ("secret", "")
    assert len(list(tmp_path.glob("tasks_page_*.json"))) == 3
    assert [t["id"] for t in load_tasks(tmp_path)] == [t["id"] for t in tasks]


def test_max_pages_caps_requests() -> None:
    session = FakeSession(_tasks(10))
    fetcher = TaskFetcher("https://ci", page_size=2, max_pages=2, session=session)
    assert len(fetcher.fetch_all()) == 4
    assert len(session.calls) == 2


def test_filters_are_mapped_to_query_params() -> None:
    session = FakeSession(_tasks(1))
    fetcher = TaskFetcher(
        "https://ci",
        page_size=5,
        filters={"component": "proj-a", "status": "", "min_submitted_at": "2024-01-01"},
        session=session,
    )
    fetcher.fetch_all()
    params = session.calls[0]["params"]
    assert params["component"] == "proj-a"
    assert params["minSubmittedAt"] == "2024-01-01"
    assert "status" not in params


class SlowSession(FakeSession):
    """Pages after `fast_until` take `delay` seconds to answer."""

    def __init__(self, tasks, failures=None, *, fast_until: int = 2, delay: float = 0.05) -> None:
        super().__init__(tasks, failures)
        self.fast_until = fast_until
        self.delay = delay

    def get(self, url, params=None, timeout=None):
        if int(params["p"]) > self.fast_until:
            time.sleep(self.delay)
        return super().get(url, params=params, timeout=timeout)


def test_failed_page_cancels_queued_pages() -> None:
    session = SlowSession(_tasks(20), failures={2: [FakeResponse(403)]})
    fetcher = TaskFetcher("https://ci", page_size=2, max_workers=1, session=session)
    with pytest.raises(TaskFetchError) as excinfo:
        fetcher.fetch_all()
    assert excinfo.value.status_code == 403
    requested = sorted(c["params"]["p"] for c in session.calls)
    assert requested[:2] == [1, 2]
    assert max(requested) < 6


def test_transient_errors_are_retried() -> None:
    session = FakeSession(
        _tasks(2),
        failures={1: [FakeResponse(503), requests.ConnectionError("reset")]},
    )
    messages: list[str] = []
    fetcher = TaskFetcher(
        "https://ci", page_size=5, retries=2, backoff_s=0, session=session, logger=messages.append
    )
    assert len(fetcher.fetch_all()) == 2
    assert len(session.calls) == 3
    assert sum("[RETRY]" in m for m in messages) == 2


def test_exhausted_retries_raise() -> None:
    session = FakeSession(_tasks(2), failures={1: [FakeResponse(502)] * 3})
    fetcher = TaskFetcher("https://ci", retries=2, backoff_s=0, session=session)
    with pytest.raises(TaskFetchError, match="giving up"):
        fetcher.fetch_page(1)


def test_client_errors_fail_fast() -> None:
    session = FakeSession(_tasks(2), failures={1: [FakeResponse(401)]})
    fetcher = TaskFetcher("https://ci", retries=5, backoff_s=0, session=session)
    with pytest.raises(TaskFetchError) as excinfo:
        fetcher.fetch_page(1)
    assert excinfo.value.status_code == 401
    assert len(session.calls) == 1


def test_payload_without_tasks_is_rejected() -> None:
    session = FakeSession([], failures={1: [FakeResponse(200, {"paging": {}})]})
    fetcher = TaskFetcher("https://ci", session=session)
    with pytest.raises(TaskFetchError, match="tasks"):
        fetcher.fetch_page(1)


def test_invalid_json_is_rejected() -> None:
    session = FakeSession([], failures={1: [FakeResponse(200, ValueError("bad json"))]})
    fetcher = TaskFetcher("https://ci", session=session)
    with pytest.raises(TaskFetchError, match="invalid JSON"):
        fetcher.fetch_page(1)


@pytest.mark.parametrize("page_size", [0, 1001])
def test_page_size_bounds(page_size: int) -> None:
    with pytest.raises(ValueError):
        TaskFetcher("https://ci", page_size=page_size, session=FakeSession([]))
