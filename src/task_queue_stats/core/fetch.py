from __future__ import annotations

import math
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable

import requests

from .task_io import write_page
from .types import TaskFetchError

ACTIVITY_PATH = "/api/ce/activity"
MAX_PAGE_SIZE = 1000
_RETRY_STATUS = {429, 500, 502, 503, 504}
_FILTER_PARAMS = {
    "component": "component",
    "task_type": "type",
    "status": "status",
    "min_submitted_at": "minSubmittedAt",
    "max_executed_at": "maxExecutedAt",
}


class TaskFetcher:
    """Paginated, parallel download of background task activity pages."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        page_size: int = 100,
        max_workers: int = 4,
        timeout: float = 30.0,
        retries: int = 3,
        max_pages: int | None = None,
        filters: dict[str, str] | None = None,
        session: requests.Session | None = None,
        logger: Callable[[str], None] | None = None,
        backoff_s: float = 0.5,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        if page_size <= 0 or page_size > MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be in 1..{MAX_PAGE_SIZE}")
        self.base_url = base_url.rstrip("/")
        self.page_size = int(page_size)
        self.max_workers = max(1, int(max_workers))
        self.timeout = timeout
        self.retries = max(0, int(retries))
        self.max_pages = max_pages
        self.filters = dict(filters or {})
        self.session = session or requests.Session()
        if token:
            # Tokens are sent as the basic-auth user with an empty password.
            self.session.auth = (token, "")
        self.logger = logger
        self.backoff_s = backoff_s

    def _log(self, msg: str) -> None:
        if self.logger:
            self.logger(msg)

    def _params(self, index: int) -> dict[str, Any]:
        params: dict[str, Any] = {"p": int(index), "ps": self.page_size}
        for key, value in sorted(self.filters.items()):
            if value in (None, ""):
                continue
            params[_FILTER_PARAMS.get(key, key)] = value
        return params

    def fetch_page(self, index: int) -> dict[str, Any]:
        url = f"{self.base_url}{ACTIVITY_PATH}"
        attempts = self.retries + 1
        last_error = "no attempt made"
        for attempt in range(1, attempts + 1):
            status_code: int | None = None
            try:
                response = self.session.get(url, params=self._params(index), timeout=self.timeout)
                status_code = response.status_code
                if status_code in _RETRY_STATUS:
                    last_error = f"HTTP {status_code}"
                else:
                    response.raise_for_status()
                    payload = response.json()
                    if not isinstance(payload, dict) or not isinstance(payload.get("tasks"), list):
                        raise TaskFetchError(index, "response has no 'tasks' list", status_code)
                    return payload
            except requests.HTTPError as exc:
                raise TaskFetchError(index, str(exc), status_code) from exc
            except ValueError as exc:
                raise TaskFetchError(index, f"invalid JSON: {exc}", status_code) from exc
            except requests.RequestException as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            if attempt < attempts:
                self._log(f"[RETRY] page {index} attempt {attempt}/{attempts}: {last_error}")
                time.sleep(self.backoff_s * attempt)
        raise TaskFetchError(index, f"giving up after {attempts} attempts: {last_error}")

    def page_count(self, first_page: dict[str, Any]) -> int:
        paging = first_page.get("paging") if isinstance(first_page.get("paging"), dict) else {}
        total = paging.get("total")
        if isinstance(total, int) and total >= 0:
            pages = max(1, math.ceil(total / self.page_size))
        else:
            pages = 1
        if self.max_pages is not None:
            pages = min(pages, max(1, int(self.max_pages)))
        return pages

    def fetch_all(self, out_dir: Path | None = None) -> list[dict[str, Any]]:
        first = self.fetch_page(1)
        pages = self.page_count(first)
        self._log(f"fetching {pages} page(s) of size {self.page_size} from {self.base_url}")
        results: dict[int, dict[str, Any]] = {1: first}
        remaining = list(range(2, pages + 1))
        if remaining:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = {index: executor.submit(self.fetch_page, index) for index in remaining}
                try:
                    for index, future in futures.items():
                        results[index] = future.result()
                except TaskFetchError:
                    # Pages not yet started are dropped; running ones finish.
                    executor.shutdown(wait=False, cancel_futures=True)
                    raise
        tasks: list[dict[str, Any]] = []
        for index in sorted(results):
            payload = results[index]
            if out_dir is not None:
                write_page(out_dir, index, payload)
            tasks.extend(payload["tasks"])
        self._log(f"fetched {len(tasks)} task(s)")
        return tasks
