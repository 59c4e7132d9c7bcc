from __future__ import annotations

import json
import os
import re
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

ENV_PREFIX = "TASK_STATS_"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_run_id() -> str:
    return uuid.uuid4().hex


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


_FLOAT_PRECISION = 10


def _canonicalize(value: Any) -> Any:
    if isinstance(value, float):
        return round(value, _FLOAT_PRECISION)
    if isinstance(value, dict):
        return {str(key): _canonicalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonicalize(item) for item in value]
    return value


def json_dumps(data: Any) -> str:
    return json.dumps(
        _canonicalize(data), ensure_ascii=False, indent=2, sort_keys=True
    )


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def safe_replace(src: Path, dst: Path, attempts: int = 3) -> None:
    """os.replace with short retries for transient locks on shared volumes."""

    for i in range(attempts):
        try:
            os.replace(src, dst)
            return
        except OSError:
            if i + 1 >= attempts:
                raise
            time.sleep(0.02 * (i + 1))


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Atomically write bytes to `path` (temp file in the same dir, then replace)."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp.{uuid.uuid4().hex}")
    try:
        with tmp_path.open("wb") as handle:
            handle.write(data)
            handle.flush()
            try:
                os.fsync(handle.fileno())
            except OSError:
                # Not every filesystem supports fsync; the replace stays atomic.
                pass
        safe_replace(tmp_path, path)
    finally:
        try:
            if tmp_path.exists():
                tmp_path.unlink()
        except OSError:
            pass


def atomic_write_text(path: Path, text: str, encoding: str = "utf-8") -> None:
    atomic_write_bytes(path, text.encode(encoding))


def write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json_dumps(data), encoding="utf-8")


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return default


def env_int(name: str) -> int | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


_ENV_PLACEHOLDER_RE = re.compile(r"^\$\{ENV:([A-Z0-9_]+)\}$")


def resolve_env_placeholders(value: Any) -> Any:
    """Resolve `${ENV:NAME}` strings to their environment variable values.

    Settings files can then reference secrets (API tokens) without storing
    them on disk.
    """

    if isinstance(value, str):
        match = _ENV_PLACEHOLDER_RE.match(value.strip())
        if not match:
            return value
        name = match.group(1)
        if name not in os.environ:
            raise ValueError(f"Missing environment variable: {name}")
        return os.environ[name]
    if isinstance(value, list):
        return [resolve_env_placeholders(item) for item in value]
    if isinstance(value, dict):
        return {k: resolve_env_placeholders(v) for k, v in value.items()}
    return value


def get_output_root() -> Path:
    return Path(os.environ.get(f"{ENV_PREFIX}OUTPUT", "appdata"))


def progress_enabled() -> bool:
    return env_flag(f"{ENV_PREFIX}CLI_PROGRESS")


def make_run_logger(
    log_path: Path, *, echo: bool | None = None
) -> Callable[[str], None]:
    """Return a logger callable appending timestamped lines to `log_path`."""

    if echo is None:
        echo = progress_enabled()

    def logger(msg: str) -> None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"{now_iso()} {msg}\n")
        if echo:
            print(msg, flush=True)

    return logger
