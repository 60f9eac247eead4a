"""JSONL trail of SQLite lock contention in the claims database.

Claims API processes share one SQLite file. `run_in_transaction` retries a
write that hit `database is locked` and reports every retry here, one JSON
object per line, so operators can see which claim operations collide.

Destination: $SQLITE_LOCK_LOG_PATH, else `<LOG_DIR>/locks.log` when DB_PATH is
under /data/; otherwise lock events are not recorded. The file is rotated once
to `<name>.1` when it grows past $SQLITE_LOCK_LOG_MAX_BYTES.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


DEFAULT_MAX_BYTES = 5 * 1024 * 1024


def _env(name: str) -> str:
    return (os.getenv(name) or "").strip().strip('"').strip("'")


def lock_log_path() -> Path | None:
    explicit = _env("SQLITE_LOCK_LOG_PATH")
    if explicit:
        return Path(explicit)
    if _env("DB_PATH").startswith("/data/"):
        return Path(_env("LOG_DIR") or "/data/logs") / "locks.log"
    return None


def _max_bytes() -> int:
    try:
        return int(_env("SQLITE_LOCK_LOG_MAX_BYTES") or DEFAULT_MAX_BYTES)
    except ValueError:
        return DEFAULT_MAX_BYTES


def _rotate_if_needed(path: Path) -> None:
    try:
        if path.stat().st_size < _max_bytes():
            return
    except FileNotFoundError:
        return
    path.replace(path.with_name(path.name + ".1"))


def log_sqlite_lock_event(
    *,
    where: str,
    exc: BaseException,
    attempt: int,
    retries: int,
    delay_sec: float | None = None,
    extra: dict[str, Any] | None = None,
) -> None:
    """Record one retried lock; `where` names the claim operation, `attempt` is 1-based.

    Write failures are dropped: the workflow must not fail because of this log.
    """
    path = lock_log_path()
    if path is None:
        return

    event: dict[str, Any] = dict(extra or {})
    event.update(
        ts=datetime.now(timezone.utc).isoformat(),
        where=str(where or "transaction"),
        attempt=int(attempt),
        retries=int(retries),
        error=str(exc),
        pid=os.getpid(),
    )
    if delay_sec is not None:
        event["delay_sec"] = round(float(delay_sec), 4)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        _rotate_if_needed(path)
        with path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(event, ensure_ascii=False, sort_keys=True, separators=(",", ":")) + "\n")
    except OSError:
        return
