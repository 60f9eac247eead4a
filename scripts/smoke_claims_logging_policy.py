#!/usr/bin/env python3
"""
Smoke-check: claims logging and transaction boundary policy.

Policy goals:
- log calls never receive a verification code, its hash, SMS text, the HMAC
  key or a phone number
- explicit SQL transactions (`BEGIN`) live only in `src/database.py`
- DB-oriented modules stay network-free, so no HTTP call runs while the
  SQLite write lock is held
- the log handler filter masks codes and phone numbers at runtime
- retried SQLite locks land in the JSONL lock log, which rotates by size
- runtime code raises real exceptions instead of using `assert`

Run:
  python3 scripts/smoke_claims_logging_policy.py
"""

from __future__ import annotations

import ast
import json
import logging
import os
import re
import sqlite3
import sys
import tempfile
from pathlib import Path


def _resolve(path_rel: str) -> Path:
    candidates = [
        Path(__file__).resolve().parents[1] / path_rel,
        Path.cwd() / path_rel,
        Path("/app") / path_rel,
    ]
    for p in candidates:
        if p.exists():
            return p
    return candidates[0]


SRC_DIR = _resolve("src")
DB_FILE = SRC_DIR / "database.py"
DB_ORIENTED_FILES = (
    DB_FILE,
    SRC_DIR / "ownership" / "repository.py",
    SRC_DIR / "ownership" / "directory.py",
    SRC_DIR / "ownership" / "state_machine.py",
    SRC_DIR / "ownership" / "audit.py",
)

LOG_METHODS = {"debug", "info", "warning", "error", "exception", "critical", "log"}
SENSITIVE_NAMES = {"code", "code_hash", "text", "secret", "key", "phone_number", "phone"}
SENSITIVE_ATTRS = {"code_hash", "phone_number", "_key", "claim_code_secret"}

FORBIDDEN_NETWORK_MARKERS = (
    "import aiohttp",
    "from aiohttp",
    "clientsession(",
    ".send(",
    "requests.",
    "httpx.",
    "urllib.request",
)

BEGIN_RE = re.compile(r"execute\(\s*[\"']BEGIN", re.IGNORECASE)


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


def _is_log_call(node: ast.Call) -> bool:
    func = node.func
    return (
        isinstance(func, ast.Attribute)
        and func.attr in LOG_METHODS
        and isinstance(func.value, ast.Name)
        and func.value.id in {"logger", "logging"}
    )


def _sensitive_refs(node: ast.Call) -> list[str]:
    refs: list[str] = []
    for arg in [*node.args, *(kw.value for kw in node.keywords)]:
        for sub in ast.walk(arg):
            if isinstance(sub, ast.Name) and sub.id in SENSITIVE_NAMES:
                refs.append(sub.id)
            elif isinstance(sub, ast.Attribute) and sub.attr in SENSITIVE_ATTRS:
                refs.append(sub.attr)
    return refs


def _check_log_calls(path: Path) -> list[str]:
    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    violations: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Call) and _is_log_call(node):
            refs = _sensitive_refs(node)
            if refs:
                violations.append(f"{path}:{node.lineno}: log call references {sorted(set(refs))}")
    return violations


def _check_asserts(path: Path) -> list[str]:
    tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    return [
        f"{path}:{node.lineno}: assert statement in runtime code (stripped under -O)"
        for node in ast.walk(tree)
        if isinstance(node, ast.Assert)
    ]


def _check_runtime_redaction() -> None:
    sys.path.insert(0, str(SRC_DIR))
    from logging_setup import SensitiveDataFilter, mask_sensitive

    sms = mask_sensitive("Your place ownership verification code is 123456. It expires in 10 minutes.")
    _assert("123456" not in sms and "******" in sms, f"code must be masked: {sms!r}")
    _assert("10 minutes" in sms, "short numbers stay readable")
    phone = mask_sensitive("delivering to +380501234567 now")
    _assert("+380501234567" not in phone and phone.endswith("*67 now"), f"phone must be masked: {phone!r}")
    plain = "claim_id=12 at 2026-03-10T12:00:00+00:00 retry_after=3600s"
    _assert(mask_sensitive(plain) == plain, "ids and timestamps are untouched")

    record = logging.LogRecord("smoke", logging.INFO, __file__, 1, "SMS to %s", ("+380501234567",), None)
    _assert(SensitiveDataFilter().filter(record), "filter never drops records")
    _assert("+380501234567" not in record.getMessage(), "filter masks interpolated args")


def _check_lock_event_log() -> None:
    sys.path.insert(0, str(SRC_DIR))
    from sqlite_lock_logger import log_sqlite_lock_event

    saved = {name: os.environ.get(name) for name in ("SQLITE_LOCK_LOG_PATH", "SQLITE_LOCK_LOG_MAX_BYTES")}
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "locks.log"
        os.environ["SQLITE_LOCK_LOG_PATH"] = str(path)
        os.environ["SQLITE_LOCK_LOG_MAX_BYTES"] = "250"
        try:
            for attempt in (1, 2, 1):
                log_sqlite_lock_event(
                    where="service.verify_phone_code",
                    exc=sqlite3.OperationalError("database is locked"),
                    attempt=attempt,
                    retries=3,
                    delay_sec=0.05 * attempt,
                )
            lines = [
                json.loads(line)
                for log_file in (path.with_name("locks.log.1"), path)
                if log_file.exists()
                for line in log_file.read_text(encoding="utf-8").splitlines()
            ]
            _assert(len(lines) == 3, f"every retry is recorded: {lines}")
            _assert(lines[0]["where"] == "service.verify_phone_code", "operation is recorded")
            _assert(lines[0]["error"] == "database is locked" and lines[0]["retries"] == 3, f"event: {lines[0]}")
            _assert(path.with_name("locks.log.1").exists(), "oversized lock log is rotated")
        finally:
            for name, value in saved.items():
                if value is None:
                    os.environ.pop(name, None)
                else:
                    os.environ[name] = value


def main() -> None:
    _assert(SRC_DIR.exists(), f"src dir not found: {SRC_DIR}")
    _check_runtime_redaction()
    _check_lock_event_log()
    sources = sorted(SRC_DIR.rglob("*.py"))
    _assert(len(sources) > 0, "no sources found")

    violations: list[str] = []
    log_calls = 0
    for path in sources:
        violations.extend(_check_log_calls(path))
        violations.extend(_check_asserts(path))
        text = path.read_text(encoding="utf-8")
        log_calls += text.count("logger.")
        if path != DB_FILE and BEGIN_RE.search(text):
            violations.append(f"{path}: raw SQL transaction BEGIN outside database.py")

    for path in DB_ORIENTED_FILES:
        lower_text = path.read_text(encoding="utf-8").lower()
        for marker in FORBIDDEN_NETWORK_MARKERS:
            if marker in lower_text:
                violations.append(f"{path}: forbidden network marker `{marker}` in DB-oriented module")

    # Sanity: the scan actually saw logging and the transaction helper.
    if log_calls == 0:
        violations.append("expected logger calls under src/ (sanity check failed)")
    if not BEGIN_RE.search(DB_FILE.read_text(encoding="utf-8")):
        violations.append("expected explicit BEGIN in database.py (sanity check failed)")

    if violations:
        raise SystemExit(
            "ERROR: claims logging policy violation(s):\n"
            + "\n".join(f"- {v}" for v in violations)
        )

    print("OK: claims logging policy smoke passed.")


if __name__ == "__main__":
    main()
