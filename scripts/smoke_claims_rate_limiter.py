#!/usr/bin/env python3
"""
Claims rate limiter smoke-check.

What it validates:
- per-user-per-place axis blocks the N+1th action inside the window
- per-IP axis blocks independently of the user axis
- a rejected hit records nothing on either axis
- the action is allowed again once the window fully rolls over
- concurrent hits against one key never exceed the limit
- purge_stale drops events older than every window

Run:
  python3 scripts/smoke_claims_rate_limiter.py
"""

from __future__ import annotations

import asyncio
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))

from database import init_db, open_db  # noqa: E402
from ownership.errors import RateLimited  # noqa: E402
from ownership.rate_limit import (  # noqa: E402
    ACTION_SUBMIT_CLAIM,
    RateLimiter,
    RateLimitPolicy,
    SqliteRateLimitStore,
)


START = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def _assert(cond: bool, message: str) -> None:
    if not cond:
        raise AssertionError(message)


async def _allowed(limiter: RateLimiter, *, ip: str, user: str, target: str = "place:1") -> bool:
    try:
        await limiter.hit(ACTION_SUBMIT_CLAIM, ip_address=ip, user_id=user, target=target)
    except RateLimited:
        return False
    return True


async def _event_count(db_path: str, subject: str) -> int:
    async with open_db(db_path) as db:
        async with db.execute("SELECT COUNT(*) FROM rate_limit_events WHERE subject = ?", (subject,)) as cur:
            row = await cur.fetchone()
    return int(row[0])


async def _run_checks(db_path: str) -> None:
    await init_db(db_path)
    clock = _Clock(START)
    limiter = RateLimiter(
        SqliteRateLimitStore(db_path),
        policies={ACTION_SUBMIT_CLAIM: RateLimitPolicy(ip_limit=3, user_limit=2, window_sec=60)},
        clock=clock,
    )

    # User+place axis: two allowed, third rejected even from fresh IPs.
    _assert(await _allowed(limiter, ip="10.0.0.1", user="u1"), "1st user hit must pass")
    _assert(await _allowed(limiter, ip="10.0.0.2", user="u1"), "2nd user hit must pass")
    try:
        await limiter.hit(ACTION_SUBMIT_CLAIM, ip_address="10.0.0.3", user_id="u1", target="place:1")
    except RateLimited as exc:
        _assert(0 < exc.retry_after_sec <= 60, f"retry_after must be inside window, got {exc.retry_after_sec}")
        _assert(exc.code == "rate_limited", "error code must be rate_limited")
    else:
        raise AssertionError("3rd user hit must be rate limited")
    _assert(await _event_count(db_path, "ip:10.0.0.3") == 0, "rejected hit must not record the IP axis")

    # Another place for the same user is a separate subject.
    _assert(await _allowed(limiter, ip="10.0.0.4", user="u1", target="place:2"), "other place must pass")

    # IP axis: three users from one IP, the fourth is blocked.
    for user in ("a", "b", "c"):
        _assert(await _allowed(limiter, ip="192.0.2.7", user=user), f"IP hit for {user} must pass")
    _assert(not await _allowed(limiter, ip="192.0.2.7", user="d"), "4th hit from one IP must be blocked")
    _assert(await _event_count(db_path, "user:d:place:1") == 0, "rejected hit must not record the user axis")

    # Window roll-over.
    clock.advance(seconds=30)
    _assert(not await _allowed(limiter, ip="10.0.0.9", user="u1"), "still blocked mid-window")
    clock.advance(seconds=31)
    _assert(await _allowed(limiter, ip="10.0.0.9", user="u1"), "allowed again after window rolls over")
    _assert(await _allowed(limiter, ip="192.0.2.7", user="d"), "IP allowed again after window rolls over")

    # Concurrent hits on one key never exceed the limit.
    results = await asyncio.gather(*[_allowed(limiter, ip=f"203.0.113.{i}", user="burst") for i in range(8)])
    _assert(sum(1 for ok in results if ok) == 2, f"exactly 2 concurrent hits may pass, got {results}")
    _assert(await _event_count(db_path, "user:burst:place:1") == 2, "only passing hits are recorded")

    # Garbage collection of stale keys.
    clock.advance(hours=2)
    removed = await limiter.purge_stale()
    _assert(removed > 0, "purge_stale must remove old events")
    async with open_db(db_path) as db:
        async with db.execute("SELECT COUNT(*) FROM rate_limit_events") as cur:
            row = await cur.fetchone()
    _assert(int(row[0]) == 0, "no events may survive the purge")


def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(_run_checks(str(Path(tmp) / "claims.db")))
    print("OK: claims rate limiter smoke passed.")


if __name__ == "__main__":
    main()
