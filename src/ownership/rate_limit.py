"""Sliding-window rate limiting for claim operations.

Counters live in the shared SQLite database, so every API process sees the
same windows. Each check evicts expired events for the keys it touches, counts
what is left, and records the new event for every key only when all keys are
under their limits. The whole step runs in one `BEGIN IMMEDIATE` transaction.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import aiosqlite

from database import run_in_transaction
from ownership.errors import RateLimited
from ownership.repository import utc_now


logger = logging.getLogger(__name__)

ACTION_SUBMIT_CLAIM = "submit_claim"
ACTION_BUSINESS_INFO = "business_info"
ACTION_SEND_CODE = "send_code"
ACTION_RESEND_CODE = "resend_code"
ACTION_VERIFY_CODE = "verify_code"
ACTION_CANCEL_CLAIM = "cancel_claim"
ACTION_ADMIN_REVIEW = "admin_review"

HOUR_SEC = 3600


@dataclass(frozen=True)
class RateLimitPolicy:
    ip_limit: int
    user_limit: int
    window_sec: int = HOUR_SEC


DEFAULT_POLICIES: dict[str, RateLimitPolicy] = {
    ACTION_SUBMIT_CLAIM: RateLimitPolicy(ip_limit=10, user_limit=5),
    ACTION_BUSINESS_INFO: RateLimitPolicy(ip_limit=20, user_limit=10),
    ACTION_SEND_CODE: RateLimitPolicy(ip_limit=10, user_limit=5),
    # Resends cost an SMS each.
    ACTION_RESEND_CODE: RateLimitPolicy(ip_limit=10, user_limit=3),
    ACTION_VERIFY_CODE: RateLimitPolicy(ip_limit=30, user_limit=15),
    ACTION_CANCEL_CLAIM: RateLimitPolicy(ip_limit=20, user_limit=5),
    ACTION_ADMIN_REVIEW: RateLimitPolicy(ip_limit=120, user_limit=60),
}


@dataclass(frozen=True)
class RateLimitKey:
    subject: str
    action: str
    limit: int
    window_sec: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_sec: int = 0
    blocked_subject: str | None = None


class RateLimitStore(Protocol):
    async def hit(self, keys: Sequence[RateLimitKey], *, now_ts: float) -> RateLimitDecision:
        """Atomically check every key and record one event per key when all pass."""
        ...

    async def purge_stale(self, *, older_than_ts: float) -> int:
        ...


class SqliteRateLimitStore:
    """Rate-limit events kept in the shared `rate_limit_events` table."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    async def hit(self, keys: Sequence[RateLimitKey], *, now_ts: float) -> RateLimitDecision:
        async def _check_and_record(db: aiosqlite.Connection) -> RateLimitDecision:
            blocked: RateLimitDecision | None = None
            for key in keys:
                window_start = now_ts - key.window_sec
                await db.execute(
                    "DELETE FROM rate_limit_events WHERE subject = ? AND action = ? AND occurred_at <= ?",
                    (key.subject, key.action, window_start),
                )
                async with db.execute(
                    """SELECT COUNT(*), MIN(occurred_at)
                         FROM rate_limit_events
                        WHERE subject = ? AND action = ?""",
                    (key.subject, key.action),
                ) as cur:
                    row = await cur.fetchone()
                count = int(row[0] or 0)
                if count < key.limit:
                    continue
                oldest = float(row[1] if row[1] is not None else now_ts)
                retry_after = max(1, math.ceil(oldest + key.window_sec - now_ts))
                if blocked is None or retry_after > blocked.retry_after_sec:
                    blocked = RateLimitDecision(allowed=False, retry_after_sec=retry_after, blocked_subject=key.subject)
            if blocked is not None:
                return blocked
            await db.executemany(
                "INSERT INTO rate_limit_events(subject, action, occurred_at) VALUES(?, ?, ?)",
                [(key.subject, key.action, now_ts) for key in keys],
            )
            return RateLimitDecision(allowed=True)

        return await run_in_transaction(_check_and_record, db_path=self.db_path, where="rate_limit.hit")

    async def purge_stale(self, *, older_than_ts: float) -> int:
        async def _purge(db: aiosqlite.Connection) -> int:
            cursor = await db.execute("DELETE FROM rate_limit_events WHERE occurred_at <= ?", (older_than_ts,))
            return int(cursor.rowcount or 0)

        return await run_in_transaction(_purge, db_path=self.db_path, where="rate_limit.purge_stale")


def ip_subject(ip_address: str) -> str:
    return f"ip:{ip_address or 'unknown'}"


def user_subject(user_id: str, target: str | None) -> str:
    if not target:
        return f"user:{user_id}"
    return f"user:{user_id}:{target}"


class RateLimiter:
    """Enforces the per-IP and per-user-per-place axes together."""

    def __init__(
        self,
        store: RateLimitStore,
        *,
        policies: dict[str, RateLimitPolicy] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.policies = dict(DEFAULT_POLICIES if policies is None else policies)
        self.clock = clock

    def keys_for(self, action: str, *, ip_address: str, user_id: str, target: str | None) -> list[RateLimitKey]:
        policy = self.policies.get(action)
        if policy is None:
            raise KeyError(f"No rate-limit policy for action: {action}")
        return [
            RateLimitKey(ip_subject(ip_address), action, policy.ip_limit, policy.window_sec),
            RateLimitKey(user_subject(user_id, target), action, policy.user_limit, policy.window_sec),
        ]

    async def hit(self, action: str, *, ip_address: str, user_id: str, target: str | None = None) -> None:
        """Count one attempt of `action` or raise RateLimited without recording anything."""
        keys = self.keys_for(action, ip_address=ip_address, user_id=user_id, target=target)
        decision = await self.store.hit(keys, now_ts=self.clock().timestamp())
        if decision.allowed:
            return
        logger.warning(
            "Rate limit hit: action=%s subject=%s retry_after=%ss",
            action,
            decision.blocked_subject,
            decision.retry_after_sec,
        )
        raise RateLimited(
            "Too many attempts. Please wait before trying again.",
            retry_after_sec=decision.retry_after_sec,
            details={"action": action},
        )

    def longest_window_sec(self) -> int:
        return max((policy.window_sec for policy in self.policies.values()), default=HOUR_SEC)

    async def purge_stale(self) -> int:
        """Drop events older than every configured window."""
        cutoff = self.clock().timestamp() - self.longest_window_sec()
        return await self.store.purge_stale(older_than_ts=cutoff)
