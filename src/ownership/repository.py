"""Persistence helpers for the ownership claims module."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, TypeVar

import aiosqlite

from database import open_db, run_in_transaction
from ownership.models import AuditLogEntry, Claim, VerificationAttempt, VerifiedOwner
from ownership.statuses import (
    ATTEMPT_ISSUED,
    ATTEMPT_SUPERSEDED,
    CLAIM_REJECTED,
    NON_TERMINAL_STATUSES,
)


T = TypeVar("T")

_OPEN_STATUSES_SQL = ", ".join(f"'{status}'" for status in sorted(NON_TERMINAL_STATUSES))

# Columns a transition may set alongside the status.
CLAIM_MUTABLE_FIELDS = frozenset(
    {
        "role",
        "business_email",
        "business_description",
        "years_at_location",
        "phone_number",
        "fraud_score",
        "fraud_analysis_json",
        "rejection_reason",
        "cancel_reason",
        "decided_by",
        "decided_at",
    }
)

CLAIM_COLUMNS = """id, user_id, place_id, status, role, business_email,
                   business_description, years_at_location, phone_number,
                   ip_address, user_agent, fraud_score, fraud_analysis_json,
                   rejection_reason, cancel_reason, decided_by, decided_at,
                   created_at, updated_at"""

ATTEMPT_COLUMNS = """id, claim_id, phone_number, code_hash, status, issued_at,
                     expires_at, failed_checks, resend_count, verified_at"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """ISO-8601 in UTC; naive values are treated as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_iso_utc(raw_value: str | None) -> datetime | None:
    if not raw_value:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw_value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_json(data: dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


class ClaimRepository:
    """SQL for claims, verification attempts, audit entries and verified owners.

    Methods taking `db` run on the caller's connection, usually inside
    `transaction()`, so a check and the write that depends on it share one
    `BEGIN IMMEDIATE` boundary.
    """

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    async def transaction(self, fn: Callable[[aiosqlite.Connection], Awaitable[T]], *, where: str) -> T:
        return await run_in_transaction(fn, db_path=self.db_path, where=where)

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        async with open_db(self.db_path) as db:
            yield db

    # Claims

    async def get_claim(self, db: aiosqlite.Connection, claim_id: int) -> Claim | None:
        async with db.execute(f"SELECT {CLAIM_COLUMNS} FROM place_claims WHERE id = ?", (claim_id,)) as cur:
            row = await cur.fetchone()
        return Claim.from_row(row) if row else None

    async def insert_claim(
        self,
        db: aiosqlite.Connection,
        *,
        user_id: str,
        place_id: int,
        status: str,
        ip_address: str | None,
        user_agent: str | None,
        now_iso: str,
    ) -> Claim:
        cursor = await db.execute(
            """INSERT INTO place_claims(
                   user_id, place_id, status, ip_address, user_agent, created_at, updated_at
               ) VALUES(?, ?, ?, ?, ?, ?, ?)""",
            (user_id, place_id, status, ip_address, user_agent, now_iso, now_iso),
        )
        claim = await self.get_claim(db, int(cursor.lastrowid))
        if claim is None:
            raise RuntimeError("Failed to read claim after insert")
        return claim

    async def compare_and_set_status(
        self,
        db: aiosqlite.Connection,
        claim_id: int,
        *,
        from_status: str,
        to_status: str,
        now_iso: str,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """Move the claim only if it is still in `from_status`; False when another writer won."""
        fields = dict(fields or {})
        unknown = set(fields) - CLAIM_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported claim fields: {sorted(unknown)}")
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [to_status, now_iso]
        for name in sorted(fields):
            assignments.append(f"{name} = ?")
            params.append(fields[name])
        params.extend([claim_id, from_status])
        cursor = await db.execute(
            f"UPDATE place_claims SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            params,
        )
        return int(cursor.rowcount or 0) == 1

    async def list_open_claims_for_user(self, db: aiosqlite.Connection, user_id: str) -> list[Claim]:
        async with db.execute(
            f"""SELECT {CLAIM_COLUMNS}
                  FROM place_claims
                 WHERE user_id = ? AND status IN ({_OPEN_STATUSES_SQL})
                 ORDER BY id""",
            (user_id,),
        ) as cur:
            rows = await cur.fetchall()
        return [Claim.from_row(row) for row in rows]

    async def list_claims_for_user(self, db: aiosqlite.Connection, user_id: str) -> list[Claim]:
        """Every claim of the user, newest first."""
        async with db.execute(
            f"""SELECT {CLAIM_COLUMNS}
                  FROM place_claims
                 WHERE user_id = ?
                 ORDER BY id DESC""",
            (user_id,),
        ) as cur:
            rows = await cur.fetchall()
        return [Claim.from_row(row) for row in rows]

    async def get_open_claim_for_place(self, db: aiosqlite.Connection, place_id: int) -> Claim | None:
        async with db.execute(
            f"""SELECT {CLAIM_COLUMNS}
                  FROM place_claims
                 WHERE place_id = ? AND status IN ({_OPEN_STATUSES_SQL})
                 LIMIT 1""",
            (place_id,),
        ) as cur:
            row = await cur.fetchone()
        return Claim.from_row(row) if row else None

    async def count_claims_for_user(self, db: aiosqlite.Connection, user_id: str) -> int:
        async with db.execute("SELECT COUNT(*) FROM place_claims WHERE user_id = ?", (user_id,)) as cur:
            row = await cur.fetchone()
        return int(row[0] or 0)

    async def latest_rejection_at(self, db: aiosqlite.Connection, user_id: str, place_id: int) -> str | None:
        async with db.execute(
            """SELECT MAX(COALESCE(decided_at, updated_at))
                 FROM place_claims
                WHERE user_id = ? AND place_id = ? AND status = ?""",
            (user_id, place_id, CLAIM_REJECTED),
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row and row[0] else None

    async def count_rejected_claims_for_user(self, db: aiosqlite.Connection, user_id: str) -> int:
        async with db.execute(
            "SELECT COUNT(*) FROM place_claims WHERE user_id = ? AND status = ?",
            (user_id, CLAIM_REJECTED),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0] or 0)

    async def list_recent_claim_place_ids(
        self,
        db: aiosqlite.Connection,
        user_id: str,
        *,
        exclude_claim_id: int,
        since_iso: str,
    ) -> list[int]:
        async with db.execute(
            """SELECT DISTINCT place_id
                 FROM place_claims
                WHERE user_id = ? AND id != ? AND created_at >= ?""",
            (user_id, exclude_claim_id, since_iso),
        ) as cur:
            rows = await cur.fetchall()
        return [int(row[0]) for row in rows]

    async def count_other_claims_with_phone(
        self,
        db: aiosqlite.Connection,
        phone_number: str,
        *,
        exclude_user_id: str,
    ) -> int:
        async with db.execute(
            "SELECT COUNT(*) FROM place_claims WHERE phone_number = ? AND user_id != ?",
            (phone_number, exclude_user_id),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0] or 0)

    async def count_other_users_claiming_from_ip(
        self,
        db: aiosqlite.Connection,
        ip_address: str,
        *,
        exclude_user_id: str,
    ) -> int:
        async with db.execute(
            "SELECT COUNT(DISTINCT user_id) FROM place_claims WHERE ip_address = ? AND user_id != ?",
            (ip_address, exclude_user_id),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0] or 0)

    async def list_claims_in_status(
        self,
        db: aiosqlite.Connection,
        status: str,
        *,
        limit: int = 50,
    ) -> list[Claim]:
        async with db.execute(
            f"""SELECT {CLAIM_COLUMNS}
                  FROM place_claims
                 WHERE status = ?
                 ORDER BY updated_at ASC, id ASC
                 LIMIT ?""",
            (status, limit),
        ) as cur:
            rows = await cur.fetchall()
        return [Claim.from_row(row) for row in rows]

    # Verification attempts

    async def get_issued_attempt(self, db: aiosqlite.Connection, claim_id: int) -> VerificationAttempt | None:
        async with db.execute(
            f"""SELECT {ATTEMPT_COLUMNS}
                  FROM claim_verification_attempts
                 WHERE claim_id = ? AND status = ?""",
            (claim_id, ATTEMPT_ISSUED),
        ) as cur:
            row = await cur.fetchone()
        return VerificationAttempt.from_row(row) if row else None

    async def get_latest_attempt(self, db: aiosqlite.Connection, claim_id: int) -> VerificationAttempt | None:
        async with db.execute(
            f"""SELECT {ATTEMPT_COLUMNS}
                  FROM claim_verification_attempts
                 WHERE claim_id = ?
                 ORDER BY id DESC
                 LIMIT 1""",
            (claim_id,),
        ) as cur:
            row = await cur.fetchone()
        return VerificationAttempt.from_row(row) if row else None

    async def supersede_issued_attempts(self, db: aiosqlite.Connection, claim_id: int) -> int:
        cursor = await db.execute(
            "UPDATE claim_verification_attempts SET status = ? WHERE claim_id = ? AND status = ?",
            (ATTEMPT_SUPERSEDED, claim_id, ATTEMPT_ISSUED),
        )
        return int(cursor.rowcount or 0)

    async def insert_attempt(
        self,
        db: aiosqlite.Connection,
        *,
        claim_id: int,
        phone_number: str,
        code_hash: str,
        issued_at: str,
        expires_at: str,
        resend_count: int,
    ) -> VerificationAttempt:
        cursor = await db.execute(
            """INSERT INTO claim_verification_attempts(
                   claim_id, phone_number, code_hash, status, issued_at, expires_at,
                   failed_checks, resend_count
               ) VALUES(?, ?, ?, ?, ?, ?, 0, ?)""",
            (claim_id, phone_number, code_hash, ATTEMPT_ISSUED, issued_at, expires_at, resend_count),
        )
        async with db.execute(
            f"SELECT {ATTEMPT_COLUMNS} FROM claim_verification_attempts WHERE id = ?",
            (int(cursor.lastrowid),),
        ) as cur:
            row = await cur.fetchone()
        return VerificationAttempt.from_row(row)

    async def set_attempt_status(
        self,
        db: aiosqlite.Connection,
        attempt_id: int,
        *,
        from_status: str,
        to_status: str,
        failed_checks: int | None = None,
        verified_at: str | None = None,
    ) -> bool:
        cursor = await db.execute(
            """UPDATE claim_verification_attempts
                  SET status = ?,
                      failed_checks = COALESCE(?, failed_checks),
                      verified_at = COALESCE(?, verified_at)
                WHERE id = ? AND status = ?""",
            (to_status, failed_checks, verified_at, attempt_id, from_status),
        )
        return int(cursor.rowcount or 0) == 1

    async def record_failed_check(self, db: aiosqlite.Connection, attempt_id: int) -> int:
        await db.execute(
            """UPDATE claim_verification_attempts
                  SET failed_checks = failed_checks + 1
                WHERE id = ? AND status = ?""",
            (attempt_id, ATTEMPT_ISSUED),
        )
        async with db.execute(
            "SELECT failed_checks FROM claim_verification_attempts WHERE id = ?",
            (attempt_id,),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0] or 0)

    async def sum_failed_checks_for_user(self, db: aiosqlite.Connection, user_id: str) -> int:
        async with db.execute(
            """SELECT COALESCE(SUM(a.failed_checks), 0)
                 FROM claim_verification_attempts a
                 JOIN place_claims c ON c.id = a.claim_id
                WHERE c.user_id = ?""",
            (user_id,),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0] or 0)

    # Audit log (append-only: no update or delete helpers)

    async def insert_audit_entry(self, db: aiosqlite.Connection, entry: AuditLogEntry) -> int:
        cursor = await db.execute(
            """INSERT INTO claim_audit_log(
                   claim_id, place_id, action, actor_id, actor_kind,
                   from_status, to_status, context_json, created_at
               ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.claim_id,
                entry.place_id,
                entry.action,
                entry.actor_id,
                entry.actor_kind,
                entry.from_status,
                entry.to_status,
                entry.context_json,
                entry.created_at,
            ),
        )
        return int(cursor.lastrowid)

    async def list_audit_for_claim(self, db: aiosqlite.Connection, claim_id: int) -> list[AuditLogEntry]:
        async with db.execute(
            """SELECT id, claim_id, place_id, action, actor_id, actor_kind,
                      from_status, to_status, context_json, created_at
                 FROM claim_audit_log
                WHERE claim_id = ?
                ORDER BY created_at ASC, id ASC""",
            (claim_id,),
        ) as cur:
            rows = await cur.fetchall()
        return [AuditLogEntry.from_row(row) for row in rows]

    async def list_audit_recent(
        self,
        db: aiosqlite.Connection,
        *,
        limit: int,
        offset: int,
        place_id: int | None = None,
    ) -> list[AuditLogEntry]:
        where_sql = ""
        params: list[Any] = []
        if place_id is not None:
            where_sql = "WHERE place_id = ?"
            params.append(place_id)
        params.extend([limit, offset])
        async with db.execute(
            f"""SELECT id, claim_id, place_id, action, actor_id, actor_kind,
                       from_status, to_status, context_json, created_at
                  FROM claim_audit_log
                  {where_sql}
                 ORDER BY created_at DESC, id DESC
                 LIMIT ? OFFSET ?""",
            params,
        ) as cur:
            rows = await cur.fetchall()
        return [AuditLogEntry.from_row(row) for row in rows]

    async def count_audit(self, db: aiosqlite.Connection, *, place_id: int | None = None) -> int:
        if place_id is None:
            query, params = "SELECT COUNT(*) FROM claim_audit_log", ()
        else:
            query, params = "SELECT COUNT(*) FROM claim_audit_log WHERE place_id = ?", (place_id,)
        async with db.execute(query, params) as cur:
            row = await cur.fetchone()
        return int(row[0] or 0)

    # Verified owners

    async def insert_verified_owner(
        self,
        db: aiosqlite.Connection,
        *,
        claim: Claim,
        role: str,
        subscription_status: str,
        now_iso: str,
    ) -> VerifiedOwner:
        cursor = await db.execute(
            """INSERT INTO verified_owners(
                   place_id, user_id, claim_id, role, subscription_status, created_at
               ) VALUES(?, ?, ?, ?, ?, ?)""",
            (claim.place_id, claim.user_id, claim.id, role, subscription_status, now_iso),
        )
        async with db.execute(
            """SELECT id, place_id, user_id, claim_id, role, subscription_status, created_at
                 FROM verified_owners
                WHERE id = ?""",
            (int(cursor.lastrowid),),
        ) as cur:
            row = await cur.fetchone()
        return VerifiedOwner.from_row(row)

    async def list_verified_owners(
        self,
        db: aiosqlite.Connection,
        *,
        place_id: int | None = None,
        user_id: str | None = None,
    ) -> list[VerifiedOwner]:
        clauses: list[str] = []
        params: list[Any] = []
        if place_id is not None:
            clauses.append("place_id = ?")
            params.append(place_id)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with db.execute(
            f"""SELECT id, place_id, user_id, claim_id, role, subscription_status, created_at
                  FROM verified_owners
                  {where_sql}
                 ORDER BY id""",
            params,
        ) as cur:
            rows = await cur.fetchall()
        return [VerifiedOwner.from_row(row) for row in rows]

    async def has_verified_owner(self, db: aiosqlite.Connection, place_id: int, *, user_id: str | None = None) -> bool:
        owners = await self.list_verified_owners(db, place_id=place_id, user_id=user_id)
        return bool(owners)
