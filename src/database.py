"""SQLite access shared by every claims process: connections, transactions, schema."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

import aiosqlite

from config import DB_PATH
from sqlite_lock_logger import log_sqlite_lock_event


logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000
WRITE_RETRY_ATTEMPTS = 3
WRITE_RETRY_BASE_DELAY_SEC = 0.05

T = TypeVar("T")


async def apply_sqlite_pragmas(db: aiosqlite.Connection) -> None:
    """Apply SQLite settings for concurrent access from multiple API processes."""
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
    await db.execute("PRAGMA foreign_keys=ON;")


@asynccontextmanager
async def open_db(db_path: str | None = None) -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection in autocommit mode; writers use explicit BEGIN IMMEDIATE."""
    async with aiosqlite.connect(db_path or DB_PATH, isolation_level=None) as db:
        db.row_factory = aiosqlite.Row
        await apply_sqlite_pragmas(db)
        yield db


def is_sqlite_locked_error(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    msg = str(exc).lower()
    return "database is locked" in msg or "database table is locked" in msg


async def run_in_transaction(
    fn: Callable[[aiosqlite.Connection], Awaitable[T]],
    *,
    db_path: str | None = None,
    where: str = "",
    retries: int = WRITE_RETRY_ATTEMPTS,
) -> T:
    """Run `fn` inside one write transaction and commit it.

    Any exception raised by `fn` rolls the whole transaction back, so callers can
    abort with a domain error without leaving half-applied rows. Lock contention
    retries the whole transaction with exponential backoff.
    """
    attempt = 0
    while True:
        try:
            async with open_db(db_path) as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    result = await fn(db)
                except BaseException:
                    await db.rollback()
                    raise
                await db.commit()
                return result
        except sqlite3.OperationalError as exc:
            attempt += 1
            if not is_sqlite_locked_error(exc) or attempt >= retries:
                raise
            delay = WRITE_RETRY_BASE_DELAY_SEC * (2 ** (attempt - 1))
            logger.warning("SQLite locked in %s; retry %s/%s in %.2fs", where or "transaction", attempt, retries, delay)
            log_sqlite_lock_event(
                where=where or "database.run_in_transaction",
                exc=exc,
                attempt=attempt,
                retries=retries,
                delay_sec=delay,
            )
            await asyncio.sleep(delay)


# Collaborator tables (places, users, checkins) are owned by other features; the
# claims workflow only reads them, and creates them here so a fresh database works.
SCHEMA_STATEMENTS: tuple[str, ...] = (
    """CREATE TABLE IF NOT EXISTS places (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        latitude REAL DEFAULT NULL,
        longitude REAL DEFAULT NULL,
        region TEXT DEFAULT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT DEFAULT NULL,
        created_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS checkins (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        place_id INTEGER NOT NULL,
        ip_address TEXT DEFAULT NULL,
        created_at TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_checkins_user_place ON checkins (user_id, place_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_checkins_ip ON checkins (ip_address)",
    """CREATE TABLE IF NOT EXISTS place_claims (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        place_id INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending_info',
        role TEXT DEFAULT NULL,
        business_email TEXT DEFAULT NULL,
        business_description TEXT DEFAULT NULL,
        years_at_location INTEGER DEFAULT NULL,
        phone_number TEXT DEFAULT NULL,
        ip_address TEXT DEFAULT NULL,
        user_agent TEXT DEFAULT NULL,
        fraud_score INTEGER DEFAULT NULL,
        fraud_analysis_json TEXT DEFAULT NULL,
        rejection_reason TEXT DEFAULT NULL,
        cancel_reason TEXT DEFAULT NULL,
        decided_by TEXT DEFAULT NULL,
        decided_at TEXT DEFAULT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_place_claims_user_status ON place_claims (user_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_place_claims_place_status ON place_claims (place_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_place_claims_phone ON place_claims (phone_number)",
    "CREATE INDEX IF NOT EXISTS idx_place_claims_ip ON place_claims (ip_address)",
    # One open claim per place; the insert fails on a concurrent duplicate.
    """CREATE UNIQUE INDEX IF NOT EXISTS uq_place_claims_open_place
        ON place_claims (place_id)
        WHERE status IN ('pending_info', 'phone_verification', 'fraud_review')""",
    """CREATE TABLE IF NOT EXISTS claim_verification_attempts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        claim_id INTEGER NOT NULL,
        phone_number TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'issued',
        issued_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        failed_checks INTEGER NOT NULL DEFAULT 0,
        resend_count INTEGER NOT NULL DEFAULT 0,
        verified_at TEXT DEFAULT NULL,
        FOREIGN KEY (claim_id) REFERENCES place_claims(id) ON DELETE CASCADE
    )""",
    "CREATE INDEX IF NOT EXISTS idx_claim_attempts_claim ON claim_verification_attempts (claim_id, id)",
    """CREATE UNIQUE INDEX IF NOT EXISTS uq_claim_attempts_issued
        ON claim_verification_attempts (claim_id)
        WHERE status = 'issued'""",
    """CREATE TABLE IF NOT EXISTS claim_audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        claim_id INTEGER NOT NULL,
        place_id INTEGER NOT NULL,
        action TEXT NOT NULL,
        actor_id TEXT DEFAULT NULL,
        actor_kind TEXT NOT NULL DEFAULT 'user',
        from_status TEXT DEFAULT NULL,
        to_status TEXT DEFAULT NULL,
        context_json TEXT DEFAULT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (claim_id) REFERENCES place_claims(id) ON DELETE CASCADE
    )""",
    "CREATE INDEX IF NOT EXISTS idx_claim_audit_claim_created ON claim_audit_log (claim_id, created_at, id)",
    "CREATE INDEX IF NOT EXISTS idx_claim_audit_place_created ON claim_audit_log (place_id, created_at)",
    """CREATE TABLE IF NOT EXISTS verified_owners (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        place_id INTEGER NOT NULL,
        user_id TEXT NOT NULL,
        claim_id INTEGER NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'owner',
        subscription_status TEXT NOT NULL DEFAULT 'trialing',
        created_at TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_verified_owners_place ON verified_owners (place_id)",
    "CREATE INDEX IF NOT EXISTS idx_verified_owners_user ON verified_owners (user_id)",
    """CREATE TABLE IF NOT EXISTS rate_limit_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        subject TEXT NOT NULL,
        action TEXT NOT NULL,
        occurred_at REAL NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_rate_limit_key_time ON rate_limit_events (subject, action, occurred_at)",
    "CREATE INDEX IF NOT EXISTS idx_rate_limit_time ON rate_limit_events (occurred_at)",
)


async def init_db(db_path: str | None = None) -> None:
    """Create tables and indexes if they don't exist."""
    async with open_db(db_path) as db:
        for statement in SCHEMA_STATEMENTS:
            await db.execute(statement)
    logger.info("Claims database ready: %s", db_path or DB_PATH)
