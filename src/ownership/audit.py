"""Append-only audit trail of claim transitions and admin decisions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

import aiosqlite

from ownership.models import AuditLogEntry, Claim
from ownership.repository import ClaimRepository, to_iso, to_json, utc_now
from ownership.statuses import AUDIT_ACTIONS


logger = logging.getLogger(__name__)

AUDIT_PAGE_MAX = 200


class AuditLogger:
    def __init__(self, repository: ClaimRepository, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.repository = repository
        self.clock = clock

    async def append(
        self,
        db: aiosqlite.Connection,
        *,
        claim: Claim,
        action: str,
        actor_id: str | None,
        actor_kind: str,
        from_status: str | None,
        to_status: str | None,
        context: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        """Write one entry on the caller's transaction; it commits or rolls back with the transition."""
        if action not in AUDIT_ACTIONS:
            raise ValueError(f"Unknown audit action: {action}")
        entry = AuditLogEntry(
            claim_id=claim.id,
            place_id=claim.place_id,
            action=action,
            actor_id=actor_id,
            actor_kind=actor_kind,
            from_status=from_status,
            to_status=to_status,
            context_json=to_json(context) if context else None,
            created_at=to_iso(self.clock()),
        )
        entry.id = await self.repository.insert_audit_entry(db, entry)
        logger.info(
            "Claim audit: claim_id=%s action=%s %s->%s actor=%s:%s",
            claim.id,
            action,
            from_status or "-",
            to_status or "-",
            actor_kind,
            actor_id or "-",
        )
        return entry

    async def list_for_claim(self, claim_id: int) -> list[AuditLogEntry]:
        async with self.repository.read() as db:
            return await self.repository.list_audit_for_claim(db, claim_id)

    async def list_recent(self, *, limit: int = 50, offset: int = 0, place_id: int | None = None) -> list[AuditLogEntry]:
        safe_limit = max(1, min(int(limit), AUDIT_PAGE_MAX))
        safe_offset = max(0, int(offset))
        async with self.repository.read() as db:
            return await self.repository.list_audit_recent(db, limit=safe_limit, offset=safe_offset, place_id=place_id)

    async def count(self, *, place_id: int | None = None) -> int:
        async with self.repository.read() as db:
            return await self.repository.count_audit(db, place_id=place_id)
