"""Claim lifecycle controller.

pending_info -> phone_verification -> fraud_review -> approved | rejected,
and canceled from any non-terminal state by the claimant. Every move is a
compare-and-set on the current status plus exactly one audit entry, both on
the caller's transaction; approval also creates the VerifiedOwner row there.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime
from typing import Any

import aiosqlite

from ownership.audit import AuditLogger
from ownership.errors import AlreadyClaimed, InvalidTransition, Unauthorized, ValidationError
from ownership.fraud import FraudThresholds
from ownership.models import Claim, FraudAnalysis, Requester, VerificationAttempt, VerifiedOwner
from ownership.repository import ClaimRepository, to_iso, to_json, utc_now
from ownership.statuses import (
    ACTOR_ADMIN,
    ACTOR_SYSTEM,
    ACTOR_USER,
    ALLOWED_TRANSITIONS,
    ATTEMPT_VERIFIED,
    AUDIT_APPROVED,
    AUDIT_CANCELED,
    AUDIT_FRAUD_FLAGGED,
    AUDIT_INFO_UPDATED,
    AUDIT_PHONE_VERIFIED,
    AUDIT_REJECTED,
    AUDIT_SUBMITTED,
    CLAIM_APPROVED,
    CLAIM_CANCELED,
    CLAIM_FRAUD_REVIEW,
    CLAIM_PENDING_INFO,
    CLAIM_PHONE_VERIFICATION,
    CLAIM_REJECTED,
    DEFAULT_SUBSCRIPTION_STATUS,
)
from ownership.validation import BusinessInfoInput


logger = logging.getLogger(__name__)


class ClaimStateMachine:
    def __init__(
        self,
        repository: ClaimRepository,
        audit: AuditLogger,
        *,
        thresholds: FraudThresholds,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.audit = audit
        self.thresholds = thresholds
        self.clock = clock

    async def _transition(
        self,
        db: aiosqlite.Connection,
        claim: Claim,
        *,
        to_status: str,
        action: str,
        actor_id: str,
        actor_kind: str,
        context: dict[str, Any] | None = None,
        fields: dict[str, Any] | None = None,
    ) -> Claim:
        if to_status not in ALLOWED_TRANSITIONS.get(claim.status, frozenset()):
            raise InvalidTransition(
                f"Claim can't move from {claim.status} to {to_status}.",
                details={"claim_id": claim.id, "status": claim.status},
            )
        moved = await self.repository.compare_and_set_status(
            db,
            claim.id,
            from_status=claim.status,
            to_status=to_status,
            now_iso=to_iso(self.clock()),
            fields=fields,
        )
        if not moved:
            raise InvalidTransition(
                "Claim was changed by another request. Reload and try again.",
                details={"claim_id": claim.id},
            )
        await self.audit.append(
            db,
            claim=claim,
            action=action,
            actor_id=actor_id,
            actor_kind=actor_kind,
            from_status=claim.status,
            to_status=to_status,
            context=context,
        )
        updated = await self.repository.get_claim(db, claim.id)
        if updated is None:
            raise RuntimeError(f"Failed to read claim {claim.id} after transition")
        return updated

    async def create(self, db: aiosqlite.Connection, requester: Requester, place_id: int) -> Claim:
        try:
            claim = await self.repository.insert_claim(
                db,
                user_id=requester.user_id,
                place_id=place_id,
                status=CLAIM_PENDING_INFO,
                ip_address=requester.ip_address,
                user_agent=requester.user_agent,
                now_iso=to_iso(self.clock()),
            )
        except sqlite3.IntegrityError as exc:
            # Open-claim unique index: another writer got there first.
            raise AlreadyClaimed("This place already has a claim in progress.") from exc
        await self.audit.append(
            db,
            claim=claim,
            action=AUDIT_SUBMITTED,
            actor_id=requester.user_id,
            actor_kind=ACTOR_USER,
            from_status=None,
            to_status=CLAIM_PENDING_INFO,
            context={"ip_address": requester.ip_address},
        )
        return claim

    async def submit_info(self, db: aiosqlite.Connection, claim: Claim, info: BusinessInfoInput) -> Claim:
        """pending_info -> phone_verification; `info` must already be validated."""
        if claim.status != CLAIM_PENDING_INFO:
            raise InvalidTransition(
                "Business information can only be submitted once, before phone verification.",
                details={"claim_id": claim.id, "status": claim.status},
            )
        if not (info.role and info.business_email and info.business_description and info.phone_number):
            raise ValidationError("Role, email, description and phone are required.")
        return await self._transition(
            db,
            claim,
            to_status=CLAIM_PHONE_VERIFICATION,
            action=AUDIT_INFO_UPDATED,
            actor_id=claim.user_id,
            actor_kind=ACTOR_USER,
            context={"role": info.role, "years_at_location": info.years_at_location},
            fields={
                "role": info.role,
                "business_email": info.business_email,
                "business_description": info.business_description,
                "years_at_location": info.years_at_location,
                "phone_number": info.phone_number,
            },
        )

    async def mark_phone_verified(
        self,
        db: aiosqlite.Connection,
        claim: Claim,
        attempt: VerificationAttempt,
        analysis: FraudAnalysis,
    ) -> Claim:
        """phone_verification -> fraud_review, storing the fraud snapshot with the transition."""
        if attempt.claim_id != claim.id or attempt.status != ATTEMPT_VERIFIED:
            raise InvalidTransition("Phone number is not verified yet.", details={"claim_id": claim.id})
        snapshot = analysis.to_dict()
        return await self._transition(
            db,
            claim,
            to_status=CLAIM_FRAUD_REVIEW,
            action=AUDIT_PHONE_VERIFIED,
            actor_id=claim.user_id,
            actor_kind=ACTOR_USER,
            context={"attempt_id": attempt.id, "fraud_analysis": snapshot},
            fields={"fraud_score": analysis.score, "fraud_analysis_json": to_json(snapshot)},
        )

    async def approve(
        self,
        db: aiosqlite.Connection,
        claim: Claim,
        *,
        actor_id: str,
        actor_kind: str,
        reason: str | None = None,
    ) -> tuple[Claim, VerifiedOwner]:
        if actor_kind == ACTOR_SYSTEM:
            if claim.fraud_score is None or claim.fraud_score >= self.thresholds.low:
                raise InvalidTransition("Automatic approval needs a low fraud score.", details={"claim_id": claim.id})
        elif actor_kind != ACTOR_ADMIN:
            raise Unauthorized("Only an administrator can approve a claim.")
        if await self.repository.has_verified_owner(db, claim.place_id):
            raise AlreadyClaimed(
                "This place already has a verified owner.",
                details={"claim_id": claim.id, "place_id": claim.place_id},
            )
        now_iso = to_iso(self.clock())
        approved = await self._transition(
            db,
            claim,
            to_status=CLAIM_APPROVED,
            action=AUDIT_APPROVED,
            actor_id=actor_id,
            actor_kind=actor_kind,
            context={"reviewer": actor_id, "reason": reason, "fraud_score": claim.fraud_score},
            fields={"decided_by": actor_id, "decided_at": now_iso},
        )
        owner = await self.repository.insert_verified_owner(
            db,
            claim=approved,
            role=approved.role or "owner",
            subscription_status=DEFAULT_SUBSCRIPTION_STATUS,
            now_iso=now_iso,
        )
        logger.info("Verified owner created: place_id=%s user_id=%s claim_id=%s", owner.place_id, owner.user_id, claim.id)
        return approved, owner

    async def reject(
        self,
        db: aiosqlite.Connection,
        claim: Claim,
        *,
        actor_id: str,
        actor_kind: str,
        reason: str,
    ) -> Claim:
        reason = str(reason or "").strip()
        if not reason:
            raise ValidationError("A rejection requires a reason.", details={"field": "reason"})
        if actor_kind == ACTOR_SYSTEM:
            if claim.fraud_score is None or claim.fraud_score < self.thresholds.high:
                raise InvalidTransition("Automatic rejection needs a high fraud score.", details={"claim_id": claim.id})
            action = AUDIT_FRAUD_FLAGGED
        elif actor_kind == ACTOR_ADMIN:
            action = AUDIT_REJECTED
        else:
            raise Unauthorized("Only an administrator can reject a claim.")
        return await self._transition(
            db,
            claim,
            to_status=CLAIM_REJECTED,
            action=action,
            actor_id=actor_id,
            actor_kind=actor_kind,
            context={"reviewer": actor_id, "reason": reason, "fraud_score": claim.fraud_score},
            fields={"rejection_reason": reason, "decided_by": actor_id, "decided_at": to_iso(self.clock())},
        )

    async def cancel(self, db: aiosqlite.Connection, claim: Claim, *, actor_id: str, reason: str) -> Claim:
        if actor_id != claim.user_id:
            raise Unauthorized("Only the claimant can cancel this claim.")
        reason = str(reason or "").strip()
        if not reason:
            raise ValidationError("A cancellation requires a reason.", details={"field": "reason"})
        return await self._transition(
            db,
            claim,
            to_status=CLAIM_CANCELED,
            action=AUDIT_CANCELED,
            actor_id=actor_id,
            actor_kind=ACTOR_USER,
            context={"reason": reason},
            fields={"cancel_reason": reason},
        )
