"""Admin review gate: routes scored claims and records reviewer decisions."""

from __future__ import annotations

import json
import logging
from typing import Any

import aiosqlite

from ownership.errors import InvalidTransition, NotFoundError, Unauthorized, ValidationError
from ownership.fraud import FraudThresholds, format_fraud_report
from ownership.guards import AdminAuthorizer
from ownership.models import Claim, FraudAnalysis, VerifiedOwner
from ownership.repository import ClaimRepository
from ownership.state_machine import ClaimStateMachine
from ownership.statuses import (
    ACTOR_ADMIN,
    ACTOR_SYSTEM,
    CLAIM_FRAUD_REVIEW,
    FRAUD_REJECTION_REASON,
    REVIEW_APPROVE,
    REVIEW_REJECT,
    ROUTE_AUTO_APPROVE,
    ROUTE_AUTO_REJECT,
    ROUTE_MANUAL_REVIEW,
    SYSTEM_ACTOR_ID,
)


logger = logging.getLogger(__name__)

PENDING_LIST_LIMIT = 50


class AdminReviewGate:
    def __init__(
        self,
        repository: ClaimRepository,
        state_machine: ClaimStateMachine,
        authorizer: AdminAuthorizer,
        *,
        thresholds: FraudThresholds,
    ) -> None:
        self.repository = repository
        self.state_machine = state_machine
        self.authorizer = authorizer
        self.thresholds = thresholds

    def route(self, analysis: FraudAnalysis) -> str:
        if analysis.score < self.thresholds.low:
            return ROUTE_AUTO_APPROVE
        if analysis.score >= self.thresholds.high:
            return ROUTE_AUTO_REJECT
        return ROUTE_MANUAL_REVIEW

    async def apply_route(
        self,
        db: aiosqlite.Connection,
        claim: Claim,
        analysis: FraudAnalysis,
    ) -> tuple[str, Claim, VerifiedOwner | None]:
        """Settle a freshly scored claim automatically when the score allows it."""
        route = self.route(analysis)
        if route == ROUTE_AUTO_APPROVE:
            approved, owner = await self.state_machine.approve(db, claim, actor_id=SYSTEM_ACTOR_ID, actor_kind=ACTOR_SYSTEM)
            return route, approved, owner
        if route == ROUTE_AUTO_REJECT:
            rejected = await self.state_machine.reject(
                db,
                claim,
                actor_id=SYSTEM_ACTOR_ID,
                actor_kind=ACTOR_SYSTEM,
                reason=FRAUD_REJECTION_REASON,
            )
            return route, rejected, None
        return route, claim, None

    def require_admin(self, admin_id: str) -> None:
        if not self.authorizer.is_admin(admin_id):
            logger.warning("Claim review denied for non-admin %s", admin_id or "-")
            raise Unauthorized("Administrator access is required.")

    async def review(
        self,
        admin_id: str,
        claim_id: int,
        decision: str,
        reason: str | None = None,
    ) -> tuple[Claim, VerifiedOwner | None]:
        self.require_admin(admin_id)
        if decision not in {REVIEW_APPROVE, REVIEW_REJECT}:
            raise ValidationError("decision must be approve or reject.", details={"field": "decision"})

        async def _decide(db: aiosqlite.Connection) -> tuple[Claim, VerifiedOwner | None]:
            claim = await self.repository.get_claim(db, claim_id)
            if claim is None:
                raise NotFoundError("Claim not found.", details={"claim_id": claim_id})
            if claim.status != CLAIM_FRAUD_REVIEW:
                raise InvalidTransition(
                    "Only claims waiting for review can be decided.",
                    details={"claim_id": claim_id, "status": claim.status},
                )
            if decision == REVIEW_APPROVE:
                return await self.state_machine.approve(
                    db,
                    claim,
                    actor_id=admin_id,
                    actor_kind=ACTOR_ADMIN,
                    reason=reason,
                )
            rejected = await self.state_machine.reject(
                db,
                claim,
                actor_id=admin_id,
                actor_kind=ACTOR_ADMIN,
                reason=reason or "",
            )
            return rejected, None

        result = await self.repository.transaction(_decide, where="review.review")
        logger.info("Claim %s decided by admin %s: %s", claim_id, admin_id, decision)
        return result

    async def list_pending(self, admin_id: str, *, limit: int = PENDING_LIST_LIMIT) -> list[dict[str, Any]]:
        """Claims waiting for a reviewer, each with the fraud snapshot stored at scoring time."""
        self.require_admin(admin_id)
        async with self.repository.read() as db:
            claims = await self.repository.list_claims_in_status(db, CLAIM_FRAUD_REVIEW, limit=max(1, int(limit)))
        items: list[dict[str, Any]] = []
        for claim in claims:
            analysis = None
            if claim.fraud_analysis_json:
                analysis = FraudAnalysis.from_dict(json.loads(claim.fraud_analysis_json))
            items.append(
                {
                    "claim": claim.to_public_dict(),
                    "fraud_analysis": analysis.to_dict() if analysis else None,
                    "fraud_report": format_fraud_report(analysis) if analysis else None,
                }
            )
        return items
