"""Place ownership claim workflow: the service interface every transport calls."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import aiosqlite

from ownership.audit import AuditLogger
from ownership.directory import ActivityHistory, PlaceDirectory, SqliteDirectory, UserDirectory
from ownership.eligibility import EligibilityChecker
from ownership.errors import (
    ClaimWorkflowError,
    CodeExhausted,
    CodeExpired,
    CodeMismatch,
    FraudRejected,
    InvalidTransition,
    NotFoundError,
)
from ownership.fraud import FraudScorer, FraudThresholds
from ownership.guards import AdminAuthorizer, ConfigAdminAuthorizer
from ownership.models import Claim, Requester, ServiceResult
from ownership.phone import (
    OUTCOME_EXHAUSTED,
    OUTCOME_EXPIRED,
    OUTCOME_MISMATCH,
    OUTCOME_VERIFIED,
    PhoneVerificationService,
)
from ownership.rate_limit import (
    ACTION_ADMIN_REVIEW,
    ACTION_BUSINESS_INFO,
    ACTION_CANCEL_CLAIM,
    ACTION_RESEND_CODE,
    ACTION_SEND_CODE,
    ACTION_SUBMIT_CLAIM,
    ACTION_VERIFY_CODE,
    RateLimiter,
    RateLimitStore,
    SqliteRateLimitStore,
)
from ownership.repository import ClaimRepository, utc_now
from ownership.review import AdminReviewGate
from ownership.sms import SmsSender, build_sms_sender
from ownership.state_machine import ClaimStateMachine
from ownership.statuses import CLAIM_PHONE_VERIFICATION, ROUTE_AUTO_REJECT
from ownership.validation import (
    AdminReviewInput,
    BusinessInfoInput,
    CancelClaimInput,
    SubmitClaimInput,
    VerifyCodeInput,
)


logger = logging.getLogger(__name__)


def _as_positive_int(value: Any) -> int | None:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


class ClaimWorkflowService:
    """Runs the claim workflow and turns domain errors into ServiceResult failures.

    Every mutating operation passes the rate limiter first. Errors outside the
    ClaimWorkflowError taxonomy (storage unavailable, bugs) propagate; the open
    transaction is rolled back, so no transition is half-applied.
    """

    def __init__(
        self,
        *,
        db_path: str | None = None,
        rate_limit_store: RateLimitStore | None = None,
        sms_sender: SmsSender | None = None,
        authorizer: AdminAuthorizer | None = None,
        places: PlaceDirectory | None = None,
        users: UserDirectory | None = None,
        activity: ActivityHistory | None = None,
        thresholds: FraudThresholds | None = None,
        eligibility: EligibilityChecker | None = None,
        phone: PhoneVerificationService | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        directory = SqliteDirectory()
        self.clock = clock
        self.places = places or directory
        self.repository = ClaimRepository(db_path)
        self.rate_limiter = RateLimiter(rate_limit_store or SqliteRateLimitStore(db_path), clock=clock)
        self.eligibility = eligibility or EligibilityChecker(self.repository)
        self.audit = AuditLogger(self.repository, clock=clock)
        self.fraud = FraudScorer(
            self.repository,
            places=self.places,
            users=users or directory,
            activity=activity or directory,
            thresholds=thresholds,
            clock=clock,
        )
        self.thresholds = self.fraud.thresholds
        self.state_machine = ClaimStateMachine(self.repository, self.audit, thresholds=self.thresholds, clock=clock)
        self.phone = phone or PhoneVerificationService(self.repository, sms_sender or build_sms_sender(), clock=clock)
        self.review_gate = AdminReviewGate(
            self.repository,
            self.state_machine,
            authorizer or ConfigAdminAuthorizer(),
            thresholds=self.thresholds,
        )

    async def _run(self, operation: str, fn: Callable[[], Awaitable[dict[str, Any]]]) -> ServiceResult:
        try:
            data = await fn()
        except ClaimWorkflowError as exc:
            logger.info("Claim operation %s failed: %s", operation, exc.code)
            return ServiceResult.fail(exc.code, exc.message, exc.details)
        return ServiceResult.ok(data)

    async def _claim_target(self, claim_id: Any) -> str | None:
        """Rate-limit target for a claim operation: the claim's place when it exists."""
        claim_id = _as_positive_int(claim_id)
        if claim_id is None:
            return None
        async with self.repository.read() as db:
            claim = await self.repository.get_claim(db, claim_id)
        if claim is None:
            return f"claim:{claim_id}"
        return f"place:{claim.place_id}"

    async def _load_own_claim(self, db: aiosqlite.Connection, user_id: str, claim_id: int) -> Claim:
        claim = await self.repository.get_claim(db, claim_id)
        # Someone else's claim looks the same as a missing one.
        if claim is None or claim.user_id != user_id:
            raise NotFoundError("Claim not found.", details={"claim_id": claim_id})
        return claim

    async def submit_claim(self, requester: Requester, data: SubmitClaimInput) -> ServiceResult:
        async def _op() -> dict[str, Any]:
            place_id = _as_positive_int(data.place_id)
            await self.rate_limiter.hit(
                ACTION_SUBMIT_CLAIM,
                ip_address=requester.ip_address,
                user_id=requester.user_id,
                target=f"place:{place_id}" if place_id else None,
            )
            payload = data.validate()

            async def _create(db: aiosqlite.Connection) -> Claim:
                if await self.places.get_place(db, payload.place_id) is None:
                    raise NotFoundError("Place not found.", details={"place_id": payload.place_id})
                await self.eligibility.require(db, requester.user_id, payload.place_id, now=self.clock())
                return await self.state_machine.create(db, requester, payload.place_id)

            claim = await self.repository.transaction(_create, where="service.submit_claim")
            logger.info("Claim submitted: claim_id=%s place_id=%s user_id=%s", claim.id, claim.place_id, claim.user_id)
            return {"claim": claim.to_public_dict()}

        return await self._run("submit_claim", _op)

    async def submit_business_info(self, requester: Requester, data: BusinessInfoInput) -> ServiceResult:
        async def _op() -> dict[str, Any]:
            await self.rate_limiter.hit(
                ACTION_BUSINESS_INFO,
                ip_address=requester.ip_address,
                user_id=requester.user_id,
                target=await self._claim_target(data.claim_id),
            )
            payload = data.validate()

            async def _update(db: aiosqlite.Connection) -> Claim:
                claim = await self._load_own_claim(db, requester.user_id, payload.claim_id)
                return await self.state_machine.submit_info(db, claim, payload)

            claim = await self.repository.transaction(_update, where="service.submit_business_info")
            return {"claim": claim.to_public_dict()}

        return await self._run("submit_business_info", _op)

    async def _issue_code(self, requester: Requester, claim_id: Any, *, resend: bool) -> dict[str, Any]:
        await self.rate_limiter.hit(
            ACTION_RESEND_CODE if resend else ACTION_SEND_CODE,
            ip_address=requester.ip_address,
            user_id=requester.user_id,
            target=await self._claim_target(claim_id),
        )
        valid_id = _as_positive_int(claim_id)
        if valid_id is None:
            raise NotFoundError("Claim not found.", details={"claim_id": claim_id})

        async def _issue(db: aiosqlite.Connection):
            claim = await self._load_own_claim(db, requester.user_id, valid_id)
            attempt, code = await self.phone.issue(db, claim, resend=resend)
            return claim, attempt, code

        claim, attempt, code = await self.repository.transaction(
            _issue,
            where="service.resend_code" if resend else "service.send_code",
        )
        self.phone.deliver(claim.id, attempt.phone_number, code)
        return {
            "claim_id": claim.id,
            "expires_at": attempt.expires_at,
            "resend_count": attempt.resend_count,
        }

    async def send_verification_code(self, requester: Requester, claim_id: int) -> ServiceResult:
        return await self._run("send_verification_code", lambda: self._issue_code(requester, claim_id, resend=False))

    async def resend_verification_code(self, requester: Requester, claim_id: int) -> ServiceResult:
        return await self._run("resend_verification_code", lambda: self._issue_code(requester, claim_id, resend=True))

    async def verify_phone_code(self, requester: Requester, data: VerifyCodeInput) -> ServiceResult:
        async def _op() -> dict[str, Any]:
            await self.rate_limiter.hit(
                ACTION_VERIFY_CODE,
                ip_address=requester.ip_address,
                user_id=requester.user_id,
                target=await self._claim_target(data.claim_id),
            )
            payload = data.validate()

            async def _verify(db: aiosqlite.Connection) -> dict[str, Any]:
                claim = await self._load_own_claim(db, requester.user_id, payload.claim_id)
                if claim.status != CLAIM_PHONE_VERIFICATION:
                    raise InvalidTransition(
                        "This claim is not waiting for phone verification.",
                        details={"claim_id": claim.id, "status": claim.status},
                    )
                outcome = await self.phone.check(db, claim, payload.code)
                if outcome.result != OUTCOME_VERIFIED:
                    # Committed as-is so failed checks and expiry stick.
                    return {"outcome": outcome}
                analysis = await self.fraud.analyze(db, claim)
                reviewed = await self.state_machine.mark_phone_verified(db, claim, outcome.attempt, analysis)
                route, settled, owner = await self.review_gate.apply_route(db, reviewed, analysis)
                return {"outcome": outcome, "route": route, "claim": settled, "owner": owner, "analysis": analysis}

            result = await self.repository.transaction(_verify, where="service.verify_phone_code")
            outcome = result["outcome"]
            if outcome.result == OUTCOME_MISMATCH:
                raise CodeMismatch("The code is incorrect.", attempts_remaining=outcome.attempts_remaining)
            if outcome.result == OUTCOME_EXPIRED:
                raise CodeExpired("The code has expired. Request a new one.")
            if outcome.result == OUTCOME_EXHAUSTED:
                raise CodeExhausted("Too many incorrect codes. Request a new one.")

            claim = result["claim"]
            if result["route"] == ROUTE_AUTO_REJECT:
                raise FraudRejected(
                    "The claim was rejected by automated fraud screening.",
                    details={"claim_id": claim.id},
                )
            owner = result["owner"]
            return {
                "claim": claim.to_public_dict(),
                "route": result["route"],
                "fraud_score": result["analysis"].score,
                "owner": {"place_id": owner.place_id, "role": owner.role, "subscription_status": owner.subscription_status}
                if owner
                else None,
            }

        return await self._run("verify_phone_code", _op)

    async def cancel_claim(self, requester: Requester, data: CancelClaimInput) -> ServiceResult:
        async def _op() -> dict[str, Any]:
            await self.rate_limiter.hit(
                ACTION_CANCEL_CLAIM,
                ip_address=requester.ip_address,
                user_id=requester.user_id,
                target=await self._claim_target(data.claim_id),
            )
            payload = data.validate()

            async def _cancel(db: aiosqlite.Connection) -> Claim:
                claim = await self._load_own_claim(db, requester.user_id, payload.claim_id)
                return await self.state_machine.cancel(db, claim, actor_id=requester.user_id, reason=payload.reason)

            claim = await self.repository.transaction(_cancel, where="service.cancel_claim")
            return {"claim": claim.to_public_dict()}

        return await self._run("cancel_claim", _op)

    async def admin_review_claim(self, requester: Requester, data: AdminReviewInput) -> ServiceResult:
        async def _op() -> dict[str, Any]:
            await self.rate_limiter.hit(
                ACTION_ADMIN_REVIEW,
                ip_address=requester.ip_address,
                user_id=requester.user_id,
                target=await self._claim_target(data.claim_id),
            )
            self.review_gate.require_admin(requester.user_id)
            payload = data.validate()
            claim, owner = await self.review_gate.review(
                requester.user_id,
                payload.claim_id,
                payload.decision,
                payload.reason,
            )
            return {
                "claim": claim.to_public_dict(),
                "owner": {"place_id": owner.place_id, "user_id": owner.user_id, "role": owner.role}
                if owner
                else None,
            }

        return await self._run("admin_review_claim", _op)

    async def list_pending_reviews(self, requester: Requester, *, limit: int = 50) -> ServiceResult:
        async def _op() -> dict[str, Any]:
            return {"items": await self.review_gate.list_pending(requester.user_id, limit=limit)}

        return await self._run("list_pending_reviews", _op)

    async def get_claim_status(self, requester: Requester, claim_id: int) -> ServiceResult:
        """Claim and its audit trail, for the claimant only."""

        async def _op() -> dict[str, Any]:
            valid_id = _as_positive_int(claim_id)
            if valid_id is None:
                raise NotFoundError("Claim not found.", details={"claim_id": claim_id})
            async with self.repository.read() as db:
                claim = await self._load_own_claim(db, requester.user_id, valid_id)
            entries = await self.audit.list_for_claim(claim.id)
            return {
                "claim": claim.to_public_dict(),
                "history": [
                    {
                        "action": entry.action,
                        "from_status": entry.from_status,
                        "to_status": entry.to_status,
                        "created_at": entry.created_at,
                    }
                    for entry in entries
                ],
            }

        return await self._run("get_claim_status", _op)

    async def list_user_claims(self, requester: Requester) -> ServiceResult:
        """The requester's claims, newest first, plus the places they already own."""

        async def _op() -> dict[str, Any]:
            async with self.repository.read() as db:
                claims = await self.repository.list_claims_for_user(db, requester.user_id)
                owners = await self.repository.list_verified_owners(db, user_id=requester.user_id)
                place_ids = sorted({claim.place_id for claim in claims} | {owner.place_id for owner in owners})
                places = await self.places.get_places(db, place_ids)

            def _place_name(place_id: int) -> str | None:
                place = places.get(place_id)
                return place.name if place else None

            return {
                "claims": [{**claim.to_public_dict(), "place_name": _place_name(claim.place_id)} for claim in claims],
                "owned_places": [{**owner.to_dict(), "place_name": _place_name(owner.place_id)} for owner in owners],
            }

        return await self._run("list_user_claims", _op)

    async def get_place_ownership_status(self, requester: Requester, place_id: Any) -> ServiceResult:
        """Whether a place is owned or under claim, and whether the requester may claim it."""

        async def _op() -> dict[str, Any]:
            valid_id = _as_positive_int(place_id)
            if valid_id is None:
                raise NotFoundError("Place not found.", details={"place_id": place_id})
            async with self.repository.read() as db:
                place = await self.places.get_place(db, valid_id)
                if place is None:
                    raise NotFoundError("Place not found.", details={"place_id": valid_id})
                owners = await self.repository.list_verified_owners(db, place_id=valid_id)
                open_claim = await self.repository.get_open_claim_for_place(db, valid_id)
                eligibility = await self.eligibility.check(db, requester.user_id, valid_id, now=self.clock())
            owner = owners[0] if owners else None
            return {
                "place_id": place.id,
                "place_name": place.name,
                "has_verified_owner": owner is not None,
                "verified_owner": {
                    "user_id": owner.user_id,
                    "role": owner.role,
                    "subscription_status": owner.subscription_status,
                    "created_at": owner.created_at,
                }
                if owner
                else None,
                "claim_in_progress": open_claim is not None,
                "my_claim_id": open_claim.id if open_claim and open_claim.user_id == requester.user_id else None,
                "eligibility": {
                    "eligible": eligibility.eligible,
                    "code": eligibility.code,
                    "reason": eligibility.reason,
                },
            }

        return await self._run("get_place_ownership_status", _op)

    async def list_audit_log(
        self,
        requester: Requester,
        *,
        limit: int = 50,
        offset: int = 0,
        place_id: int | None = None,
    ) -> ServiceResult:
        """Recent audit entries across all claims, newest first; admins only."""

        async def _op() -> dict[str, Any]:
            self.review_gate.require_admin(requester.user_id)
            entries = await self.audit.list_recent(limit=limit, offset=offset, place_id=place_id)
            return {
                "items": [entry.to_dict() for entry in entries],
                "total": await self.audit.count(place_id=place_id),
            }

        return await self._run("list_audit_log", _op)

    async def purge_rate_limits(self) -> int:
        return await self.rate_limiter.purge_stale()

    async def close(self) -> None:
        await self.phone.wait_for_deliveries()
