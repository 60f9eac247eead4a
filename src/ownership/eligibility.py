"""Who may start a claim on which place."""

from __future__ import annotations

from datetime import datetime, timedelta

import aiosqlite

from config import CFG
from ownership.errors import AlreadyClaimed, NotEligible
from ownership.models import EligibilityResult
from ownership.repository import ClaimRepository, parse_iso_utc


class EligibilityChecker:
    """Runs on the caller's transaction so the check and the insert share one lock."""

    def __init__(
        self,
        repository: ClaimRepository,
        *,
        single_active_claim_per_user: bool | None = None,
        max_lifetime_claims: int | None = None,
        rejection_cooldown_days: int | None = None,
    ) -> None:
        self.repository = repository
        self.single_active_claim_per_user = (
            CFG.single_active_claim_per_user if single_active_claim_per_user is None else single_active_claim_per_user
        )
        self.max_lifetime_claims = CFG.max_lifetime_claims if max_lifetime_claims is None else max_lifetime_claims
        self.rejection_cooldown_days = (
            CFG.rejection_cooldown_days if rejection_cooldown_days is None else rejection_cooldown_days
        )

    async def check(self, db: aiosqlite.Connection, user_id: str, place_id: int, *, now: datetime) -> EligibilityResult:
        owners = await self.repository.list_verified_owners(db, place_id=place_id)
        if owners:
            mine = any(owner.user_id == user_id for owner in owners)
            return EligibilityResult(
                eligible=False,
                code=NotEligible.code,
                reason="You are already a verified owner of this place."
                if mine
                else "This place already has a verified owner.",
            )

        place_claim = await self.repository.get_open_claim_for_place(db, place_id)
        if place_claim is not None and place_claim.user_id != user_id:
            return EligibilityResult(
                eligible=False,
                code=AlreadyClaimed.code,
                reason="This place already has a claim in progress.",
            )
        if place_claim is not None:
            return EligibilityResult(
                eligible=False,
                code=NotEligible.code,
                reason="You already have a claim in progress for this place.",
                details={"claim_id": place_claim.id},
            )

        if self.single_active_claim_per_user:
            open_claims = await self.repository.list_open_claims_for_user(db, user_id)
            if open_claims:
                return EligibilityResult(
                    eligible=False,
                    code=NotEligible.code,
                    reason="Finish or cancel your other claim before starting a new one.",
                    details={"claim_id": open_claims[0].id, "place_id": open_claims[0].place_id},
                )

        if self.max_lifetime_claims > 0:
            total = await self.repository.count_claims_for_user(db, user_id)
            if total >= self.max_lifetime_claims:
                return EligibilityResult(
                    eligible=False,
                    code=NotEligible.code,
                    reason="You have reached the maximum number of ownership claims.",
                    details={"lifetime_claims": total, "limit": self.max_lifetime_claims},
                )

        if self.rejection_cooldown_days > 0:
            rejected_at = parse_iso_utc(await self.repository.latest_rejection_at(db, user_id, place_id))
            if rejected_at is not None:
                available_at = rejected_at + timedelta(days=self.rejection_cooldown_days)
                if now < available_at:
                    return EligibilityResult(
                        eligible=False,
                        code=NotEligible.code,
                        reason="A previous claim for this place was rejected recently.",
                        details={"available_at": available_at.isoformat()},
                    )

        return EligibilityResult(eligible=True)

    async def require(self, db: aiosqlite.Connection, user_id: str, place_id: int, *, now: datetime) -> None:
        """Raise the matching error when `check` says no."""
        result = await self.check(db, user_id, place_id, now=now)
        if result.eligible:
            return
        error_cls = AlreadyClaimed if result.code == AlreadyClaimed.code else NotEligible
        raise error_cls(result.reason or "Not eligible to claim this place.", details=result.details)
