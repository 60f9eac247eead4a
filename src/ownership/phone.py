"""One-time phone verification codes for claims.

Codes are 6 random digits, stored only as an HMAC keyed by CLAIM_CODE_SECRET
and the claim id. A claim has at most one `issued` attempt; issuing a new code
supersedes the previous one. Only the first code comes from `send`; every later
one is a resend and counts against the tighter resend limit. An attempt ends as `verified`, `expired` (past
its expiry) or `exhausted` (failed-check cap reached).
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import aiosqlite

from config import CFG
from ownership.errors import InvalidTransition
from ownership.models import Claim, VerificationAttempt
from ownership.repository import ClaimRepository, parse_iso_utc, to_iso, utc_now
from ownership.sms import SmsSender
from ownership.statuses import (
    ATTEMPT_EXHAUSTED,
    ATTEMPT_EXPIRED,
    ATTEMPT_ISSUED,
    ATTEMPT_VERIFIED,
    CLAIM_PHONE_VERIFICATION,
)


logger = logging.getLogger(__name__)

CODE_DIGITS = 6

OUTCOME_VERIFIED = "verified"
OUTCOME_EXPIRED = "expired"
OUTCOME_EXHAUSTED = "exhausted"
OUTCOME_MISMATCH = "mismatch"


@dataclass(frozen=True)
class CheckOutcome:
    result: str
    attempt: VerificationAttempt
    attempts_remaining: int = 0


def generate_code() -> str:
    return f"{secrets.randbelow(10**CODE_DIGITS):0{CODE_DIGITS}d}"


class PhoneVerificationService:
    def __init__(
        self,
        repository: ClaimRepository,
        sender: SmsSender,
        *,
        secret: str | None = None,
        ttl_minutes: int | None = None,
        max_checks: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.sender = sender
        key = secret if secret is not None else CFG.claim_code_secret
        if not key:
            logger.warning("CLAIM_CODE_SECRET is not set; using a per-process key")
            key = secrets.token_hex(32)
        self._key = key.encode("utf-8")
        self.ttl = timedelta(minutes=CFG.claim_code_ttl_minutes if ttl_minutes is None else ttl_minutes)
        self.max_checks = max(1, CFG.claim_code_max_checks if max_checks is None else max_checks)
        self.clock = clock
        self._deliveries: set[asyncio.Task] = set()

    def hash_code(self, claim_id: int, code: str) -> str:
        message = f"{claim_id}:{code}".encode("utf-8")
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    async def issue(
        self,
        db: aiosqlite.Connection,
        claim: Claim,
        *,
        resend: bool = False,
    ) -> tuple[VerificationAttempt, str]:
        """Create a fresh attempt on the caller's transaction; returns it with the plaintext code."""
        if claim.status != CLAIM_PHONE_VERIFICATION or not claim.phone_number:
            raise InvalidTransition(
                "Submit business information before requesting a code.",
                details={"claim_id": claim.id, "status": claim.status},
            )
        previous = await self.repository.get_latest_attempt(db, claim.id)
        if not resend and previous is not None:
            raise InvalidTransition(
                "A code was already sent for this claim. Use resend to get a new one.",
                details={"claim_id": claim.id, "resend_count": previous.resend_count},
            )
        resend_count = previous.resend_count + 1 if resend and previous is not None else 0
        await self.repository.supersede_issued_attempts(db, claim.id)
        now = self.clock()
        code = generate_code()
        attempt = await self.repository.insert_attempt(
            db,
            claim_id=claim.id,
            phone_number=claim.phone_number,
            code_hash=self.hash_code(claim.id, code),
            issued_at=to_iso(now),
            expires_at=to_iso(now + self.ttl),
            resend_count=resend_count,
        )
        return attempt, code

    async def check(self, db: aiosqlite.Connection, claim: Claim, code: str) -> CheckOutcome:
        """Evaluate a submitted code and persist the attempt's new state on the caller's transaction."""
        attempt = await self.repository.get_issued_attempt(db, claim.id)
        if attempt is None:
            latest = await self.repository.get_latest_attempt(db, claim.id)
            if latest is not None and latest.status in {ATTEMPT_EXHAUSTED, ATTEMPT_EXPIRED}:
                return CheckOutcome(result=latest.status, attempt=latest)
            raise InvalidTransition("Request a verification code first.", details={"claim_id": claim.id})

        if attempt.failed_checks >= self.max_checks:
            await self.repository.set_attempt_status(db, attempt.id, from_status=ATTEMPT_ISSUED, to_status=ATTEMPT_EXHAUSTED)
            return CheckOutcome(result=OUTCOME_EXHAUSTED, attempt=attempt)

        now = self.clock()
        expires_at = parse_iso_utc(attempt.expires_at)
        if expires_at is None or now >= expires_at:
            await self.repository.set_attempt_status(db, attempt.id, from_status=ATTEMPT_ISSUED, to_status=ATTEMPT_EXPIRED)
            return CheckOutcome(result=OUTCOME_EXPIRED, attempt=attempt)

        if hmac.compare_digest(self.hash_code(claim.id, code), attempt.code_hash):
            await self.repository.set_attempt_status(
                db,
                attempt.id,
                from_status=ATTEMPT_ISSUED,
                to_status=ATTEMPT_VERIFIED,
                verified_at=to_iso(now),
            )
            attempt.status = ATTEMPT_VERIFIED
            attempt.verified_at = to_iso(now)
            return CheckOutcome(result=OUTCOME_VERIFIED, attempt=attempt)

        failed = await self.repository.record_failed_check(db, attempt.id)
        if failed >= self.max_checks:
            await self.repository.set_attempt_status(db, attempt.id, from_status=ATTEMPT_ISSUED, to_status=ATTEMPT_EXHAUSTED)
        attempt.failed_checks = failed
        return CheckOutcome(result=OUTCOME_MISMATCH, attempt=attempt, attempts_remaining=max(0, self.max_checks - failed))

    def deliver(self, claim_id: int, phone_number: str, code: str) -> None:
        """Send the code in the background; the caller never waits for the provider."""
        text = f"Your place ownership verification code is {code}. It expires in {int(self.ttl.total_seconds() // 60)} minutes."
        task = asyncio.create_task(self._deliver(claim_id, phone_number, text))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, claim_id: int, phone_number: str, text: str) -> None:
        try:
            result = await self.sender.send(phone_number, text)
        except Exception:
            logger.exception("Verification SMS failed: claim_id=%s", claim_id)
            return
        if result.ok:
            logger.info("Verification SMS sent: claim_id=%s provider=%s id=%s", claim_id, result.provider, result.message_id)
        else:
            logger.warning("Verification SMS not delivered: claim_id=%s provider=%s error=%s", claim_id, result.provider, result.error)

    async def wait_for_deliveries(self) -> None:
        """Await in-flight deliveries; used on shutdown and in tests."""
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
