#!/usr/bin/env python3
"""
Claim phone verification smoke-check.

What it validates:
- codes are requested only after business info is submitted
- stored code is an HMAC, never the plaintext; delivery is fire-and-forget
- a wrong code reports attempts remaining and the failed check persists
- five wrong codes exhaust the attempt; the sixth call is `exhausted` even
  with the correct code
- an expired code is rejected as `expired` even when correct
- issuing a new code supersedes the previous one
- send works for the first code only; later codes must go through resend
- resends are throttled tighter than sends (3 per hour per user and place)

Run:
  python3 scripts/smoke_claims_phone_verification.py
"""

from __future__ import annotations

import asyncio
import re
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))

from database import init_db, open_db  # noqa: E402
from ownership import (  # noqa: E402
    BusinessInfoInput,
    ClaimWorkflowService,
    Requester,
    SubmitClaimInput,
    VerifyCodeInput,
)
from ownership.guards import ConfigAdminAuthorizer  # noqa: E402
from ownership.sms import MockSmsSender  # noqa: E402


START = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
CODE_RE = re.compile(r"\b(\d{6})\b")


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


async def _seed(db_path: str, user_ids: list[str]) -> None:
    async with open_db(db_path) as db:
        await db.executemany(
            "INSERT INTO places(id, name, latitude, longitude, region) VALUES(?, ?, NULL, NULL, NULL)",
            [(index + 1, f"Place {index + 1}") for index in range(len(user_ids))],
        )
        await db.executemany(
            "INSERT INTO users(id, email, created_at) VALUES(?, ?, ?)",
            [(user_id, None, "2024-06-01T00:00:00+00:00") for user_id in user_ids],
        )
        rows = []
        for index, user_id in enumerate(user_ids):
            for day in (1, 3, 5):
                rows.append((user_id, index + 1, None, (START - timedelta(days=day)).isoformat()))
        await db.executemany(
            "INSERT INTO checkins(user_id, place_id, ip_address, created_at) VALUES(?, ?, ?, ?)",
            rows,
        )


async def _attempts(db_path: str, claim_id: int) -> list[dict]:
    async with open_db(db_path) as db:
        async with db.execute(
            """SELECT id, status, code_hash, failed_checks, resend_count
                 FROM claim_verification_attempts
                WHERE claim_id = ?
                ORDER BY id""",
            (claim_id,),
        ) as cur:
            return [dict(row) for row in await cur.fetchall()]


async def _latest_code(service: ClaimWorkflowService, sender: MockSmsSender, phone: str) -> str:
    await service.phone.wait_for_deliveries()
    match = CODE_RE.search(sender.last_message_to(phone) or "")
    _assert(match is not None, f"SMS with a code must be delivered to {phone}")
    return match.group(1)


async def _start_claim(
    service: ClaimWorkflowService,
    requester: Requester,
    place_id: int,
    phone: str,
    *,
    with_info: bool = True,
) -> int:
    submitted = await service.submit_claim(requester, SubmitClaimInput(place_id=place_id))
    _assert(submitted.success, f"submit must succeed: {submitted}")
    claim_id = int(submitted.data["claim"]["id"])
    if with_info:
        info = await service.submit_business_info(
            requester,
            BusinessInfoInput(
                claim_id=claim_id,
                role="owner",
                business_email=f"owner{place_id}@shop{place_id}.example",
                business_description="Family run shop",
                phone_number=phone,
                years_at_location=4,
            ),
        )
        _assert(info.success and info.data["claim"]["status"] == "phone_verification", f"info must be accepted: {info}")
    return claim_id


def _wrong(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


async def _run_checks(db_path: str) -> None:
    await init_db(db_path)
    users = ["early", "exhaust", "expire", "supersede", "resend"]
    await _seed(db_path, users)
    clock = _Clock(START)
    sender = MockSmsSender()
    service = ClaimWorkflowService(
        db_path=db_path,
        sms_sender=sender,
        authorizer=ConfigAdminAuthorizer(["admin-1"]),
        clock=clock,
    )

    # Ordering: no code before business info, no verify before a code.
    early = Requester(user_id="early", ip_address="10.1.0.1")
    early_claim = await _start_claim(service, early, 1, "+380500000001", with_info=False)
    too_soon = await service.send_verification_code(early, early_claim)
    _assert(too_soon.error is not None and too_soon.error.code == "invalid_transition", "code needs business info first")
    verify_soon = await service.verify_phone_code(early, VerifyCodeInput(claim_id=early_claim, code="123456"))
    _assert(verify_soon.error is not None and verify_soon.error.code == "invalid_transition", "verify needs pending phone step")

    # Exhaustion.
    exhaust = Requester(user_id="exhaust", ip_address="10.1.0.2")
    exhaust_phone = "+380500000002"
    exhaust_claim = await _start_claim(service, exhaust, 2, exhaust_phone)
    no_code = await service.verify_phone_code(exhaust, VerifyCodeInput(claim_id=exhaust_claim, code="123456"))
    _assert(no_code.error is not None and no_code.error.code == "invalid_transition", "verify without a code is invalid")

    sent = await service.send_verification_code(exhaust, exhaust_claim)
    _assert(sent.success and "code" not in sent.data, "send result must not expose the code")
    code = await _latest_code(service, sender, exhaust_phone)
    attempts = await _attempts(db_path, exhaust_claim)
    _assert(len(attempts) == 1 and attempts[0]["status"] == "issued", "one issued attempt")
    _assert(attempts[0]["code_hash"] != code and len(attempts[0]["code_hash"]) == 64, "only an HMAC is stored")

    for attempt_no in range(1, 6):
        result = await service.verify_phone_code(exhaust, VerifyCodeInput(claim_id=exhaust_claim, code=_wrong(code)))
        _assert(result.error is not None and result.error.code == "mismatch", f"wrong code #{attempt_no} is a mismatch")
        _assert(result.error.details["attempts_remaining"] == 5 - attempt_no, f"attempts remaining after #{attempt_no}")
        if attempt_no == 1:
            persisted = await _attempts(db_path, exhaust_claim)
            _assert(persisted[0]["failed_checks"] == 1, "failed check must persist")
    sixth = await service.verify_phone_code(exhaust, VerifyCodeInput(claim_id=exhaust_claim, code=code))
    _assert(sixth.error is not None and sixth.error.code == "exhausted", f"6th call must be exhausted: {sixth}")
    _assert((await _attempts(db_path, exhaust_claim))[0]["status"] == "exhausted", "attempt must be exhausted")

    # A fresh code recovers from exhaustion.
    resent = await service.resend_verification_code(exhaust, exhaust_claim)
    _assert(resent.success and resent.data["resend_count"] == 1, f"resend after exhaustion: {resent}")
    fresh = await _latest_code(service, sender, exhaust_phone)
    ok = await service.verify_phone_code(exhaust, VerifyCodeInput(claim_id=exhaust_claim, code=fresh))
    _assert(ok.success, f"fresh code must verify: {ok}")

    # Expiry.
    expire = Requester(user_id="expire", ip_address="10.1.0.3")
    expire_phone = "+380500000003"
    expire_claim = await _start_claim(service, expire, 3, expire_phone)
    await service.send_verification_code(expire, expire_claim)
    expire_code = await _latest_code(service, sender, expire_phone)
    clock.advance(minutes=10, seconds=1)
    expired = await service.verify_phone_code(expire, VerifyCodeInput(claim_id=expire_claim, code=expire_code))
    _assert(expired.error is not None and expired.error.code == "expired", f"expired code must fail: {expired}")
    expired_again = await service.verify_phone_code(expire, VerifyCodeInput(claim_id=expire_claim, code=expire_code))
    _assert(expired_again.error is not None and expired_again.error.code == "expired", "expired stays expired")
    _assert((await _attempts(db_path, expire_claim))[0]["status"] == "expired", "attempt must be expired")
    clock.advance(minutes=1)

    # Supersede.
    supersede = Requester(user_id="supersede", ip_address="10.1.0.4")
    supersede_phone = "+380500000004"
    supersede_claim = await _start_claim(service, supersede, 4, supersede_phone)
    await service.send_verification_code(supersede, supersede_claim)
    old_code = await _latest_code(service, sender, supersede_phone)
    await service.resend_verification_code(supersede, supersede_claim)
    new_code = await _latest_code(service, sender, supersede_phone)
    statuses = [row["status"] for row in await _attempts(db_path, supersede_claim)]
    _assert(statuses == ["superseded", "issued"], f"new code supersedes the old one: {statuses}")
    if old_code != new_code:
        stale = await service.verify_phone_code(supersede, VerifyCodeInput(claim_id=supersede_claim, code=old_code))
        _assert(stale.error is not None and stale.error.code == "mismatch", "superseded code no longer works")
    current = await service.verify_phone_code(supersede, VerifyCodeInput(claim_id=supersede_claim, code=new_code))
    _assert(current.success, f"current code verifies: {current}")

    # Resend throttle.
    resend = Requester(user_id="resend", ip_address="10.1.0.5")
    resend_claim = await _start_claim(service, resend, 5, "+380500000005")
    await service.send_verification_code(resend, resend_claim)
    for expected in (1, 2, 3):
        result = await service.resend_verification_code(resend, resend_claim)
        _assert(result.success and result.data["resend_count"] == expected, f"resend #{expected}: {result}")
    throttled = await service.resend_verification_code(resend, resend_claim)
    _assert(throttled.error is not None and throttled.error.code == "rate_limited", "4th resend in an hour is throttled")
    _assert(throttled.error.details["retry_after_sec"] > 0, "throttle reports retry_after_sec")
    issued = [row for row in await _attempts(db_path, resend_claim) if row["status"] == "issued"]
    _assert(len(issued) == 1, "at most one active attempt per claim")

    # Send is for the first code only, so it can't route around the resend throttle.
    bypass = await service.send_verification_code(resend, resend_claim)
    _assert(bypass.error is not None and bypass.error.code == "invalid_transition", f"second send is refused: {bypass}")
    _assert(len(await _attempts(db_path, resend_claim)) == 4, "refused send issues no code")

    await service.close()


def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(_run_checks(str(Path(tmp) / "claims.db")))
    print("OK: claims phone verification smoke passed.")


if __name__ == "__main__":
    main()
