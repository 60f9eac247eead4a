#!/usr/bin/env python3
"""
Claim state machine smoke-check.

What it validates:
- operations outside their source state fail with invalid_transition
- a validation failure leaves the claim and the audit trail untouched
- concurrent duplicate transitions on one claim: exactly one wins
- a stale claim snapshot loses the compare-and-set and rolls back whole
- every audited (from, to) pair is an allowed edge and the trail is a chain
- automatic decisions are bound to the score; only the claimant can cancel

Run:
  python3 scripts/smoke_claims_state_machine.py
"""

from __future__ import annotations

import asyncio
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))

from database import init_db, open_db  # noqa: E402
from ownership import (  # noqa: E402
    AdminReviewInput,
    BusinessInfoInput,
    CancelClaimInput,
    ClaimWorkflowService,
    Requester,
    SubmitClaimInput,
)
from ownership.errors import AlreadyClaimed, InvalidTransition, Unauthorized  # noqa: E402
from ownership.guards import ConfigAdminAuthorizer  # noqa: E402
from ownership.sms import MockSmsSender  # noqa: E402
from ownership.statuses import ALLOWED_TRANSITIONS  # noqa: E402


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _assert(cond: bool, message: str) -> None:
    if not cond:
        raise AssertionError(message)


def _info(claim_id: int, **overrides) -> BusinessInfoInput:
    values = {
        "claim_id": claim_id,
        "role": "manager",
        "business_email": "manager@tea-house.example",
        "business_description": "Tea house on the corner",
        "phone_number": "+380 50 123 45 67",
        "years_at_location": 2,
    }
    values.update(overrides)
    return BusinessInfoInput(**values)


async def _seed(db_path: str) -> None:
    async with open_db(db_path) as db:
        await db.executemany(
            "INSERT INTO places(id, name, latitude, longitude, region) VALUES(?, ?, NULL, NULL, NULL)",
            [(place_id, f"Place {place_id}") for place_id in range(1, 10)],
        )
        await db.executemany(
            "INSERT INTO users(id, email, created_at) VALUES(?, NULL, '2024-01-01T00:00:00+00:00')",
            [(f"u{index}",) for index in range(1, 10)],
        )
        # A claim already waiting for a reviewer with a mid-range score.
        await db.execute(
            """INSERT INTO place_claims(
                   id, user_id, place_id, status, role, fraud_score, created_at, updated_at
               ) VALUES(100, 'u9', 9, 'fraud_review', 'owner', 60, ?, ?)""",
            (NOW.isoformat(), NOW.isoformat()),
        )


async def _count(db_path: str, query: str, params: tuple = ()) -> int:
    async with open_db(db_path) as db:
        async with db.execute(query, params) as cur:
            row = await cur.fetchone()
    return int(row[0])


def _assert_error(result, code: str, message: str) -> None:
    _assert(not result.success and result.error is not None and result.error.code == code, f"{message}: {result}")


async def _run_checks(db_path: str) -> None:
    await init_db(db_path)
    await _seed(db_path)
    service = ClaimWorkflowService(
        db_path=db_path,
        sms_sender=MockSmsSender(),
        authorizer=ConfigAdminAuthorizer(["admin-1"]),
        clock=lambda: NOW,
    )
    u1 = Requester(user_id="u1", ip_address="10.2.0.1")
    u2 = Requester(user_id="u2", ip_address="10.2.0.2")
    admin = Requester(user_id="admin-1", ip_address="10.2.0.100")

    # Guards and validation on claim A.
    created = await service.submit_claim(u1, SubmitClaimInput(place_id=1))
    claim_a = int(created.data["claim"]["id"])
    _assert_error(
        await service.admin_review_claim(admin, AdminReviewInput(claim_id=claim_a, decision="approve")),
        "invalid_transition",
        "review before fraud_review",
    )
    _assert_error(await service.submit_business_info(u1, _info(claim_a, business_email="not-an-email")), "validation_error", "bad email")
    _assert_error(await service.submit_business_info(u1, _info(claim_a, role="janitor")), "validation_error", "bad role")
    _assert_error(await service.submit_business_info(u1, _info(claim_a, phone_number="12")), "validation_error", "bad phone")
    _assert_error(await service.submit_business_info(u1, _info(claim_a, years_at_location=-1)), "validation_error", "bad years")
    for fractional in (2.7, "2.7", True):
        _assert_error(
            await service.submit_business_info(u1, _info(claim_a, years_at_location=fractional)),
            "validation_error",
            f"years_at_location={fractional!r} is not a whole number",
        )
    _assert(_info(claim_a, years_at_location=3.0).validate().years_at_location == 3, "integral float is accepted")
    _assert_error(
        await service.submit_claim(u1, SubmitClaimInput(place_id=1.5)),  # type: ignore[arg-type]
        "validation_error",
        "fractional place id is not truncated",
    )
    status = await service.get_claim_status(u1, claim_a)
    _assert(status.data["claim"]["status"] == "pending_info", "validation failure keeps the state")
    _assert(status.data["claim"]["business_email"] is None, "validation failure writes nothing")
    _assert(len(status.data["history"]) == 1, "validation failure adds no audit entry")

    updated = await service.submit_business_info(u1, _info(claim_a))
    _assert(updated.success and updated.data["claim"]["status"] == "phone_verification", f"info accepted: {updated}")
    _assert(updated.data["claim"]["phone_number"] == "+380501234567", "phone stored normalized")
    _assert(updated.data["claim"]["role"] == "manager", "role stored")
    _assert_error(await service.submit_business_info(u1, _info(claim_a)), "invalid_transition", "info can't be submitted twice")

    # Ownership is hidden from other users.
    _assert_error(
        await service.cancel_claim(u2, CancelClaimInput(claim_id=claim_a, reason="mine")),
        "not_found",
        "other user's claim looks missing",
    )
    _assert_error(await service.cancel_claim(u1, CancelClaimInput(claim_id=claim_a, reason="  ")), "validation_error", "cancel needs a reason")

    # Concurrent duplicate transitions on claim B.
    created_b = await service.submit_claim(u2, SubmitClaimInput(place_id=2))
    claim_b = int(created_b.data["claim"]["id"])
    infos = await asyncio.gather(
        service.submit_business_info(u2, _info(claim_b)),
        service.submit_business_info(u2, _info(claim_b, role="owner")),
    )
    _assert(sum(1 for result in infos if result.success) == 1, f"one info submission wins: {infos}")
    _assert(
        all(result.success or result.error.code == "invalid_transition" for result in infos),
        "the loser sees invalid_transition",
    )
    cancels = await asyncio.gather(
        service.cancel_claim(u2, CancelClaimInput(claim_id=claim_b, reason="changed my mind")),
        service.cancel_claim(u2, CancelClaimInput(claim_id=claim_b, reason="double click")),
    )
    _assert(sum(1 for result in cancels if result.success) == 1, f"one cancel wins: {cancels}")
    _assert_error(
        await service.submit_business_info(u2, _info(claim_b)),
        "invalid_transition",
        "terminal claims accept no transitions",
    )

    history = (await service.get_claim_status(u2, claim_b)).data["history"]
    _assert([entry["action"] for entry in history] == ["submitted", "info_updated", "canceled"], f"history: {history}")
    previous_to = None
    for entry in history:
        _assert(entry["from_status"] == previous_to, f"audit trail is a chain: {history}")
        if entry["from_status"] is not None:
            _assert(
                entry["to_status"] in ALLOWED_TRANSITIONS[entry["from_status"]],
                f"audited edge must be allowed: {entry}",
            )
        previous_to = entry["to_status"]

    # Stale snapshot loses the compare-and-set; nothing from the attempt sticks.
    created_c = await service.submit_claim(Requester(user_id="u3", ip_address="10.2.0.3"), SubmitClaimInput(place_id=3))
    claim_c = int(created_c.data["claim"]["id"])
    async with service.repository.read() as db:
        stale = await service.repository.get_claim(db, claim_c)
    assert stale is not None
    await service.cancel_claim(Requester(user_id="u3", ip_address="10.2.0.3"), CancelClaimInput(claim_id=claim_c, reason="oops"))
    audit_before = await _count(db_path, "SELECT COUNT(*) FROM claim_audit_log WHERE claim_id = ?", (claim_c,))
    try:
        await service.repository.transaction(
            lambda db: service.state_machine.submit_info(db, stale, _info(claim_c).validate()),
            where="smoke.stale_submit_info",
        )
    except InvalidTransition:
        pass
    else:
        raise AssertionError("stale snapshot must lose the compare-and-set")
    _assert(
        await _count(db_path, "SELECT COUNT(*) FROM claim_audit_log WHERE claim_id = ?", (claim_c,)) == audit_before,
        "lost compare-and-set writes no audit entry",
    )
    _assert(
        await _count(db_path, "SELECT COUNT(*) FROM place_claims WHERE id = ? AND status = 'canceled' AND phone_number IS NULL", (claim_c,))
        == 1,
        "lost compare-and-set writes no fields",
    )

    # Decisions on a fraud_review claim with score 60 (low=30, high=75).
    async def _with_claim(fn):
        async def _tx(db):
            claim = await service.repository.get_claim(db, 100)
            assert claim is not None
            return await fn(db, claim)

        return await service.repository.transaction(_tx, where="smoke.review_claim")

    for label, fn, expected in (
        (
            "system approve needs a low score",
            lambda db, claim: service.state_machine.approve(db, claim, actor_id="system:claims", actor_kind="system"),
            InvalidTransition,
        ),
        (
            "system reject needs a high score",
            lambda db, claim: service.state_machine.reject(db, claim, actor_id="system:claims", actor_kind="system", reason="fraud risk"),
            InvalidTransition,
        ),
        (
            "a user can't approve",
            lambda db, claim: service.state_machine.approve(db, claim, actor_id="u9", actor_kind="user"),
            Unauthorized,
        ),
        (
            "only the claimant cancels",
            lambda db, claim: service.state_machine.cancel(db, claim, actor_id="intruder", reason="mine now"),
            Unauthorized,
        ),
    ):
        try:
            await _with_claim(fn)
        except expected:
            pass
        else:
            raise AssertionError(label)
    _assert(await _count(db_path, "SELECT COUNT(*) FROM claim_audit_log WHERE claim_id = 100") == 0, "refused decisions leave no audit")
    _assert(await _count(db_path, "SELECT COUNT(*) FROM verified_owners") == 0, "refused approval creates no owner")

    # A place gets at most one verified owner, even through an admin approval.
    async with open_db(db_path) as db:
        await db.execute(
            """INSERT INTO verified_owners(place_id, user_id, claim_id, role, subscription_status, created_at)
               VALUES(9, 'prior', 500, 'owner', 'active', ?)""",
            (NOW.isoformat(),),
        )
    try:
        await _with_claim(
            lambda db, claim: service.state_machine.approve(db, claim, actor_id="admin-1", actor_kind="admin")
        )
    except AlreadyClaimed:
        pass
    else:
        raise AssertionError("approval on an owned place must be refused")
    _assert(await _count(db_path, "SELECT COUNT(*) FROM verified_owners WHERE place_id = 9") == 1, "no second owner")
    _assert(
        await _count(db_path, "SELECT COUNT(*) FROM place_claims WHERE id = 100 AND status = 'fraud_review'") == 1,
        "refused approval leaves the claim in review",
    )

    # The claimant may still withdraw during review.
    withdrawn = await service.cancel_claim(Requester(user_id="u9", ip_address="10.2.0.9"), CancelClaimInput(claim_id=100, reason="sold the shop"))
    _assert(withdrawn.success and withdrawn.data["claim"]["cancel_reason"] == "sold the shop", f"cancel from fraud_review: {withdrawn}")

    await service.close()


def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(_run_checks(str(Path(tmp) / "claims.db")))
    print("OK: claims state machine smoke passed.")


if __name__ == "__main__":
    main()
