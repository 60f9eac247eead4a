#!/usr/bin/env python3
"""
Claim admin review gate smoke-check.

What it validates:
- a mid-range fraud score parks the claim in fraud_review for a human
- the pending list and decisions are admin-only; the list carries the stored
  fraud snapshot and a readable report
- a rejection requires a reason; an approval creates the verified owner
- decisions are audited with the reviewer and the score; a decided claim
  can't be reviewed again
- a place with a verified owner refuses new claims from anyone
- a critical score is rejected automatically as fraud_flagged by the system
- admins page through the audit log, newest first, optionally per place
- claimants list their claims and owned places, and see a place's ownership
  status with their own eligibility

Run:
  python3 scripts/smoke_claims_admin_review.py
"""

from __future__ import annotations

import asyncio
import json
import re
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))

from database import init_db, open_db  # noqa: E402
from ownership import (  # noqa: E402
    AdminReviewInput,
    BusinessInfoInput,
    ClaimWorkflowService,
    Requester,
    ServiceResult,
    SubmitClaimInput,
    VerifyCodeInput,
)
from ownership.guards import ConfigAdminAuthorizer  # noqa: E402
from ownership.sms import MockSmsSender  # noqa: E402


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
CODE_RE = re.compile(r"\b(\d{6})\b")


def _assert(cond: bool, message: str) -> None:
    if not cond:
        raise AssertionError(message)


def _assert_error(result: ServiceResult, code: str, message: str) -> None:
    _assert(not result.success and result.error is not None and result.error.code == code, f"{message}: {result}")


async def _seed(db_path: str) -> None:
    created = (NOW - timedelta(days=3)).isoformat()
    async with open_db(db_path) as db:
        await db.executemany(
            "INSERT INTO places(id, name, latitude, longitude, region) VALUES(?, ?, NULL, NULL, NULL)",
            [(1, "Harbour Cafe"), (2, "Night Market")],
        )
        await db.executemany(
            "INSERT INTO users(id, email, created_at) VALUES(?, NULL, ?)",
            [("mid", created), ("mid2", created), ("bad", created)],
        )


async def _count_claims(service: ClaimWorkflowService, query: str) -> int:
    async with service.repository.read() as db:
        async with db.execute(query) as cur:
            row = await cur.fetchone()
    return int(row[0])


async def _verified_claim(
    service: ClaimWorkflowService,
    sender: MockSmsSender,
    requester: Requester,
    *,
    place_id: int,
    email: str,
    phone: str,
) -> tuple[int, ServiceResult]:
    submitted = await service.submit_claim(requester, SubmitClaimInput(place_id=place_id))
    _assert(submitted.success, f"submit for {requester.user_id}: {submitted}")
    claim_id = int(submitted.data["claim"]["id"])
    info = await service.submit_business_info(
        requester,
        BusinessInfoInput(
            claim_id=claim_id,
            role="owner",
            business_email=email,
            business_description="Open since 2019",
            phone_number=phone,
        ),
    )
    _assert(info.success, f"info for {requester.user_id}: {info}")
    sent = await service.send_verification_code(requester, claim_id)
    _assert(sent.success, f"send for {requester.user_id}: {sent}")
    await service.phone.wait_for_deliveries()
    match = CODE_RE.search(sender.last_message_to(phone) or "")
    _assert(match is not None, f"code delivered to {phone}")
    verified = await service.verify_phone_code(requester, VerifyCodeInput(claim_id=claim_id, code=match.group(1)))
    return claim_id, verified


async def _run_checks(db_path: str) -> None:
    await init_db(db_path)
    await _seed(db_path)
    sender = MockSmsSender()
    service = ClaimWorkflowService(
        db_path=db_path,
        sms_sender=sender,
        authorizer=ConfigAdminAuthorizer(["admin-1"]),
        clock=lambda: NOW,
    )
    admin = Requester(user_id="admin-1", ip_address="10.3.0.100")
    mid = Requester(user_id="mid", ip_address="10.3.0.1")
    mid2 = Requester(user_id="mid2", ip_address="10.3.0.2")
    bad = Requester(user_id="bad", ip_address="10.3.0.3")

    # New account with no check-ins: 25 + 20 = 45, manual review.
    claim_id, verified = await _verified_claim(
        service, sender, mid, place_id=1, email="owner@harbour-cafe.example", phone="+380671000001"
    )
    _assert(verified.success, f"phone verification succeeds: {verified}")
    _assert(verified.data["route"] == "manual_review", f"score 45 needs a reviewer: {verified.data}")
    _assert(verified.data["fraud_score"] == 45, f"score: {verified.data}")
    _assert(verified.data["claim"]["status"] == "fraud_review" and verified.data["owner"] is None, "no owner yet")

    _assert_error(await service.list_pending_reviews(mid), "unauthorized", "pending list is admin-only")
    pending = await service.list_pending_reviews(admin)
    _assert(pending.success and len(pending.data["items"]) == 1, f"one pending claim: {pending}")
    item = pending.data["items"][0]
    _assert(item["claim"]["id"] == claim_id, "pending item is the claim")
    _assert(item["fraud_analysis"]["score"] == 45, "pending item carries the stored snapshot")
    _assert(item["fraud_report"].startswith("Fraud score: 45/100 (MEDIUM risk)"), f"report: {item['fraud_report']!r}")
    _assert("ip_address" not in item["claim"], "pending item hides request metadata")

    _assert_error(
        await service.admin_review_claim(mid, AdminReviewInput(claim_id=claim_id, decision="approve")),
        "unauthorized",
        "claimant can't approve own claim",
    )
    _assert_error(
        await service.admin_review_claim(mid, AdminReviewInput(claim_id=claim_id, decision="bogus")),
        "unauthorized",
        "authorization is checked before input",
    )
    _assert_error(
        await service.admin_review_claim(admin, AdminReviewInput(claim_id=claim_id, decision="reject", reason=" ")),
        "validation_error",
        "reject needs a reason",
    )
    _assert_error(
        await service.admin_review_claim(admin, AdminReviewInput(claim_id=9999, decision="approve")),
        "not_found",
        "unknown claim",
    )

    approved = await service.admin_review_claim(
        admin, AdminReviewInput(claim_id=claim_id, decision="approve", reason="Lease checked")
    )
    _assert(approved.success and approved.data["claim"]["status"] == "approved", f"approve: {approved}")
    _assert(approved.data["claim"]["decided_by"] == "admin-1", "decision records the reviewer")
    _assert(approved.data["owner"] == {"place_id": 1, "user_id": "mid", "role": "owner"}, f"owner: {approved.data}")
    async with service.repository.read() as db:
        owners = await service.repository.list_verified_owners(db, place_id=1)
    _assert(len(owners) == 1 and owners[0].subscription_status == "trialing", "one verified owner in trial")

    entries = await service.audit.list_for_claim(claim_id)
    last = entries[-1]
    _assert(last.action == "approved" and last.actor_kind == "admin" and last.actor_id == "admin-1", f"audit: {last}")
    context = json.loads(last.context_json or "{}")
    _assert(context.get("reviewer") == "admin-1" and context.get("fraud_score") == 45, f"audit context: {context}")
    _assert(context.get("reason") == "Lease checked", "audit keeps the reviewer note")

    _assert_error(
        await service.admin_review_claim(admin, AdminReviewInput(claim_id=claim_id, decision="reject", reason="late")),
        "invalid_transition",
        "decided claim can't be reviewed again",
    )

    # Manual rejection.
    claim2, verified2 = await _verified_claim(
        service, sender, mid2, place_id=2, email="info@night-market.example", phone="+380671000002"
    )
    _assert(verified2.success and verified2.data["route"] == "manual_review", f"second claim waits: {verified2}")
    rejected = await service.admin_review_claim(
        admin, AdminReviewInput(claim_id=claim2, decision="reject", reason="Documents don't match")
    )
    _assert(rejected.success and rejected.data["claim"]["status"] == "rejected", f"reject: {rejected}")
    _assert(rejected.data["claim"]["rejection_reason"] == "Documents don't match", "rejection reason stored")
    _assert(rejected.data["owner"] is None, "rejection creates no owner")
    last2 = (await service.audit.list_for_claim(claim2))[-1]
    _assert(last2.action == "rejected" and last2.actor_id == "admin-1", f"rejection audited: {last2}")
    _assert((await service.list_pending_reviews(admin)).data["items"] == [], "queue is empty")

    # Place 1 has an owner now, so nobody else may start a claim on it.
    _assert_error(
        await service.submit_claim(bad, SubmitClaimInput(place_id=1)),
        "not_eligible",
        "an owned place refuses new claims",
    )
    _assert(
        await _count_claims(service, "SELECT COUNT(*) FROM place_claims WHERE user_id = 'bad'") == 0,
        "refused submission writes no claim",
    )

    # Phone reused from another account: 25 + 20 + 15 + 30 = 90, auto reject.
    claim3, verified3 = await _verified_claim(
        service, sender, bad, place_id=2, email="takeover@gmail.com", phone="+380671000002"
    )
    _assert_error(verified3, "fraud_rejected", "critical score is rejected automatically")
    status = await service.get_claim_status(bad, claim3)
    _assert(status.data["claim"]["status"] == "rejected", "auto rejected claim is terminal")
    _assert(status.data["claim"]["rejection_reason"] == "fraud risk", "system reason")
    last3 = (await service.audit.list_for_claim(claim3))[-1]
    _assert(last3.action == "fraud_flagged" and last3.actor_kind == "system", f"system rejection audited: {last3}")
    async with service.repository.read() as db:
        _assert(not await service.repository.has_verified_owner(db, 2), "no owner for the flagged user")

    # Audit listing for administrators.
    _assert_error(await service.list_audit_log(mid), "unauthorized", "audit listing is admin-only")
    listing = await service.list_audit_log(admin, limit=5)
    total = await _count_claims(service, "SELECT COUNT(*) FROM claim_audit_log")
    _assert(listing.success and listing.data["total"] == total == 12, f"three claims, four entries each: {listing}")
    _assert(len(listing.data["items"]) == 5, "listing honours the limit")
    newest = listing.data["items"][0]
    _assert(newest["claim_id"] == claim3 and newest["action"] == "fraud_flagged", f"newest first: {newest}")
    _assert(newest["context"]["reason"] == "fraud risk" and "context_json" not in newest, f"decoded context: {newest}")
    place1 = await service.list_audit_log(admin, place_id=1)
    _assert(place1.data["total"] == 4, "refused submission on an owned place is not audited")
    _assert({item["claim_id"] for item in place1.data["items"]} == {claim_id}, "place filter")
    _assert(place1.data["items"][0]["action"] == "approved", f"last event for place 1: {place1.data['items'][0]}")
    tail = await service.list_audit_log(admin, limit=5, offset=10)
    _assert(len(tail.data["items"]) == 2, "offset pages through the log")

    # Read views for claimants.
    mine = await service.list_user_claims(mid)
    _assert(mine.success and [c["id"] for c in mine.data["claims"]] == [claim_id], f"mid's claims: {mine}")
    _assert(mine.data["claims"][0]["place_name"] == "Harbour Cafe", "claims carry the place name")
    owned = mine.data["owned_places"]
    _assert(len(owned) == 1 and owned[0]["place_id"] == 1 and owned[0]["claim_id"] == claim_id, f"owned: {owned}")
    bad_claims = await service.list_user_claims(bad)
    _assert([c["status"] for c in bad_claims.data["claims"]] == ["rejected"], f"bad's claims: {bad_claims}")
    _assert(bad_claims.data["owned_places"] == [], "no owned places for bad")
    _assert("ip_address" not in bad_claims.data["claims"][0], "claim list hides request metadata")

    owned_status = await service.get_place_ownership_status(bad, 1)
    _assert(owned_status.success and owned_status.data["has_verified_owner"], f"place 1 is owned: {owned_status}")
    _assert(owned_status.data["verified_owner"]["user_id"] == "mid", "owner is reported")
    _assert(not owned_status.data["claim_in_progress"] and owned_status.data["my_claim_id"] is None, "no open claim")
    _assert(owned_status.data["eligibility"]["code"] == "not_eligible", "owned place can't be claimed")
    free_status = await service.get_place_ownership_status(bad, 2)
    _assert(not free_status.data["has_verified_owner"] and free_status.data["verified_owner"] is None, "place 2 is free")
    _assert(free_status.data["eligibility"]["eligible"], f"place 2 may be claimed again: {free_status}")
    _assert_error(await service.get_place_ownership_status(bad, 999), "not_found", "unknown place")

    await service.close()


def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(_run_checks(str(Path(tmp) / "claims.db")))
    print("OK: claims admin review smoke passed.")


if __name__ == "__main__":
    main()
