#!/usr/bin/env python3
"""
Claim workflow end-to-end smoke-check (happy path).

A regular visitor claims a place they check in at, submits business info,
verifies the phone and gets approved automatically.

What it validates:
- fraud score 15 (new-ish account, personal email, recent check-ins from
  the same IP) routes to auto approval
- the audit trail is exactly submitted -> info_updated -> phone_verified ->
  approved, in order, with the fraud snapshot stored on phone_verified
- the verified owner row is created with the claimed role and a trial
  subscription
- a second user trying the same place while the claim is open gets
  already_claimed and leaves no trace

Run:
  python3 scripts/smoke_claims_end_to_end.py
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
    BusinessInfoInput,
    ClaimWorkflowService,
    Requester,
    SubmitClaimInput,
    VerifyCodeInput,
)
from ownership.guards import ConfigAdminAuthorizer  # noqa: E402
from ownership.sms import MockSmsSender  # noqa: E402


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
OWNER_IP = "203.0.113.10"
OWNER_PHONE = "+380931234567"


def _assert(cond: bool, message: str) -> None:
    if not cond:
        raise AssertionError(message)


async def _seed(db_path: str) -> None:
    async with open_db(db_path) as db:
        await db.execute(
            "INSERT INTO places(id, name, latitude, longitude, region) VALUES(1, 'Green Door Bistro', 50.45, 30.52, 'kyiv')"
        )
        await db.executemany(
            "INSERT INTO users(id, email, created_at) VALUES(?, ?, ?)",
            [
                ("owner1", "owner@gmail.com", (NOW - timedelta(days=20)).isoformat()),
                ("rival", None, "2024-01-01T00:00:00+00:00"),
            ],
        )
        await db.executemany(
            "INSERT INTO checkins(user_id, place_id, ip_address, created_at) VALUES('owner1', 1, ?, ?)",
            [(OWNER_IP, (NOW - timedelta(days=day)).isoformat()) for day in (2, 6, 11)],
        )


async def _count(db_path: str, query: str, params: tuple = ()) -> int:
    async with open_db(db_path) as db:
        async with db.execute(query, params) as cur:
            row = await cur.fetchone()
    return int(row[0])


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
    owner = Requester(user_id="owner1", ip_address=OWNER_IP, user_agent="smoke/1.0")
    rival = Requester(user_id="rival", ip_address="198.51.100.77")

    submitted = await service.submit_claim(owner, SubmitClaimInput(place_id=1))
    _assert(submitted.success, f"submit: {submitted}")
    claim_id = int(submitted.data["claim"]["id"])
    _assert("ip_address" not in submitted.data["claim"], "request metadata stays server-side")

    blocked = await service.submit_claim(rival, SubmitClaimInput(place_id=1))
    _assert(blocked.error is not None and blocked.error.code == "already_claimed", f"rival blocked: {blocked}")
    _assert(await _count(db_path, "SELECT COUNT(*) FROM place_claims WHERE user_id = 'rival'") == 0, "no rival claim row")
    _assert(await _count(db_path, "SELECT COUNT(*) FROM claim_audit_log WHERE actor_id = 'rival'") == 0, "no rival audit")

    info = await service.submit_business_info(
        owner,
        BusinessInfoInput(
            claim_id=claim_id,
            role="Owner",
            business_email="Owner@Gmail.com",
            business_description="Neighbourhood bistro, family owned",
            phone_number=OWNER_PHONE,
            years_at_location=6,
        ),
    )
    _assert(info.success and info.data["claim"]["business_email"] == "owner@gmail.com", f"info: {info}")

    sent = await service.send_verification_code(owner, claim_id)
    _assert(sent.success and sent.data["resend_count"] == 0, f"send: {sent}")
    _assert(sent.data["expires_at"] == (NOW + timedelta(minutes=10)).isoformat(), "code lives 10 minutes")
    await service.phone.wait_for_deliveries()
    message = sender.last_message_to(OWNER_PHONE) or ""
    match = re.search(r"\b(\d{6})\b", message)
    _assert(match is not None and "10 minutes" in message, f"SMS text: {message!r}")

    verified = await service.verify_phone_code(owner, VerifyCodeInput(claim_id=claim_id, code=match.group(1)))
    _assert(verified.success, f"verify: {verified}")
    _assert(verified.data["fraud_score"] == 15, f"expected score 15: {verified.data}")
    _assert(verified.data["route"] == "auto_approve", "score 15 is approved automatically")
    _assert(verified.data["claim"]["status"] == "approved", "claim approved")
    _assert(
        verified.data["owner"] == {"place_id": 1, "role": "owner", "subscription_status": "trialing"},
        f"owner payload: {verified.data['owner']}",
    )

    entries = await service.audit.list_for_claim(claim_id)
    _assert([entry.action for entry in entries] == ["submitted", "info_updated", "phone_verified", "approved"], f"audit: {entries}")
    _assert(
        [(entry.from_status, entry.to_status) for entry in entries]
        == [
            (None, "pending_info"),
            ("pending_info", "phone_verification"),
            ("phone_verification", "fraud_review"),
            ("fraud_review", "approved"),
        ],
        "audit edges",
    )
    _assert(entries[-1].actor_kind == "system", "auto approval is a system decision")
    snapshot = json.loads(entries[2].context_json or "{}")["fraud_analysis"]
    _assert(snapshot["score"] == 15 and snapshot["recommendation"] == "auto_approve", f"snapshot: {snapshot}")
    signal_types = {signal["type"] for signal in snapshot["signals"]}
    _assert(signal_types == {"new_account", "checkin_density", "personal_email_domain"}, f"signals: {signal_types}")

    async with service.repository.read() as db:
        owners = await service.repository.list_verified_owners(db, place_id=1)
        claim = await service.repository.get_claim(db, claim_id)
    _assert(len(owners) == 1 and owners[0].user_id == "owner1" and owners[0].claim_id == claim_id, f"owners: {owners}")
    _assert(owners[0].role == "owner" and owners[0].subscription_status == "trialing", "owner role and trial")
    _assert(claim is not None and claim.fraud_score == 15 and claim.fraud_analysis_json, "claim stores the snapshot")

    status = await service.get_claim_status(owner, claim_id)
    _assert(len(status.data["history"]) == 4, f"history: {status.data['history']}")
    _assert(await _count(db_path, "SELECT COUNT(*) FROM claim_audit_log") == 4, "nothing else was audited")

    await service.close()


def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(_run_checks(str(Path(tmp) / "claims.db")))
    print("OK: claims end-to-end smoke passed.")


if __name__ == "__main__":
    main()
