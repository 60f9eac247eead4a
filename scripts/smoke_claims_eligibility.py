#!/usr/bin/env python3
"""
Claim eligibility and concurrent submission smoke-check.

What it validates:
- two concurrent submissions for one place: exactly one wins, the other gets
  already_claimed, and the loser leaves no claim row and no audit entry
- the winner can't open a second claim on the same place or (single-active
  policy) on another place
- unknown places are rejected as not_found
- a canceled claim frees the place
- a place with a verified owner refuses claims from any user
- lifetime cap and rejection cooldown are policy parameters; the default
  cooldown allows immediate resubmission after a rejection

Run:
  python3 scripts/smoke_claims_eligibility.py
"""

from __future__ import annotations

import asyncio
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))

from database import init_db, open_db  # noqa: E402
from ownership import CancelClaimInput, ClaimWorkflowService, Requester, SubmitClaimInput  # noqa: E402
from ownership.eligibility import EligibilityChecker  # noqa: E402
from ownership.guards import ConfigAdminAuthorizer  # noqa: E402
from ownership.repository import ClaimRepository  # noqa: E402
from ownership.sms import MockSmsSender  # noqa: E402


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _assert(cond: bool, message: str) -> None:
    if not cond:
        raise AssertionError(message)


async def _seed(db_path: str) -> None:
    async with open_db(db_path) as db:
        await db.executemany(
            "INSERT INTO places(id, name, latitude, longitude, region) VALUES(?, ?, ?, ?, ?)",
            [
                (1, "Corner Bakery", 50.45, 30.52, "kyiv"),
                (2, "River Cafe", 50.46, 30.50, "kyiv"),
                (3, "Old Bookshop", 50.44, 30.51, "kyiv"),
            ],
        )
        await db.executemany(
            "INSERT INTO users(id, email, created_at) VALUES(?, ?, ?)",
            [(user_id, f"{user_id}@example.com", "2025-01-01T00:00:00+00:00") for user_id in ("u1", "u2", "u3")],
        )


async def _count(db_path: str, query: str, params: tuple = ()) -> int:
    async with open_db(db_path) as db:
        async with db.execute(query, params) as cur:
            row = await cur.fetchone()
    return int(row[0])


async def _run_checks(db_path: str) -> None:
    await init_db(db_path)
    await _seed(db_path)
    service = ClaimWorkflowService(
        db_path=db_path,
        sms_sender=MockSmsSender(),
        authorizer=ConfigAdminAuthorizer(["admin-1"]),
        clock=lambda: NOW,
    )
    u1 = Requester(user_id="u1", ip_address="10.0.0.1")
    u2 = Requester(user_id="u2", ip_address="10.0.0.2")
    u3 = Requester(user_id="u3", ip_address="10.0.0.3")

    first, second = await asyncio.gather(
        service.submit_claim(u1, SubmitClaimInput(place_id=1)),
        service.submit_claim(u2, SubmitClaimInput(place_id=1)),
    )
    outcomes = sorted([first, second], key=lambda result: not result.success)
    winner, loser = outcomes
    _assert(winner.success, f"one concurrent submission must win: {first} {second}")
    _assert(not loser.success and loser.error.code == "already_claimed", f"loser must get already_claimed: {loser}")
    _assert(await _count(db_path, "SELECT COUNT(*) FROM place_claims WHERE place_id = 1") == 1, "one claim row only")
    _assert(await _count(db_path, "SELECT COUNT(*) FROM claim_audit_log") == 1, "only the winner is audited")

    winner_user = winner.data["claim"]["user_id"]
    winner_req = u1 if winner_user == "u1" else u2
    loser_req = u2 if winner_req is u1 else u1
    claim_id = int(winner.data["claim"]["id"])
    _assert(winner.data["claim"]["status"] == "pending_info", "new claim starts in pending_info")
    _assert(
        await _count(db_path, "SELECT COUNT(*) FROM claim_audit_log WHERE actor_id = ?", (loser_req.user_id,)) == 0,
        "no audit entry for the losing user",
    )

    again = await service.submit_claim(winner_req, SubmitClaimInput(place_id=1))
    _assert(again.error is not None and again.error.code == "not_eligible", "own open claim on same place is not eligible")

    other_place = await service.submit_claim(winner_req, SubmitClaimInput(place_id=2))
    _assert(other_place.error is not None and other_place.error.code == "not_eligible", "single active claim per user")

    loser_other = await service.submit_claim(loser_req, SubmitClaimInput(place_id=2))
    _assert(loser_other.success, "loser can still claim a free place")

    missing = await service.submit_claim(u3, SubmitClaimInput(place_id=999))
    _assert(missing.error is not None and missing.error.code == "not_found", "unknown place is not_found")

    invalid = await service.submit_claim(u3, SubmitClaimInput(place_id="abc"))  # type: ignore[arg-type]
    _assert(invalid.error is not None and invalid.error.code == "validation_error", "non-numeric place id is invalid")

    canceled = await service.cancel_claim(winner_req, CancelClaimInput(claim_id=claim_id, reason="wrong place"))
    _assert(canceled.success and canceled.data["claim"]["status"] == "canceled", "claimant can cancel")
    reopened = await service.submit_claim(u3, SubmitClaimInput(place_id=1))
    _assert(reopened.success, "a canceled claim frees the place")

    # Policy parameters, checked directly on the shared transaction connection.
    repository = ClaimRepository(db_path)
    async with open_db(db_path) as db:
        await db.execute(
            "UPDATE place_claims SET status = 'rejected', decided_at = ? WHERE id = ?",
            ((NOW - timedelta(days=2)).isoformat(), int(reopened.data["claim"]["id"])),
        )

    default_checker = EligibilityChecker(repository, rejection_cooldown_days=0)
    cooldown_checker = EligibilityChecker(repository, rejection_cooldown_days=30)
    capped_checker = EligibilityChecker(repository, max_lifetime_claims=1)
    async with repository.read() as db:
        immediate = await default_checker.check(db, "u3", 1, now=NOW)
        cooling = await cooldown_checker.check(db, "u3", 1, now=NOW)
        later = await cooldown_checker.check(db, "u3", 1, now=NOW + timedelta(days=31))
        capped = await capped_checker.check(db, "u3", 3, now=NOW)
    _assert(immediate.eligible, f"default policy allows immediate resubmission: {immediate}")
    _assert(not cooling.eligible and cooling.code == "not_eligible", "cooldown blocks resubmission")
    _assert("available_at" in cooling.details, "cooldown reports when the user may retry")
    _assert(later.eligible, "cooldown expires")
    _assert(not capped.eligible and capped.details.get("limit") == 1, "lifetime cap applies")

    # A verified owner closes the place to every claimant, the owner included.
    async with open_db(db_path) as db:
        await db.execute(
            """INSERT INTO verified_owners(place_id, user_id, claim_id, role, subscription_status, created_at)
               VALUES(3, 'u1', 900, 'owner', 'active', ?)""",
            (NOW.isoformat(),),
        )
    owned = await service.submit_claim(u3, SubmitClaimInput(place_id=3))
    _assert(owned.error is not None and owned.error.code == "not_eligible", f"owned place refuses new claims: {owned}")
    _assert(await _count(db_path, "SELECT COUNT(*) FROM place_claims WHERE place_id = 3") == 0, "no claim row for an owned place")
    async with repository.read() as db:
        own_place = await default_checker.check(db, "u1", 3, now=NOW)
        other_user = await default_checker.check(db, "u3", 3, now=NOW)
    _assert(not own_place.eligible and "already a verified owner" in (own_place.reason or ""), f"owner: {own_place}")
    _assert(not other_user.eligible and other_user.reason == "This place already has a verified owner.", f"{other_user}")

    await service.close()


def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(_run_checks(str(Path(tmp) / "claims.db")))
    print("OK: claims eligibility smoke passed.")


if __name__ == "__main__":
    main()
