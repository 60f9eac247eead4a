#!/usr/bin/env python3
"""
Claim fraud scorer smoke-check.

What it validates:
- score is clamped to 0..100 for the cleanest and the worst claimant
- raising any risk factor never lowers the score; check-ins lower it
- per-signal caps (distant claims, failed checks, check-in density)
- risk level / recommendation boundaries at 30 and 75
- context gathered from the shared database (account age, distant claims,
  duplicate phone, shared IP, prior rejection, existing owner)
- admin report formatting and snapshot round-trip

Run:
  python3 scripts/smoke_claims_fraud_scorer.py
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))

from database import init_db, open_db  # noqa: E402
from ownership.directory import SqliteDirectory  # noqa: E402
from ownership.fraud import (  # noqa: E402
    FraudContext,
    FraudScorer,
    FraudThresholds,
    classify,
    format_fraud_report,
    haversine_km,
)
from ownership.models import Claim, FraudAnalysis  # noqa: E402
from ownership.repository import ClaimRepository  # noqa: E402


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
CLAIM_IP = "198.51.100.9"
CLAIM_PHONE = "+380501112233"


def _assert(cond: bool, message: str) -> None:
    if not cond:
        raise AssertionError(message)


def _iso(moment: datetime) -> str:
    return moment.isoformat()


def _claim(email: str = "owner@bakery.example") -> Claim:
    return Claim(
        id=1,
        user_id="u1",
        place_id=1,
        status="phone_verification",
        created_at=_iso(NOW),
        updated_at=_iso(NOW),
        role="owner",
        business_email=email,
        phone_number=CLAIM_PHONE,
    )


def _signal_types(analysis: FraudAnalysis) -> set[str]:
    return {signal.type for signal in analysis.signals}


def _check_pure_scoring(scorer: FraudScorer) -> None:
    clean = FraudContext(
        account_age_days=900,
        checkins_total=12,
        checkins_recent=12,
        ip_region_correlated=True,
        submitted_at=NOW,
    )
    best = scorer.score(_claim(), clean)
    _assert(best.score == 0, f"cleanest claimant clamps to 0, got {best.score}")
    _assert((best.risk_level, best.recommendation) == ("low", "auto_approve"), "score 0 is low risk")

    worst = FraudContext(
        account_age_days=0.5,
        checkins_total=0,
        distant_recent_claims=9,
        failed_verifications=20,
        ip_region_correlated=False,
        duplicate_phone_claims=3,
        rejected_claims=4,
        place_has_owner=True,
        shared_ip_users=7,
        submitted_at=NOW.replace(hour=3),
    )
    top = scorer.score(_claim("someone@gmail.com"), worst)
    _assert(top.score == 100, f"worst claimant clamps to 100, got {top.score}")
    _assert((top.risk_level, top.recommendation) == ("critical", "reject"), "score 100 is critical")

    # Every risk factor pushes the score up from a neutral baseline.
    base_ctx = FraudContext(account_age_days=400, checkins_total=2, submitted_at=NOW)
    base = scorer.score(_claim(), base_ctx).score
    _assert(base == 0, f"neutral baseline must score 0, got {base}")
    bumps = {
        "very_new_account": {"account_age_days": 3},
        "new_account": {"account_age_days": 20},
        "no_checkin_history": {"checkins_total": 0},
        "single_checkin": {"checkins_total": 1},
        "distant_multi_place_claims": {"distant_recent_claims": 1},
        "failed_verifications": {"failed_verifications": 1},
        "ip_region_uncorrelated": {"ip_region_correlated": False},
        "duplicate_phone": {"duplicate_phone_claims": 1},
        "previous_rejection": {"rejected_claims": 1},
        "multiple_rejections": {"rejected_claims": 2},
        "place_has_owner": {"place_has_owner": True},
        "shared_ip_claims": {"shared_ip_users": 3},
        "suspicious_timing": {"submitted_at": NOW.replace(hour=4)},
    }
    for signal_type, change in bumps.items():
        analysis = scorer.score(_claim(), dataclasses.replace(base_ctx, **change))
        _assert(analysis.score > base, f"{signal_type} must raise the score")
        _assert(signal_type in _signal_types(analysis), f"{signal_type} must be reported")
    personal = scorer.score(_claim("owner@gmail.com"), base_ctx)
    _assert(personal.score == 15 and "personal_email_domain" in _signal_types(personal), "personal email raises the score")
    _assert(scorer.score(_claim(), dataclasses.replace(base_ctx, shared_ip_users=2)).score == base, "two shared-IP users stay below the bar")
    _assert(
        scorer.score(_claim(), dataclasses.replace(base_ctx, ip_region_correlated=None)).score == base,
        "unknown IP correlation adds nothing",
    )

    # Presence evidence only lowers the score.
    suspicious = FraudContext(account_age_days=3, checkins_total=5, submitted_at=NOW)
    without_recent = scorer.score(_claim(), suspicious).score
    with_recent = scorer.score(_claim(), dataclasses.replace(suspicious, checkins_recent=3)).score
    _assert(with_recent < without_recent, "recent check-ins lower the score")
    _assert(with_recent == without_recent - 15, "three recent check-ins subtract 15")

    # Caps.
    risky = FraudContext(account_age_days=400, checkins_total=2, submitted_at=NOW)
    _assert(scorer.score(_claim(), dataclasses.replace(risky, distant_recent_claims=5)).score == 30, "distant claims cap at 30")
    _assert(scorer.score(_claim(), dataclasses.replace(risky, failed_verifications=11)).score == 25, "failed checks cap at 25")
    heavy = FraudContext(account_age_days=3, checkins_total=30, checkins_recent=30, place_has_owner=True, submitted_at=NOW)
    _assert(scorer.score(_claim(), heavy).score == 25 + 50 - 20, "check-in density floors at -20")


def _check_classification() -> None:
    thresholds = FraudThresholds()
    expected = {
        0: ("low", "auto_approve"),
        29: ("low", "auto_approve"),
        30: ("medium", "standard_review"),
        51: ("medium", "standard_review"),
        52: ("high", "enhanced_review"),
        74: ("high", "enhanced_review"),
        75: ("critical", "reject"),
        100: ("critical", "reject"),
    }
    for score, outcome in expected.items():
        _assert(classify(score, thresholds) == outcome, f"classify({score}) must be {outcome}")
    custom = FraudThresholds(low=10, high=90)
    _assert(classify(10, custom)[0] == "medium" and classify(89, custom)[0] == "high", "thresholds are configurable")


def _check_report(scorer: FraudScorer) -> None:
    analysis = scorer.score(
        _claim(),
        FraudContext(account_age_days=3, checkins_total=0, submitted_at=NOW),
    )
    _assert(analysis.score == 45, f"new account without check-ins scores 45, got {analysis.score}")
    report = format_fraud_report(analysis)
    _assert(report.startswith("Fraud score: 45/100 (MEDIUM risk)"), f"report header: {report!r}")
    _assert("Recommendation: standard review" in report, "report carries the recommendation")
    _assert("- [+25] Account is less than 7 days old" in report, "report lists weighted signals")
    _assert("- [+20] No check-ins at this place" in report, "report lists every signal")

    empty = scorer.score(_claim(), FraudContext(account_age_days=400, checkins_total=2, submitted_at=NOW))
    _assert("- none detected" in format_fraud_report(empty), "empty report says so")

    restored = FraudAnalysis.from_dict(json.loads(json.dumps(analysis.to_dict())))
    _assert(restored == analysis, "stored snapshot restores the same analysis")
    _assert(analysis.to_dict()["signal_count"] == 2, "snapshot counts signals")


async def _seed(db_path: str) -> None:
    async with open_db(db_path) as db:
        await db.executemany(
            "INSERT INTO places(id, name, latitude, longitude, region) VALUES(?, ?, ?, ?, ?)",
            [
                (1, "Kyiv Bakery", 50.4501, 30.5234, "kyiv"),
                (2, "Lviv Coffee", 49.8397, 24.0297, "lviv"),
                (3, "Odesa Grill", 46.4825, 30.7233, "odesa"),
                (4, "Kyiv Florist", 50.4600, 30.5300, "kyiv"),
                (5, "Odesa Market", 46.4700, 30.7400, "odesa"),
                (6, "Lviv Books", 49.8400, 24.0300, "lviv"),
            ],
        )
        await db.executemany(
            "INSERT INTO users(id, email, created_at) VALUES(?, ?, ?)",
            [
                ("fresh", "fresh@gmail.com", _iso(NOW - timedelta(days=2))),
                ("other1", None, "2024-01-01T00:00:00+00:00"),
                ("other2", None, "2024-01-01T00:00:00+00:00"),
                ("other3", None, "2024-01-01T00:00:00+00:00"),
            ],
        )
        claim_rows = [
            # (id, user, place, status, phone, ip, email, created_at)
            (1, "fresh", 1, "phone_verification", CLAIM_PHONE, CLAIM_IP, "fresh@gmail.com", _iso(NOW - timedelta(hours=1))),
            (2, "fresh", 2, "canceled", None, None, None, _iso(NOW - timedelta(hours=3))),
            (3, "fresh", 3, "canceled", None, None, None, _iso(NOW - timedelta(hours=4))),
            (4, "fresh", 4, "canceled", None, None, None, _iso(NOW - timedelta(hours=5))),
            (5, "fresh", 6, "rejected", None, None, None, _iso(NOW - timedelta(days=10))),
            (6, "other1", 5, "rejected", CLAIM_PHONE, CLAIM_IP, None, _iso(NOW - timedelta(days=5))),
            (7, "other2", 5, "canceled", None, CLAIM_IP, None, _iso(NOW - timedelta(days=5))),
            (8, "other3", 6, "canceled", None, CLAIM_IP, None, _iso(NOW - timedelta(days=5))),
        ]
        await db.executemany(
            """INSERT INTO place_claims(
                   id, user_id, place_id, status, phone_number, ip_address, business_email, created_at, updated_at
               ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [row + (row[-1],) for row in claim_rows],
        )
        await db.execute(
            """INSERT INTO claim_verification_attempts(
                   claim_id, phone_number, code_hash, status, issued_at, expires_at, failed_checks
               ) VALUES(1, ?, 'x', 'verified', ?, ?, 2)""",
            (CLAIM_PHONE, _iso(NOW - timedelta(minutes=5)), _iso(NOW + timedelta(minutes=5))),
        )
        await db.execute(
            """INSERT INTO verified_owners(place_id, user_id, claim_id, role, subscription_status, created_at)
               VALUES(1, 'owner0', 99, 'owner', 'active', ?)""",
            (_iso(NOW - timedelta(days=100)),),
        )


async def _check_gathered_context(db_path: str) -> None:
    await init_db(db_path)
    await _seed(db_path)
    repository = ClaimRepository(db_path)
    directory = SqliteDirectory()
    scorer = FraudScorer(
        repository,
        places=directory,
        users=directory,
        activity=directory,
        thresholds=FraudThresholds(),
        clock=lambda: NOW,
    )
    async with repository.read() as db:
        claim = await repository.get_claim(db, 1)
        assert claim is not None
        context = await scorer.gather_context(db, claim)
        analysis = await scorer.analyze(db, claim)

    _assert(context.account_age_days is not None and 1.9 < context.account_age_days < 2.1, f"account age: {context}")
    _assert(context.checkins_total == 0 and context.checkins_recent == 0, "no check-ins seeded")
    _assert(context.distant_recent_claims == 2, f"Lviv and Odesa are distant, Kyiv is not: {context}")
    _assert(context.failed_verifications == 2, "failed checks summed for the user")
    _assert(context.ip_region_correlated is False, "IP has no history in Kyiv")
    _assert(context.duplicate_phone_claims == 1, "phone reused by another account")
    _assert(context.rejected_claims == 1, "one earlier rejection")
    _assert(context.place_has_owner, "place already has a verified owner")
    _assert(context.shared_ip_users == 3, "three other accounts claimed from the IP")
    _assert(context.submitted_at is not None and context.submitted_at.hour == 11, "submission time from the claim")

    _assert(analysis.score == 100 and analysis.recommendation == "reject", f"stacked risk is critical: {analysis}")
    expected = {
        "very_new_account",
        "no_checkin_history",
        "distant_multi_place_claims",
        "failed_verifications",
        "ip_region_uncorrelated",
        "duplicate_phone",
        "personal_email_domain",
        "previous_rejection",
        "place_has_owner",
        "shared_ip_claims",
    }
    _assert(_signal_types(analysis) == expected, f"signals: {sorted(_signal_types(analysis))}")


def main() -> None:
    _assert(400 < haversine_km(50.4501, 30.5234, 49.8397, 24.0297) < 500, "Kyiv-Lviv distance")
    _assert(haversine_km(50.45, 30.52, 50.45, 30.52) == 0.0, "zero distance")

    directory = SqliteDirectory()
    scorer = FraudScorer(
        ClaimRepository(":memory:"),
        places=directory,
        users=directory,
        activity=directory,
        thresholds=FraudThresholds(),
        clock=lambda: NOW,
    )
    _check_pure_scoring(scorer)
    _check_classification()
    _check_report(scorer)

    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(_check_gathered_context(str(Path(tmp) / "claims.db")))
    print("OK: claims fraud scorer smoke passed.")


if __name__ == "__main__":
    main()
