"""Fraud scoring for ownership claims.

Every signal adds a weighted, capped contribution; the total is clamped to
0..100. Weights are policy. The direction of each signal is fixed: presence
evidence (check-ins at the place) lowers the score, everything else raises it.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import aiosqlite

from config import CFG
from ownership.directory import ActivityHistory, PlaceDirectory, UserDirectory
from ownership.models import Claim, FraudAnalysis, FraudSignal
from ownership.repository import ClaimRepository, parse_iso_utc, to_iso, utc_now


logger = logging.getLogger(__name__)

SCORE_MIN = 0
SCORE_MAX = 100

VERY_NEW_ACCOUNT_DAYS = 7
NEW_ACCOUNT_DAYS = 30
SCORE_VERY_NEW_ACCOUNT = 25
SCORE_NEW_ACCOUNT = 15

CHECKIN_LOOKBACK_DAYS = 30
SCORE_PER_RECENT_CHECKIN = -5
CHECKIN_DENSITY_FLOOR = -20
SCORE_NO_CHECKIN_HISTORY = 20
SCORE_SINGLE_CHECKIN = 10

DISTANT_CLAIM_WINDOW_HOURS = 24
DISTANT_CLAIM_KM = 50.0
SCORE_PER_DISTANT_CLAIM = 15
DISTANT_CLAIMS_CAP = 30

SCORE_PER_FAILED_VERIFICATION = 5
FAILED_VERIFICATIONS_CAP = 25

SCORE_IP_REGION_UNCORRELATED = 10
SCORE_DUPLICATE_PHONE = 30
SCORE_PERSONAL_EMAIL_DOMAIN = 15
SCORE_PREVIOUS_REJECTION = 20
SCORE_MULTIPLE_REJECTIONS = 40
SCORE_PLACE_HAS_OWNER = 50

SHARED_IP_MIN_USERS = 3
SCORE_SHARED_IP_CLAIMS = 25

SUSPICIOUS_HOURS_UTC = range(2, 6)
SCORE_SUSPICIOUS_TIMING = 10

PERSONAL_EMAIL_DOMAINS = frozenset(
    {
        "gmail.com",
        "yahoo.com",
        "outlook.com",
        "hotmail.com",
        "aol.com",
        "icloud.com",
        "protonmail.com",
        "mail.com",
        "zoho.com",
        "yandex.com",
        "gmx.com",
        "inbox.com",
    }
)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def email_domain(email: str | None) -> str:
    if not email or "@" not in email:
        return ""
    return email.rsplit("@", 1)[1].strip().lower()


@dataclass(frozen=True)
class FraudContext:
    """Facts about the claimant gathered right before scoring."""

    account_age_days: float | None = None
    checkins_total: int = 0
    checkins_recent: int = 0
    distant_recent_claims: int = 0
    failed_verifications: int = 0
    ip_region_correlated: bool | None = None
    duplicate_phone_claims: int = 0
    rejected_claims: int = 0
    place_has_owner: bool = False
    shared_ip_users: int = 0
    submitted_at: datetime | None = None


@dataclass(frozen=True)
class FraudThresholds:
    low: int = 30
    high: int = 75

    @property
    def medium_ceiling(self) -> int:
        return (self.low + self.high) // 2


def clamp_score(total: int) -> int:
    return max(SCORE_MIN, min(SCORE_MAX, int(total)))


def classify(score: int, thresholds: FraudThresholds) -> tuple[str, str]:
    """Map a score onto (risk_level, recommendation)."""
    if score < thresholds.low:
        return "low", "auto_approve"
    if score < thresholds.medium_ceiling:
        return "medium", "standard_review"
    if score < thresholds.high:
        return "high", "enhanced_review"
    return "critical", "reject"


def collect_signals(claim: Claim, context: FraudContext) -> list[FraudSignal]:
    signals: list[FraudSignal] = []

    age = context.account_age_days
    if age is not None:
        if age < VERY_NEW_ACCOUNT_DAYS:
            signals.append(
                FraudSignal(
                    "very_new_account",
                    SCORE_VERY_NEW_ACCOUNT,
                    f"Account is less than {VERY_NEW_ACCOUNT_DAYS} days old",
                    {"account_age_days": round(age, 2)},
                )
            )
        elif age < NEW_ACCOUNT_DAYS:
            signals.append(
                FraudSignal(
                    "new_account",
                    SCORE_NEW_ACCOUNT,
                    f"Account is less than {NEW_ACCOUNT_DAYS} days old",
                    {"account_age_days": round(age, 2)},
                )
            )

    if context.checkins_total <= 0:
        signals.append(FraudSignal("no_checkin_history", SCORE_NO_CHECKIN_HISTORY, "No check-ins at this place"))
    elif context.checkins_total == 1:
        signals.append(FraudSignal("single_checkin", SCORE_SINGLE_CHECKIN, "Only one check-in at this place"))
    if context.checkins_recent > 0:
        signals.append(
            FraudSignal(
                "checkin_density",
                max(CHECKIN_DENSITY_FLOOR, SCORE_PER_RECENT_CHECKIN * context.checkins_recent),
                f"{context.checkins_recent} check-ins at this place in the last {CHECKIN_LOOKBACK_DAYS} days",
                {"checkins_recent": context.checkins_recent},
            )
        )

    if context.distant_recent_claims > 0:
        signals.append(
            FraudSignal(
                "distant_multi_place_claims",
                min(DISTANT_CLAIMS_CAP, SCORE_PER_DISTANT_CLAIM * context.distant_recent_claims),
                f"{context.distant_recent_claims} other claims on distant places in the last {DISTANT_CLAIM_WINDOW_HOURS}h",
                {"distant_claims": context.distant_recent_claims},
            )
        )

    if context.failed_verifications > 0:
        signals.append(
            FraudSignal(
                "failed_verifications",
                min(FAILED_VERIFICATIONS_CAP, SCORE_PER_FAILED_VERIFICATION * context.failed_verifications),
                f"{context.failed_verifications} failed verification code checks",
                {"failed_checks": context.failed_verifications},
            )
        )

    if context.ip_region_correlated is False:
        signals.append(
            FraudSignal(
                "ip_region_uncorrelated",
                SCORE_IP_REGION_UNCORRELATED,
                "Request IP has no history in the place's region",
            )
        )

    if context.duplicate_phone_claims > 0:
        signals.append(
            FraudSignal(
                "duplicate_phone",
                SCORE_DUPLICATE_PHONE,
                "Phone number is used on claims by other accounts",
                {"other_claims": context.duplicate_phone_claims},
            )
        )

    domain = email_domain(claim.business_email)
    if domain in PERSONAL_EMAIL_DOMAINS:
        signals.append(
            FraudSignal(
                "personal_email_domain",
                SCORE_PERSONAL_EMAIL_DOMAIN,
                f"Business email uses a personal provider ({domain})",
                {"domain": domain},
            )
        )

    if context.rejected_claims >= 2:
        signals.append(
            FraudSignal(
                "multiple_rejections",
                SCORE_MULTIPLE_REJECTIONS,
                f"{context.rejected_claims} previously rejected claims",
                {"rejected_claims": context.rejected_claims},
            )
        )
    elif context.rejected_claims == 1:
        signals.append(FraudSignal("previous_rejection", SCORE_PREVIOUS_REJECTION, "One previously rejected claim"))

    if context.place_has_owner:
        signals.append(FraudSignal("place_has_owner", SCORE_PLACE_HAS_OWNER, "Place already has a verified owner"))

    if context.shared_ip_users >= SHARED_IP_MIN_USERS:
        signals.append(
            FraudSignal(
                "shared_ip_claims",
                SCORE_SHARED_IP_CLAIMS,
                f"{context.shared_ip_users} other accounts claimed from this IP",
                {"other_users": context.shared_ip_users},
            )
        )

    if context.submitted_at is not None and context.submitted_at.hour in SUSPICIOUS_HOURS_UTC:
        signals.append(FraudSignal("suspicious_timing", SCORE_SUSPICIOUS_TIMING, "Claim submitted between 02:00 and 06:00 UTC"))

    return signals


class FraudScorer:
    def __init__(
        self,
        repository: ClaimRepository,
        *,
        places: PlaceDirectory,
        users: UserDirectory,
        activity: ActivityHistory,
        thresholds: FraudThresholds | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.places = places
        self.users = users
        self.activity = activity
        self.thresholds = thresholds or FraudThresholds(low=CFG.fraud_low_threshold, high=CFG.fraud_high_threshold)
        self.clock = clock

    def score(self, claim: Claim, context: FraudContext) -> FraudAnalysis:
        signals = collect_signals(claim, context)
        total = clamp_score(sum(signal.score for signal in signals))
        risk_level, recommendation = classify(total, self.thresholds)
        return FraudAnalysis(
            score=total,
            risk_level=risk_level,
            recommendation=recommendation,
            signals=tuple(signals),
            computed_at=to_iso(self.clock()),
        )

    async def gather_context(self, db: aiosqlite.Connection, claim: Claim) -> FraudContext:
        now = self.clock()

        account_age_days: float | None = None
        user = await self.users.get_user(db, claim.user_id)
        created_at = parse_iso_utc(user.created_at) if user else None
        if created_at is not None:
            account_age_days = max(0.0, (now - created_at).total_seconds() / 86400)

        checkins_total = await self.activity.count_checkins(db, claim.user_id, claim.place_id)
        checkins_recent = await self.activity.count_checkins(
            db,
            claim.user_id,
            claim.place_id,
            since_iso=to_iso(now - timedelta(days=CHECKIN_LOOKBACK_DAYS)),
        )

        place = await self.places.get_place(db, claim.place_id)
        distant = 0
        other_place_ids = await self.repository.list_recent_claim_place_ids(
            db,
            claim.user_id,
            exclude_claim_id=claim.id,
            since_iso=to_iso(now - timedelta(hours=DISTANT_CLAIM_WINDOW_HOURS)),
        )
        if place is not None and place.latitude is not None and place.longitude is not None and other_place_ids:
            others = await self.places.get_places(db, other_place_ids)
            for other in others.values():
                if other.latitude is None or other.longitude is None:
                    continue
                if haversine_km(place.latitude, place.longitude, other.latitude, other.longitude) > DISTANT_CLAIM_KM:
                    distant += 1

        ip_region_correlated: bool | None = None
        if claim.ip_address and place is not None and place.region:
            ip_region_correlated = await self.activity.ip_seen_in_region(
                db,
                claim.ip_address,
                place.region,
                exclude_claim_id=claim.id,
            )

        duplicate_phone = 0
        if claim.phone_number:
            duplicate_phone = await self.repository.count_other_claims_with_phone(
                db,
                claim.phone_number,
                exclude_user_id=claim.user_id,
            )

        shared_ip_users = 0
        if claim.ip_address:
            shared_ip_users = await self.repository.count_other_users_claiming_from_ip(
                db,
                claim.ip_address,
                exclude_user_id=claim.user_id,
            )

        return FraudContext(
            account_age_days=account_age_days,
            checkins_total=checkins_total,
            checkins_recent=checkins_recent,
            distant_recent_claims=distant,
            failed_verifications=await self.repository.sum_failed_checks_for_user(db, claim.user_id),
            ip_region_correlated=ip_region_correlated,
            duplicate_phone_claims=duplicate_phone,
            rejected_claims=await self.repository.count_rejected_claims_for_user(db, claim.user_id),
            place_has_owner=await self.repository.has_verified_owner(db, claim.place_id),
            shared_ip_users=shared_ip_users,
            submitted_at=parse_iso_utc(claim.created_at),
        )

    async def analyze(self, db: aiosqlite.Connection, claim: Claim) -> FraudAnalysis:
        analysis = self.score(claim, await self.gather_context(db, claim))
        logger.info(
            "Fraud analysis claim_id=%s score=%s risk=%s signals=%s",
            claim.id,
            analysis.score,
            analysis.risk_level,
            ",".join(signal.type for signal in analysis.signals) or "-",
        )
        return analysis


def format_fraud_report(analysis: FraudAnalysis) -> str:
    lines = [
        f"Fraud score: {analysis.score}/{SCORE_MAX} ({analysis.risk_level.upper()} risk)",
        f"Recommendation: {analysis.recommendation.replace('_', ' ')}",
        "",
        "Signals:",
    ]
    if not analysis.signals:
        lines.append("- none detected")
    for signal in analysis.signals:
        lines.append(f"- [{signal.score:+d}] {signal.description}")
    return "\n".join(lines)
