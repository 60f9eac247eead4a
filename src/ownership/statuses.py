"""Claim lifecycle vocabulary shared by the ownership module."""

from __future__ import annotations

from typing import Final


CLAIM_PENDING_INFO: Final = "pending_info"
CLAIM_PHONE_VERIFICATION: Final = "phone_verification"
CLAIM_FRAUD_REVIEW: Final = "fraud_review"
CLAIM_APPROVED: Final = "approved"
CLAIM_REJECTED: Final = "rejected"
CLAIM_CANCELED: Final = "canceled"

NON_TERMINAL_STATUSES: Final[frozenset[str]] = frozenset(
    {CLAIM_PENDING_INFO, CLAIM_PHONE_VERIFICATION, CLAIM_FRAUD_REVIEW}
)
TERMINAL_STATUSES: Final[frozenset[str]] = frozenset({CLAIM_APPROVED, CLAIM_REJECTED, CLAIM_CANCELED})

# Keep in sync with the partial unique index in database.py.
ALLOWED_TRANSITIONS: Final[dict[str, frozenset[str]]] = {
    CLAIM_PENDING_INFO: frozenset({CLAIM_PHONE_VERIFICATION, CLAIM_CANCELED}),
    CLAIM_PHONE_VERIFICATION: frozenset({CLAIM_FRAUD_REVIEW, CLAIM_CANCELED}),
    CLAIM_FRAUD_REVIEW: frozenset({CLAIM_APPROVED, CLAIM_REJECTED, CLAIM_CANCELED}),
}

AUDIT_SUBMITTED: Final = "submitted"
AUDIT_INFO_UPDATED: Final = "info_updated"
AUDIT_PHONE_VERIFIED: Final = "phone_verified"
AUDIT_FRAUD_FLAGGED: Final = "fraud_flagged"
AUDIT_APPROVED: Final = "approved"
AUDIT_REJECTED: Final = "rejected"
AUDIT_CANCELED: Final = "canceled"

AUDIT_ACTIONS: Final[frozenset[str]] = frozenset(
    {
        AUDIT_SUBMITTED,
        AUDIT_INFO_UPDATED,
        AUDIT_PHONE_VERIFIED,
        AUDIT_FRAUD_FLAGGED,
        AUDIT_APPROVED,
        AUDIT_REJECTED,
        AUDIT_CANCELED,
    }
)

ACTOR_USER: Final = "user"
ACTOR_ADMIN: Final = "admin"
ACTOR_SYSTEM: Final = "system"
SYSTEM_ACTOR_ID: Final = "system:claims"

ATTEMPT_ISSUED: Final = "issued"
ATTEMPT_VERIFIED: Final = "verified"
ATTEMPT_EXPIRED: Final = "expired"
ATTEMPT_EXHAUSTED: Final = "exhausted"
ATTEMPT_SUPERSEDED: Final = "superseded"

OWNER_ROLES: Final[frozenset[str]] = frozenset({"owner", "manager"})
DEFAULT_SUBSCRIPTION_STATUS: Final = "trialing"

REVIEW_APPROVE: Final = "approve"
REVIEW_REJECT: Final = "reject"

ROUTE_AUTO_APPROVE: Final = "auto_approve"
ROUTE_MANUAL_REVIEW: Final = "manual_review"
ROUTE_AUTO_REJECT: Final = "auto_reject"

FRAUD_REJECTION_REASON: Final = "fraud risk"
