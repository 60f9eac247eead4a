"""Typed inputs for claim operations and their validation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

from ownership.errors import ValidationError
from ownership.statuses import OWNER_ROLES, REVIEW_APPROVE, REVIEW_REJECT


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")
PHONE_RE = re.compile(r"^\+?[0-9]{7,15}$")
CODE_RE = re.compile(r"^[0-9]{4,10}$")

MAX_EMAIL_LENGTH = 254
MAX_DESCRIPTION_LENGTH = 2000
MAX_REASON_LENGTH = 1000
MAX_YEARS_AT_LOCATION = 150


def normalize_phone(raw: str) -> str:
    """Drop spaces, dashes, dots and parentheses; keep a leading plus."""
    return re.sub(r"[\s\-().]", "", str(raw or ""))


def _require_text(value: Any, field_name: str, *, max_length: int) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{field_name} is required.", details={"field": field_name})
    if len(text) > max_length:
        raise ValidationError(f"{field_name} is too long.", details={"field": field_name, "max_length": max_length})
    return text


def _whole_number(value: Any) -> int:
    """int() that refuses bools and fractions instead of truncating them."""
    if isinstance(value, bool):
        raise TypeError("bool is not a number")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{value!r} is not a whole number")
    return int(value)


def _require_positive_int(value: Any, field_name: str) -> int:
    try:
        number = _whole_number(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a positive integer.", details={"field": field_name}) from None
    if number <= 0:
        raise ValidationError(f"{field_name} must be a positive integer.", details={"field": field_name})
    return number


@dataclass(frozen=True)
class SubmitClaimInput:
    place_id: int

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SubmitClaimInput":
        return cls(place_id=data.get("place_id"))  # type: ignore[arg-type]

    def validate(self) -> "SubmitClaimInput":
        return SubmitClaimInput(place_id=_require_positive_int(self.place_id, "place_id"))


@dataclass(frozen=True)
class BusinessInfoInput:
    claim_id: int
    role: str
    business_email: str
    business_description: str
    phone_number: str
    years_at_location: int | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BusinessInfoInput":
        return cls(
            claim_id=data.get("claim_id"),  # type: ignore[arg-type]
            role=data.get("role") or "",
            business_email=data.get("business_email") or "",
            business_description=data.get("business_description") or "",
            phone_number=data.get("phone_number") or "",
            years_at_location=data.get("years_at_location"),
        )

    def validate(self) -> "BusinessInfoInput":
        claim_id = _require_positive_int(self.claim_id, "claim_id")

        role = _require_text(self.role, "role", max_length=32).lower()
        if role not in OWNER_ROLES:
            raise ValidationError("role must be one of: owner, manager.", details={"field": "role"})

        email = _require_text(self.business_email, "business_email", max_length=MAX_EMAIL_LENGTH).lower()
        if not EMAIL_RE.match(email):
            raise ValidationError("business_email is not a valid email address.", details={"field": "business_email"})

        description = _require_text(
            self.business_description,
            "business_description",
            max_length=MAX_DESCRIPTION_LENGTH,
        )

        phone = normalize_phone(_require_text(self.phone_number, "phone_number", max_length=32))
        if not PHONE_RE.match(phone):
            raise ValidationError("phone_number must contain 7 to 15 digits.", details={"field": "phone_number"})

        years: int | None = None
        if self.years_at_location is not None and str(self.years_at_location).strip() != "":
            try:
                years = _whole_number(self.years_at_location)
            except (TypeError, ValueError):
                raise ValidationError(
                    "years_at_location must be a whole number.",
                    details={"field": "years_at_location"},
                ) from None
            if years < 0 or years > MAX_YEARS_AT_LOCATION:
                raise ValidationError(
                    "years_at_location is out of range.",
                    details={"field": "years_at_location"},
                )

        return BusinessInfoInput(
            claim_id=claim_id,
            role=role,
            business_email=email,
            business_description=description,
            phone_number=phone,
            years_at_location=years,
        )


@dataclass(frozen=True)
class VerifyCodeInput:
    claim_id: int
    code: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "VerifyCodeInput":
        return cls(claim_id=data.get("claim_id"), code=str(data.get("code") or ""))  # type: ignore[arg-type]

    def validate(self) -> "VerifyCodeInput":
        claim_id = _require_positive_int(self.claim_id, "claim_id")
        code = str(self.code or "").strip().replace(" ", "").replace("-", "")
        if not CODE_RE.match(code):
            raise ValidationError("code must be numeric.", details={"field": "code"})
        return VerifyCodeInput(claim_id=claim_id, code=code)


@dataclass(frozen=True)
class CancelClaimInput:
    claim_id: int
    reason: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CancelClaimInput":
        return cls(claim_id=data.get("claim_id"), reason=str(data.get("reason") or ""))  # type: ignore[arg-type]

    def validate(self) -> "CancelClaimInput":
        return CancelClaimInput(
            claim_id=_require_positive_int(self.claim_id, "claim_id"),
            reason=_require_text(self.reason, "reason", max_length=MAX_REASON_LENGTH),
        )


@dataclass(frozen=True)
class AdminReviewInput:
    claim_id: int
    decision: str
    reason: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AdminReviewInput":
        return cls(
            claim_id=data.get("claim_id"),  # type: ignore[arg-type]
            decision=str(data.get("decision") or ""),
            reason=data.get("reason"),
        )

    def validate(self) -> "AdminReviewInput":
        claim_id = _require_positive_int(self.claim_id, "claim_id")
        decision = str(self.decision or "").strip().lower()
        if decision not in {REVIEW_APPROVE, REVIEW_REJECT}:
            raise ValidationError("decision must be approve or reject.", details={"field": "decision"})
        reason = str(self.reason or "").strip() or None
        if decision == REVIEW_REJECT and not reason:
            raise ValidationError("A rejection requires a reason.", details={"field": "reason"})
        if reason and len(reason) > MAX_REASON_LENGTH:
            raise ValidationError("reason is too long.", details={"field": "reason", "max_length": MAX_REASON_LENGTH})
        return AdminReviewInput(claim_id=claim_id, decision=decision, reason=reason)
