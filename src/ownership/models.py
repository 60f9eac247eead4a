"""Ownership domain models used by the claims module."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

from ownership.statuses import NON_TERMINAL_STATUSES


@dataclass(slots=True)
class Claim:
    id: int
    user_id: str
    place_id: int
    status: str
    created_at: str
    updated_at: str
    role: str | None = None
    business_email: str | None = None
    business_description: str | None = None
    years_at_location: int | None = None
    phone_number: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    fraud_score: int | None = None
    fraud_analysis_json: str | None = None
    rejection_reason: str | None = None
    cancel_reason: str | None = None
    decided_by: str | None = None
    decided_at: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Claim":
        return cls(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            place_id=int(row["place_id"]),
            status=str(row["status"]),
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
            role=row["role"],
            business_email=row["business_email"],
            business_description=row["business_description"],
            years_at_location=row["years_at_location"],
            phone_number=row["phone_number"],
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            fraud_score=row["fraud_score"],
            fraud_analysis_json=row["fraud_analysis_json"],
            rejection_reason=row["rejection_reason"],
            cancel_reason=row["cancel_reason"],
            decided_by=row["decided_by"],
            decided_at=row["decided_at"],
        )

    @property
    def is_open(self) -> bool:
        return self.status in NON_TERMINAL_STATUSES

    def to_public_dict(self) -> dict[str, Any]:
        """Claim fields safe to return to the claimant."""
        data = asdict(self)
        data.pop("fraud_analysis_json", None)
        data.pop("ip_address", None)
        data.pop("user_agent", None)
        return data


@dataclass(slots=True)
class VerificationAttempt:
    id: int
    claim_id: int
    phone_number: str
    code_hash: str
    status: str
    issued_at: str
    expires_at: str
    failed_checks: int = 0
    resend_count: int = 0
    verified_at: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "VerificationAttempt":
        return cls(
            id=int(row["id"]),
            claim_id=int(row["claim_id"]),
            phone_number=str(row["phone_number"]),
            code_hash=str(row["code_hash"]),
            status=str(row["status"]),
            issued_at=str(row["issued_at"]),
            expires_at=str(row["expires_at"]),
            failed_checks=int(row["failed_checks"] or 0),
            resend_count=int(row["resend_count"] or 0),
            verified_at=row["verified_at"],
        )


@dataclass(slots=True)
class AuditLogEntry:
    claim_id: int
    place_id: int
    action: str
    actor_id: str | None
    actor_kind: str
    created_at: str
    from_status: str | None = None
    to_status: str | None = None
    context_json: str | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AuditLogEntry":
        return cls(
            id=int(row["id"]),
            claim_id=int(row["claim_id"]),
            place_id=int(row["place_id"]),
            action=str(row["action"]),
            actor_id=row["actor_id"],
            actor_kind=str(row["actor_kind"]),
            from_status=row["from_status"],
            to_status=row["to_status"],
            context_json=row["context_json"],
            created_at=str(row["created_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        raw_context = data.pop("context_json")
        data["context"] = json.loads(raw_context) if raw_context else {}
        return data


@dataclass(slots=True)
class VerifiedOwner:
    id: int
    place_id: int
    user_id: str
    claim_id: int
    role: str
    subscription_status: str
    created_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "VerifiedOwner":
        return cls(
            id=int(row["id"]),
            place_id=int(row["place_id"]),
            user_id=str(row["user_id"]),
            claim_id=int(row["claim_id"]),
            role=str(row["role"]),
            subscription_status=str(row["subscription_status"]),
            created_at=str(row["created_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PlaceInfo:
    id: int
    name: str
    latitude: float | None = None
    longitude: float | None = None
    region: str | None = None


@dataclass(frozen=True)
class UserAccount:
    id: str
    email: str | None
    created_at: str


@dataclass(frozen=True)
class Requester:
    """Authenticated caller plus transport metadata."""

    user_id: str
    ip_address: str
    email: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class FraudSignal:
    type: str
    score: int
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FraudAnalysis:
    score: int
    risk_level: str
    recommendation: str
    signals: tuple[FraudSignal, ...]
    computed_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "risk_level": self.risk_level,
            "recommendation": self.recommendation,
            "signal_count": len(self.signals),
            "signals": [
                {
                    "type": signal.type,
                    "score": signal.score,
                    "description": signal.description,
                    "metadata": dict(signal.metadata),
                }
                for signal in self.signals
            ],
            "computed_at": self.computed_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FraudAnalysis":
        """Rebuild a stored snapshot; reviewers read this, never a recomputation."""
        signals = tuple(
            FraudSignal(
                type=str(item.get("type") or ""),
                score=int(item.get("score") or 0),
                description=str(item.get("description") or ""),
                metadata=dict(item.get("metadata") or {}),
            )
            for item in data.get("signals") or []
        )
        return cls(
            score=int(data.get("score") or 0),
            risk_level=str(data.get("risk_level") or ""),
            recommendation=str(data.get("recommendation") or ""),
            signals=signals,
            computed_at=str(data.get("computed_at") or ""),
        )


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    reason: str | None = None
    code: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ServiceResult:
    """Structured outcome of every public workflow operation."""

    success: bool
    data: dict[str, Any] | None = None
    error: ErrorInfo | None = None

    @classmethod
    def ok(cls, data: dict[str, Any] | None = None) -> "ServiceResult":
        return cls(success=True, data=data or {})

    @classmethod
    def fail(cls, code: str, message: str, details: dict[str, Any] | None = None, *, data: dict[str, Any] | None = None) -> "ServiceResult":
        return cls(success=False, data=data, error=ErrorInfo(code=code, message=message, details=dict(details or {})))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = {
                "code": self.error.code,
                "message": self.error.message,
                "details": self.error.details,
            }
        return payload
