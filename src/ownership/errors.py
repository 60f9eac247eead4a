"""Claim workflow error taxonomy.

Every class carries a stable `code` that the service layer copies into the
structured result; callers branch on the code, never on the message.
"""

from __future__ import annotations

from typing import Any


class ClaimWorkflowError(RuntimeError):
    """Base claim workflow error."""

    code = "error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})


class ValidationError(ClaimWorkflowError):
    """Raised when input is malformed."""

    code = "validation_error"


class NotFoundError(ClaimWorkflowError):
    """Raised when the claim or place doesn't exist for this requester."""

    code = "not_found"


class RateLimited(ClaimWorkflowError):
    """Raised when either rate-limit axis is exhausted."""

    code = "rate_limited"

    def __init__(self, message: str, *, retry_after_sec: int, details: dict[str, Any] | None = None) -> None:
        merged = {"retry_after_sec": int(retry_after_sec)}
        merged.update(details or {})
        super().__init__(message, details=merged)
        self.retry_after_sec = int(retry_after_sec)


class InvalidTransition(ClaimWorkflowError):
    """Raised when the claim is not in a state that allows the operation."""

    code = "invalid_transition"


class AlreadyClaimed(ClaimWorkflowError):
    """Raised when someone else already holds an open claim on the place."""

    code = "already_claimed"


class NotEligible(ClaimWorkflowError):
    """Raised when the requester may not start a claim for the place."""

    code = "not_eligible"


class CodeExpired(ClaimWorkflowError):
    code = "expired"


class CodeExhausted(ClaimWorkflowError):
    code = "exhausted"


class CodeMismatch(ClaimWorkflowError):
    code = "mismatch"

    def __init__(self, message: str, *, attempts_remaining: int) -> None:
        super().__init__(message, details={"attempts_remaining": int(attempts_remaining)})
        self.attempts_remaining = int(attempts_remaining)


class FraudRejected(ClaimWorkflowError):
    """Raised when the fraud score rejected the claim automatically."""

    code = "fraud_rejected"


class Unauthorized(ClaimWorkflowError):
    """Raised when the actor has no authority for the operation."""

    code = "unauthorized"
