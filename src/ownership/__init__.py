"""Place ownership claims: entrypoints and service factory."""

from ownership.errors import ClaimWorkflowError
from ownership.models import Requester, ServiceResult
from ownership.service import ClaimWorkflowService
from ownership.validation import (
    AdminReviewInput,
    BusinessInfoInput,
    CancelClaimInput,
    SubmitClaimInput,
    VerifyCodeInput,
)

__all__ = [
    "AdminReviewInput",
    "BusinessInfoInput",
    "CancelClaimInput",
    "ClaimWorkflowError",
    "ClaimWorkflowService",
    "Requester",
    "ServiceResult",
    "SubmitClaimInput",
    "VerifyCodeInput",
]
