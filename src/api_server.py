"""
HTTP API for the place ownership claim workflow.

Endpoints (JSON in, JSON out):
    POST /api/v1/claims                              {"place_id": 1}
    POST /api/v1/claims/{claim_id}/business-info     {"role", "business_email", ...}
    POST /api/v1/claims/{claim_id}/send-code
    POST /api/v1/claims/{claim_id}/resend-code
    POST /api/v1/claims/{claim_id}/verify            {"code": "123456"}
    POST /api/v1/claims/{claim_id}/cancel            {"reason": "..."}
    POST /api/v1/claims/{claim_id}/review            {"decision": "approve|reject", "reason"}
    GET  /api/v1/claims                              the caller's claims and owned places
    GET  /api/v1/claims/{claim_id}
    GET  /api/v1/admin/claims/pending
    GET  /api/v1/admin/audit                         ?limit=&offset=&place_id=
    GET  /api/v1/places/{place_id}/ownership
    GET  /api/v1/health

The caller identity comes from X-User-Id, set by the auth proxy in front.
Response: {"success": true, "data": {...}} or {"success": false, "error": {...}}
"""

import json
import logging
from datetime import datetime, timezone

from aiohttp import web

from config import CFG
from ownership import (
    AdminReviewInput,
    BusinessInfoInput,
    CancelClaimInput,
    ClaimWorkflowService,
    Requester,
    ServiceResult,
    SubmitClaimInput,
    VerifyCodeInput,
)


logger = logging.getLogger(__name__)

CLAIMS_SERVICE_KEY = web.AppKey("claims_service", ClaimWorkflowService)

ERROR_HTTP_STATUS: dict[str, int] = {
    "validation_error": 400,
    "unauthorized": 403,
    "not_found": 404,
    "invalid_transition": 409,
    "already_claimed": 409,
    "not_eligible": 409,
    "expired": 410,
    "exhausted": 410,
    "mismatch": 422,
    "fraud_rejected": 422,
    "rate_limited": 429,
}


def _client_ip(request: web.Request) -> str:
    """First X-Forwarded-For hop behind a trusted proxy, otherwise the peer address."""
    if CFG.trust_forwarded_for:
        forwarded = str(request.headers.get("X-Forwarded-For") or "").strip()
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.remote or "unknown"


def _requester(request: web.Request) -> Requester | None:
    user_id = str(request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        return None
    email = str(request.headers.get("X-User-Email") or "").strip() or None
    return Requester(
        user_id=user_id,
        ip_address=_client_ip(request),
        email=email,
        user_agent=str(request.headers.get("User-Agent") or "")[:512] or None,
    )


def _result_response(result: ServiceResult) -> web.Response:
    if result.success:
        return web.json_response(result.to_dict())
    code = result.error.code if result.error else "error"
    headers = {}
    if code == "rate_limited" and result.error:
        headers["Retry-After"] = str(result.error.details.get("retry_after_sec", 60))
    return web.json_response(result.to_dict(), status=ERROR_HTTP_STATUS.get(code, 400), headers=headers)


def _unauthenticated() -> web.Response:
    result = ServiceResult.fail("unauthorized", "Sign in to continue.")
    return web.json_response(result.to_dict(), status=401)


def _invalid_json() -> web.Response:
    result = ServiceResult.fail("validation_error", "Invalid JSON")
    return web.json_response(result.to_dict(), status=400)


async def _read_json(request: web.Request) -> dict | None:
    """Request body as a dict; an empty body counts as {}."""
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


async def health_handler(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "claims-api",
    })


async def submit_claim_handler(request: web.Request) -> web.Response:
    requester = _requester(request)
    if requester is None:
        return _unauthenticated()
    data = await _read_json(request)
    if data is None:
        return _invalid_json()
    service = request.app[CLAIMS_SERVICE_KEY]
    result = await service.submit_claim(requester, SubmitClaimInput.from_mapping(data))
    if result.success:
        return web.json_response(result.to_dict(), status=201)
    return _result_response(result)


async def business_info_handler(request: web.Request) -> web.Response:
    requester = _requester(request)
    if requester is None:
        return _unauthenticated()
    data = await _read_json(request)
    if data is None:
        return _invalid_json()
    data["claim_id"] = request.match_info["claim_id"]
    service = request.app[CLAIMS_SERVICE_KEY]
    return _result_response(await service.submit_business_info(requester, BusinessInfoInput.from_mapping(data)))


async def send_code_handler(request: web.Request) -> web.Response:
    requester = _requester(request)
    if requester is None:
        return _unauthenticated()
    service = request.app[CLAIMS_SERVICE_KEY]
    return _result_response(await service.send_verification_code(requester, request.match_info["claim_id"]))


async def resend_code_handler(request: web.Request) -> web.Response:
    requester = _requester(request)
    if requester is None:
        return _unauthenticated()
    service = request.app[CLAIMS_SERVICE_KEY]
    return _result_response(await service.resend_verification_code(requester, request.match_info["claim_id"]))


async def verify_code_handler(request: web.Request) -> web.Response:
    requester = _requester(request)
    if requester is None:
        return _unauthenticated()
    data = await _read_json(request)
    if data is None:
        return _invalid_json()
    data["claim_id"] = request.match_info["claim_id"]
    service = request.app[CLAIMS_SERVICE_KEY]
    return _result_response(await service.verify_phone_code(requester, VerifyCodeInput.from_mapping(data)))


async def cancel_claim_handler(request: web.Request) -> web.Response:
    requester = _requester(request)
    if requester is None:
        return _unauthenticated()
    data = await _read_json(request)
    if data is None:
        return _invalid_json()
    data["claim_id"] = request.match_info["claim_id"]
    service = request.app[CLAIMS_SERVICE_KEY]
    return _result_response(await service.cancel_claim(requester, CancelClaimInput.from_mapping(data)))


async def review_claim_handler(request: web.Request) -> web.Response:
    requester = _requester(request)
    if requester is None:
        return _unauthenticated()
    data = await _read_json(request)
    if data is None:
        return _invalid_json()
    data["claim_id"] = request.match_info["claim_id"]
    service = request.app[CLAIMS_SERVICE_KEY]
    return _result_response(await service.admin_review_claim(requester, AdminReviewInput.from_mapping(data)))


async def claim_status_handler(request: web.Request) -> web.Response:
    requester = _requester(request)
    if requester is None:
        return _unauthenticated()
    service = request.app[CLAIMS_SERVICE_KEY]
    return _result_response(await service.get_claim_status(requester, request.match_info["claim_id"]))


async def pending_reviews_handler(request: web.Request) -> web.Response:
    requester = _requester(request)
    if requester is None:
        return _unauthenticated()
    try:
        limit = int(request.query.get("limit", "50"))
    except ValueError:
        return web.json_response(ServiceResult.fail("validation_error", "limit must be integer").to_dict(), status=400)
    service = request.app[CLAIMS_SERVICE_KEY]
    return _result_response(await service.list_pending_reviews(requester, limit=limit))


async def user_claims_handler(request: web.Request) -> web.Response:
    requester = _requester(request)
    if requester is None:
        return _unauthenticated()
    service = request.app[CLAIMS_SERVICE_KEY]
    return _result_response(await service.list_user_claims(requester))


async def place_ownership_handler(request: web.Request) -> web.Response:
    requester = _requester(request)
    if requester is None:
        return _unauthenticated()
    service = request.app[CLAIMS_SERVICE_KEY]
    return _result_response(await service.get_place_ownership_status(requester, request.match_info["place_id"]))


async def audit_log_handler(request: web.Request) -> web.Response:
    requester = _requester(request)
    if requester is None:
        return _unauthenticated()
    try:
        limit = int(request.query.get("limit", "50"))
        offset = int(request.query.get("offset", "0"))
        place_id = int(request.query["place_id"]) if request.query.get("place_id") else None
    except ValueError:
        return web.json_response(
            ServiceResult.fail("validation_error", "limit, offset and place_id must be integers").to_dict(),
            status=400,
        )
    service = request.app[CLAIMS_SERVICE_KEY]
    return _result_response(await service.list_audit_log(requester, limit=limit, offset=offset, place_id=place_id))


def create_api_app(service: ClaimWorkflowService) -> web.Application:
    """Build the aiohttp application around one workflow service."""
    app = web.Application()
    app[CLAIMS_SERVICE_KEY] = service

    app.router.add_get("/api/v1/health", health_handler)
    app.router.add_post("/api/v1/claims", submit_claim_handler)
    app.router.add_get("/api/v1/claims", user_claims_handler)
    app.router.add_get("/api/v1/claims/{claim_id}", claim_status_handler)
    app.router.add_post("/api/v1/claims/{claim_id}/business-info", business_info_handler)
    app.router.add_post("/api/v1/claims/{claim_id}/send-code", send_code_handler)
    app.router.add_post("/api/v1/claims/{claim_id}/resend-code", resend_code_handler)
    app.router.add_post("/api/v1/claims/{claim_id}/verify", verify_code_handler)
    app.router.add_post("/api/v1/claims/{claim_id}/cancel", cancel_claim_handler)
    app.router.add_post("/api/v1/claims/{claim_id}/review", review_claim_handler)
    app.router.add_get("/api/v1/admin/claims/pending", pending_reviews_handler)
    app.router.add_get("/api/v1/admin/audit", audit_log_handler)
    app.router.add_get("/api/v1/places/{place_id}/ownership", place_ownership_handler)

    # Simple health check at the root
    app.router.add_get("/", health_handler)

    return app


async def start_api_server(app: web.Application) -> web.AppRunner:
    """Start the API server."""
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, CFG.api_host, CFG.api_port)
    await site.start()

    logger.info("API server started on %s:%s", CFG.api_host, CFG.api_port)

    return runner


async def stop_api_server(runner: web.AppRunner):
    """Stop the API server."""
    await runner.cleanup()
    logger.info("API server stopped")
