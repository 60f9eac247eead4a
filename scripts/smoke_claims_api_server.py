#!/usr/bin/env python3
"""
Claims HTTP API smoke-check.

What it validates:
- requests without X-User-Id are 401; malformed JSON is 400
- result codes map onto HTTP statuses (201 create, 409 conflict, 422 wrong
  code, 403 non-admin, 404 foreign claim, 429 with Retry-After)
- the response envelope is {"success", "data" | "error"}
- read routes: the caller's claims, a place's ownership status and the admin
  audit listing

Run:
  python3 scripts/smoke_claims_api_server.py
"""

from __future__ import annotations

import asyncio
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from aiohttp import test_utils


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))

from api_server import create_api_app  # noqa: E402
from database import init_db, open_db  # noqa: E402
from ownership import ClaimWorkflowService  # noqa: E402
from ownership.guards import ConfigAdminAuthorizer  # noqa: E402
from ownership.rate_limit import ACTION_CANCEL_CLAIM, RateLimitPolicy  # noqa: E402
from ownership.sms import MockSmsSender  # noqa: E402


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _assert(cond: bool, message: str) -> None:
    if not cond:
        raise AssertionError(message)


def _as(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


async def _seed(db_path: str) -> None:
    async with open_db(db_path) as db:
        await db.executemany(
            "INSERT INTO places(id, name, latitude, longitude, region) VALUES(?, ?, NULL, NULL, NULL)",
            [(1, "Tram Stop Kiosk"), (2, "Bridge Bakery")],
        )
        await db.executemany(
            "INSERT INTO users(id, email, created_at) VALUES(?, NULL, '2024-01-01T00:00:00+00:00')",
            [("alice",), ("bob",)],
        )


async def _run_checks(db_path: str) -> None:
    await init_db(db_path)
    await _seed(db_path)
    service = ClaimWorkflowService(
        db_path=db_path,
        sms_sender=MockSmsSender(),
        authorizer=ConfigAdminAuthorizer(["admin-1"]),
        clock=lambda: NOW,
    )
    service.rate_limiter.policies[ACTION_CANCEL_CLAIM] = RateLimitPolicy(ip_limit=100, user_limit=1)

    client = test_utils.TestClient(test_utils.TestServer(create_api_app(service)))
    await client.start_server()
    try:
        resp = await client.get("/api/v1/health")
        _assert(resp.status == 200 and (await resp.json())["status"] == "ok", "health is 200")

        resp = await client.post("/api/v1/claims", json={"place_id": 1})
        body = await resp.json()
        _assert(resp.status == 401 and body["success"] is False, "missing identity is 401")
        _assert(body["error"]["code"] == "unauthorized", "401 envelope")

        resp = await client.post(
            "/api/v1/claims",
            data="{not json",
            headers={**_as("alice"), "Content-Type": "application/json"},
        )
        _assert(resp.status == 400, "malformed JSON is 400")

        resp = await client.post("/api/v1/claims", json={"place_id": 1}, headers=_as("alice"))
        body = await resp.json()
        _assert(resp.status == 201 and body["success"] is True, f"create is 201: {body}")
        claim_id = body["data"]["claim"]["id"]

        resp = await client.post("/api/v1/claims", json={"place_id": 1}, headers=_as("bob"))
        body = await resp.json()
        _assert(resp.status == 409 and body["error"]["code"] == "already_claimed", f"conflict is 409: {body}")

        resp = await client.post("/api/v1/claims", json={"place_id": 77}, headers=_as("bob"))
        _assert(resp.status == 404, "unknown place is 404")

        resp = await client.post(
            f"/api/v1/claims/{claim_id}/business-info",
            json={"role": "owner", "business_email": "nope", "business_description": "Kiosk", "phone_number": "+380501112200"},
            headers=_as("alice"),
        )
        body = await resp.json()
        _assert(resp.status == 400 and body["error"]["details"]["field"] == "business_email", f"validation is 400: {body}")

        resp = await client.post(
            f"/api/v1/claims/{claim_id}/business-info",
            json={
                "role": "owner",
                "business_email": "alice@kiosk.example",
                "business_description": "Kiosk",
                "phone_number": "+380501112200",
            },
            headers=_as("alice"),
        )
        _assert(resp.status == 200, "business info is 200")

        resp = await client.post(f"/api/v1/claims/{claim_id}/send-code", headers=_as("alice"))
        body = await resp.json()
        _assert(resp.status == 200 and "code" not in body["data"], f"send-code is 200 without the code: {body}")
        resp = await client.post(f"/api/v1/claims/{claim_id}/send-code", headers=_as("alice"))
        body = await resp.json()
        _assert(resp.status == 409 and body["error"]["code"] == "invalid_transition", f"second send-code is 409: {body}")

        resp = await client.post(f"/api/v1/claims/{claim_id}/verify", json={"code": "not-digits"}, headers=_as("alice"))
        _assert(resp.status == 400, "non-numeric code is 400")

        await service.phone.wait_for_deliveries()
        sent = service.phone.sender.last_message_to("+380501112200")  # type: ignore[attr-defined]
        _assert(sent is not None, "code delivered")
        code = next(token for token in sent.replace(".", " ").split() if token.isdigit() and len(token) == 6)
        wrong = "000000" if code != "000000" else "111111"
        resp = await client.post(f"/api/v1/claims/{claim_id}/verify", json={"code": wrong}, headers=_as("alice"))
        body = await resp.json()
        _assert(resp.status == 422 and body["error"]["details"]["attempts_remaining"] == 4, f"mismatch is 422: {body}")

        resp = await client.get(f"/api/v1/claims/{claim_id}", headers=_as("bob"))
        _assert(resp.status == 404, "someone else's claim is 404")
        resp = await client.get(f"/api/v1/claims/{claim_id}", headers=_as("alice"))
        body = await resp.json()
        _assert(resp.status == 200 and body["data"]["claim"]["status"] == "phone_verification", f"status: {body}")

        resp = await client.post(f"/api/v1/claims/{claim_id}/review", json={"decision": "approve"}, headers=_as("alice"))
        _assert(resp.status == 403, "non-admin review is 403")
        resp = await client.get("/api/v1/admin/claims/pending", headers=_as("alice"))
        _assert(resp.status == 403, "non-admin pending list is 403")
        resp = await client.get("/api/v1/admin/claims/pending?limit=x", headers=_as("admin-1"))
        _assert(resp.status == 400, "bad limit is 400")
        resp = await client.get("/api/v1/admin/claims/pending", headers=_as("admin-1"))
        body = await resp.json()
        _assert(resp.status == 200 and body["data"]["items"] == [], f"nothing pending: {body}")
        resp = await client.post(f"/api/v1/claims/{claim_id}/review", json={"decision": "approve"}, headers=_as("admin-1"))
        _assert(resp.status == 409, "review outside fraud_review is 409")

        resp = await client.get("/api/v1/claims", headers=_as("alice"))
        body = await resp.json()
        _assert(resp.status == 200 and [c["id"] for c in body["data"]["claims"]] == [claim_id], f"claim list: {body}")
        _assert(body["data"]["claims"][0]["place_name"] == "Tram Stop Kiosk", "claim list names the place")
        resp = await client.get("/api/v1/claims", headers=_as("bob"))
        body = await resp.json()
        _assert(resp.status == 200 and body["data"] == {"claims": [], "owned_places": []}, f"bob has nothing: {body}")
        resp = await client.get("/api/v1/claims")
        _assert(resp.status == 401, "claim list needs an identity")

        resp = await client.get("/api/v1/places/1/ownership", headers=_as("alice"))
        body = await resp.json()
        _assert(resp.status == 200 and body["data"]["claim_in_progress"], f"place 1 is under claim: {body}")
        _assert(body["data"]["my_claim_id"] == claim_id and not body["data"]["has_verified_owner"], f"{body}")
        resp = await client.get("/api/v1/places/1/ownership", headers=_as("bob"))
        body = await resp.json()
        _assert(body["data"]["my_claim_id"] is None, "someone else's claim id is not shown")
        _assert(body["data"]["eligibility"]["code"] == "already_claimed", f"bob can't claim place 1: {body}")
        resp = await client.get("/api/v1/places/77/ownership", headers=_as("bob"))
        _assert(resp.status == 404, "unknown place is 404")

        resp = await client.get("/api/v1/admin/audit", headers=_as("alice"))
        _assert(resp.status == 403, "non-admin audit listing is 403")
        resp = await client.get("/api/v1/admin/audit?offset=x", headers=_as("admin-1"))
        _assert(resp.status == 400, "bad offset is 400")
        resp = await client.get("/api/v1/admin/audit?place_id=1", headers=_as("admin-1"))
        body = await resp.json()
        _assert(resp.status == 200 and body["data"]["total"] == 2, f"submitted and info_updated: {body}")
        _assert([item["action"] for item in body["data"]["items"]] == ["info_updated", "submitted"], f"{body}")

        # Cancel is limited to one per user and place in this run.
        resp = await client.post(f"/api/v1/claims/{claim_id}/cancel", json={"reason": ""}, headers=_as("alice"))
        _assert(resp.status == 400, "cancel without reason is 400")
        resp = await client.post(f"/api/v1/claims/{claim_id}/cancel", json={"reason": "later"}, headers=_as("alice"))
        body = await resp.json()
        _assert(resp.status == 429 and body["error"]["code"] == "rate_limited", f"throttled: {body}")
        _assert(int(resp.headers["Retry-After"]) > 0, "Retry-After header is set")
    finally:
        await client.close()
        await service.close()


def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(_run_checks(str(Path(tmp) / "claims.db")))
    print("OK: claims API server smoke passed.")


if __name__ == "__main__":
    main()
