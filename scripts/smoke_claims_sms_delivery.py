#!/usr/bin/env python3
"""
Claims SMS delivery smoke-check.

What it validates:
- the HTTP gateway sender posts {to, from, text} with a bearer token and
  reports the gateway message id
- non-2xx answers and unreachable gateways come back as failed results,
  never as exceptions
- the mock sender keeps an outbox and can simulate failures

Run:
  python3 scripts/smoke_claims_sms_delivery.py
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

from aiohttp import test_utils, web


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))

from ownership.sms import HttpSmsGatewaySender, MockSmsSender  # noqa: E402


def _assert(cond: bool, message: str) -> None:
    if not cond:
        raise AssertionError(message)


def _gateway_app(received: list[dict]) -> web.Application:
    async def send_handler(request: web.Request) -> web.Response:
        received.append({"auth": request.headers.get("Authorization"), "body": await request.json()})
        return web.json_response({"id": "gw-42", "status": "queued"})

    async def broken_handler(request: web.Request) -> web.Response:
        return web.json_response({"error": "upstream"}, status=500)

    async def plain_handler(request: web.Request) -> web.Response:
        return web.Response(text="accepted")

    app = web.Application()
    app.router.add_post("/sms", send_handler)
    app.router.add_post("/broken", broken_handler)
    app.router.add_post("/plain", plain_handler)
    return app


async def _run_checks() -> None:
    received: list[dict] = []
    server = test_utils.TestServer(_gateway_app(received))
    await server.start_server()
    try:
        sender = HttpSmsGatewaySender(url=str(server.make_url("/sms")), token="secret-token", sender_id="Claims")
        result = await sender.send("+380501234567", "Your code is 123456.")
        _assert(result.ok and result.provider == "http" and result.message_id == "gw-42", f"delivered: {result}")
        _assert(len(received) == 1, "gateway got one request")
        _assert(received[0]["auth"] == "Bearer secret-token", "bearer token sent")
        _assert(
            received[0]["body"] == {"to": "+380501234567", "from": "Claims", "text": "Your code is 123456."},
            f"payload: {received[0]['body']}",
        )

        broken = HttpSmsGatewaySender(url=str(server.make_url("/broken")))
        failed = await broken.send("+380501234567", "hi")
        _assert(not failed.ok and failed.error == "http 500", f"5xx is a failed delivery: {failed}")

        plain = HttpSmsGatewaySender(url=str(server.make_url("/plain")))
        accepted = await plain.send("+380501234567", "hi")
        _assert(accepted.ok and accepted.message_id is None, f"2xx without JSON still counts: {accepted}")

        gone_url = str(server.make_url("/sms"))
    finally:
        await server.close()

    unreachable = await HttpSmsGatewaySender(url=gone_url).send("+380501234567", "hi")
    _assert(not unreachable.ok and unreachable.error, f"unreachable gateway is a failed delivery: {unreachable}")

    mock = MockSmsSender()
    ok = await mock.send("+380670000000", "first")
    await mock.send("+380670000000", "second")
    _assert(ok.ok and ok.message_id and ok.message_id.startswith("mock_"), "mock returns an id")
    _assert(mock.last_message_to("+380670000000") == "second", "last message wins")
    _assert(mock.last_message_to("+380679999999") is None, "no message for unknown phone")
    failing = await MockSmsSender(fail=True).send("+380670000000", "x")
    _assert(not failing.ok and failing.error, "mock can simulate failures")


def main() -> None:
    asyncio.run(_run_checks())
    print("OK: claims SMS delivery smoke passed.")


if __name__ == "__main__":
    main()
