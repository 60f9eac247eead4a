"""SMS delivery through a generic HTTP gateway."""

from __future__ import annotations

import asyncio
import logging

import aiohttp

from .base import SmsDeliveryResult


logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SEC = 10


class HttpSmsGatewaySender:
    """POSTs `{to, from, text}` as JSON with a bearer token.

    The gateway answers 2xx with an optional `id` field; anything else is a
    failed delivery. No retries here.
    """

    provider_name = "http"

    def __init__(self, *, url: str, token: str = "", sender_id: str = "Claims") -> None:
        self.url = url
        self.token = token
        self.sender_id = sender_id

    async def send(self, phone_number: str, text: str) -> SmsDeliveryResult:
        headers = {"Accept": "application/json", "User-Agent": "PlaceClaims/1.0"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {"to": phone_number, "from": self.sender_id, "text": text}
        try:
            timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SEC)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=payload, headers=headers) as resp:
                    if 200 <= resp.status < 300:
                        try:
                            body = await resp.json(content_type=None)
                        except ValueError:
                            body = None
                        message_id = body.get("id") if isinstance(body, dict) else None
                        return SmsDeliveryResult(
                            ok=True,
                            provider=self.provider_name,
                            message_id=str(message_id) if message_id is not None else None,
                        )
                    logger.warning("SMS gateway returned status %s", resp.status)
                    return SmsDeliveryResult(ok=False, provider=self.provider_name, error=f"http {resp.status}")
        except asyncio.TimeoutError:
            logger.error("SMS gateway timeout")
            return SmsDeliveryResult(ok=False, provider=self.provider_name, error="timeout")
        except aiohttp.ClientError as exc:
            logger.error("SMS gateway request failed: %s", type(exc).__name__)
            return SmsDeliveryResult(ok=False, provider=self.provider_name, error=type(exc).__name__)
