"""In-memory SMS sender for local runs and tests."""

from __future__ import annotations

import secrets
import time

from .base import SmsDeliveryResult


class MockSmsSender:
    provider_name = "mock"

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.outbox: list[tuple[str, str]] = []

    async def send(self, phone_number: str, text: str) -> SmsDeliveryResult:
        if self.fail:
            return SmsDeliveryResult(ok=False, provider=self.provider_name, error="mock delivery failure")
        self.outbox.append((phone_number, text))
        message_id = f"mock_{int(time.time())}_{secrets.token_hex(4)}"
        return SmsDeliveryResult(ok=True, provider=self.provider_name, message_id=message_id)

    def last_message_to(self, phone_number: str) -> str | None:
        for recipient, text in reversed(self.outbox):
            if recipient == phone_number:
                return text
        return None
