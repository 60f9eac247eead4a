"""Base contract for SMS delivery providers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class SmsDeliveryResult:
    """Delivery outcome reported back to the workflow: success or failure only."""

    ok: bool
    provider: str
    message_id: str | None = None
    error: str | None = None


class SmsSender(Protocol):
    provider_name: str

    async def send(self, phone_number: str, text: str) -> SmsDeliveryResult:
        """Hand one message to the provider."""
