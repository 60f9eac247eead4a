"""SMS delivery contracts for claim verification codes."""

from config import CFG, is_http_sms_enabled

from .base import SmsDeliveryResult, SmsSender
from .http_gateway import HttpSmsGatewaySender
from .mock import MockSmsSender

__all__ = [
    "SmsDeliveryResult",
    "SmsSender",
    "HttpSmsGatewaySender",
    "MockSmsSender",
    "build_sms_sender",
]


def build_sms_sender() -> SmsSender:
    """Sender selected by SMS_PROVIDER; mock unless the HTTP gateway is configured."""
    if is_http_sms_enabled():
        return HttpSmsGatewaySender(
            url=CFG.sms_gateway_url,
            token=CFG.sms_gateway_token,
            sender_id=CFG.sms_sender_id,
        )
    return MockSmsSender()
