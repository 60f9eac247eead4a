import os
from pathlib import Path
from dataclasses import dataclass

from dotenv import load_dotenv

# .env is read from the working directory (where the service is started)
env_path = Path.cwd() / ".env"
load_dotenv(env_path)


@dataclass
class Config:
    admin_ids: list[str]  # Identities allowed to review claims
    # HTTP transport
    api_host: str
    api_port: int
    trust_forwarded_for: bool  # Only behind a proxy that sets X-Forwarded-For
    # Phone verification
    claim_code_secret: str
    claim_code_ttl_minutes: int
    claim_code_max_checks: int
    # Fraud thresholds (score range 0..100)
    fraud_low_threshold: int
    fraud_high_threshold: int
    # Eligibility policy
    single_active_claim_per_user: bool
    max_lifetime_claims: int
    rejection_cooldown_days: int
    # SMS delivery
    sms_provider: str
    sms_gateway_url: str
    sms_gateway_token: str
    sms_sender_id: str


def _clean(value: str | None, default: str = "") -> str:
    if value is None:
        return default
    return value.strip().strip('"').strip("'")


def parse_admin_ids(env_value: str) -> list[str]:
    """Parse admin identities separated by commas or whitespace."""
    if not env_value:
        return []
    env_value = _clean(env_value)
    ids = [item.strip() for item in env_value.replace(",", " ").split()]
    return [item for item in ids if item]


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean env value."""
    if value is None:
        return default
    value = _clean(value).lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    return default


def parse_int(value: str | None, default: int) -> int:
    """Parse an int env value, falling back to default on empty or junk input."""
    if value is None:
        return default
    value = _clean(value)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


CFG = Config(
    admin_ids=parse_admin_ids(os.getenv("ADMIN_IDS", "")),
    api_host=_clean(os.getenv("API_HOST"), "0.0.0.0") or "0.0.0.0",
    api_port=parse_int(os.getenv("API_PORT"), 8080),
    trust_forwarded_for=parse_bool(os.getenv("TRUST_FORWARDED_FOR"), False),
    claim_code_secret=_clean(os.getenv("CLAIM_CODE_SECRET")),
    claim_code_ttl_minutes=parse_int(os.getenv("CLAIM_CODE_TTL_MINUTES"), 10),
    claim_code_max_checks=parse_int(os.getenv("CLAIM_CODE_MAX_CHECKS"), 5),
    fraud_low_threshold=parse_int(os.getenv("FRAUD_LOW_THRESHOLD"), 30),
    fraud_high_threshold=parse_int(os.getenv("FRAUD_HIGH_THRESHOLD"), 75),
    single_active_claim_per_user=parse_bool(os.getenv("SINGLE_ACTIVE_CLAIM_PER_USER"), True),
    max_lifetime_claims=parse_int(os.getenv("MAX_LIFETIME_CLAIMS"), 10),
    # 0 keeps immediate resubmission after a rejection.
    rejection_cooldown_days=parse_int(os.getenv("REJECTION_COOLDOWN_DAYS"), 0),
    sms_provider=_clean(os.getenv("SMS_PROVIDER"), "mock").lower() or "mock",
    sms_gateway_url=_clean(os.getenv("SMS_GATEWAY_URL")),
    sms_gateway_token=_clean(os.getenv("SMS_GATEWAY_TOKEN")),
    sms_sender_id=_clean(os.getenv("SMS_SENDER_ID"), "Claims") or "Claims",
)

# DB path: from env or relative to the working directory
DB_PATH = _clean(os.getenv("DB_PATH")) or str(Path.cwd() / "claims.db")


def is_http_sms_enabled() -> bool:
    """HTTP SMS delivery is used only with provider=http and a gateway URL."""
    return CFG.sms_provider == "http" and bool(CFG.sms_gateway_url)
