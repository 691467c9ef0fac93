# leadflow/config.py
import json
import os
from pathlib import Path

from dotenv import load_dotenv

# load .env into process env vars (project root first, then cwd)
ROOT = Path(__file__).resolve().parents[1]
load_dotenv(ROOT / ".env")
load_dotenv()


def _as_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in ("1", "true", "yes", "y", "on")


def _as_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, default)).strip())
    except Exception:
        return default


def _as_float(name: str, default: float) -> float:
    try:
        return float(str(os.getenv(name, default)).strip())
    except Exception:
        return default


def _parse_tenant_keys(raw: str) -> dict:
    """
    Accepts JSON ('{"devkey": "default"}') or pairs ('default:devkey,acme:acmekey').
    Returns:  { 'devkey': 'default', 'acmekey': 'acme' }
    """
    raw = (raw or "").strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, dict):
            return {str(k): str(v) for k, v in parsed.items()}
    except ValueError:
        pass
    mapping = {}
    for part in raw.split(","):
        if ":" in part:
            tenant, key = part.split(":", 1)
            tenant, key = tenant.strip(), key.strip()
            if tenant and key:
                mapping[key] = tenant
    return mapping


class Settings:
    # App
    ENV: str = os.getenv("ENV", "dev")
    TZ: str = os.getenv("TZ", "America/Chicago")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///data/leadflow.db")

    # Branding used in outbound copy
    BRAND_NAME: str = os.getenv("BRAND_NAME", "Key Renovations")
    AGENT_NAME: str = os.getenv("AGENT_NAME", "Riley")

    # Debug / auth
    DEBUG_BEARER: str = (os.getenv("DEBUG_BEARER") or os.getenv("DEBUG_BEARER_TOKEN") or "").strip()
    CRON_SECRET: str = os.getenv("CRON_SECRET", "").strip()

    # Multi-tenant (token -> tenant_id)
    TENANT_KEYS = _parse_tenant_keys(os.getenv("TENANT_KEYS", "")) or {"devkey": "default"}
    ANTI_SPAM_MINUTES: int = _as_int("ANTI_SPAM_MINUTES", 30)

    # Twilio
    TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "").strip()
    TWILIO_API_KEY: str = os.getenv("TWILIO_API_KEY", "").strip()
    TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "").strip()
    TWILIO_MESSAGING_SERVICE_SID: str = os.getenv("TWILIO_MESSAGING_SERVICE_SID", "").strip()
    TWILIO_FROM: str = os.getenv("TWILIO_FROM", "").strip()
    SMS_DRY_RUN: bool = _as_bool("SMS_DRY_RUN", False)
    TWILIO_VALIDATE_SIGNATURES: bool = _as_bool("TWILIO_VALIDATE_SIGNATURES", True)

    # Geocoding
    GOOGLE_MAPS_API_KEY: str = os.getenv("GOOGLE_MAPS_API_KEY", "").strip()

    # AI
    ANTHROPIC_API_KEY: str = os.getenv("ANTHROPIC_API_KEY", "").strip()
    ANTHROPIC_MODEL: str = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514")

    # Vapi voice
    VAPI_API_KEY: str = os.getenv("VAPI_API_KEY", "").strip()
    VAPI_PHONE_NUMBER_ID: str = os.getenv("VAPI_PHONE_NUMBER_ID", "").strip()
    VAPI_ASSISTANT_ID: str = os.getenv("VAPI_ASSISTANT_ID", "").strip()
    VAPI_WEBHOOK_SECRET: str = os.getenv("VAPI_WEBHOOK_SECRET", "").strip()
    ENABLE_VOICE_AUTO_CALLS: bool = _as_bool("ENABLE_VOICE_AUTO_CALLS", False)

    # Meta lead ads
    FB_APP_SECRET: str = os.getenv("FB_APP_SECRET", "").strip()
    FB_WEBHOOK_VERIFY_TOKEN: str = os.getenv("FB_WEBHOOK_VERIFY_TOKEN", "").strip()
    FB_PAGE_ACCESS_TOKEN: str = os.getenv("FB_PAGE_ACCESS_TOKEN", "").strip()
    FB_TENANT_ID: str = os.getenv("FB_TENANT_ID", "default").strip()

    # Outreach scheduler
    OUTREACH_BATCH_SIZE: int = _as_int("OUTREACH_BATCH_SIZE", 10)
    OUTREACH_MAX_ATTEMPTS: int = _as_int("OUTREACH_MAX_ATTEMPTS", 3)
    OUTREACH_RETRY_MINUTES: int = _as_int("OUTREACH_RETRY_MINUTES", 60)
    OUTREACH_WORKERS: int = _as_int("OUTREACH_WORKERS", 1)
    PROVIDER_TIMEOUT_SECONDS: float = _as_float("PROVIDER_TIMEOUT_SECONDS", 30.0)
    SMS_INITIAL_DELAY_MINUTES: int = _as_int("SMS_INITIAL_DELAY_MINUTES", 0)
    CALL_INITIAL_DELAY_MINUTES: int = _as_int("CALL_INITIAL_DELAY_MINUTES", 10)

    # Conversations
    CONVERSATION_MAX_MESSAGES: int = _as_int("CONVERSATION_MAX_MESSAGES", 10)
    SMS_UNRESPONSIVE_HOURS: int = _as_int("SMS_UNRESPONSIVE_HOURS", 48)


settings = Settings()
