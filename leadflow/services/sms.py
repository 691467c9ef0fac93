# leadflow/services/sms.py
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

from twilio.base.exceptions import TwilioException
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from leadflow import config
from leadflow.errors import ConfigurationError
from leadflow.utils.phone import to_e164

log = logging.getLogger(__name__)

PROVIDER = "twilio"


@dataclass
class SmsSendResult:
    success: bool
    message_sid: Optional[str] = None
    error: Optional[str] = None
    provider: str = PROVIDER
    dry_run: bool = False


def _truthy(val) -> bool:
    return str(val).strip().lower() in ("1", "true", "yes", "y", "on")


def is_dry_run() -> bool:
    # Prefer live env each call; fall back to settings
    env_val = os.getenv("SMS_DRY_RUN", None)
    if env_val is not None:
        return _truthy(env_val)
    return bool(config.settings.SMS_DRY_RUN)


def credentials_configured() -> bool:
    s = config.settings
    return bool(s.TWILIO_ACCOUNT_SID and s.TWILIO_AUTH_TOKEN)


def _client() -> Client:
    """
    Twilio client. With an API key:  Client(api_key_sid, api_key_secret, account_sid)
    Without one the auth token is used directly: Client(account_sid, auth_token)
    """
    s = config.settings
    if not credentials_configured():
        raise ConfigurationError("Missing TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN")
    if s.TWILIO_API_KEY:
        return Client(s.TWILIO_API_KEY, s.TWILIO_AUTH_TOKEN, s.TWILIO_ACCOUNT_SID)
    return Client(s.TWILIO_ACCOUNT_SID, s.TWILIO_AUTH_TOKEN)


def send_sms(to: str, body: str) -> SmsSendResult:
    """
    Sends through the Messaging Service if set, else TWILIO_FROM.
    Honors is_dry_run() at call time. Never raises for provider failures:
    the result carries success=False and the error text.
    """
    phone = to_e164(to)
    if not phone:
        log.warning("SMS not sent: invalid phone %r", to)
        return SmsSendResult(success=False, error=f"invalid phone {to!r}")

    if is_dry_run():
        log.info("[SMS DRY-RUN] to=%s body=%s", phone, body)
        return SmsSendResult(success=True, message_sid=None, dry_run=True)

    s = config.settings
    svc = s.TWILIO_MESSAGING_SERVICE_SID or None
    from_num = s.TWILIO_FROM or None
    if not svc and not from_num:
        log.error("SMS not sent: set TWILIO_MESSAGING_SERVICE_SID or TWILIO_FROM")
        return SmsSendResult(success=False, error="no sender configured")

    kwargs = {"to": phone, "body": body}
    if svc:
        kwargs["messaging_service_sid"] = svc
    else:
        kwargs["from_"] = from_num

    try:
        msg = _client().messages.create(**kwargs)
    except ConfigurationError as e:
        log.error("SMS not sent: %s", e)
        return SmsSendResult(success=False, error=str(e))
    except TwilioException as e:
        log.error("SMS send failed to=%s: %s", phone, e)
        return SmsSendResult(success=False, error=str(e))
    except Exception as e:
        # transport errors (requests.ConnectionError etc.) are not wrapped by the SDK
        log.error("SMS send failed to=%s err=%s", phone, e)
        return SmsSendResult(success=False, error=str(e) or e.__class__.__name__)

    log.info("SMS sent sid=%s to=%s", msg.sid, phone)
    return SmsSendResult(success=True, message_sid=msg.sid)


def validate_signature(url: str, params: Dict[str, str], signature: str) -> bool:
    token = config.settings.TWILIO_AUTH_TOKEN
    if not token or not signature:
        return False
    return bool(RequestValidator(token).validate(url, params, signature))
