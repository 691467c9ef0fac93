# leadflow/services/voice.py
"""
Outbound AI phone calls through Vapi, plus handling of Vapi's call webhooks.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from dateutil import parser as dtparse
from sqlmodel import Session, select

from leadflow import config
from leadflow.errors import ConfigurationError, VoiceProviderError
from leadflow.models import Lead, VoiceCall, as_utc, utcnow
from leadflow.services.leads import advance_status
from leadflow.utils.phone import to_e164

log = logging.getLogger(__name__)

VAPI_API_URL = "https://api.vapi.ai"

# Vapi endedReason -> our call outcome
ENDED_REASON_OUTCOMES = {
    "customer-ended-call": "answered",
    "assistant-ended-call": "answered",
    "voicemail": "voicemail",
    "customer-did-not-answer": "no_answer",
    "customer-busy": "busy",
}


@dataclass
class VoiceCallResult:
    id: str
    status: Optional[str] = None


def _credentials():
    s = config.settings
    if not s.VAPI_API_KEY:
        raise ConfigurationError("VAPI_API_KEY is not set")
    if not s.VAPI_PHONE_NUMBER_ID:
        raise ConfigurationError("VAPI_PHONE_NUMBER_ID is not set")
    return s.VAPI_API_KEY, s.VAPI_PHONE_NUMBER_ID


def follow_up_assistant(customer_name: str) -> Dict[str, Any]:
    """Inline assistant used when no VAPI_ASSISTANT_ID is configured."""
    s = config.settings
    system = (
        f"You are {s.AGENT_NAME}, a friendly assistant calling on behalf of {s.BRAND_NAME}, "
        "a home renovation company serving the Oklahoma City area. You are following up on a "
        "recent inquiry. Confirm you are speaking with the right person, ask what project they "
        "have in mind (kitchen, bathroom, flooring or other), whether it is their own home or a "
        "rental, and their timeline. Confirm their contact details and let them know a specialist "
        "will follow up to schedule a free in-home consultation. Keep it to two or three minutes. "
        "If they are not interested, be respectful and offer to remove them from the list."
    )
    return {
        "name": f"{s.AGENT_NAME} - {s.BRAND_NAME}",
        "model": {
            "provider": "openai",
            "model": "gpt-4o-mini",
            "messages": [{"role": "system", "content": system}],
            "temperature": 0.7,
        },
        "voice": {"provider": "openai", "voiceId": "nova"},
        "firstMessage": f"Hi, is this {customer_name}?",
        "endCallMessage": f"Thanks so much for your time, {customer_name}. Have a wonderful day!",
        "endCallPhrases": ["goodbye", "not interested", "remove me from the list", "stop calling"],
        "silenceTimeoutSeconds": 30,
        "maxDurationSeconds": 300,
    }


def create_outbound_call(to: str, customer_name: str, metadata: Optional[Dict[str, Any]] = None) -> VoiceCallResult:
    """
    POST /call/phone. Raises ConfigurationError when Vapi is not configured and
    VoiceProviderError for invalid numbers or any provider/network failure.
    """
    api_key, phone_number_id = _credentials()

    number = to_e164(to)
    if not number:
        raise VoiceProviderError(f"cannot normalize phone number {to!r}")

    body: Dict[str, Any] = {
        "phoneNumberId": phone_number_id,
        "customer": {"number": number, "name": customer_name},
        "metadata": {**(metadata or {}), "customerName": customer_name},
    }
    assistant_id = config.settings.VAPI_ASSISTANT_ID
    if assistant_id:
        body["assistantId"] = assistant_id
        body["assistantOverrides"] = {"firstMessage": f"Hi, is this {customer_name}?"}
    else:
        body["assistant"] = follow_up_assistant(customer_name)

    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    try:
        with httpx.Client(timeout=30.0) as client:
            r = client.post(f"{VAPI_API_URL}/call/phone", json=body, headers=headers)
    except httpx.HTTPError as e:
        raise VoiceProviderError(f"Vapi request failed: {e}") from e

    if r.status_code >= 400:
        raise VoiceProviderError(f"Vapi API error {r.status_code}: {r.text[:300]}")

    try:
        data = r.json()
    except ValueError as e:
        raise VoiceProviderError("Vapi returned a non-JSON response") from e

    call_id = data.get("id")
    if not call_id:
        raise VoiceProviderError("Vapi response carried no call id")

    log.info("Vapi call created id=%s to=%s status=%s", call_id, number, data.get("status"))
    return VoiceCallResult(id=str(call_id), status=data.get("status"))


def outcome_for(ended_reason: Optional[str]) -> str:
    return ENDED_REASON_OUTCOMES.get(ended_reason or "", "failed")


def verify_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    if not (signature and secret):
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def _duration_seconds(call: Dict[str, Any]) -> Optional[float]:
    started, ended = call.get("startedAt"), call.get("endedAt")
    if started and ended:
        try:
            return (dtparse.isoparse(ended) - dtparse.isoparse(started)).total_seconds()
        except (ValueError, TypeError):
            pass
    offsets = [m.get("secondsFromStart") or 0 for m in (call.get("messages") or []) if isinstance(m, dict)]
    return float(max(offsets)) if offsets else None


def apply_webhook(session: Session, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply a Vapi server message. Handles status-update and end-of-call-report;
    anything else is acknowledged and ignored.
    """
    message = (payload or {}).get("message") or {}
    call = message.get("call") or {}
    call_id = call.get("id")
    kind = message.get("type")
    if not call_id:
        return {"status": "ok", "handled": False}

    record = session.exec(select(VoiceCall).where(VoiceCall.provider_call_id == str(call_id))).first()
    if not record:
        log.info("Vapi webhook for unknown call %s (%s)", call_id, kind)
        return {"status": "ok", "handled": False}

    now = utcnow()
    if kind == "status-update":
        record.status = call.get("status") or message.get("status") or record.status
        record.updated_at = now
        session.add(record)
        session.commit()
        return {"status": "ok", "handled": True}

    if kind != "end-of-call-report":
        log.debug("Unhandled Vapi message type %s", kind)
        return {"status": "ok", "handled": False}

    analysis = call.get("analysis") or message.get("analysis") or {}
    ended_reason = call.get("endedReason") or message.get("endedReason")
    outcome = outcome_for(ended_reason)

    record.status = "completed"
    record.ended_reason = ended_reason
    record.outcome = outcome
    record.duration_seconds = _duration_seconds(call)
    record.summary = call.get("summary") or message.get("summary")
    record.transcript = call.get("transcript") or message.get("transcript")
    record.recording_url = call.get("recordingUrl") or message.get("recordingUrl")
    record.analysis = analysis or None
    record.completed_at = now
    record.updated_at = now
    session.add(record)

    lead = session.get(Lead, record.lead_id)
    if lead:
        lead.last_call_outcome = outcome
        lead.last_call_summary = record.summary
        lead.last_call_transcript = record.transcript
        lead.last_call_recording_url = record.recording_url
        lead.call_analysis = analysis.get("structuredData") if isinstance(analysis, dict) else None
        if outcome == "answered":
            advance_status(lead, "contacted")
            lead.contacted_at = as_utc(lead.contacted_at) or now
        lead.updated_at = now
        session.add(lead)

    session.commit()
    log.info("Vapi call %s completed: outcome=%s lead=%s", call_id, outcome, record.lead_id)
    return {"status": "ok", "handled": True, "outcome": outcome}
