# leadflow/routers/webhooks.py
import hashlib
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse, Response
from sqlmodel import Session
from twilio.twiml.messaging_response import MessagingResponse

from leadflow import config
from leadflow.db import dedupe_insert, get_session
from leadflow.errors import LeadflowError
from leadflow.services import conversation, facebook, sms, voice

log = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _empty_twiml() -> Response:
    return Response(content=str(MessagingResponse()), media_type="application/xml")


def _external_url_for_signature(request: Request) -> str:
    hdr = request.headers
    proto = (hdr.get("x-forwarded-proto") or request.url.scheme or "https").split(",")[0].strip()
    host = (hdr.get("x-forwarded-host") or hdr.get("host") or request.url.netloc).split(",")[0].strip()
    return f"{proto}://{host}{request.url.path}"


# ------------------------- Twilio inbound SMS -------------------------

@router.post("/twilio/sms")
async def twilio_sms(request: Request, session: Session = Depends(get_session)):
    if not sms.credentials_configured():
        log.error("Twilio webhook hit but TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN not configured")
        raise HTTPException(status_code=500, detail="Server misconfigured: Twilio credentials not set")

    form = await request.form()
    params = {k: str(v) for k, v in form.items()}

    if params.get("AccountSid") != config.settings.TWILIO_ACCOUNT_SID:
        log.warning("Twilio webhook AccountSid mismatch: %r", params.get("AccountSid"))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown account")

    if config.settings.TWILIO_VALIDATE_SIGNATURES:
        signature = request.headers.get("X-Twilio-Signature", "")
        if not sms.validate_signature(_external_url_for_signature(request), params, signature):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Twilio signature")

    from_number = (params.get("From") or "").strip()
    body = (params.get("Body") or "").strip()
    message_sid = (params.get("MessageSid") or params.get("SmsSid") or "").strip()

    event_id = message_sid or hashlib.sha256(
        "&".join(f"{k}={params[k]}" for k in sorted(params)).encode("utf-8")
    ).hexdigest()
    if not dedupe_insert(session, "twilio_sms", event_id):
        log.info("Duplicate Twilio message %s ignored", event_id)
        return _empty_twiml()

    if not from_number or not body:
        return _empty_twiml()

    try:
        result = conversation.handle_inbound_sms(session, from_number, body, message_sid=message_sid or None)
        log.info("Inbound SMS from %s -> %s (conversation %s)", from_number, result.status, result.conversation_id)
    except LeadflowError as e:
        # inbound is already on the log; the conversation stays active for the next message
        log.error("Inbound SMS from %s not fully processed: %s", from_number, e)
    except Exception:
        # MessageSid is already deduped, so a 500 would only make Twilio's retry a no-op
        log.exception("Inbound SMS from %s failed unexpectedly", from_number)

    return _empty_twiml()


# ------------------------- Meta lead ads -------------------------

@router.get("/facebook")
def facebook_verify(
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
):
    expected = config.settings.FB_WEBHOOK_VERIFY_TOKEN
    if not expected:
        log.error("FB_WEBHOOK_VERIFY_TOKEN not configured")
        raise HTTPException(status_code=500, detail="Server misconfigured: FB_WEBHOOK_VERIFY_TOKEN not set")
    if hub_mode == "subscribe" and hub_verify_token == expected:
        log.info("Facebook webhook verified")
        return PlainTextResponse(hub_challenge or "")
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/facebook")
async def facebook_leadgen(request: Request, session: Session = Depends(get_session)):
    # always 200 so Meta doesn't retry; unverified payloads are dropped
    raw = await request.body()

    secret = config.settings.FB_APP_SECRET
    if not secret:
        log.error("FB_APP_SECRET not configured; leadgen webhook not processed")
        return {"status": "ignored", "reason": "not_configured"}

    if not facebook.verify_signature(raw, request.headers.get("X-Hub-Signature-256"), secret):
        log.warning("Facebook webhook with missing or invalid signature ignored")
        return {"status": "ignored", "reason": "invalid_signature"}

    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        log.warning("Facebook webhook body is not valid JSON")
        return {"status": "ignored", "reason": "malformed"}

    created = []
    for value in facebook.leadgen_changes(body):
        try:
            lead = facebook.create_lead_from_leadgen(session, value)
        except Exception:
            session.rollback()
            log.exception("Failed to create lead from leadgen %s", value.get("leadgen_id"))
            continue
        if lead:
            created.append(lead.id)

    return {"status": "ok", "created": created}


# ------------------------- Vapi voice -------------------------

@router.post("/vapi")
async def vapi_webhook(request: Request, session: Session = Depends(get_session)):
    secret = config.settings.VAPI_WEBHOOK_SECRET
    if not secret:
        log.error("VAPI_WEBHOOK_SECRET not configured; refusing Vapi webhook")
        raise HTTPException(status_code=500, detail="Server misconfigured: VAPI_WEBHOOK_SECRET not set")

    raw = await request.body()
    if not voice.verify_signature(raw, request.headers.get("X-Vapi-Signature", ""), secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Vapi signature")

    try:
        payload = json.loads(raw or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    return voice.apply_webhook(session, payload)
