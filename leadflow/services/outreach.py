# leadflow/services/outreach.py
"""
Cron-driven outreach batches (SMS and voice).

Each run picks up leads whose scheduled_<channel>_at is due, then per lead:
  - exit (clear the due time, attempts untouched) on missing phone, a terminal
    outcome for the channel, or attempts already at the cap
  - otherwise claim it with one conditional UPDATE (attempts + 1, due cleared)
  - send; on failure reschedule +OUTREACH_RETRY_MINUTES while under the cap

The claim is what keeps two overlapping runs (or two workers) from sending to
the same lead twice: only one UPDATE can match the attempts/due pair it read.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlmodel import Session, col, select

from leadflow import config
from leadflow.errors import LeadflowError, SmsProviderError, UnrecordedDelivery
from leadflow.models import (
    OUTREACH_ELIGIBLE_STATUSES,
    Lead,
    SmsConversation,
    VoiceCall,
    as_utc,
    utcnow,
)
from leadflow.services import ai, sms, voice
from leadflow.utils.phone import to_e164
from leadflow.utils.timeouts import call_with_timeout

log = logging.getLogger(__name__)


@dataclass
class ItemResult:
    lead_id: int
    success: bool
    status: str  # sent | failed | exited | skipped
    attempt: Optional[int] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    provider_id: Optional[str] = None
    retry_at: Optional[str] = None


@dataclass
class BatchResult:
    channel: str
    processed: int = 0
    results: List[ItemResult] = field(default_factory=list)
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "channel": self.channel,
            "processed": self.processed,
            "sent": sum(1 for r in self.results if r.status == "sent"),
            "failed": sum(1 for r in self.results if r.status == "failed"),
            "results": [asdict(r) for r in self.results],
        }
        if self.message:
            out["message"] = self.message
        return out


@dataclass(frozen=True)
class ChannelSpec:
    name: str
    due_field: str
    attempts_field: str
    terminal_reason: Callable[[Lead], Optional[str]]
    send: Callable[[Session, Lead, int, datetime], Optional[str]]


# ---------- exit rules ----------

def _opted_out(lead: Lead) -> bool:
    return bool((lead.sms_analysis or {}).get("remove_from_list")) or lead.last_sms_outcome == "opted_out"


def _sms_terminal(lead: Lead) -> Optional[str]:
    if _opted_out(lead):
        return "Lead opted out"
    if lead.last_sms_outcome == "completed":
        return "SMS conversation already completed"
    if lead.last_sms_outcome == "in_progress":
        return "SMS conversation already in progress"
    return None


def _voice_terminal(lead: Lead) -> Optional[str]:
    if _opted_out(lead):
        return "Lead opted out"
    if lead.last_call_outcome == "answered":
        return "Call already answered"
    return None


# ---------- channel sends ----------

def _timeout() -> float:
    return float(config.settings.PROVIDER_TIMEOUT_SECONDS)


def _send_initial_sms(session: Session, lead: Lead, attempt: int, now: datetime) -> Optional[str]:
    body = ai.initial_message(lead.name)
    result = call_with_timeout(sms.send_sms, lead.phone, body, timeout=_timeout(), label="send_sms")
    if not result.success:
        raise SmsProviderError(result.error or "SMS send failed")

    try:
        conversation = SmsConversation(
            lead_id=lead.id,
            phone_number=to_e164(lead.phone) or lead.phone,
            customer_name=lead.name or "",
            status="active",
            messages=[{
                "role": "assistant",
                "content": body,
                "timestamp": now.isoformat(),
                "message_sid": result.message_sid,
                "status": "simulated" if result.dry_run else "sent",
            }],
            message_count=1,
            started_at=now,
            last_message_at=now,
        )
        session.add(conversation)
        session.flush()

        session.exec(  # type: ignore[call-overload]
            update(Lead)
            .where(col(Lead.id) == lead.id)
            .values(
                last_sms_at=now,
                last_sms_conversation_id=conversation.id,
                last_sms_outcome="in_progress",
                sms_message_count=1,
                updated_at=now,
            )
        )
        session.commit()
    except Exception as e:
        session.rollback()
        _mark_sent_unrecorded(session, lead.id, now)
        raise UnrecordedDelivery(f"SMS {result.message_sid or '(dry-run)'} sent but not saved: {e}") from e

    log.info("SMS conversation %s started for lead %s (attempt %s)", conversation.id, lead.id, attempt)
    return result.message_sid


def _mark_sent_unrecorded(session: Session, lead_id: int, now: datetime) -> None:
    """The customer already has the opener: mark the lead so later runs exit instead of resending."""
    try:
        session.exec(  # type: ignore[call-overload]
            update(Lead)
            .where(col(Lead.id) == lead_id)
            .values(last_sms_at=now, last_sms_outcome="in_progress", updated_at=now)
        )
        session.commit()
    except Exception:
        session.rollback()
        log.exception("Could not mark lead %s as messaged", lead_id)


def _place_call(session: Session, lead: Lead, attempt: int, now: datetime) -> Optional[str]:
    name = lead.name or "there"
    result = call_with_timeout(
        voice.create_outbound_call,
        lead.phone,
        name,
        {"lead_id": lead.id, "attempt": attempt},
        timeout=_timeout(),
        label="create_outbound_call",
    )

    session.add(VoiceCall(
        lead_id=lead.id,
        provider_call_id=result.id,
        phone_number=to_e164(lead.phone) or lead.phone,
        customer_name=name,
        status=result.status,
        attempt=attempt,
    ))
    session.exec(  # type: ignore[call-overload]
        update(Lead)
        .where(col(Lead.id) == lead.id)
        .values(last_call_at=now, last_call_id=result.id, updated_at=now)
    )
    session.commit()
    log.info("Call %s placed for lead %s (attempt %s)", result.id, lead.id, attempt)
    return result.id


CHANNELS: Dict[str, ChannelSpec] = {
    "sms": ChannelSpec("sms", "scheduled_sms_at", "sms_attempts", _sms_terminal, _send_initial_sms),
    "voice": ChannelSpec("voice", "scheduled_call_at", "call_attempts", _voice_terminal, _place_call),
}


def get_channel(name: str) -> ChannelSpec:
    try:
        return CHANNELS[name]
    except KeyError:
        raise ValueError(f"unknown outreach channel {name!r}")


# ---------- conditional writes ----------

def _due_matches(chan: ChannelSpec, due: Optional[datetime]):
    column = col(getattr(Lead, chan.due_field))
    return column.is_(None) if due is None else column == due


def _clear_due(session: Session, chan: ChannelSpec, lead_id: int, due: Optional[datetime], now: datetime) -> bool:
    stmt = (
        update(Lead)
        .where(col(Lead.id) == lead_id)
        .where(_due_matches(chan, due))
        .values({chan.due_field: None, "updated_at": now})
    )
    result = session.exec(stmt)  # type: ignore[call-overload]
    session.commit()
    return result.rowcount == 1


def _claim(session: Session, chan: ChannelSpec, lead_id: int, attempts: int, due: Optional[datetime], now: datetime) -> bool:
    attempts_col = col(getattr(Lead, chan.attempts_field))
    stmt = (
        update(Lead)
        .where(col(Lead.id) == lead_id)
        .where(attempts_col == attempts)
        .where(_due_matches(chan, due))
        .values({chan.attempts_field: attempts + 1, chan.due_field: None, "updated_at": now})
    )
    result = session.exec(stmt)  # type: ignore[call-overload]
    session.commit()
    return result.rowcount == 1


def _reschedule(session: Session, chan: ChannelSpec, lead_id: int, attempt: int, retry_at: datetime, now: datetime) -> bool:
    attempts_col = col(getattr(Lead, chan.attempts_field))
    stmt = (
        update(Lead)
        .where(col(Lead.id) == lead_id)
        .where(attempts_col == attempt)
        .where(col(getattr(Lead, chan.due_field)).is_(None))
        .values({chan.due_field: retry_at, "updated_at": now})
    )
    result = session.exec(stmt)  # type: ignore[call-overload]
    session.commit()
    return result.rowcount == 1


# ---------- per-lead processing ----------

def _exit_reason(chan: ChannelSpec, lead: Lead, attempts: int) -> Optional[str]:
    if not (lead.phone or "").strip():
        return "No phone number"
    if not to_e164(lead.phone):
        return "Invalid phone number"
    reason = chan.terminal_reason(lead)
    if reason:
        return reason
    if attempts >= config.settings.OUTREACH_MAX_ATTEMPTS:
        return "Max attempts reached"
    return None


def process_lead(session: Session, chan: ChannelSpec, lead_id: int, now: datetime) -> ItemResult:
    lead = session.get(Lead, lead_id)
    if lead is None:
        return ItemResult(lead_id=lead_id, success=False, status="skipped", reason="Lead not found")

    due = getattr(lead, chan.due_field)
    attempts = getattr(lead, chan.attempts_field) or 0

    reason = _exit_reason(chan, lead, attempts)
    if reason:
        _clear_due(session, chan, lead_id, due, now)
        log.info("[%s] lead %s exits outreach: %s", chan.name, lead_id, reason)
        return ItemResult(lead_id=lead_id, success=False, status="exited", attempt=attempts, reason=reason)

    if not _claim(session, chan, lead_id, attempts, due, now):
        log.info("[%s] lead %s already claimed by another run", chan.name, lead_id)
        return ItemResult(lead_id=lead_id, success=False, status="skipped", reason="Claimed by another run")

    attempt = attempts + 1
    session.refresh(lead)
    try:
        provider_id = chan.send(session, lead, attempt, now)
    except Exception as e:  # one lead's failure never aborts the batch
        session.rollback()
        if isinstance(e, LeadflowError):
            log.warning("[%s] lead %s attempt %s failed: %s", chan.name, lead_id, attempt, e)
        else:
            log.exception("[%s] lead %s attempt %s failed unexpectedly", chan.name, lead_id, attempt)

        retry_at = None
        if not getattr(e, "retryable", True):
            log.error("[%s] lead %s attempt %s will not be retried: %s", chan.name, lead_id, attempt, e)
        elif attempt < config.settings.OUTREACH_MAX_ATTEMPTS:
            retry_at = now + timedelta(minutes=config.settings.OUTREACH_RETRY_MINUTES)
            if not _reschedule(session, chan, lead_id, attempt, retry_at, now):
                retry_at = None
        else:
            log.info("[%s] lead %s reached %s attempts; no further outreach", chan.name, lead_id, attempt)

        return ItemResult(
            lead_id=lead_id,
            success=False,
            status="failed",
            attempt=attempt,
            error=str(e) or e.__class__.__name__,
            retry_at=retry_at.isoformat() if retry_at else None,
        )

    return ItemResult(lead_id=lead_id, success=True, status="sent", attempt=attempt, provider_id=provider_id)


def due_leads(session: Session, chan: ChannelSpec, now: datetime, limit: Optional[int] = None) -> List[Lead]:
    due_col = col(getattr(Lead, chan.due_field))
    stmt = (
        select(Lead)
        .where(due_col.is_not(None))
        .where(due_col <= now)
        .where(col(Lead.status).in_(OUTREACH_ELIGIBLE_STATUSES))
        .order_by(due_col, col(Lead.id))
        .limit(limit or config.settings.OUTREACH_BATCH_SIZE)
    )
    return list(session.exec(stmt).all())


def _process_in_own_session(bind, chan: ChannelSpec, lead_id: int, now: datetime) -> ItemResult:
    with Session(bind) as worker_session:
        return process_lead(worker_session, chan, lead_id, now)


def run_due_outreach(session: Session, channel: str, now: Optional[datetime] = None) -> BatchResult:
    chan = get_channel(channel)
    now = as_utc(now) or utcnow()

    if chan.name == "voice" and not config.settings.ENABLE_VOICE_AUTO_CALLS:
        log.info("Voice auto-calls disabled; skipping batch")
        return BatchResult(channel=channel, processed=0, message="Voice auto-calls are disabled")

    lead_ids = [lead.id for lead in due_leads(session, chan, now)]
    if not lead_ids:
        return BatchResult(channel=channel, processed=0, message=f"No {channel} outreach due")

    log.info("[%s] processing %s due lead(s)", channel, len(lead_ids))
    workers = max(1, int(config.settings.OUTREACH_WORKERS or 1))
    if workers == 1:
        results = [process_lead(session, chan, lead_id, now) for lead_id in lead_ids]
    else:
        bind = session.get_bind()
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"outreach-{channel}") as pool:
            results = list(pool.map(lambda lid: _process_in_own_session(bind, chan, lid, now), lead_ids))

    return BatchResult(channel=channel, processed=len(results), results=results)


# ---------- stale conversations ----------

def close_stale_conversations(
    session: Session,
    idle_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Active conversations waiting on the customer for idle_hours become unresponsive."""
    now = as_utc(now) or utcnow()
    hours = idle_hours if idle_hours is not None else config.settings.SMS_UNRESPONSIVE_HOURS
    cutoff = now - timedelta(hours=hours)

    rows = session.exec(
        select(SmsConversation)
        .where(SmsConversation.status == "active")
        .where(col(SmsConversation.last_message_at) <= cutoff)
        .order_by(col(SmsConversation.id))
    ).all()

    closed = []
    for conv in rows:
        messages = conv.messages or []
        if not messages or messages[-1].get("role") != "assistant":
            continue
        result = session.exec(  # type: ignore[call-overload]
            update(SmsConversation)
            .where(col(SmsConversation.id) == conv.id)
            .where(col(SmsConversation.status) == "active")
            .where(col(SmsConversation.message_count) == conv.message_count)
            .values(status="unresponsive", updated_at=now)
        )
        if result.rowcount != 1:
            session.rollback()
            continue
        session.exec(  # type: ignore[call-overload]
            update(Lead)
            .where(col(Lead.id) == conv.lead_id)
            .where(col(Lead.last_sms_conversation_id) == conv.id)
            .values(last_sms_outcome="unresponsive", updated_at=now)
        )
        session.commit()
        closed.append(conv.id)

    if closed:
        log.info("Marked %s SMS conversation(s) unresponsive: %s", len(closed), closed)
    return {"closed": len(closed), "conversation_ids": closed}
