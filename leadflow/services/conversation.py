# leadflow/services/conversation.py
"""
SMS conversation state machine.

    pending (unused for SMS) -> active -> completed | opted_out | unresponsive

Only active conversations take inbound messages or produce replies. Every
persisted change writes messages and message_count together and is guarded by
the message_count we read, so message_count == len(messages) always holds and
a concurrent writer gets ConversationConflict instead of interleaving.
"""
import logging
import threading
import weakref
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlmodel import Session, col, select

from leadflow import config
from leadflow.errors import AiOutputError, ConversationConflict, LeadflowError, NotFoundError, ProviderTimeout
from leadflow.models import Lead, SmsConversation, as_utc, utcnow
from leadflow.services import ai, sms
from leadflow.services.leads import quality_from_interest
from leadflow.utils.phone import to_e164
from leadflow.utils.timeouts import call_with_timeout

log = logging.getLogger(__name__)

# entries live only while some caller holds the lock object
_LOCKS: "weakref.WeakValueDictionary[int, threading.Lock]" = weakref.WeakValueDictionary()
_LOCKS_GUARD = threading.Lock()


def conversation_lock(conversation_id: int) -> threading.Lock:
    with _LOCKS_GUARD:
        lock = _LOCKS.get(conversation_id)
        if lock is None:
            lock = _LOCKS[conversation_id] = threading.Lock()
        return lock


@dataclass
class InboundResult:
    status: str  # no_active_conversation | opted_out | replied | completed
    conversation_id: Optional[int] = None
    response: Optional[str] = None
    conversation_ended: bool = False
    message_count: int = 0
    analysis: Optional[Dict[str, Any]] = None
    sms_dispatched: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _entry(role: str, content: str, now: datetime, status: str, message_sid: Optional[str] = None) -> Dict[str, Any]:
    return {
        "role": role,
        "content": content,
        "timestamp": now.isoformat(),
        "message_sid": message_sid,
        "status": status,
    }


def _timeout() -> float:
    return float(config.settings.PROVIDER_TIMEOUT_SECONDS)


def _dispatch(phone: str, body: str, dispatch: bool) -> Tuple[str, Optional[str]]:
    """Send one outbound message. Returns (log status, provider sid); never raises."""
    if not dispatch:
        return "simulated", None
    try:
        result = call_with_timeout(sms.send_sms, phone, body, timeout=_timeout(), label="send_sms")
    except ProviderTimeout as e:
        log.warning("SMS dispatch to %s timed out: %s", phone, e)
        return "failed", None
    except Exception:
        log.exception("SMS dispatch to %s failed", phone)
        return "failed", None
    if not result.success:
        return "failed", None
    return ("simulated" if result.dry_run else "sent"), result.message_sid


def _write(
    session: Session,
    conversation_id: int,
    expected_count: int,
    messages: List[Dict[str, Any]],
    status: str,
    now: datetime,
    analysis: Optional[Dict[str, Any]] = None,
    expected_status: str = "active",
) -> int:
    values: Dict[str, Any] = {
        "messages": list(messages),
        "message_count": len(messages),
        "status": status,
        "last_message_at": now,
        "updated_at": now,
    }
    if analysis is not None:
        values["analysis"] = analysis
    stmt = (
        update(SmsConversation)
        .where(col(SmsConversation.id) == conversation_id)
        .where(col(SmsConversation.message_count) == expected_count)
        .where(col(SmsConversation.status) == expected_status)
        .values(**values)
    )
    result = session.exec(stmt)  # type: ignore[call-overload]
    if result.rowcount != 1:
        session.rollback()
        raise ConversationConflict(f"conversation {conversation_id} changed concurrently")
    session.commit()
    return len(messages)


def _mirror_onto_lead(
    session: Session,
    lead_id: int,
    message_count: int,
    now: datetime,
    analysis: Optional[Dict[str, Any]] = None,
    ended: bool = False,
) -> None:
    values: Dict[str, Any] = {"last_sms_at": now, "sms_message_count": message_count, "updated_at": now}
    if ended:
        values["last_sms_outcome"] = "completed"
        values["sms_analysis"] = analysis
        quality = quality_from_interest((analysis or {}).get("interest_level"))
        if quality:
            values["quality"] = quality
    session.exec(update(Lead).where(col(Lead.id) == lead_id).values(**values))  # type: ignore[call-overload]

    if ended:
        # forward-only: only leads still in the outreach funnel become contacted
        session.exec(  # type: ignore[call-overload]
            update(Lead)
            .where(col(Lead.id) == lead_id)
            .where(col(Lead.status).in_(("new", "assigned")))
            .values(status="contacted")
        )
        session.exec(  # type: ignore[call-overload]
            update(Lead)
            .where(col(Lead.id) == lead_id)
            .where(col(Lead.contacted_at).is_(None))
            .values(contacted_at=now)
        )
    session.commit()


def _opt_out(
    session: Session,
    conversation: SmsConversation,
    messages: List[Dict[str, Any]],
    count: int,
    now: datetime,
    dispatch: bool,
) -> InboundResult:
    """Opt-out state is committed before the confirmation goes out; a failed send cannot undo it."""
    analysis = {"conversation_outcome": "opted_out", "remove_from_list": True}
    _write(session, conversation.id, count, messages, "opted_out", now, analysis=analysis)

    lead = session.get(Lead, conversation.lead_id)
    if lead:
        merged = {**(lead.sms_analysis or {}), **analysis}
        session.exec(  # type: ignore[call-overload]
            update(Lead)
            .where(col(Lead.id) == lead.id)
            .values(
                last_sms_outcome="opted_out",
                sms_analysis=merged,
                scheduled_sms_at=None,
                last_sms_at=now,
                sms_message_count=count,
                updated_at=now,
            )
        )
        session.commit()

    status, sid = _dispatch(conversation.phone_number, ai.OPT_OUT_CONFIRMATION, dispatch)
    messages.append(_entry("assistant", ai.OPT_OUT_CONFIRMATION, now, status, sid))
    count = _write(session, conversation.id, count, messages, "opted_out", now, expected_status="opted_out")
    _mirror_onto_lead(session, conversation.lead_id, count, now)

    log.info("Conversation %s opted out (lead %s)", conversation.id, conversation.lead_id)
    return InboundResult(
        status="opted_out",
        conversation_id=conversation.id,
        response=ai.OPT_OUT_CONFIRMATION,
        conversation_ended=True,
        message_count=count,
        analysis=analysis,
        sms_dispatched=status == "sent",
    )


def _complete(
    session: Session,
    conversation: SmsConversation,
    messages: List[Dict[str, Any]],
    count: int,
    now: datetime,
) -> Dict[str, Any]:
    """Analyze the full transcript and close the conversation. Raises AiOutputError, leaving it active."""
    try:
        analysis = call_with_timeout(ai.analyze_conversation, messages, timeout=_timeout(), label="analyze_conversation")
    except AiOutputError:
        _mirror_onto_lead(session, conversation.lead_id, count, now)
        raise
    except LeadflowError as e:
        _mirror_onto_lead(session, conversation.lead_id, count, now)
        raise AiOutputError(f"analysis failed: {e}") from e

    record = analysis.to_record()
    _write(session, conversation.id, count, messages, "completed", now, analysis=record)
    _mirror_onto_lead(session, conversation.lead_id, count, now, analysis=record, ended=True)
    log.info(
        "Conversation %s completed after %s messages (interest=%s)",
        conversation.id, count, record.get("interest_level"),
    )
    return record


def process_inbound(
    session: Session,
    conversation: SmsConversation,
    body: str,
    message_sid: Optional[str] = None,
    dispatch: bool = True,
    now: Optional[datetime] = None,
) -> InboundResult:
    """
    Apply one inbound customer message. The inbound message is committed before
    any AI or provider call, so failures (AiOutputError, ProviderTimeout) leave
    the conversation active and resumable.
    """
    now = as_utc(now) or utcnow()
    max_messages = config.settings.CONVERSATION_MAX_MESSAGES

    with conversation_lock(conversation.id):
        session.refresh(conversation)
        if conversation.status != "active":
            log.info("Inbound for conversation %s ignored: status=%s", conversation.id, conversation.status)
            return InboundResult(
                status="no_active_conversation",
                conversation_id=conversation.id,
                message_count=conversation.message_count,
            )

        messages = list(conversation.messages or [])
        messages.append(_entry("user", body, now, "received", message_sid))
        count = _write(session, conversation.id, conversation.message_count, messages, "active", now)

        if ai.check_opt_out(body):
            return _opt_out(session, conversation, messages, count, now, dispatch)

        # log already at the cap: no further reply, just close it out
        if count >= max_messages:
            record = _complete(session, conversation, messages, count, now)
            return InboundResult(
                status="completed",
                conversation_id=conversation.id,
                conversation_ended=True,
                message_count=count,
                analysis=record,
            )

        lead = session.get(Lead, conversation.lead_id)
        context = {"notes": lead.notes if lead else None}
        try:
            reply = call_with_timeout(
                ai.generate_sms_reply, conversation.customer_name, messages, context,
                timeout=_timeout(), label="generate_sms_reply",
            )
        except ProviderTimeout as e:
            _mirror_onto_lead(session, conversation.lead_id, count, now)
            raise AiOutputError(f"reply generation timed out: {e}") from e
        except LeadflowError:
            _mirror_onto_lead(session, conversation.lead_id, count, now)
            raise

        status, sid = _dispatch(conversation.phone_number, reply.message, dispatch)
        messages.append(_entry("assistant", reply.message, now, status, sid))
        count = _write(session, conversation.id, count, messages, "active", now)

        ending = reply.should_end or count >= max_messages
        if not ending:
            _mirror_onto_lead(session, conversation.lead_id, count, now)
            return InboundResult(
                status="replied",
                conversation_id=conversation.id,
                response=reply.message,
                message_count=count,
                sms_dispatched=status == "sent",
            )

        record = _complete(session, conversation, messages, count, now)
        return InboundResult(
            status="completed",
            conversation_id=conversation.id,
            response=reply.message,
            conversation_ended=True,
            message_count=count,
            analysis=record,
            sms_dispatched=status == "sent",
        )


def find_active_conversation(session: Session, phone: str) -> Optional[SmsConversation]:
    return session.exec(
        select(SmsConversation)
        .where(SmsConversation.phone_number == phone)
        .where(SmsConversation.status == "active")
        .order_by(col(SmsConversation.created_at).desc(), col(SmsConversation.id).desc())
    ).first()


def handle_inbound_sms(
    session: Session,
    from_number: str,
    body: str,
    message_sid: Optional[str] = None,
) -> InboundResult:
    phone = to_e164(from_number) or (from_number or "").strip()
    conversation = find_active_conversation(session, phone)
    if not conversation:
        log.info("No active SMS conversation for %s; inbound ignored", phone)
        return InboundResult(status="no_active_conversation")
    return process_inbound(session, conversation, body, message_sid=message_sid, dispatch=True)


def simulate_reply(
    session: Session,
    conversation_id: int,
    body: str,
    send_real_sms: bool = False,
) -> InboundResult:
    conversation = session.get(SmsConversation, conversation_id)
    if not conversation:
        raise NotFoundError(f"conversation {conversation_id} not found")
    return process_inbound(session, conversation, body, dispatch=send_real_sms)
