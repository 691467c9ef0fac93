# leadflow/routers/debug.py
# Everything here sits under /debug/* and is guarded by debug_auth_middleware.
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session

from leadflow.db import get_session
from leadflow.errors import AiOutputError, ConfigurationError, ConversationConflict, NotFoundError
from leadflow.models import utcnow
from leadflow.schemas import SimulateReplyIn
from leadflow.services import conversation, outreach

log = logging.getLogger(__name__)

router = APIRouter(prefix="/debug", tags=["debug"])


@router.post("/sms/simulate-reply")
def simulate_reply(payload: SimulateReplyIn, session: Session = Depends(get_session)):
    """Feed a pretend customer reply into a conversation; no real SMS unless send_real_sms."""
    try:
        result = conversation.simulate_reply(
            session, payload.conversation_id, payload.message, send_real_sms=payload.send_real_sms
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except ConversationConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except AiOutputError as e:
        raise HTTPException(status_code=502, detail=f"AI error: {e}")

    if result.status == "no_active_conversation":
        raise HTTPException(status_code=400, detail="Conversation is not active")
    return result.to_dict()


@router.get("/outreach/due")
def outreach_due(
    channel: str = Query("sms", pattern="^(sms|voice)$"),
    session: Session = Depends(get_session),
):
    chan = outreach.get_channel(channel)
    now = utcnow()
    rows = outreach.due_leads(session, chan, now)
    return {
        "channel": channel,
        "now": now.isoformat(),
        "items": [
            {
                "lead_id": r.id,
                "tenant_id": r.tenant_id,
                "status": r.status,
                "due_at": getattr(r, chan.due_field).isoformat() if getattr(r, chan.due_field) else None,
                "attempts": getattr(r, chan.attempts_field),
            }
            for r in rows
        ],
    }
