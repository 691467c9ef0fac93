# leadflow/routers/conversations.py
from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from leadflow.db import get_session
from leadflow.deps import get_tenant_id
from leadflow.models import Lead, SmsConversation

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("/{conversation_id}")
def get_conversation(
    conversation_id: int,
    session: Session = Depends(get_session),
    tenant_id: str = Depends(get_tenant_id),
):
    conv = session.get(SmsConversation, conversation_id)
    lead = session.get(Lead, conv.lead_id) if conv else None
    if not conv or not lead or lead.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Not found")
    return conv.model_dump(mode="json")
