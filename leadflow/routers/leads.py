# leadflow/routers/leads.py
import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, col, select

from leadflow import config
from leadflow.db import get_session
from leadflow.deps import get_tenant_id
from leadflow.models import LEAD_STATUSES, Lead, as_utc, utcnow
from leadflow.schemas import AssignIn, LeadIn, ReturnIn
from leadflow.services import assignment
from leadflow.services.leads import return_to_pool, schedule_outreach
from leadflow.utils.phone import normalize_us_phone

log = logging.getLogger(__name__)

router = APIRouter(prefix="/leads", tags=["leads"])


def _get_lead(session: Session, lead_id: int, tenant_id: str) -> Lead:
    row = session.get(Lead, lead_id)
    if not row or row.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Not found")
    return row


def _recent_duplicate(session: Session, phone: str, tenant_id: str) -> bool:
    minutes = int(config.settings.ANTI_SPAM_MINUTES)
    recent = session.exec(
        select(Lead)
        .where(Lead.phone == phone)
        .where(Lead.tenant_id == tenant_id)
        .order_by(col(Lead.created_at).desc())
        .limit(1)
    ).first()
    if not recent:
        return False
    return (utcnow() - as_utc(recent.created_at)) < timedelta(minutes=minutes)


@router.post("")
def create_lead(
    payload: LeadIn,
    session: Session = Depends(get_session),
    tenant_id: str = Depends(get_tenant_id),
):
    e164 = normalize_us_phone(payload.phone) if (payload.phone or "").strip() else None

    # same phone again within ANTI_SPAM_MINUTES: keep the record, don't queue a second outreach
    throttled = bool(e164) and _recent_duplicate(session, e164, tenant_id)
    if throttled:
        log.info("[THROTTLE] Not scheduling outreach for %s (within %sm) tenant=%s",
                 e164, config.settings.ANTI_SPAM_MINUTES, tenant_id)

    lead = Lead(
        tenant_id=tenant_id,
        source=(payload.source or "web_form").strip() or "web_form",
        name=(payload.name or "").strip(),
        phone=e164,
        email=(payload.email or "").strip() or None,
        notes=(payload.notes or "").strip() or None,
        street=payload.street,
        city=payload.city,
        state=payload.state,
        zip=(payload.zip or "").strip() or None,
        quality=payload.quality,
        status="new",
    )
    if not throttled:
        schedule_outreach(lead, sms=payload.schedule_sms, call=payload.schedule_call)
    session.add(lead)
    session.commit()
    session.refresh(lead)
    log.info("Lead %s created (tenant=%s source=%s)", lead.id, tenant_id, lead.source)

    result = None
    if payload.auto_assign:
        result = assignment.assign_lead(session, lead).to_dict()
        session.refresh(lead)

    return {"ok": True, "lead": lead.model_dump(mode="json"), "assignment": result, "throttled": throttled}


@router.get("")
def list_leads(
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(get_session),
    tenant_id: str = Depends(get_tenant_id),
):
    stmt = select(Lead).where(Lead.tenant_id == tenant_id)
    if status:
        if status not in LEAD_STATUSES:
            raise HTTPException(status_code=400, detail=f"status must be one of {list(LEAD_STATUSES)}")
        stmt = stmt.where(Lead.status == status)
    rows = session.exec(stmt.order_by(col(Lead.id).desc()).limit(limit)).all()
    return {"items": [r.model_dump(mode="json") for r in rows], "count": len(rows)}


@router.get("/{lead_id}")
def get_lead(
    lead_id: int,
    session: Session = Depends(get_session),
    tenant_id: str = Depends(get_tenant_id),
):
    return _get_lead(session, lead_id, tenant_id).model_dump(mode="json")


@router.post("/{lead_id}/assign")
def assign(
    lead_id: int,
    payload: AssignIn | None = None,
    session: Session = Depends(get_session),
    tenant_id: str = Depends(get_tenant_id),
):
    lead = _get_lead(session, lead_id, tenant_id)
    kind = payload.kind if payload else "internal"
    return assignment.assign_lead(session, lead, kind=kind).to_dict()


@router.post("/{lead_id}/return")
def return_lead(
    lead_id: int,
    payload: ReturnIn | None = None,
    session: Session = Depends(get_session),
    tenant_id: str = Depends(get_tenant_id),
):
    lead = _get_lead(session, lead_id, tenant_id)
    if lead.assigned_to is None:
        raise HTTPException(status_code=409, detail="Lead is not assigned")
    previous = lead.assigned_to
    return_to_pool(lead, reason=payload.reason if payload else None)
    session.add(lead)
    session.commit()
    log.info("Lead %s returned to pool by rep %s", lead_id, previous)
    return {"ok": True, "id": lead_id, "status": lead.status, "previous_assignee": previous}


@router.get("/{lead_id}/candidates")
def candidates(
    lead_id: int,
    kind: str = Query("internal", pattern="^(internal|subscriber)$"),
    session: Session = Depends(get_session),
    tenant_id: str = Depends(get_tenant_id),
):
    lead = _get_lead(session, lead_id, tenant_id)
    ranked = assignment.rank_candidates(session, lead, kind)
    return {"lead_id": lead_id, "has_coordinates": lead.lat is not None and lead.lng is not None,
            "candidates": [c.to_dict() for c in ranked]}
