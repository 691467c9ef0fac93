# leadflow/routers/reps.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, col, select

from leadflow.db import get_session
from leadflow.deps import get_tenant_id
from leadflow.models import Representative, utcnow
from leadflow.schemas import RepIn, RepUpdate
from leadflow.services.assignment import geocode_representative
from leadflow.utils.phone import normalize_us_phone

log = logging.getLogger(__name__)

router = APIRouter(prefix="/reps", tags=["reps"])


@router.post("")
def create_rep(
    payload: RepIn,
    session: Session = Depends(get_session),
    tenant_id: str = Depends(get_tenant_id),
):
    rep = Representative(
        tenant_id=tenant_id,
        display_name=payload.display_name.strip(),
        email=payload.email,
        phone=normalize_us_phone(payload.phone) if payload.phone else None,
        role=payload.role,
        status=payload.status,
        base_zip_code=(payload.base_zip_code or "").strip() or None,
        base_lat=payload.base_lat,
        base_lng=payload.base_lng,
        service_radius_miles=payload.service_radius_miles,
    )
    geocode_representative(rep)
    session.add(rep)
    session.commit()
    session.refresh(rep)
    log.info("Rep %s created (tenant=%s role=%s)", rep.id, tenant_id, rep.role)
    return rep.model_dump(mode="json")


@router.get("")
def list_reps(
    role: str | None = Query(None),
    status: str | None = Query(None),
    session: Session = Depends(get_session),
    tenant_id: str = Depends(get_tenant_id),
):
    stmt = select(Representative).where(Representative.tenant_id == tenant_id)
    if role:
        stmt = stmt.where(Representative.role == role)
    if status:
        stmt = stmt.where(Representative.status == status)
    rows = session.exec(stmt.order_by(col(Representative.id))).all()
    return {"items": [r.model_dump(mode="json") for r in rows], "count": len(rows)}


@router.patch("/{rep_id}")
def update_rep(
    rep_id: int,
    payload: RepUpdate,
    session: Session = Depends(get_session),
    tenant_id: str = Depends(get_tenant_id),
):
    rep = session.get(Representative, rep_id)
    if not rep or rep.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Not found")

    previous_zip = rep.base_zip_code
    changes = payload.model_dump(exclude_unset=True)
    if "phone" in changes and changes["phone"]:
        changes["phone"] = normalize_us_phone(changes["phone"])
    if "base_zip_code" in changes:
        changes["base_zip_code"] = (changes["base_zip_code"] or "").strip() or None
    for key, value in changes.items():
        setattr(rep, key, value)
    rep.updated_at = utcnow()

    if "base_zip_code" in changes:
        if rep.base_zip_code is None:
            rep.base_lat = rep.base_lng = None
        else:
            geocode_representative(rep, previous_zip=previous_zip or "")

    session.add(rep)
    session.commit()
    session.refresh(rep)
    return rep.model_dump(mode="json")
