# leadflow/services/assignment.py
"""
Nearest-representative auto-assignment.

assign_lead() is safe to call more than once for the same lead: a lead that
already has an assignee is left alone, and the final write is conditional on
assigned_to still being NULL so two concurrent runs cannot both assign.
"""
import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlmodel import Session, col, select

from leadflow.models import Lead, Representative, utcnow
from leadflow.services import distance, geocoding
from leadflow.services.leads import can_transition

log = logging.getLogger(__name__)

# assignment kind -> representative role that can receive it
KIND_ROLES = {
    "internal": "sales_rep",
    "subscriber": "subscriber",
}

_ZIP5 = re.compile(r"^\d{5}$")


@dataclass
class RepCandidate:
    rep_id: int
    display_name: str
    distance_miles: float
    distance_label: str
    score: int
    within_radius: bool
    category: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AssignmentResult:
    status: str  # assigned | unassigned | already_assigned
    lead_id: Optional[int]
    rep_id: Optional[int] = None
    distance_miles: Optional[float] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _role_for(kind: str) -> str:
    try:
        return KIND_ROLES[kind]
    except KeyError:
        raise ValueError(f"unknown assignment kind {kind!r}")


def eligible_representatives(session: Session, tenant_id: str, kind: str = "internal") -> List[Representative]:
    stmt = (
        select(Representative)
        .where(Representative.tenant_id == tenant_id)
        .where(Representative.role == _role_for(kind))
        .where(Representative.status == "active")
        .where(col(Representative.base_lat).is_not(None))
        .where(col(Representative.base_lng).is_not(None))
        .order_by(Representative.id)
    )
    return list(session.exec(stmt).all())


def rank_candidates(session: Session, lead: Lead, kind: str = "internal") -> List[RepCandidate]:
    """Eligible reps for the lead's tenant, nearest first. Empty when the lead has no coordinates."""
    if lead.lat is None or lead.lng is None:
        return []

    measured = [
        (distance.distance_miles((lead.lat, lead.lng), (rep.base_lat, rep.base_lng)), rep)
        for rep in eligible_representatives(session, lead.tenant_id, kind)
    ]
    # stable sort on the unrounded distance: ties keep id order, so the first seen wins
    measured.sort(key=lambda pair: pair[0])

    ranked = []
    for d, rep in measured:
        radius = rep.service_radius_miles or 25
        ranked.append(
            RepCandidate(
                rep_id=rep.id,
                display_name=rep.display_name,
                distance_miles=distance.round_miles(d),
                distance_label=distance.format_distance(d),
                score=distance.distance_score(d, radius),
                within_radius=distance.within_service_radius(d, radius),
                category=distance.distance_category(d)["label"],
            )
        )
    return ranked


def _ensure_coordinates(session: Session, lead: Lead, now: datetime) -> bool:
    if lead.lat is not None and lead.lng is not None:
        return True

    coords = geocoding.geocode_lead(lead)
    if not coords:
        log.info("Lead %s has no coordinates and could not be geocoded (zip=%r)", lead.id, lead.zip)
        return False

    # persisted even if no rep ends up matching
    lead.lat, lead.lng = coords.lat, coords.lng
    lead.updated_at = now
    session.add(lead)
    session.commit()
    session.refresh(lead)
    log.info("Geocoded lead %s to %s, %s", lead.id, lead.lat, lead.lng)
    return True


def assign_lead(
    session: Session,
    lead: Lead,
    kind: str = "internal",
    now: Optional[datetime] = None,
) -> AssignmentResult:
    now = now or utcnow()

    if lead.assigned_to is not None:
        return AssignmentResult(status="already_assigned", lead_id=lead.id, rep_id=lead.assigned_to)

    if not _ensure_coordinates(session, lead, now):
        return AssignmentResult(status="unassigned", lead_id=lead.id, reason="no_coordinates")

    candidates = rank_candidates(session, lead, kind)
    if not candidates:
        log.info("No eligible %s representatives for lead %s (tenant=%s)", kind, lead.id, lead.tenant_id)
        return AssignmentResult(status="unassigned", lead_id=lead.id, reason="no_candidates")

    best = candidates[0]
    values = {
        "assigned_to": best.rep_id,
        "assigned_type": kind,
        "auto_assigned": True,
        "auto_assigned_at": now,
        "auto_assigned_distance": best.distance_miles,
        "updated_at": now,
    }
    if can_transition(lead.status, "assigned"):
        values["status"] = "assigned"

    stmt = (
        update(Lead)
        .where(col(Lead.id) == lead.id)
        .where(col(Lead.assigned_to).is_(None))
        .values(**values)
    )
    result = session.exec(stmt)  # type: ignore[call-overload]
    session.commit()
    session.refresh(lead)

    if result.rowcount != 1:
        log.info("Lead %s was assigned concurrently to %s; leaving it", lead.id, lead.assigned_to)
        return AssignmentResult(status="already_assigned", lead_id=lead.id, rep_id=lead.assigned_to)

    log.info(
        "Auto-assigned lead %s to rep %s (%s) - %s",
        lead.id, best.rep_id, best.display_name, best.distance_label,
    )
    return AssignmentResult(
        status="assigned",
        lead_id=lead.id,
        rep_id=best.rep_id,
        distance_miles=best.distance_miles,
    )


def geocode_representative(rep: Representative, previous_zip: Optional[str] = None) -> bool:
    """
    Derive base_lat/base_lng from a 5-digit base_zip_code when coordinates are
    missing or the zip changed. Returns True when coordinates were updated.
    """
    zip_code = (rep.base_zip_code or "").strip()
    if not _ZIP5.match(zip_code):
        return False

    zip_changed = previous_zip is not None and previous_zip.strip() != zip_code
    has_coords = rep.base_lat is not None and rep.base_lng is not None
    if has_coords and not zip_changed:
        return False

    coords = geocoding.geocode_zip(zip_code)
    if not coords:
        log.warning("Could not geocode base zip %s for rep %s", zip_code, rep.id)
        return False

    rep.base_lat, rep.base_lng = coords.lat, coords.lng
    rep.updated_at = utcnow()
    log.info("Geocoded rep %s base zip %s -> %s, %s", rep.id, zip_code, coords.lat, coords.lng)
    return True
