# leadflow/services/facebook.py
"""
Meta lead ads: signature check, leadgen payload parsing, lead creation.

A webhook only carries the leadgen id; the answers themselves come from the
Graph API when FB_PAGE_ACCESS_TOKEN is configured. Without it the lead is still
created (name "Facebook Lead", leadgen id in notes) so nothing is lost.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import requests
from sqlmodel import Session

from leadflow import config
from leadflow.db import dedupe_insert
from leadflow.models import Lead, utcnow
from leadflow.services import assignment
from leadflow.services.leads import schedule_outreach
from leadflow.utils.phone import to_e164

log = logging.getLogger(__name__)

GRAPH_URL = "https://graph.facebook.com/v19.0"


@dataclass
class LeadgenFields:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    notes: str = ""


def verify_signature(raw_body: bytes, header: Optional[str], secret: str) -> bool:
    """X-Hub-Signature-256: 'sha256=<hex hmac of the raw body>'."""
    if not (secret and header) or not header.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header[len("sha256="):].strip())


def leadgen_changes(body: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    if not isinstance(body, dict) or body.get("object") != "page":
        return
    for entry in body.get("entry") or []:
        for change in (entry or {}).get("changes") or []:
            if (change or {}).get("field") == "leadgen" and isinstance(change.get("value"), dict):
                yield change["value"]


def parse_field_data(field_data: Optional[List[Dict[str, Any]]]) -> LeadgenFields:
    out = LeadgenFields()
    notes = []
    for field in field_data or []:
        name = str(field.get("name") or "")
        values = field.get("values") or []
        value = str(values[0]).strip() if values else ""
        key = name.lower()
        if key in ("full_name", "name"):
            out.name = value or out.name
        elif key == "email":
            out.email = value or out.email
        elif key in ("phone_number", "phone"):
            out.phone = value or out.phone
        elif value:
            notes.append(f"{name}: {value}")
    out.notes = "\n".join(notes)
    return out


def fetch_field_data(leadgen_id: str) -> Optional[List[Dict[str, Any]]]:
    token = config.settings.FB_PAGE_ACCESS_TOKEN
    if not token:
        return None
    try:
        r = requests.get(f"{GRAPH_URL}/{leadgen_id}", params={"access_token": token}, timeout=10)
        r.raise_for_status()
        return (r.json() or {}).get("field_data")
    except (requests.RequestException, ValueError) as e:
        log.error("Graph API fetch failed for leadgen %s: %s", leadgen_id, e)
        return None


def create_lead_from_leadgen(session: Session, value: Dict[str, Any], now: Optional[datetime] = None) -> Optional[Lead]:
    """Returns the new lead, or None when the leadgen id is missing or already seen."""
    leadgen_id = str(value.get("leadgen_id") or "").strip()
    if not leadgen_id:
        log.warning("leadgen change without leadgen_id: %s", value)
        return None
    if not dedupe_insert(session, "facebook_leadgen", leadgen_id):
        log.info("Duplicate leadgen %s ignored", leadgen_id)
        return None

    now = now or utcnow()
    fields = parse_field_data(value.get("field_data") or fetch_field_data(leadgen_id))
    phone = to_e164(fields.phone)
    if fields.phone and not phone:
        log.warning("leadgen %s phone %r could not be normalized", leadgen_id, fields.phone)

    lead = Lead(
        tenant_id=config.settings.FB_TENANT_ID,
        source="meta",
        name=fields.name or "Facebook Lead",
        phone=phone,
        email=fields.email,
        notes=fields.notes or f"Facebook Lead ID: {leadgen_id}",
        quality="warm",
        status="new",
        facebook_leadgen_id=leadgen_id,
        facebook_form_id=str(value.get("form_id") or "") or None,
        facebook_page_id=str(value.get("page_id") or "") or None,
    )
    schedule_outreach(lead, now)
    session.add(lead)
    session.commit()
    session.refresh(lead)
    log.info("Created Facebook lead %s (leadgen %s)", lead.id, leadgen_id)

    assignment.assign_lead(session, lead, now=now)
    return lead
