# leadflow/services/leads.py
"""
Lead lifecycle rules shared by the assignment engine, the outreach scheduler
and the conversation state machine.

Status only moves forward along new -> assigned -> contacted -> qualified -> converted.
Any status may drop to "lost". "returned" is reachable only through return_to_pool().
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from leadflow import config
from leadflow.models import Lead, utcnow

log = logging.getLogger(__name__)

STATUS_ORDER = ("new", "assigned", "contacted", "qualified", "converted")

# AI interest level -> lead quality
INTEREST_TO_QUALITY = {
    "very_high": "hot",
    "high": "hot",
    "medium": "warm",
    "moderate": "warm",
    "low": "cold",
    "not_interested": "cold",
}


def can_transition(current: Optional[str], target: str) -> bool:
    if target == "lost":
        return current != "lost"
    if target == "returned":
        return False
    if current == "returned":
        # a returned lead re-enters the funnel as new/assigned
        return target in ("new", "assigned")
    if current not in STATUS_ORDER or target not in STATUS_ORDER:
        return False
    return STATUS_ORDER.index(target) > STATUS_ORDER.index(current)


def advance_status(lead: Lead, target: str) -> bool:
    """Set lead.status = target when that is a forward move. Returns whether it changed."""
    if not can_transition(lead.status, target):
        return False
    log.debug("Lead %s status %s -> %s", lead.id, lead.status, target)
    lead.status = target
    lead.updated_at = utcnow()
    return True


def return_to_pool(lead: Lead, reason: Optional[str] = None, now: Optional[datetime] = None) -> None:
    """Explicit return: clears the assignee so the assignment engine may pick the lead up again."""
    now = now or utcnow()
    lead.status = "returned"
    lead.assigned_to = None
    lead.assigned_type = None
    lead.auto_assigned = False
    lead.return_reason = (reason or "").strip() or None
    lead.returned_at = now
    lead.updated_at = now


def schedule_outreach(lead: Lead, now: Optional[datetime] = None, sms: bool = True, call: bool = True) -> None:
    """New leads with a phone get their first SMS/voice attempt queued for the scheduler."""
    if not (lead.phone or "").strip():
        return
    now = now or utcnow()
    s = config.settings
    if sms:
        lead.scheduled_sms_at = now + timedelta(minutes=s.SMS_INITIAL_DELAY_MINUTES)
    if call:
        lead.scheduled_call_at = now + timedelta(minutes=s.CALL_INITIAL_DELAY_MINUTES)


def quality_from_interest(interest_level: Optional[str]) -> Optional[str]:
    if not interest_level:
        return None
    return INTEREST_TO_QUALITY.get(str(interest_level).strip().lower())
