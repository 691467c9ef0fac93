# leadflow/models.py
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; everything we store is UTC."""
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# ---------- Vocabularies ----------

LEAD_STATUSES = ("new", "assigned", "contacted", "qualified", "converted", "lost", "returned")

# statuses the outreach scheduler is allowed to work on
OUTREACH_ELIGIBLE_STATUSES = ("new", "assigned")

REP_ROLES = ("sales_rep", "subscriber", "installer", "service_tech", "pm", "admin")


# ---------- Core tables ----------


class Lead(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
    tenant_id: str = Field(default="public", index=True)
    source: str = Field(default="web_form", max_length=32)  # web_form | meta | google_ads | referral | ...

    # customer
    name: str = ""
    phone: Optional[str] = Field(default=None, index=True)
    email: Optional[str] = None
    notes: Optional[str] = None

    # address
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = Field(default=None, max_length=10)
    lat: Optional[float] = None
    lng: Optional[float] = None

    quality: str = Field(default="warm", max_length=8)
    status: str = Field(default="new", max_length=20, index=True)

    # assignment (owned by the assignment engine)
    assigned_to: Optional[int] = Field(default=None, index=True)
    assigned_type: Optional[str] = Field(default=None, max_length=16)  # internal | subscriber
    auto_assigned: bool = False
    auto_assigned_at: Optional[datetime] = None
    auto_assigned_distance: Optional[float] = None
    return_reason: Optional[str] = None
    returned_at: Optional[datetime] = None

    # voice outreach (attempt/due owned by the scheduler)
    scheduled_call_at: Optional[datetime] = Field(default=None, index=True)
    call_attempts: int = 0
    last_call_at: Optional[datetime] = None
    last_call_id: Optional[str] = None
    last_call_outcome: Optional[str] = None  # answered | voicemail | no_answer | busy | failed
    last_call_summary: Optional[str] = None
    last_call_transcript: Optional[str] = None
    last_call_recording_url: Optional[str] = None
    call_analysis: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    # sms outreach
    scheduled_sms_at: Optional[datetime] = Field(default=None, index=True)
    sms_attempts: int = 0
    last_sms_at: Optional[datetime] = None
    last_sms_conversation_id: Optional[int] = None
    last_sms_outcome: Optional[str] = None  # in_progress | completed | unresponsive | opted_out
    sms_message_count: int = 0
    sms_analysis: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    contacted_at: Optional[datetime] = None

    # Meta lead ads provenance
    facebook_leadgen_id: Optional[str] = Field(default=None, index=True)
    facebook_form_id: Optional[str] = None
    facebook_page_id: Optional[str] = None


class Representative(SQLModel, table=True):
    """A user who can be handed leads: internal sales reps or paying subscribers."""
    __tablename__ = "representative"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
    tenant_id: str = Field(default="public", index=True)

    display_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    role: str = Field(default="sales_rep", max_length=20, index=True)
    status: str = Field(default="active", max_length=16, index=True)  # active | inactive

    base_zip_code: Optional[str] = Field(default=None, max_length=10)
    base_lat: Optional[float] = None
    base_lng: Optional[float] = None
    service_radius_miles: int = 25


class SmsConversation(SQLModel, table=True):
    __tablename__ = "sms_conversation"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    lead_id: int = Field(foreign_key="lead.id", index=True)
    phone_number: str = Field(index=True)
    customer_name: str = ""

    status: str = Field(default="pending", max_length=16, index=True)
    messages: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    message_count: int = 0
    analysis: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    started_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None


class VoiceCall(SQLModel, table=True):
    __tablename__ = "voice_call"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    lead_id: int = Field(foreign_key="lead.id", index=True)
    provider_call_id: str = Field(index=True)
    phone_number: str
    customer_name: str = ""
    status: Optional[str] = None
    attempt: int = 1

    outcome: Optional[str] = None
    ended_reason: Optional[str] = None
    duration_seconds: Optional[float] = None
    summary: Optional[str] = None
    transcript: Optional[str] = None
    recording_url: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    completed_at: Optional[datetime] = None


# ---------- Idempotency helper ----------


class WebhookDedup(SQLModel, table=True):
    __tablename__ = "webhook_dedup"
    __table_args__ = (UniqueConstraint("source", "event_id", name="uq_webhook_source_event"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)
    source: str = Field(index=True)
    event_id: str = Field(index=True)
