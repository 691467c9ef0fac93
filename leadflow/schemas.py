# leadflow/schemas.py
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from leadflow.models import REP_ROLES

INTEREST_LEVELS = ("very_high", "high", "medium", "moderate", "low", "not_interested")


class LeadIn(BaseModel):
    name: str | None = None
    phone: str | None = None
    email: EmailStr | None = None
    notes: str | None = None
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    source: str = "web_form"
    quality: Literal["hot", "warm", "cold"] = "warm"
    schedule_sms: bool = True
    schedule_call: bool = True
    auto_assign: bool = True


class AssignIn(BaseModel):
    kind: Literal["internal", "subscriber"] = "internal"


class ReturnIn(BaseModel):
    reason: str | None = None


class RepIn(BaseModel):
    display_name: str
    email: EmailStr | None = None
    phone: str | None = None
    role: str = "sales_rep"
    status: Literal["active", "inactive"] = "active"
    base_zip_code: str | None = None
    base_lat: float | None = None
    base_lng: float | None = None
    service_radius_miles: int = Field(default=25, ge=1, le=500)

    @field_validator("role")
    @classmethod
    def _known_role(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in REP_ROLES:
            raise ValueError(f"role must be one of {list(REP_ROLES)}")
        return v


class RepUpdate(BaseModel):
    display_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    role: str | None = None
    status: Literal["active", "inactive"] | None = None
    base_zip_code: str | None = None
    service_radius_miles: int | None = Field(default=None, ge=1, le=500)

    @field_validator("role")
    @classmethod
    def _known_role(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        if v not in REP_ROLES:
            raise ValueError(f"role must be one of {list(REP_ROLES)}")
        return v


class SimulateReplyIn(BaseModel):
    conversation_id: int = Field(alias="conversationId")
    message: str = Field(min_length=1)
    send_real_sms: bool = Field(default=False, alias="sendRealSms")

    model_config = ConfigDict(populate_by_name=True)


class SmsAnalysis(BaseModel):
    """
    Structured read of an SMS conversation. The model answers in camelCase JSON;
    both spellings are accepted. Unknown enum values are dropped to None rather
    than trusted.
    """
    conversation_outcome: Optional[Literal["completed", "in_progress", "unresponsive", "opted_out"]] = Field(
        default=None, alias="conversationOutcome"
    )
    interest_level: Optional[str] = Field(default=None, alias="interestLevel")
    project_type: Optional[str] = Field(default=None, alias="projectType")
    property_type: Optional[str] = Field(default=None, alias="propertyType")
    timeline: Optional[str] = None
    project_description: Optional[str] = Field(default=None, alias="projectDescription")
    confirmed_contact_info: bool = Field(default=False, alias="confirmedContactInfo")
    requested_callback: bool = Field(default=False, alias="requestedCallback")
    remove_from_list: bool = Field(default=False, alias="removeFromList")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("conversation_outcome", mode="before")
    @classmethod
    def _outcome(cls, v):
        if v is None:
            return None
        v = str(v).strip().lower()
        return v if v in ("completed", "in_progress", "unresponsive", "opted_out") else None

    @field_validator("interest_level", mode="before")
    @classmethod
    def _interest(cls, v):
        if v is None:
            return None
        v = str(v).strip().lower().replace("-", "_").replace(" ", "_")
        return v if v in INTEREST_LEVELS else None

    @field_validator("confirmed_contact_info", "requested_callback", "remove_from_list", mode="before")
    @classmethod
    def _flag(cls, v):
        return bool(v) if v is not None else False

    def to_record(self) -> dict:
        return self.model_dump(exclude_none=False)
