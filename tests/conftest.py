"""
Shared fixtures. Environment is pinned before leadflow is imported so Settings
never picks up a developer's .env credentials.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TENANT_KEYS"] = '{"testkey": "acme", "otherkey": "globex"}'
os.environ["SMS_DRY_RUN"] = "true"
os.environ["PROVIDER_TIMEOUT_SECONDS"] = "5"
for _key in (
    "CRON_SECRET", "DEBUG_BEARER", "TWILIO_ACCOUNT_SID", "TWILIO_API_KEY", "TWILIO_AUTH_TOKEN",
    "TWILIO_MESSAGING_SERVICE_SID", "TWILIO_FROM", "GOOGLE_MAPS_API_KEY", "ANTHROPIC_API_KEY",
    "VAPI_API_KEY", "VAPI_PHONE_NUMBER_ID", "VAPI_ASSISTANT_ID", "VAPI_WEBHOOK_SECRET",
    "FB_APP_SECRET", "FB_WEBHOOK_VERIFY_TOKEN", "FB_PAGE_ACCESS_TOKEN",
):
    os.environ[_key] = ""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from leadflow import main
from leadflow.db import get_session
from leadflow.main import app
from leadflow.models import Lead, Representative, SmsConversation, utcnow
from leadflow.services import sms

API_HEADERS = {"X-API-Key": "testkey"}


@pytest.fixture(name="engine")
def engine_fixture():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="client")
def client_fixture(session):
    """Test client for FastAPI, bound to the per-test session."""

    def override_get_session():
        yield session

    app.dependency_overrides[get_session] = override_get_session
    main._RATE_COUNTS.clear()
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def sent_sms(monkeypatch):
    """Replace the Twilio sender; returns the list of (to, body) it was asked to send."""
    sent = []

    def fake_send(to, body):
        sent.append((to, body))
        return sms.SmsSendResult(success=True, message_sid=f"SM{len(sent):04d}")

    monkeypatch.setattr(sms, "send_sms", fake_send)
    return sent


@pytest.fixture
def make_lead(session):
    def _make(**kw):
        defaults = {"tenant_id": "acme", "name": "Jamie Doe", "phone": "+14055550123", "zip": "73012"}
        defaults.update(kw)
        lead = Lead(**defaults)
        session.add(lead)
        session.commit()
        session.refresh(lead)
        return lead
    return _make


@pytest.fixture
def make_rep(session):
    def _make(**kw):
        defaults = {"tenant_id": "acme", "display_name": "Rep", "role": "sales_rep", "status": "active"}
        defaults.update(kw)
        rep = Representative(**defaults)
        session.add(rep)
        session.commit()
        session.refresh(rep)
        return rep
    return _make


@pytest.fixture
def make_conversation(session):
    def _make(lead, messages=None, status="active", last_message_at=None):
        now = utcnow()
        if messages is None:
            messages = [{
                "role": "assistant",
                "content": "Hi Jamie! What type of project are you thinking about?",
                "timestamp": now.isoformat(),
                "message_sid": "SM0000",
                "status": "sent",
            }]
        conv = SmsConversation(
            lead_id=lead.id,
            phone_number=lead.phone,
            customer_name=lead.name,
            status=status,
            messages=messages,
            message_count=len(messages),
            started_at=now - timedelta(minutes=5),
            last_message_at=last_message_at or now,
        )
        session.add(conv)
        session.commit()
        session.refresh(conv)
        lead.last_sms_conversation_id = conv.id
        lead.last_sms_outcome = "in_progress"
        session.add(lead)
        session.commit()
        return conv
    return _make
