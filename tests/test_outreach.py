import time
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlmodel import col, select

from leadflow import config
from leadflow.errors import VoiceProviderError
from leadflow.models import Lead, SmsConversation, VoiceCall, as_utc, utcnow
from leadflow.services import outreach, sms, voice


@pytest.fixture
def now():
    return utcnow()


def _due(now, minutes=5):
    return now - timedelta(minutes=minutes)


class TestSmsOutreach:
    def test_success_starts_conversation(self, session, make_lead, sent_sms, now):
        lead = make_lead(scheduled_sms_at=_due(now))

        batch = outreach.run_due_outreach(session, "sms", now=now)

        assert batch.processed == 1
        item = batch.results[0]
        assert item.status == "sent" and item.success and item.attempt == 1
        assert len(sent_sms) == 1
        to, body = sent_sms[0]
        assert to == "+14055550123"
        assert body.startswith("Hi Jamie!")

        session.refresh(lead)
        assert lead.sms_attempts == 1
        assert lead.scheduled_sms_at is None
        assert lead.last_sms_outcome == "in_progress"
        assert lead.sms_message_count == 1

        conv = session.get(SmsConversation, lead.last_sms_conversation_id)
        assert conv.status == "active"
        assert conv.message_count == len(conv.messages) == 1
        assert conv.messages[0]["role"] == "assistant"
        assert conv.messages[0]["status"] == "sent"
        assert conv.messages[0]["message_sid"] == "SM0001"

    def test_missing_phone_exits_without_attempt(self, session, make_lead, sent_sms, now):
        lead = make_lead(phone=None, scheduled_sms_at=_due(now))
        batch = outreach.run_due_outreach(session, "sms", now=now)
        assert batch.results[0].status == "exited"
        assert batch.results[0].reason == "No phone number"
        session.refresh(lead)
        assert lead.sms_attempts == 0
        assert lead.scheduled_sms_at is None
        assert sent_sms == []

    def test_invalid_phone_exits(self, session, make_lead, sent_sms, now):
        make_lead(phone="12", scheduled_sms_at=_due(now))
        batch = outreach.run_due_outreach(session, "sms", now=now)
        assert batch.results[0].reason == "Invalid phone number"
        assert sent_sms == []

    def test_max_attempts_exits(self, session, make_lead, sent_sms, now):
        lead = make_lead(sms_attempts=3, scheduled_sms_at=_due(now))
        batch = outreach.run_due_outreach(session, "sms", now=now)
        assert batch.results[0].reason == "Max attempts reached"
        session.refresh(lead)
        assert lead.sms_attempts == 3
        assert lead.scheduled_sms_at is None
        assert sent_sms == []

    @pytest.mark.parametrize("fields", [
        {"last_sms_outcome": "opted_out"},
        {"sms_analysis": {"remove_from_list": True}},
    ])
    def test_opted_out_exits(self, session, make_lead, sent_sms, now, fields):
        make_lead(scheduled_sms_at=_due(now), **fields)
        batch = outreach.run_due_outreach(session, "sms", now=now)
        assert batch.results[0].status == "exited"
        assert batch.results[0].reason == "Lead opted out"
        assert sent_sms == []

    def test_failure_reschedules_an_hour_out(self, session, make_lead, monkeypatch, now):
        monkeypatch.setattr(sms, "send_sms", lambda to, body: sms.SmsSendResult(success=False, error="carrier rejected"))
        lead = make_lead(scheduled_sms_at=_due(now))

        batch = outreach.run_due_outreach(session, "sms", now=now)

        item = batch.results[0]
        assert item.status == "failed"
        assert item.attempt == 1
        assert "carrier rejected" in item.error
        session.refresh(lead)
        assert lead.sms_attempts == 1
        assert as_utc(lead.scheduled_sms_at) == now + timedelta(minutes=60)
        assert lead.last_sms_conversation_id is None
        assert session.exec(select(SmsConversation)).all() == []

    def test_final_failed_attempt_is_not_rescheduled(self, session, make_lead, monkeypatch, now):
        monkeypatch.setattr(sms, "send_sms", lambda to, body: sms.SmsSendResult(success=False, error="nope"))
        lead = make_lead(sms_attempts=2, scheduled_sms_at=_due(now))
        batch = outreach.run_due_outreach(session, "sms", now=now)
        assert batch.results[0].attempt == 3
        assert batch.results[0].retry_at is None
        session.refresh(lead)
        assert lead.sms_attempts == 3
        assert lead.scheduled_sms_at is None

    def test_provider_timeout_counts_as_failure(self, session, make_lead, monkeypatch, now):
        monkeypatch.setattr(config.settings, "PROVIDER_TIMEOUT_SECONDS", 0.05)

        def slow_send(to, body):
            time.sleep(0.5)
            return sms.SmsSendResult(success=True, message_sid="SMlate")

        monkeypatch.setattr(sms, "send_sms", slow_send)
        lead = make_lead(scheduled_sms_at=_due(now))

        batch = outreach.run_due_outreach(session, "sms", now=now)

        assert batch.results[0].status == "failed"
        assert "timed out" in batch.results[0].error
        session.refresh(lead)
        assert lead.sms_attempts == 1
        assert lead.scheduled_sms_at is not None

    def test_sent_but_unsaved_is_not_resent(self, session, make_lead, sent_sms, monkeypatch, now):
        def db_down(**kwargs):
            raise RuntimeError("database write failed")

        monkeypatch.setattr(outreach, "SmsConversation", db_down)
        lead = make_lead(scheduled_sms_at=_due(now))

        batch = outreach.run_due_outreach(session, "sms", now=now)

        item = batch.results[0]
        assert item.status == "failed"
        assert item.retry_at is None
        assert "sent but not saved" in item.error
        assert len(sent_sms) == 1
        session.refresh(lead)
        assert lead.sms_attempts == 1
        assert lead.scheduled_sms_at is None
        assert lead.last_sms_outcome == "in_progress"

        # even if something reschedules it, the lead exits instead of getting a second opener
        lead.scheduled_sms_at = now
        session.add(lead)
        session.commit()
        again = outreach.run_due_outreach(session, "sms", now=now + timedelta(hours=2))
        assert again.results[0].status == "exited"
        assert len(sent_sms) == 1

    def test_one_failure_does_not_abort_the_batch(self, session, make_lead, monkeypatch, now):
        sent = []

        def flaky_send(to, body):
            if to.endswith("0101"):
                raise RuntimeError("socket closed")
            sent.append(to)
            return sms.SmsSendResult(success=True, message_sid="SMok")

        monkeypatch.setattr(sms, "send_sms", flaky_send)
        bad = make_lead(phone="+14055550101", scheduled_sms_at=_due(now, 10))
        good = make_lead(phone="+14055550102", scheduled_sms_at=_due(now, 5))

        batch = outreach.run_due_outreach(session, "sms", now=now)

        assert batch.processed == 2
        assert [r.lead_id for r in batch.results] == [bad.id, good.id]
        assert [r.status for r in batch.results] == ["failed", "sent"]
        assert sent == ["+14055550102"]
        assert batch.to_dict()["sent"] == 1 and batch.to_dict()["failed"] == 1

    def test_only_due_and_eligible_leads_are_selected(self, session, make_lead, sent_sms, now):
        make_lead(status="contacted", scheduled_sms_at=_due(now))
        make_lead(scheduled_sms_at=now + timedelta(minutes=30))
        make_lead(scheduled_sms_at=None)

        batch = outreach.run_due_outreach(session, "sms", now=now)

        assert batch.processed == 0
        assert batch.message == "No sms outreach due"
        assert sent_sms == []

    def test_lost_claim_is_skipped(self, session, make_lead, sent_sms, now):
        lead = make_lead(scheduled_sms_at=_due(now))
        chan = outreach.get_channel("sms")
        # another run claimed it after our copy was loaded
        session.exec(
            update(Lead)
            .where(col(Lead.id) == lead.id)
            .values(sms_attempts=1, scheduled_sms_at=None)
            .execution_options(synchronize_session=False)
        )

        item = outreach.process_lead(session, chan, lead.id, now)

        assert item.status == "skipped"
        assert sent_sms == []


class TestVoiceOutreach:
    def test_disabled_is_a_no_op(self, session, make_lead, monkeypatch, now):
        monkeypatch.setattr(config.settings, "ENABLE_VOICE_AUTO_CALLS", False)
        make_lead(scheduled_call_at=_due(now))
        batch = outreach.run_due_outreach(session, "voice", now=now)
        assert batch.processed == 0
        assert batch.message == "Voice auto-calls are disabled"

    def test_third_failed_call_ends_outreach(self, session, make_lead, monkeypatch, now):
        monkeypatch.setattr(config.settings, "ENABLE_VOICE_AUTO_CALLS", True)

        def fail(to, name, metadata=None):
            raise VoiceProviderError("Vapi returned 500")

        monkeypatch.setattr(voice, "create_outbound_call", fail)
        lead = make_lead(call_attempts=2, scheduled_call_at=_due(now))

        batch = outreach.run_due_outreach(session, "voice", now=now)

        assert batch.results[0].status == "failed"
        assert batch.results[0].attempt == 3
        session.refresh(lead)
        assert lead.call_attempts == 3
        assert lead.scheduled_call_at is None

    def test_placed_call_is_recorded(self, session, make_lead, monkeypatch, now):
        monkeypatch.setattr(config.settings, "ENABLE_VOICE_AUTO_CALLS", True)
        seen = {}

        def place(to, name, metadata=None):
            seen.update(to=to, name=name, metadata=metadata)
            return voice.VoiceCallResult(id="call_123", status="queued")

        monkeypatch.setattr(voice, "create_outbound_call", place)
        lead = make_lead(scheduled_call_at=_due(now))

        batch = outreach.run_due_outreach(session, "voice", now=now)

        assert batch.results[0].provider_id == "call_123"
        assert seen["metadata"] == {"lead_id": lead.id, "attempt": 1}
        session.refresh(lead)
        assert lead.call_attempts == 1
        assert lead.last_call_id == "call_123"
        call = session.exec(select(VoiceCall)).one()
        assert call.lead_id == lead.id and call.attempt == 1

    def test_answered_call_exits(self, session, make_lead, monkeypatch, now):
        monkeypatch.setattr(config.settings, "ENABLE_VOICE_AUTO_CALLS", True)
        make_lead(last_call_outcome="answered", call_attempts=1, scheduled_call_at=_due(now))
        batch = outreach.run_due_outreach(session, "voice", now=now)
        assert batch.results[0].status == "exited"


def test_unknown_channel():
    with pytest.raises(ValueError):
        outreach.get_channel("fax")


class TestCloseStale:
    def _assistant(self, text="Still interested?"):
        return {"role": "assistant", "content": text, "timestamp": "", "message_sid": None, "status": "sent"}

    def _user(self, text="yes"):
        return {"role": "user", "content": text, "timestamp": "", "message_sid": None, "status": "received"}

    def test_closes_idle_conversations_waiting_on_customer(self, session, make_lead, make_conversation, now):
        idle = now - timedelta(hours=49)
        waiting_lead = make_lead(phone="+14055550111")
        waiting = make_conversation(waiting_lead, last_message_at=idle)
        answered = make_conversation(
            make_lead(phone="+14055550112"),
            messages=[self._assistant(), self._user()],
            last_message_at=idle,
        )
        fresh = make_conversation(make_lead(phone="+14055550113"))

        out = outreach.close_stale_conversations(session, now=now)

        assert out == {"closed": 1, "conversation_ids": [waiting.id]}
        session.refresh(waiting)
        session.refresh(answered)
        session.refresh(fresh)
        assert waiting.status == "unresponsive"
        assert answered.status == "active"
        assert fresh.status == "active"
        session.refresh(waiting_lead)
        assert waiting_lead.last_sms_outcome == "unresponsive"

    def test_idle_hours_override(self, session, make_lead, make_conversation, now):
        conv = make_conversation(make_lead(), last_message_at=now - timedelta(hours=3))
        assert outreach.close_stale_conversations(session, idle_hours=48, now=now)["closed"] == 0
        assert outreach.close_stale_conversations(session, idle_hours=2, now=now)["conversation_ids"] == [conv.id]
