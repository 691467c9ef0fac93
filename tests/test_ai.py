from types import SimpleNamespace

import anthropic
import httpx
import pytest

from leadflow import config
from leadflow.errors import AiOutputError, ConfigurationError
from leadflow.schemas import SmsAnalysis
from leadflow.services import ai


class FakeClaude:
    """Stands in for anthropic.Anthropic; records each messages.create call."""

    def __init__(self, text=None, error=None, block_type="text"):
        self.calls = []
        self._text = text
        self._error = error
        self._block_type = block_type
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        if self._error:
            raise self._error
        return SimpleNamespace(content=[SimpleNamespace(type=self._block_type, text=self._text)])


@pytest.fixture
def claude(monkeypatch):
    def install(**kw):
        fake = FakeClaude(**kw)
        monkeypatch.setattr(ai, "_client", lambda: fake)
        return fake
    return install


class TestDeterministic:
    @pytest.mark.parametrize("text", ["STOP", "stop please", "Unsubscribe", "take me off your list", "quit texting me"])
    def test_opt_out_detected(self, text):
        assert ai.check_opt_out(text)

    @pytest.mark.parametrize("text", ["Kitchen", "Next month", "", None])
    def test_not_opt_out(self, text):
        assert not ai.check_opt_out(text)

    def test_initial_message_uses_first_name(self, monkeypatch):
        monkeypatch.setattr(config.settings, "AGENT_NAME", "Riley")
        monkeypatch.setattr(config.settings, "BRAND_NAME", "Key Renovations")
        msg = ai.initial_message("Jamie Doe")
        assert msg.startswith("Hi Jamie! This is Riley from Key Renovations.")
        assert "kitchen, bathroom, flooring" in msg

    def test_initial_message_without_name(self):
        assert ai.initial_message(None).startswith("Hi there!")

    def test_reply_signals_end(self):
        assert ai.reply_signals_end("Thanks! Have a great day!")
        assert not ai.reply_signals_end("What is your timeline?")


class TestApiMessages:
    def test_prepends_user_turn_and_merges_roles(self):
        history = [
            {"role": "assistant", "content": "Hi!"},
            {"role": "user", "content": "Kitchen"},
            {"role": "user", "content": "and a bathroom"},
            {"role": "assistant", "content": "When?"},
        ]
        out = ai._to_api_messages(history)
        assert [m["role"] for m in out] == ["user", "assistant", "user", "assistant"]
        assert out[2]["content"] == "Kitchen\nand a bathroom"

    def test_skips_empty_entries(self):
        out = ai._to_api_messages([{"role": "user", "content": "  "}, {"role": "user", "content": "hi"}])
        assert out == [{"role": "user", "content": "hi"}]


class TestGenerateReply:
    def test_reply(self, claude):
        fake = claude(text="Great! Is this for your own home or a rental?")
        reply = ai.generate_sms_reply("Jamie", [{"role": "assistant", "content": "Hi"}, {"role": "user", "content": "Kitchen"}], {"notes": "budget 20k"})
        assert reply.message == "Great! Is this for your own home or a rental?"
        assert reply.should_end is False
        assert "Notes from form: budget 20k" in fake.calls[0]["system"]
        assert fake.calls[0]["model"] == config.settings.ANTHROPIC_MODEL

    def test_goodbye_ends(self, claude):
        claude(text="A specialist will call you. Have a great day!")
        assert ai.generate_sms_reply("Jamie", [{"role": "user", "content": "ok"}]).should_end is True

    @pytest.mark.parametrize("kw", [{"text": ""}, {"text": "x", "block_type": "tool_use"}])
    def test_unusable_output(self, claude, kw):
        claude(**kw)
        with pytest.raises(AiOutputError):
            ai.generate_sms_reply("Jamie", [{"role": "user", "content": "ok"}])

    def test_api_error_becomes_ai_output_error(self, claude):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        claude(error=anthropic.APIConnectionError(request=request))
        with pytest.raises(AiOutputError):
            ai.generate_sms_reply("Jamie", [{"role": "user", "content": "ok"}])

    def test_missing_key(self, monkeypatch):
        monkeypatch.setattr(config.settings, "ANTHROPIC_API_KEY", "")
        with pytest.raises(ConfigurationError):
            ai.generate_sms_reply("Jamie", [{"role": "user", "content": "ok"}])


class TestAnalysis:
    HISTORY = [
        {"role": "assistant", "content": "What project?"},
        {"role": "user", "content": "Kitchen, next month, my own house"},
    ]

    def test_camel_case_json(self, claude):
        fake = claude(text='{"conversationOutcome": "completed", "interestLevel": "High", "projectType": "kitchen", '
                           '"propertyType": "personal_home", "timeline": "next month", "removeFromList": false}')
        analysis = ai.analyze_conversation(self.HISTORY)
        assert analysis.conversation_outcome == "completed"
        assert analysis.interest_level == "high"
        assert analysis.timeline == "next month"
        assert analysis.remove_from_list is False
        assert "Customer: Kitchen, next month" in fake.calls[0]["messages"][0]["content"]

    def test_markdown_fences_stripped(self, claude):
        claude(text='```json\n{"conversationOutcome": "in_progress"}\n```')
        assert ai.analyze_conversation(self.HISTORY).conversation_outcome == "in_progress"

    @pytest.mark.parametrize("text", ["not json at all", "[1, 2, 3]", '{"timeline": ["soon", "later"]}'])
    def test_malformed_output(self, claude, text):
        claude(text=text)
        with pytest.raises(AiOutputError):
            ai.analyze_conversation(self.HISTORY)


class TestSmsAnalysisSchema:
    def test_unknown_values_dropped(self):
        a = SmsAnalysis.model_validate({"conversationOutcome": "sideways", "interestLevel": "ecstatic"})
        assert a.conversation_outcome is None
        assert a.interest_level is None

    def test_interest_normalized(self):
        assert SmsAnalysis.model_validate({"interestLevel": "Not Interested"}).interest_level == "not_interested"

    def test_snake_case_accepted(self):
        a = SmsAnalysis(remove_from_list=True, project_type="flooring")
        assert a.to_record()["remove_from_list"] is True
        assert a.to_record()["project_type"] == "flooring"
