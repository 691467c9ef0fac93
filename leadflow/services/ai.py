# leadflow/services/ai.py
"""
Claude-backed SMS assistant.

generate_sms_reply() and analyze_conversation() are the only two calls that
leave the process; both raise AiOutputError on any API failure or unusable
output so callers can keep conversation state intact and retry later.
Opt-out detection and the initial outreach copy are deterministic and never
touch the API.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import anthropic
from pydantic import ValidationError

from leadflow import config
from leadflow.errors import AiOutputError, ConfigurationError
from leadflow.schemas import SmsAnalysis

log = logging.getLogger(__name__)

OPT_OUT_PHRASES = (
    "stop",
    "unsubscribe",
    "remove me",
    "take me off",
    "opt out",
    "leave me alone",
    "dont text",
    "don't text",
    "no more",
    "quit texting",
)

OPT_OUT_CONFIRMATION = "You've been removed from our list. We won't text you again. Have a great day!"

# farewell-style phrasing in our own reply means the assistant is wrapping up
END_PHRASES = ("have a great day", "talk soon", "goodbye", "removed from", "opted out")

REPLY_MAX_TOKENS = 300
ANALYSIS_MAX_TOKENS = 500


def _sms_system_prompt() -> str:
    s = config.settings
    return f"""You are {s.AGENT_NAME}, a friendly text message assistant texting on behalf of {s.BRAND_NAME}.

SMS rules:
- Keep messages short (under 160 characters when possible, never over 300)
- Be conversational and warm, never robotic or scripted
- Ask ONE question at a time

About {s.BRAND_NAME}:
- Cost-effective home and rental property renovations in the Oklahoma City area
- Kitchens, bathrooms, flooring and general renovations
- FREE quotes and in-home consultations

Gather these one at a time:
1. Confirm you're texting the right person
2. What type of project they're interested in
3. Whether it's their own home or a rental property
4. A brief idea of what they want done
5. Their timeline
6. Let them know a specialist will reach out for a FREE consultation

If they want to stop or be removed, respect that immediately and say goodbye politely.
If they seem busy or uninterested, offer to text back at a better time."""


ANALYSIS_PROMPT = """Analyze this SMS conversation and extract the following. Return ONLY valid JSON, no markdown or explanation.

{
  "conversationOutcome": "completed" | "in_progress" | "unresponsive" | "opted_out",
  "interestLevel": "high" | "medium" | "low" | "not_interested" | null,
  "projectType": "kitchen" | "bathroom" | "flooring" | "exterior" | "other" | null,
  "propertyType": "personal_home" | "rental_property" | "commercial" | null,
  "timeline": string or null,
  "projectDescription": string or null,
  "confirmedContactInfo": boolean,
  "requestedCallback": boolean,
  "removeFromList": boolean
}

Use null for anything not discussed or unclear. Only mark "completed" when at least the project type and timeline are known."""


@dataclass
class AiReply:
    message: str
    should_end: bool


def check_opt_out(text: Optional[str]) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in OPT_OUT_PHRASES)


def initial_message(customer_name: Optional[str]) -> str:
    first = ((customer_name or "").strip().split(" ")[0]) or "there"
    s = config.settings
    return (
        f"Hi {first}! This is {s.AGENT_NAME} from {s.BRAND_NAME}. Thanks for your interest in our services! "
        "What type of project are you thinking about? (kitchen, bathroom, flooring, or something else?)"
    )


def reply_signals_end(text: str) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in END_PHRASES)


def _client() -> anthropic.Anthropic:
    api_key = config.settings.ANTHROPIC_API_KEY
    if not api_key:
        raise ConfigurationError("ANTHROPIC_API_KEY is not set")
    return anthropic.Anthropic(api_key=api_key)


def _to_api_messages(history: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """
    Map the stored log onto the Messages API: first turn must be the user's and
    consecutive entries with the same role are merged.
    """
    out: List[Dict[str, str]] = []
    for entry in history:
        role = "assistant" if entry.get("role") == "assistant" else "user"
        content = str(entry.get("content") or "").strip()
        if not content:
            continue
        if out and out[-1]["role"] == role:
            out[-1]["content"] += "\n" + content
        else:
            out.append({"role": role, "content": content})
    if not out or out[0]["role"] != "user":
        out.insert(0, {"role": "user", "content": "(The customer submitted an inquiry form.)"})
    return out


def _response_text(response: Any) -> str:
    blocks = getattr(response, "content", None) or []
    if not blocks or getattr(blocks[0], "type", None) != "text":
        raise AiOutputError("Unexpected response type from Claude")
    text = (blocks[0].text or "").strip()
    if not text:
        raise AiOutputError("Claude returned an empty message")
    return text


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1]) if lines[-1].strip().startswith("```") else "\n".join(lines[1:])
    return text.strip()


def generate_sms_reply(
    customer_name: str,
    history: List[Dict[str, Any]],
    context: Optional[Dict[str, Any]] = None,
) -> AiReply:
    context_info = f"Customer Name: {customer_name}"
    notes = (context or {}).get("notes")
    if notes:
        context_info += f"\nNotes from form: {notes}"

    try:
        response = _client().messages.create(
            model=config.settings.ANTHROPIC_MODEL,
            max_tokens=REPLY_MAX_TOKENS,
            system=f"{_sms_system_prompt()}\n\nCurrent context:\n{context_info}",
            messages=_to_api_messages(history),
        )
    except anthropic.APIError as e:
        log.error("Error calling Claude for SMS reply: %s", e)
        raise AiOutputError(f"reply generation failed: {e}") from e

    text = _response_text(response)
    return AiReply(message=text, should_end=reply_signals_end(text))


def analyze_conversation(history: List[Dict[str, Any]]) -> SmsAnalysis:
    agent = config.settings.AGENT_NAME
    transcript = "\n".join(
        f"{agent if m.get('role') == 'assistant' else 'Customer'}: {m.get('content', '')}"
        for m in history
    )

    try:
        response = _client().messages.create(
            model=config.settings.ANTHROPIC_MODEL,
            max_tokens=ANALYSIS_MAX_TOKENS,
            system="You are a data extraction assistant. Extract structured data from conversations. Return only valid JSON.",
            messages=[{"role": "user", "content": f"{ANALYSIS_PROMPT}\n\nConversation:\n{transcript}"}],
        )
    except anthropic.APIError as e:
        log.error("Error calling Claude for conversation analysis: %s", e)
        raise AiOutputError(f"analysis failed: {e}") from e

    text = _strip_fences(_response_text(response))
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        log.error("Failed to parse Claude analysis as JSON: %s\nResponse: %s", e, text[:500])
        raise AiOutputError("analysis was not valid JSON") from e
    if not isinstance(data, dict):
        raise AiOutputError("analysis JSON was not an object")

    try:
        return SmsAnalysis.model_validate(data)
    except ValidationError as e:
        log.error("Claude analysis failed validation: %s", e)
        raise AiOutputError("analysis failed validation") from e
