# leadflow/utils/phone.py
from typing import Optional

import phonenumbers
from fastapi import HTTPException


def to_e164(raw: Optional[str]) -> Optional[str]:
    """
    Normalize US/CA numbers to E.164 (+1XXXXXXXXXX).
    Returns None when the number can't be used (missing area code, garbage, etc.).
    """
    if not raw or not str(raw).strip():
        return None
    try:
        pn = phonenumbers.parse(str(raw).strip(), "US")
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_possible_number(pn) or not phonenumbers.is_valid_number(pn):
        return None
    return phonenumbers.format_number(pn, phonenumbers.PhoneNumberFormat.E164)


def normalize_us_phone(raw: str) -> str:
    """
    Same as to_e164 but for API input: raise 422 if invalid so the API returns a clean error.
    """
    e164 = to_e164(raw)
    if not e164:
        raise HTTPException(status_code=422, detail="Invalid phone number. Use format like +14055551234.")
    return e164
