from __future__ import annotations

import re
from typing import Any

_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE_RE = re.compile(r"\+?\d[\d\s().-]{6,18}\d")
_SECRET_KEY_RE = re.compile(r"(?:access|refresh|api|secret|verify)[_-]?(?:key|token)|password|token$", re.IGNORECASE)


_FIELD_CATEGORY_MAP: dict[str, str] = {
    "email": "contact_info",
    "phone": "contact_info",
    "mobile": "contact_info",
    "contact": "contact_info",
    "whatsapp": "contact_info",
    "address": "personal_identifier",
    "city": "personal_identifier",
    "zip": "personal_identifier",
    "postal": "personal_identifier",
    "name": "personal_identifier",
    "dob": "personal_identifier",
    "date_of_birth": "personal_identifier",
}


def classify_field(field_name: str, value: Any) -> str:
    normalized = field_name.strip().lower()
    if _SECRET_KEY_RE.search(normalized):
        return "system_secret"
    for key, category in _FIELD_CATEGORY_MAP.items():
        if key in normalized:
            return category

    if isinstance(value, str):
        pii = detect_pii(value)
        if pii["contains_email"] or pii["contains_phone"]:
            return "contact_info"

    return "public"


def detect_pii(text: str) -> dict[str, bool]:
    return {
        "contains_email": bool(_EMAIL_RE.search(text)),
        "contains_phone": bool(_PHONE_RE.search(text)),
    }


def mask_phone(value: str) -> str:
    digits = re.sub(r"\D", "", value or "")
    if len(digits) < 5:
        return "***"
    return f"***{digits[-4:]}"


def redact_value(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    redacted = _EMAIL_RE.sub("[redacted-email]", value)
    return _PHONE_RE.sub("[redacted-phone]", redacted)


def redact_mapping(payload: dict[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in payload.items():
        category = classify_field(key, value)
        if category == "system_secret":
            sanitized[key] = "[redacted-secret]"
            continue
        if isinstance(value, dict):
            sanitized[key] = redact_mapping(value)
            continue
        if isinstance(value, list):
            sanitized[key] = [redact_mapping(item) if isinstance(item, dict) else redact_value(item) for item in value]
            continue
        if category in {"contact_info", "personal_identifier"} and isinstance(value, str) and value:
            sanitized[key] = "[redacted]"
            continue
        sanitized[key] = redact_value(value)
    return sanitized
