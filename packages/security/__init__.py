from .pii import classify_field, detect_pii, mask_phone, redact_mapping, redact_value

__all__ = [
    "classify_field",
    "detect_pii",
    "mask_phone",
    "redact_value",
    "redact_mapping",
]
