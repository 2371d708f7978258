from packages.security import classify_field, detect_pii, mask_phone, redact_mapping


def test_classify_field_uses_name_before_value() -> None:
    assert classify_field("page_access_token", "EAAB") == "system_secret"
    assert classify_field("phone_number", "") == "contact_info"
    assert classify_field("full_name", "Asha") == "personal_identifier"
    assert classify_field("notes", "reach me at asha@example.com") == "contact_info"
    assert classify_field("budget", "50L") == "public"


def test_detect_pii_and_mask_phone() -> None:
    assert detect_pii("call +91 98765 43210") == {"contains_email": False, "contains_phone": True}
    assert mask_phone("+91 98765 43210") == "***3210"
    assert mask_phone("12") == "***"


def test_redact_mapping_scrubs_nested_lead_payloads() -> None:
    payload = {
        "leadgen_id": "444",
        "access_token": "secret",
        "field_data": [{"name": "email", "values": ["asha@example.com"]}],
        "contact": {"phone_number": "9876543210", "budget": "50L"},
        "comment": "ring 9876543210 after 6",
    }

    redacted = redact_mapping(payload)

    assert redacted["leadgen_id"] == "444"
    assert redacted["access_token"] == "[redacted-secret]"
    assert redacted["field_data"] == [{"name": "[redacted]", "values": ["[redacted-email]"]}]
    assert redacted["contact"] == {"phone_number": "[redacted]", "budget": "50L"}
    assert redacted["comment"] == "[redacted]"
