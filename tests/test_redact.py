from __future__ import annotations

from pyupark._redact import mask_phone, redact_for_log


def test_redact_for_log_masks_phone_and_payment_ids() -> None:
    payload = {
        "slotNumber": 3,
        "reservedBy": "9990001111",
        "paymentId": "PAY_1700000000000_abc123xyz",
        "nested": {"userPhone": "9990002222", "token": "secret"},
    }

    redacted = redact_for_log(payload)
    assert redacted["slotNumber"] == 3
    assert redacted["reservedBy"] == "******1111"
    assert redacted["paymentId"] == "<redacted>"
    assert redacted["nested"]["userPhone"] == "******2222"
    assert redacted["nested"]["token"] == "<redacted>"


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_mask_phone_short_values() -> None:
    assert mask_phone("123") == "***"
    assert mask_phone(None) is None
