# tests/test_tracking.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from app.core.tracking import (
    compute_fingerprint,
    generate_tracking_code,
    normalize_tracking_code,
    parse_user_agent,
    validate_tracking_code,
)
from app.services.deduplication import deduplication_key

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
EDGE = CHROME_WINDOWS + " Edg/120.0.0.0"


def test_generated_codes_are_valid_and_unique():
    marketer_id, product_id = uuid.uuid4(), uuid.uuid4()

    codes = {generate_tracking_code(marketer_id, product_id) for _ in range(50)}

    assert len(codes) == 50
    assert all(validate_tracking_code(c) for c in codes)


def test_code_embeds_marketer_and_product_suffixes():
    marketer_id, product_id = uuid.uuid4(), uuid.uuid4()

    parts = generate_tracking_code(marketer_id, product_id).split("_")

    assert parts[1] == marketer_id.hex[-4:].upper()
    assert parts[2] == product_id.hex[-4:].upper()
    assert len(parts[3]) == 16


def test_validate_rejects_malformed_codes():
    assert not validate_tracking_code(None)
    assert not validate_tracking_code("")
    assert not validate_tracking_code("abc")
    assert not validate_tracking_code("LX1_ABCD_EF01_0123456789abcdef")  # lowercase random part


def test_normalize_tracking_code():
    assert normalize_tracking_code("  CODE ") == "CODE"
    assert normalize_tracking_code("   ") is None
    assert normalize_tracking_code(None) is None


def test_fingerprint_is_stable_and_session_sensitive():
    a = compute_fingerprint("10.0.0.1", CHROME_WINDOWS, "s1")

    assert a == compute_fingerprint("10.0.0.1", CHROME_WINDOWS, "s1")
    assert a != compute_fingerprint("10.0.0.1", CHROME_WINDOWS, "s2")
    assert len(a) == 16
    assert compute_fingerprint("10.0.0.1", CHROME_WINDOWS) == compute_fingerprint("10.0.0.1", CHROME_WINDOWS, "")


def test_parse_user_agent():
    chrome = parse_user_agent(CHROME_WINDOWS)
    assert (chrome.device, chrome.browser, chrome.os) == ("desktop", "chrome", "windows")

    iphone = parse_user_agent(SAFARI_IPHONE)
    assert (iphone.device, iphone.browser, iphone.os) == ("mobile", "safari", "ios")

    assert parse_user_agent(EDGE).browser == "edge"
    assert parse_user_agent(None).browser == "unknown"


def test_deduplication_key_uses_utc_date():
    product_id = uuid.uuid4()
    morning = datetime(2026, 3, 1, 0, 30, tzinfo=timezone.utc)
    evening = datetime(2026, 3, 1, 23, 30, tzinfo=timezone.utc)
    next_day = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)

    assert deduplication_key("c1", product_id, morning) == deduplication_key("c1", product_id, evening)
    assert deduplication_key("c1", product_id, morning) != deduplication_key("c1", product_id, next_day)
    assert deduplication_key("c1", product_id, morning) != deduplication_key("c2", product_id, morning)
    assert len(deduplication_key("c1", product_id, morning)) == 64
