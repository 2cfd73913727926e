import time
from datetime import timedelta

import pytest

from payvat.security import (
    RiskLevel,
    SecurityConfig,
    SecurityHardening,
    ViolationType,
    calculate_risk_level,
    hash_sensitive_data,
    is_valid_filename,
    secure_upload_name,
)


@pytest.fixture
def hardening():
    return SecurityHardening(SecurityConfig(rate_limit_max_requests=3))


def test_script_tags_are_removed(hardening):
    text, violations = hardening.sanitize_text_input("Hello <script>alert(1)</script><b>world</b>", "note")

    assert text == "Hello world"
    assert {v.type for v in violations} == {ViolationType.MALICIOUS_CONTENT, ViolationType.SUSPICIOUS_PATTERN}
    assert not any(v.blocked for v in violations)


def test_sql_keywords_are_neutralised(hardening):
    text, violations = hardening.sanitize_text_input("x' OR 1=1; DROP TABLE users", "search")

    assert "OR 1=1" not in text
    assert "DROP " not in text
    assert "[SQL_BLOCKED]" in text
    assert all(v.field == "search" for v in violations)


def test_plain_text_untouched(hardening):
    assert hardening.sanitize_text_input("Office supplies for March") == ("Office supplies for March", [])


def test_rate_limit_blocks_after_max(hardening):
    results = [hardening.check_rate_limit("1.2.3.4") for _ in range(4)]

    assert [r.allowed for r in results] == [True, True, True, False]
    assert results[-1].requests == 4
    assert hardening.check_rate_limit("5.6.7.8").allowed


def test_rate_limit_window_expiry():
    hardening = SecurityHardening(SecurityConfig(rate_limit_max_requests=1, rate_limit_window_seconds=0))
    assert hardening.check_rate_limit("ip").allowed
    # A zero-length window is already closed on the next call
    assert hardening.check_rate_limit("ip").allowed


def test_purge_drops_expired_windows_and_events(hardening):
    hardening.check_rate_limit("live")
    hardening._rate_limits["stale"] = (7, time.monotonic() - 1)
    hardening.validate_file_upload(b"Total: 1.00", "text/plain", "old.txt", ip="10.0.0.1")
    hardening.validate_file_upload(b"Total: 2.00", "text/plain", "new.txt", ip="10.0.0.1")
    hardening._events[0].timestamp -= timedelta(days=hardening.config.audit_retention_days + 1)

    assert hardening.purge_expired() == (1, 1)
    assert set(hardening._rate_limits) == {"live", "10.0.0.1"}
    assert [e.resource for e in hardening.get_logs()] == ["new.txt"]


def test_clean_upload_passes(hardening):
    result = hardening.validate_file_upload(b"Total: 123.00", "text/plain", "invoice.txt", ip="10.0.0.1")

    assert result.is_valid
    assert result.risk_level == RiskLevel.LOW
    assert hardening.get_logs()[0].result == "SUCCESS"


@pytest.mark.parametrize(
    "content,mime_type,filename,message",
    [
        (b"MZ\x90\x00" + b"\x00" * 20 + b"PE\x00\x00", "application/pdf", "doc.pdf", "Embedded executable"),
        (b"#!/bin/sh\nrm -rf /", "text/plain", "run.txt", "Embedded script"),
        (b"%PDF-1.4 /JavaScript (app.alert)", "application/pdf", "doc.pdf", "PDF contains JavaScript"),
        (b"hello", "application/x-msdownload", "tool.exe", "not allowed"),
        (b"hello", "text/plain", "../etc/passwd.txt", "suspicious filename"),
    ],
)
def test_malicious_uploads_are_blocked(hardening, content, mime_type, filename, message):
    result = hardening.validate_file_upload(content, mime_type, filename)

    assert not result.is_valid
    assert any(message in m for m in result.messages)
    assert hardening.get_logs()[0].result == "BLOCKED"


def test_rate_limited_upload(hardening):
    for _ in range(3):
        assert hardening.validate_file_upload(b"a", "text/plain", "a.txt", ip="9.9.9.9").is_valid

    result = hardening.validate_file_upload(b"a", "text/plain", "a.txt", ip="9.9.9.9")
    assert not result.is_valid
    assert result.violations[-1].type == ViolationType.RATE_LIMIT_EXCEEDED


def test_stats_count_blocked_events(hardening):
    hardening.validate_file_upload(b"ok", "text/plain", "ok.txt")
    hardening.validate_file_upload(b"#!/bin/sh", "text/plain", "bad.txt")

    stats = hardening.get_stats()
    assert stats["total_events"] == 2
    assert stats["blocked_events"] == 1
    assert stats["top_threats"] == [{"type": "MALICIOUS_CONTENT", "count": 1}]


@pytest.mark.parametrize(
    "filename,valid",
    [
        ("invoice-2024_03.pdf", True),
        ("CON", False),
        ("noext", False),
        ("a/b.pdf", False),
        ("evil\0.pdf", False),
        ("my invoice.pdf", False),
    ],
)
def test_filename_rules(filename, valid):
    assert is_valid_filename(filename) is valid


def test_secure_upload_name_keeps_traversal_visible():
    assert secure_upload_name(" my invoice (1).pdf ") == "my_invoice__1_.pdf"
    assert not is_valid_filename(secure_upload_name("../x.pdf"))


def test_risk_levels():
    assert calculate_risk_level(0) == RiskLevel.LOW
    assert calculate_risk_level(30) == RiskLevel.MEDIUM
    assert calculate_risk_level(60) == RiskLevel.HIGH
    assert calculate_risk_level(100) == RiskLevel.CRITICAL


def test_hash_sensitive_data_is_salted():
    digest, salt = hash_sensitive_data("IE1234567A")
    assert hash_sensitive_data("IE1234567A", salt) == (digest, salt)
    assert hash_sensitive_data("IE1234567A")[0] != digest
