"""Security hardening: upload validation, text sanitisation, rate limiting.

All state (rate-limit windows, the security event buffer) is process-local
and lost on restart. Multiple app instances do not share counters.
"""
from __future__ import annotations

import hashlib
import logging
import os
import re
import secrets
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from .config import settings

logger = logging.getLogger(__name__)


class ViolationType(str, Enum):
    MALICIOUS_CONTENT = "MALICIOUS_CONTENT"
    SIZE_EXCEEDED = "SIZE_EXCEEDED"
    INVALID_FORMAT = "INVALID_FORMAT"
    SUSPICIOUS_PATTERN = "SUSPICIOUS_PATTERN"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass
class SecurityConfig:
    """Limits for validation, sanitisation and the in-memory stores."""
    rate_limit_window_seconds: int = 15 * 60
    rate_limit_max_requests: int = 100
    max_file_size: int = 50 * 1024 * 1024
    allowed_mime_types: tuple[str, ...] = (
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-excel",
        "image/jpeg",
        "image/png",
        "image/gif",
        "text/plain",
        "text/csv",
    )
    allowed_extensions: tuple[str, ...] = (
        ".pdf", ".xlsx", ".xls", ".jpg", ".jpeg", ".png", ".gif", ".txt", ".csv",
    )
    max_text_length: int = 10 * 1024 * 1024
    audit_enabled: bool = True
    audit_retention_days: int = 90

    @classmethod
    def from_settings(cls) -> SecurityConfig:
        s = settings.security
        return cls(
            rate_limit_window_seconds=s.rate_limit_window_seconds,
            rate_limit_max_requests=s.rate_limit_max_requests,
            max_file_size=s.max_scan_file_size,
            max_text_length=s.max_text_length,
            audit_enabled=s.audit_enabled,
            audit_retention_days=s.audit_retention_days,
        )


@dataclass
class SecurityViolation:
    type: ViolationType
    severity: RiskLevel
    message: str
    blocked: bool
    field: str | None = None
    value: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "blocked": self.blocked,
            "field": self.field,
            "value": self.value,
        }


@dataclass
class ValidationResult:
    is_valid: bool
    violations: list[SecurityViolation] = field(default_factory=list)
    risk_score: int = 0

    @property
    def risk_level(self) -> RiskLevel:
        return calculate_risk_level(self.risk_score)

    @property
    def messages(self) -> list[str]:
        return [v.message for v in self.violations]


@dataclass
class SecurityEvent:
    """One entry in the in-memory security audit buffer."""
    timestamp: datetime
    event_type: str  # FILE_UPLOAD, PROCESSING, ACCESS_ATTEMPT, SECURITY_VIOLATION, DATA_EXPORT
    ip: str
    resource: str
    action: str
    result: str  # SUCCESS, FAILURE, BLOCKED
    risk_level: RiskLevel
    user_id: str | None = None
    user_agent: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    session_id: str = field(default_factory=lambda: generate_secure_token(16))

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "user_id": self.user_id,
            "ip": self.ip,
            "user_agent": self.user_agent,
            "resource": self.resource,
            "action": self.action,
            "result": self.result,
            "risk_level": self.risk_level.value,
            "details": self.details,
            "session_id": self.session_id,
        }


@dataclass
class RateLimitResult:
    allowed: bool
    requests: int
    reset_at: float


RESERVED_FILENAMES = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + [f"COM{i}" for i in range(1, 10)]
    + [f"LPT{i}" for i in range(1, 10)]
)
_VALID_FILENAME = re.compile(r"^[a-zA-Z0-9._-]+\.[a-zA-Z0-9]+$")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._\-/\\\x00]")

_SCRIPT_TAG = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_HTML_TAG = re.compile(r"<[^>]*>")
_SUSPICIOUS_PATTERNS = (
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
    re.compile(r"base64,", re.IGNORECASE),
)
_SQL_PATTERNS = (
    re.compile(r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC)\s", re.IGNORECASE),
    re.compile(r"UNION\s+SELECT", re.IGNORECASE),
    re.compile(r"OR\s+1\s*=\s*1", re.IGNORECASE),
    re.compile(r"AND\s+1\s*=\s*1", re.IGNORECASE),
)
_PE_HEADER = re.compile(rb"MZ.{0,100}PE\x00\x00", re.DOTALL)


def calculate_risk_level(risk_score: int) -> RiskLevel:
    if risk_score >= 80:
        return RiskLevel.CRITICAL
    if risk_score >= 60:
        return RiskLevel.HIGH
    if risk_score >= 30:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def get_file_extension(filename: str) -> str:
    """Extension including the dot, lower-cased; empty if there is none."""
    return os.path.splitext(filename)[1].lower()


def is_valid_filename(filename: str) -> bool:
    """Reject traversal, NUL bytes, reserved device names and odd characters."""
    if ".." in filename or "/" in filename or "\\" in filename:
        return False
    if "\0" in filename:
        return False
    if filename.upper() in RESERVED_FILENAMES:
        return False
    return bool(_VALID_FILENAME.match(filename))


def secure_upload_name(filename: str) -> str:
    """Replace spaces and other harmless-but-invalid characters with ``_``.

    Path separators, NUL bytes and ``..`` are left in place so that
    :func:`is_valid_filename` still rejects them.
    """
    return _UNSAFE_FILENAME_CHARS.sub("_", filename.strip())


def generate_secure_token(length: int = 32) -> str:
    return secrets.token_hex(length)


def hash_sensitive_data(data: str, salt: str | None = None) -> tuple[str, str]:
    """One-way PBKDF2-SHA512 hash.

    Returns:
        Tuple of (hex hash, hex salt)
    """
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha512", data.encode("utf-8"), salt.encode("utf-8"), 100_000, dklen=64)
    return digest.hex(), salt


class SecurityHardening:
    """Upload validation, input sanitisation, rate limiting and a security event buffer."""

    def __init__(self, config: SecurityConfig | None = None) -> None:
        self.config = config or SecurityConfig.from_settings()
        self._lock = threading.Lock()
        self._rate_limits: dict[str, tuple[int, float]] = {}  # key -> (count, reset_at)
        self._events: list[SecurityEvent] = []

    # -------------------- File uploads --------------------
    def validate_file_upload(
        self,
        content: bytes,
        mime_type: str,
        filename: str,
        *,
        ip: str = "unknown",
        user_id: str | None = None,
        user_agent: str | None = None,
    ) -> ValidationResult:
        """Validate an upload before it is stored or parsed.

        Args:
            content: Raw file bytes
            mime_type: Declared MIME type
            filename: File name as it will be stored
            ip: Client address, used as the rate-limit key

        Returns:
            ValidationResult; any blocking violation makes it invalid
        """
        violations: list[SecurityViolation] = []
        risk = 0
        cfg = self.config

        if len(content) > cfg.max_file_size:
            violations.append(SecurityViolation(
                type=ViolationType.SIZE_EXCEEDED,
                severity=RiskLevel.HIGH,
                message=(
                    f"File size {round(len(content) / 1024 / 1024)}MB exceeds limit of "
                    f"{round(cfg.max_file_size / 1024 / 1024)}MB"
                ),
                field="file",
                blocked=True,
            ))
            risk += 30

        if mime_type not in cfg.allowed_mime_types:
            violations.append(SecurityViolation(
                type=ViolationType.INVALID_FORMAT,
                severity=RiskLevel.MEDIUM,
                message=f"MIME type '{mime_type}' not allowed",
                field="mime_type",
                value=mime_type,
                blocked=True,
            ))
            risk += 20

        extension = get_file_extension(filename)
        if extension not in cfg.allowed_extensions:
            violations.append(SecurityViolation(
                type=ViolationType.INVALID_FORMAT,
                severity=RiskLevel.MEDIUM,
                message=f"File extension '{extension}' not allowed",
                field="filename",
                value=extension,
                blocked=True,
            ))
            risk += 20

        if not is_valid_filename(filename):
            violations.append(SecurityViolation(
                type=ViolationType.SUSPICIOUS_PATTERN,
                severity=RiskLevel.MEDIUM,
                message="Invalid or suspicious filename format",
                field="filename",
                value=filename,
                blocked=True,
            ))
            risk += 15

        content_violations = self._scan_file_content(content, mime_type)
        violations.extend(content_violations)
        risk += 25 * len(content_violations)

        rate = self.check_rate_limit(ip)
        if not rate.allowed:
            violations.append(SecurityViolation(
                type=ViolationType.RATE_LIMIT_EXCEEDED,
                severity=RiskLevel.HIGH,
                message=f"Rate limit exceeded: {rate.requests}/{cfg.rate_limit_max_requests}",
                blocked=True,
            ))
            risk += 40

        blocked = any(v.blocked for v in violations)
        risk = min(100, risk)
        self.log_event(
            event_type="FILE_UPLOAD",
            ip=ip,
            user_id=user_id,
            user_agent=user_agent,
            resource=filename,
            action="VALIDATE_UPLOAD",
            result="BLOCKED" if blocked else "SUCCESS",
            risk_level=calculate_risk_level(risk),
            details={
                "file_size": len(content),
                "mime_type": mime_type,
                "violations": [v.type.value for v in violations],
                "risk_score": risk,
            },
        )
        return ValidationResult(is_valid=not blocked, violations=violations, risk_score=risk)

    @staticmethod
    def _scan_file_content(content: bytes, mime_type: str) -> list[SecurityViolation]:
        violations: list[SecurityViolation] = []
        if mime_type == "application/pdf" and b"/JavaScript" in content:
            violations.append(SecurityViolation(
                type=ViolationType.MALICIOUS_CONTENT,
                severity=RiskLevel.HIGH,
                message="PDF contains JavaScript code",
                blocked=True,
            ))
        if _PE_HEADER.search(content):
            violations.append(SecurityViolation(
                type=ViolationType.MALICIOUS_CONTENT,
                severity=RiskLevel.CRITICAL,
                message="Embedded executable detected",
                blocked=True,
            ))
        if content.lstrip().startswith(b"#!"):
            violations.append(SecurityViolation(
                type=ViolationType.MALICIOUS_CONTENT,
                severity=RiskLevel.CRITICAL,
                message="Embedded script detected",
                blocked=True,
            ))
        return violations

    # -------------------- Text input --------------------
    def sanitize_text_input(
        self, text: str, field_name: str | None = None
    ) -> tuple[str, list[SecurityViolation]]:
        """Strip markup, neutralise script URIs and SQL keywords.

        Violations here are informational and never blocking.

        Returns:
            Tuple of (sanitized text, violations)
        """
        violations: list[SecurityViolation] = []
        sanitized = text

        if len(sanitized) > self.config.max_text_length:
            violations.append(SecurityViolation(
                type=ViolationType.SIZE_EXCEEDED,
                severity=RiskLevel.MEDIUM,
                message=f"Text length {len(text)} exceeds maximum {self.config.max_text_length}",
                field=field_name,
                blocked=False,
            ))
            sanitized = sanitized[: self.config.max_text_length]

        if _SCRIPT_TAG.search(sanitized):
            violations.append(SecurityViolation(
                type=ViolationType.MALICIOUS_CONTENT,
                severity=RiskLevel.HIGH,
                message="Script tags detected and removed",
                field=field_name,
                blocked=False,
            ))
            sanitized = _SCRIPT_TAG.sub("", sanitized)

        if _HTML_TAG.search(sanitized):
            violations.append(SecurityViolation(
                type=ViolationType.SUSPICIOUS_PATTERN,
                severity=RiskLevel.LOW,
                message="HTML tags detected and removed",
                field=field_name,
                blocked=False,
            ))
            sanitized = _HTML_TAG.sub("", sanitized)

        for pattern in _SUSPICIOUS_PATTERNS:
            if pattern.search(sanitized):
                violations.append(SecurityViolation(
                    type=ViolationType.SUSPICIOUS_PATTERN,
                    severity=RiskLevel.HIGH,
                    message=f"Suspicious pattern detected: {pattern.pattern}",
                    field=field_name,
                    blocked=False,
                ))
                sanitized = pattern.sub("[REMOVED]", sanitized)

        for pattern in _SQL_PATTERNS:
            if pattern.search(sanitized):
                violations.append(SecurityViolation(
                    type=ViolationType.MALICIOUS_CONTENT,
                    severity=RiskLevel.HIGH,
                    message="Potential SQL injection pattern detected",
                    field=field_name,
                    blocked=False,
                ))
                sanitized = pattern.sub("[SQL_BLOCKED]", sanitized)

        return sanitized, violations

    # -------------------- Rate limiting --------------------
    def check_rate_limit(self, key: str) -> RateLimitResult:
        """Fixed-window counter; the first hit opens a new window."""
        now = time.monotonic()
        window = self.config.rate_limit_window_seconds
        with self._lock:
            count, reset_at = self._rate_limits.get(key, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + window
            count += 1
            self._rate_limits[key] = (count, reset_at)
        return RateLimitResult(
            allowed=count <= self.config.rate_limit_max_requests,
            requests=count,
            reset_at=reset_at,
        )

    # -------------------- Event buffer --------------------
    def log_event(
        self,
        *,
        event_type: str,
        ip: str,
        resource: str,
        action: str,
        result: str,
        risk_level: RiskLevel,
        user_id: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if not self.config.audit_enabled:
            return

        event = SecurityEvent(
            timestamp=datetime.now(timezone.utc),
            event_type=event_type,
            ip=ip,
            resource=resource,
            action=action,
            result=result,
            risk_level=risk_level,
            user_id=user_id,
            user_agent=user_agent,
            details=details or {},
        )
        with self._lock:
            self._events.append(event)

        if risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            logger.warning(
                f"Security alert [{risk_level.value}]: {event_type} {result} "
                f"ip={ip} resource={resource} details={event.details}"
            )
        else:
            logger.debug(f"Security event [{risk_level.value}]: {event_type} {result}")

    def get_logs(
        self,
        *,
        event_type: str | None = None,
        risk_level: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        user_id: str | None = None,
        ip: str | None = None,
    ) -> list[SecurityEvent]:
        """Filtered events, newest first."""
        with self._lock:
            events = list(self._events)

        if event_type:
            events = [e for e in events if e.event_type == event_type]
        if risk_level:
            events = [e for e in events if e.risk_level.value == risk_level]
        if start:
            events = [e for e in events if e.timestamp >= start]
        if end:
            events = [e for e in events if e.timestamp <= end]
        if user_id:
            events = [e for e in events if e.user_id == user_id]
        if ip:
            events = [e for e in events if e.ip == ip]

        return sorted(events, key=lambda e: e.timestamp, reverse=True)

    def get_stats(self, days: int = 30) -> dict[str, Any]:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        recent = self.get_logs(start=cutoff)

        threats: Counter[str] = Counter()
        for event in recent:
            threats.update(event.details.get("violations", []))
        ips = Counter(e.ip for e in recent)

        return {
            "total_events": len(recent),
            "blocked_events": sum(1 for e in recent if e.result == "BLOCKED"),
            "risk_level_breakdown": dict(Counter(e.risk_level.value for e in recent)),
            "top_threats": [{"type": t, "count": c} for t, c in threats.most_common(10)],
            "top_source_ips": [{"ip": ip, "events": c} for ip, c in ips.most_common(10)],
        }

    def purge_expired(self) -> tuple[int, int]:
        """Drop events past retention and rate-limit windows that have closed.

        Returns:
            Tuple of (events removed, rate-limit keys removed)
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.config.audit_retention_days)
        now = time.monotonic()
        with self._lock:
            before = len(self._events)
            self._events = [e for e in self._events if e.timestamp >= cutoff]
            expired = [k for k, (_, reset_at) in self._rate_limits.items() if reset_at <= now]
            for key in expired:
                del self._rate_limits[key]
            removed = before - len(self._events)

        if removed or expired:
            logger.info(f"Purged {removed} security events and {len(expired)} rate-limit windows")
        return removed, len(expired)

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
            self._rate_limits.clear()


security = SecurityHardening()
