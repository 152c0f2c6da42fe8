from __future__ import annotations

import re
from typing import Any, Iterable


REDACTED = "[REDACTED]"

# Skip regex work on very long strings; they are truncated instead.
MAX_SCRUB_LEN = 4096
MAX_DEPTH = 8

_SENSITIVE_KEY_PATTERNS = (
    "api_key",
    "apikey",
    "authorization",
    "token",
    "secret",
    "password",
    "passwd",
    "credential",
    "cookie",
    "ssn",
    "social_security",
    "tax_id",
    "taxid",
    "government_id",
    "bank",
    "account_number",
    "accountnumber",
    "routing",
    "iban",
    "card_number",
    "cardnumber",
    "cvv",
)

_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+"), "Bearer " + REDACTED),
    (re.compile(r"(?i)basic\s+[A-Za-z0-9+/=]{8,}"), "Basic " + REDACTED),
    (re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"), REDACTED),
    (
        re.compile(
            r"(?i)\b(password|passwd|pwd|secret|token|api_key|apikey|access_token|client_secret)"
            r"(\s*[=:]\s*)[^\s,;&\"']+"
        ),
        r"\1\2" + REDACTED,
    ),
    (re.compile(r"(?i)\b(host|hostname|server|dsn)(\s*[=:]\s*)[^\s,;&\"']+"), r"\1\2" + REDACTED),
    (re.compile(r"(?i)\b([a-z][a-z0-9+.-]*://)[^\s/@]+@[^\s/]+"), r"\1" + REDACTED),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), REDACTED),
    (re.compile(r"\b\d{9,}\b"), REDACTED),
]


def is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def scrub_text(value: str, extra_values: Iterable[str] = ()) -> str:
    # Replace credentials, identifiers, and known sensitive values in free text.
    if len(value) > MAX_SCRUB_LEN:
        value = value[:MAX_SCRUB_LEN] + "...[TRUNCATED]"
    for raw in extra_values:
        if raw and len(raw) >= 4:
            value = value.replace(raw, REDACTED)
    for pattern, replacement in _PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def scrub(value: Any, extra_values: Iterable[str] = (), _depth: int = 0) -> Any:
    # Recursively redact sensitive keys and scrub string leaves.
    if _depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"
    extra = tuple(extra_values)
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if is_sensitive_key(key):
                sanitized[key] = REDACTED
            else:
                sanitized[key] = scrub(raw_value, extra, _depth + 1)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [scrub(item, extra, _depth + 1) for item in value]
    if isinstance(value, str):
        return scrub_text(value, extra)
    return value


def collect_sensitive_values(payload: Any, _depth: int = 0) -> list[str]:
    # Gather string values stored under sensitive keys anywhere in a JSON body.
    found: list[str] = []
    if _depth >= MAX_DEPTH:
        return found
    if isinstance(payload, dict):
        for raw_key, raw_value in payload.items():
            if is_sensitive_key(str(raw_key)) and isinstance(raw_value, (str, int)):
                text = str(raw_value)
                if text:
                    found.append(text)
            else:
                found.extend(collect_sensitive_values(raw_value, _depth + 1))
    elif isinstance(payload, list):
        for item in payload:
            found.extend(collect_sensitive_values(item, _depth + 1))
    return found


_PATH_PATTERN = re.compile(r"(?<![\w:/])(?:/[\w.-]+){2,}/?")


def sanitize_public_message(message: str) -> str:
    # Strip credentials, hosts, and filesystem paths from text returned to callers.
    return _PATH_PATTERN.sub(REDACTED, scrub_text(message))
