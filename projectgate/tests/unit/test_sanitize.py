from __future__ import annotations

from projectgate.core.sanitize import (
    REDACTED,
    collect_sensitive_values,
    is_sensitive_key,
    sanitize_public_message,
    scrub,
    scrub_text,
)


def test_sensitive_keys() -> None:
    for key in ("password", "API_KEY", "Authorization", "ssn", "bank_account_number", "routing_number", "cvv"):
        assert is_sensitive_key(key)
    for key in ("title", "status", "vendor"):
        assert not is_sensitive_key(key)


def test_scrub_text_patterns() -> None:
    text = (
        "Bearer abc.def.ghi password=hunter2 ssn 123-45-6789 "
        "acct 123456789012 token: t0k3n eyJhbGciOi.eyJzdWIiOi.sig"
    )
    scrubbed = scrub_text(text)
    assert "abc.def.ghi" not in scrubbed
    assert "hunter2" not in scrubbed
    assert "123-45-6789" not in scrubbed
    assert "123456789012" not in scrubbed
    assert "t0k3n" not in scrubbed
    assert "eyJhbGciOi" not in scrubbed
    assert REDACTED in scrubbed


def test_scrub_text_replaces_known_values() -> None:
    assert scrub_text("vendor said opensesame-42", ["opensesame-42"]) == f"vendor said {REDACTED}"


def test_scrub_nested_structures() -> None:
    payload = {
        "user": {"password": "p", "name": "Ana"},
        "items": [{"api_key": "k"}, "Bearer zzz"],
        "count": 3,
    }
    scrubbed = scrub(payload)
    assert scrubbed["user"] == {"password": REDACTED, "name": "Ana"}
    assert scrubbed["items"][0] == {"api_key": REDACTED}
    assert "zzz" not in scrubbed["items"][1]
    assert scrubbed["count"] == 3


def test_collect_sensitive_values() -> None:
    body = {"title": "x", "secret": "s1", "nested": {"tax_id": 998877}, "list": [{"password": "pw-123"}]}
    assert sorted(collect_sensitive_values(body)) == ["998877", "pw-123", "s1"]


def test_public_message_hides_hosts_and_paths() -> None:
    message = sanitize_public_message(
        "connect failed host=db.internal dsn=postgresql://app:pw@db:5432/x in /srv/app/projectgate/db.py"
    )
    assert "db.internal" not in message
    assert "app:pw" not in message
    assert "/srv/app" not in message
