from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from projectgate.core.errors import AuditWriteFailure
from projectgate.core.sanitize import REDACTED
from projectgate.domain.models import AuditEvent, AuditImmutableError
from projectgate.persistence.db import SessionLocal
from projectgate.services.audit import (
    EVENT_AUTH_FAILURE,
    EVENT_POLICY_DECISION,
    OUTCOME_ALLOW,
    OUTCOME_DENY,
    AuditRecord,
    BufferedAuditSink,
    DatabaseAuditSink,
    DecisionLogger,
    build_audit_sink,
)


class RecordingSink:
    def __init__(self, failures: int = 0) -> None:
        self.records: list[AuditRecord] = []
        self._failures = failures

    async def append(self, record: AuditRecord) -> None:
        if self._failures:
            self._failures -= 1
            raise AuditWriteFailure()
        self.records.append(record)

    async def close(self) -> None:
        return None


@pytest.mark.asyncio
async def test_metadata_keys_and_free_text_are_scrubbed() -> None:
    sink = RecordingSink()
    logger = DecisionLogger(sink, request_id="req-1", sensitive_values=["opensesame-42"])
    record = await logger.log_event(
        event_type="test.event",
        outcome=OUTCOME_DENY,
        principal_id="u1",
        reason="rejected opensesame-42 with Bearer abc.def",
        metadata={"authorization": "Bearer abc", "note": "password=hunter2", "ssn": "123-45-6789"},
    )
    assert record.reason is not None
    assert "opensesame-42" not in record.reason
    assert "abc.def" not in record.reason
    assert record.metadata["authorization"] == REDACTED
    assert record.metadata["ssn"] == REDACTED
    assert "hunter2" not in record.metadata["note"]
    assert record.request_id == "req-1"
    assert sink.records == [record]


@pytest.mark.asyncio
async def test_policy_decision_record_shape() -> None:
    sink = RecordingSink()
    logger = DecisionLogger(sink)
    await logger.log_policy_decision(
        principal_id="u1",
        actor_role="staff",
        tenant_id="p1",
        module="TASKS",
        intent="read",
        outcome=OUTCOME_ALLOW,
        reason="read TASKS allowed",
    )
    (record,) = sink.records
    assert record.event_type == EVENT_POLICY_DECISION
    assert (record.tenant_id, record.module, record.intent, record.outcome) == ("p1", "TASKS", "read", "allow")


@pytest.mark.asyncio
async def test_mutation_records_field_names_only() -> None:
    sink = RecordingSink()
    logger = DecisionLogger(sink)
    await logger.log_mutation(
        principal_id="u1",
        actor_role="staff",
        tenant_id="p1",
        module="BUDGET",
        action="create",
        resource_type="budget_item",
        resource_id="b1",
        reason="Budget item created successfully",
        fields=["item", "est_total", "item"],
    )
    (record,) = sink.records
    assert record.event_type == "mutation.create"
    assert record.metadata == {"fields": ["est_total", "item"]}


@pytest.mark.asyncio
async def test_auth_failure_keeps_kind_in_error_code() -> None:
    sink = RecordingSink()
    await DecisionLogger(sink).log_auth_failure(kind="expired")
    (record,) = sink.records
    assert record.event_type == EVENT_AUTH_FAILURE
    assert record.actor_type == "anonymous"
    assert record.error_code == "auth.expired"
    assert record.reason == "Authentication failed"


@pytest.mark.asyncio
async def test_buffered_sink_drains_in_order() -> None:
    inner = RecordingSink()
    sink = BufferedAuditSink(inner, maxsize=2)
    for index in range(5):
        await sink.append(AuditRecord(event_type=f"e{index}", outcome=OUTCOME_ALLOW))
    await sink.flush()
    assert [record.event_type for record in inner.records] == ["e0", "e1", "e2", "e3", "e4"]
    assert sink.pending == 0
    await sink.close()


@pytest.mark.asyncio
async def test_buffered_sink_retries_instead_of_dropping() -> None:
    inner = RecordingSink(failures=2)
    sink = BufferedAuditSink(inner, retry_backoff_s=0.0)
    await sink.append(AuditRecord(event_type="kept", outcome=OUTCOME_DENY))
    await asyncio.wait_for(sink.flush(), timeout=5)
    assert [record.event_type for record in inner.records] == ["kept"]
    await sink.close()


@pytest.mark.asyncio
async def test_buffered_sink_writes_directly_after_close() -> None:
    inner = RecordingSink()
    sink = BufferedAuditSink(inner)
    await sink.close()
    await sink.append(AuditRecord(event_type="late", outcome=OUTCOME_ALLOW))
    assert [record.event_type for record in inner.records] == ["late"]


def test_sink_mode_selection() -> None:
    assert isinstance(build_audit_sink(mode="direct"), DatabaseAuditSink)
    assert isinstance(build_audit_sink(mode="buffered", buffer_size=10), BufferedAuditSink)


@pytest.mark.asyncio
async def test_database_sink_persists_and_rows_are_immutable() -> None:
    logger = DecisionLogger(DatabaseAuditSink(), request_id="req-db")
    await logger.log_event(
        event_type="test.persisted",
        outcome=OUTCOME_DENY,
        principal_id="u1",
        tenant_id="p1",
        metadata={"password": "pw"},
    )
    async with SessionLocal() as session:
        event = (await session.execute(select(AuditEvent))).scalar_one()
        assert event.event_type == "test.persisted"
        assert event.request_id == "req-db"
        assert event.metadata_json == {"password": REDACTED}

        event.reason = "tampered"
        with pytest.raises(AuditImmutableError):
            await session.flush()
        await session.rollback()

    async with SessionLocal() as session:
        event = (await session.execute(select(AuditEvent))).scalar_one()
        with pytest.raises(AuditImmutableError):
            await session.delete(event)
            await session.flush()
