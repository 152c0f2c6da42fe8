from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Iterable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from projectgate.core.errors import AuditWriteFailure
from projectgate.core.sanitize import scrub, scrub_text
from projectgate.domain.models import AuditEvent
from projectgate.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

OUTCOME_ALLOW = "allow"
OUTCOME_DENY = "deny"

EVENT_POLICY_DECISION = "policy.decision"
EVENT_MUTATION = "mutation"
EVENT_MUTATION_ABORTED = "mutation.aborted"
EVENT_AUTH_FAILURE = "auth.failure"
EVENT_RATE_LIMITED = "rate_limit.exceeded"
EVENT_RATE_LIMIT_DEGRADED = "rate_limit.degraded"
EVENT_MEMBERSHIP_BYPASS = "membership.bypass"
EVENT_TENANT_FALLBACK = "membership.fallback"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuditRecord:
    # One immutable decision or mutation entry, already scrubbed.
    event_type: str
    outcome: str
    actor_type: str = "principal"
    principal_id: str | None = None
    actor_role: str | None = None
    tenant_id: str | None = None
    module: str | None = None
    intent: str | None = None
    reason: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    occurred_at: datetime = field(default_factory=_utc_now)


class AuditSink(Protocol):
    async def append(self, record: AuditRecord) -> None: ...

    async def close(self) -> None: ...


def _to_event(record: AuditRecord) -> AuditEvent:
    return AuditEvent(
        occurred_at=record.occurred_at,
        tenant_id=record.tenant_id,
        actor_type=record.actor_type,
        principal_id=record.principal_id,
        actor_role=record.actor_role,
        event_type=record.event_type,
        module=record.module,
        intent=record.intent,
        outcome=record.outcome,
        reason=record.reason,
        resource_type=record.resource_type,
        resource_id=record.resource_id,
        request_id=record.request_id,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        metadata_json=record.metadata,
        error_code=record.error_code,
    )


class DatabaseAuditSink:
    def __init__(self, session_factory: Callable[[], AsyncSession] | None = None) -> None:
        # A dedicated session per append keeps denials durable when the request rolls back.
        self._session_factory = session_factory or SessionLocal

    async def append(self, record: AuditRecord) -> None:
        async with self._session_factory() as session:
            try:
                session.add(_to_event(record))
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(
                    "audit_event_write_failed event_type=%s request_id=%s",
                    record.event_type,
                    record.request_id,
                    exc_info=exc,
                )
                raise AuditWriteFailure() from exc

    async def close(self) -> None:
        return None


class BufferedAuditSink:
    def __init__(
        self,
        inner: AuditSink,
        *,
        maxsize: int = 1000,
        retry_backoff_s: float = 0.5,
    ) -> None:
        # Bounded queue: producers wait when full instead of dropping records.
        self._inner = inner
        self._maxsize = max(1, maxsize)
        self._retry_backoff_s = retry_backoff_s
        self._queue: asyncio.Queue[AuditRecord] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closing = False

    def _ensure_worker(self) -> asyncio.Queue[AuditRecord]:
        # Bind the queue and drain task to the running loop on first use.
        loop = asyncio.get_running_loop()
        if self._queue is None or self._loop is not loop:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
            self._loop = loop
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain(self._queue))
        return self._queue

    async def append(self, record: AuditRecord) -> None:
        if self._closing:
            await self._inner.append(record)
            return
        queue = self._ensure_worker()
        await queue.put(record)

    async def _write_with_retry(self, record: AuditRecord) -> None:
        attempt = 0
        while True:
            try:
                await self._inner.append(record)
                return
            except AuditWriteFailure:
                attempt += 1
                logger.error(
                    "audit_buffer_write_retry event_type=%s attempt=%s",
                    record.event_type,
                    attempt,
                )
                if self._closing:
                    raise
                await asyncio.sleep(min(self._retry_backoff_s * attempt, 5.0))

    async def _drain(self, queue: asyncio.Queue[AuditRecord]) -> None:
        while True:
            record = await queue.get()
            try:
                await self._write_with_retry(record)
            except AuditWriteFailure:
                logger.error("audit_buffer_write_failed event_type=%s", record.event_type)
            finally:
                queue.task_done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def flush(self) -> None:
        if self._queue is None or self._loop is not asyncio.get_running_loop():
            return
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain(self._queue))
        await self._queue.join()

    async def close(self) -> None:
        # Drain everything queued before stopping the worker.
        await self.flush()
        self._closing = True
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None


def build_audit_sink(*, mode: str, buffer_size: int = 1000) -> AuditSink:
    database_sink = DatabaseAuditSink()
    if mode.lower() == "buffered":
        return BufferedAuditSink(database_sink, maxsize=buffer_size)
    return database_sink


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


class DecisionLogger:
    """Request-scoped writer for authorization and mutation audit records.

    Every record passes through the scrubber before it reaches the sink:
    sensitive metadata keys are replaced with ``[REDACTED]`` and free text is
    cleaned of credentials, identifiers, and any sensitive value that arrived
    in the request body.
    """

    def __init__(
        self,
        sink: AuditSink,
        *,
        request_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        sensitive_values: Iterable[str] = (),
    ) -> None:
        self._sink = sink
        self._request_id = request_id
        self._ip_address = ip_address
        self._user_agent = user_agent
        self._sensitive_values = tuple(v for v in sensitive_values if v)

    @classmethod
    def for_request(
        cls,
        request: Request | None,
        sink: AuditSink,
        *,
        sensitive_values: Iterable[str] = (),
    ) -> "DecisionLogger":
        ctx = get_request_context(request)
        return cls(
            sink,
            request_id=ctx["request_id"],
            ip_address=ctx["ip_address"],
            user_agent=ctx["user_agent"],
            sensitive_values=sensitive_values,
        )

    @property
    def request_id(self) -> str | None:
        return self._request_id

    def scrub_reason(self, reason: str | None) -> str | None:
        if reason is None:
            return None
        return scrub_text(reason, self._sensitive_values)

    async def log_event(
        self,
        *,
        event_type: str,
        outcome: str,
        principal_id: str | None = None,
        actor_role: str | None = None,
        actor_type: str = "principal",
        tenant_id: str | None = None,
        module: str | None = None,
        intent: str | None = None,
        reason: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        error_code: str | None = None,
    ) -> AuditRecord:
        record = AuditRecord(
            event_type=event_type,
            outcome=outcome,
            actor_type=actor_type,
            principal_id=principal_id,
            actor_role=actor_role,
            tenant_id=tenant_id,
            module=module,
            intent=intent,
            reason=self.scrub_reason(reason),
            resource_type=resource_type,
            resource_id=resource_id,
            request_id=self._request_id,
            ip_address=self._ip_address,
            user_agent=scrub_text(self._user_agent, self._sensitive_values) if self._user_agent else None,
            metadata=scrub(metadata or {}, self._sensitive_values),
            error_code=error_code,
        )
        await self._sink.append(record)
        return record

    async def log_policy_decision(
        self,
        *,
        principal_id: str,
        actor_role: str | None,
        tenant_id: str | None,
        module: str,
        intent: str,
        outcome: str,
        reason: str,
        error_code: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditRecord:
        # Exactly one of these per permission checkpoint.
        return await self.log_event(
            event_type=EVENT_POLICY_DECISION,
            outcome=outcome,
            principal_id=principal_id,
            actor_role=actor_role,
            tenant_id=tenant_id,
            module=module,
            intent=intent,
            reason=reason,
            resource_type="module",
            resource_id=module,
            metadata=metadata,
            error_code=error_code,
        )

    async def log_mutation(
        self,
        *,
        principal_id: str,
        actor_role: str | None,
        tenant_id: str,
        module: str,
        action: str,
        resource_type: str,
        resource_id: str | None,
        reason: str,
        fields: Iterable[str] = (),
        outcome: str = OUTCOME_ALLOW,
    ) -> AuditRecord:
        # Field names only; values never enter the audit trail.
        return await self.log_event(
            event_type=f"{EVENT_MUTATION}.{action}" if outcome == OUTCOME_ALLOW else EVENT_MUTATION_ABORTED,
            outcome=outcome,
            principal_id=principal_id,
            actor_role=actor_role,
            tenant_id=tenant_id,
            module=module,
            intent=action,
            reason=reason,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata={"fields": sorted(set(fields))},
        )

    async def log_auth_failure(
        self,
        *,
        kind: str,
        principal_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditRecord:
        return await self.log_event(
            event_type=EVENT_AUTH_FAILURE,
            outcome=OUTCOME_DENY,
            actor_type="anonymous" if principal_id is None else "principal",
            principal_id=principal_id,
            resource_type="auth",
            reason="Authentication failed",
            metadata=metadata,
            error_code=f"auth.{kind}",
        )
