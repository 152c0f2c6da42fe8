from __future__ import annotations

import logging

from fastapi import Request, Response

from projectgate.core.config import get_settings
from projectgate.core.errors import RateLimitExceeded, RateLimitUnavailable
from projectgate.services.audit import (
    EVENT_RATE_LIMIT_DEGRADED,
    EVENT_RATE_LIMITED,
    OUTCOME_ALLOW,
    OUTCOME_DENY,
    DecisionLogger,
)
from projectgate.services.auth.principals import Principal
from projectgate.services.rate_limit import (
    RateDecision,
    RateLimitStore,
    rate_limit_key,
    resolve_tier,
)


logger = logging.getLogger(__name__)


def get_rate_limit_store(request: Request) -> RateLimitStore:
    # Injected through app state so tests and deployments can swap the backend.
    return request.app.state.rate_limit_store


async def enforce_rate_limit(
    *,
    request: Request,
    response: Response,
    principal: Principal,
    store: RateLimitStore,
    audit: DecisionLogger,
) -> RateDecision | None:
    # Runs after principal resolution and before any membership lookup.
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return None

    tier = resolve_tier(principal.role, settings)
    key = rate_limit_key(
        principal_id=principal.id,
        origin=request.client.host if request.client else None,
        include_origin=settings.rl_include_origin,
    )
    try:
        decision = await store.check_and_increment(key, tier.limit, tier.window_s)
    except Exception as exc:  # noqa: BLE001 - guard against store connectivity failures
        if settings.rl_fail_mode.lower() == "closed":
            raise RateLimitUnavailable() from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        logger.warning("rate_limit_degraded path=%s", request.url.path, exc_info=exc)
        await audit.log_event(
            event_type=EVENT_RATE_LIMIT_DEGRADED,
            outcome=OUTCOME_ALLOW,
            actor_type="system",
            principal_id=principal.id,
            actor_role=principal.role.value,
            resource_type="rate_limit",
            reason="Rate limit store unavailable; request admitted",
            metadata={"path": request.url.path, "fail_mode": settings.rl_fail_mode},
        )
        return None

    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    if decision.allowed:
        return decision

    error = RateLimitExceeded(decision.retry_after_s)
    await audit.log_event(
        event_type=EVENT_RATE_LIMITED,
        outcome=OUTCOME_DENY,
        principal_id=principal.id,
        actor_role=principal.role.value,
        resource_type="rate_limit",
        reason=error.message,
        metadata={
            "limit": decision.limit,
            "window_s": tier.window_s,
            "retry_after_s": error.retry_after_s,
            "path": request.url.path,
        },
        error_code=error.code,
    )
    raise error
