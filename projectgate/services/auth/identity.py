from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import time
from typing import Any, Awaitable, Callable, Protocol

import httpx
import jwt

from projectgate.core.config import Settings, get_settings
from projectgate.core.errors import AuthenticationFailure


logger = logging.getLogger(__name__)

_ASYMMETRIC_ALGS = {"RS256", "RS384", "RS512", "ES256", "ES384", "ES512"}
_SYMMETRIC_ALGS = {"HS256"}

# (subject, issued_at) -> True when the credential has been revoked.
RevocationCheck = Callable[[str, datetime | None], Awaitable[bool]]


@dataclass(frozen=True)
class VerifiedClaims:
    subject: str
    email: str | None
    audience: str | list[str] | None
    issuer: str | None
    issued_at: datetime | None
    expires_at: datetime | None
    auth_time: datetime | None
    raw: dict[str, Any]


class IdentityVerifier(Protocol):
    async def verify(self, credential: str | None) -> VerifiedClaims: ...


def _from_epoch(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_bearer_token(header_value: str | None) -> str:
    # Enforce Bearer token format for credential extraction.
    if not header_value or not header_value.strip():
        raise AuthenticationFailure("missing_credential")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise AuthenticationFailure("malformed_credential")
    return parts[1]


def _select_jwk(jwks: dict[str, Any], kid: str | None) -> dict[str, Any]:
    # Select the appropriate JWK based on kid header.
    keys = jwks.get("keys") or []
    if kid:
        for key in keys:
            if key.get("kid") == kid:
                return key
    if len(keys) == 1:
        return keys[0]
    raise AuthenticationFailure("invalid_signature")


def _jwk_to_key(jwk: dict[str, Any], alg: str) -> Any:
    # Convert a JWK payload into a cryptography key for PyJWT.
    payload = json.dumps(jwk)
    if alg.startswith("RS"):
        algorithm: Any = jwt.algorithms.RSAAlgorithm
    elif alg.startswith("ES"):
        algorithm = jwt.algorithms.ECAlgorithm
    else:
        raise AuthenticationFailure("malformed_credential")
    try:
        return algorithm.from_jwk(payload)
    except (jwt.PyJWTError, ValueError) as exc:
        logger.warning("identity_jwk_unusable kid=%s alg=%s", jwk.get("kid"), alg)
        raise AuthenticationFailure("invalid_signature") from exc


class JwtIdentityVerifier:
    """Validate bearer JWTs issued by the identity provider.

    Tokens signed with HS256 are checked against a shared secret (local and
    test deployments); RS*/ES* tokens are checked against the provider JWKS,
    which is cached for ``identity_jwks_cache_ttl_s``. Every failure is raised
    as :class:`AuthenticationFailure` carrying a stable ``kind``.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        revocation_check: RevocationCheck | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._revocation_check = revocation_check
        self._time_provider = time_provider or time.time
        self._jwks: dict[str, Any] | None = None
        self._jwks_fetched_at = 0.0
        self._jwks_lock = asyncio.Lock()

    async def _fetch_jwks(self, jwks_url: str) -> dict[str, Any]:
        # Fetch JWKS from the provider for signature verification.
        timeout = self._settings.ext_call_timeout_ms / 1000
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(jwks_url)
        response.raise_for_status()
        return response.json()

    async def _get_jwks(self) -> dict[str, Any]:
        ttl = self._settings.identity_jwks_cache_ttl_s
        now = self._time_provider()
        if self._jwks is not None and now - self._jwks_fetched_at < ttl:
            return self._jwks
        async with self._jwks_lock:
            if self._jwks is not None and now - self._jwks_fetched_at < ttl:
                return self._jwks
            jwks_url = self._settings.identity_jwks_url
            if not jwks_url:
                raise AuthenticationFailure("invalid_signature")
            try:
                self._jwks = await self._fetch_jwks(jwks_url)
            except (httpx.HTTPError, ValueError) as exc:
                logger.error("identity_jwks_fetch_failed url=%s", jwks_url, exc_info=exc)
                raise AuthenticationFailure("invalid_signature") from exc
            self._jwks_fetched_at = now
            return self._jwks

    async def _resolve_key(self, token: str) -> tuple[Any, str]:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as exc:
            raise AuthenticationFailure("malformed_credential") from exc
        alg = header.get("alg")
        if alg in _SYMMETRIC_ALGS:
            secret = self._settings.identity_jwt_secret
            if not secret:
                raise AuthenticationFailure("invalid_signature")
            return secret, alg
        if alg in _ASYMMETRIC_ALGS:
            jwks = await self._get_jwks()
            jwk = _select_jwk(jwks, header.get("kid"))
            return _jwk_to_key(jwk, alg), alg
        raise AuthenticationFailure("malformed_credential")

    async def verify(self, credential: str | None) -> VerifiedClaims:
        if not credential:
            raise AuthenticationFailure("missing_credential")
        key, alg = await self._resolve_key(credential)
        skew = self._settings.identity_clock_skew_s
        try:
            claims = jwt.decode(
                credential,
                key,
                algorithms=[alg],
                audience=self._settings.identity_audience,
                issuer=self._settings.identity_issuer,
                leeway=skew,
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationFailure("expired") from exc
        except jwt.InvalidAudienceError as exc:
            raise AuthenticationFailure("wrong_audience") from exc
        except jwt.InvalidIssuerError as exc:
            raise AuthenticationFailure("wrong_issuer") from exc
        except jwt.InvalidSignatureError as exc:
            raise AuthenticationFailure("invalid_signature") from exc
        except jwt.MissingRequiredClaimError as exc:
            if exc.claim in {"aud"}:
                raise AuthenticationFailure("wrong_audience") from exc
            if exc.claim in {"iss"}:
                raise AuthenticationFailure("wrong_issuer") from exc
            raise AuthenticationFailure("malformed_credential") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthenticationFailure("malformed_credential") from exc
        except jwt.PyJWTError as exc:
            # Key material the provider published but the algorithm cannot use.
            raise AuthenticationFailure("invalid_signature") from exc

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise AuthenticationFailure("missing_subject")

        now = self._time_provider()
        auth_time = claims.get("auth_time")
        if auth_time is not None:
            try:
                if float(auth_time) > now + skew:
                    raise AuthenticationFailure("future_auth_time")
            except (TypeError, ValueError) as exc:
                raise AuthenticationFailure("malformed_credential") from exc

        issued_at = _from_epoch(claims.get("iat"))
        if self._settings.identity_check_revoked and self._revocation_check is not None:
            if await self._revocation_check(subject, issued_at):
                raise AuthenticationFailure("revoked")

        return VerifiedClaims(
            subject=subject,
            email=claims.get("email"),
            audience=claims.get("aud"),
            issuer=claims.get("iss"),
            issued_at=issued_at,
            expires_at=_from_epoch(claims.get("exp")),
            auth_time=_from_epoch(auth_time),
            raw=claims,
        )
