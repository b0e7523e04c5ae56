import time
from collections import deque
from dataclasses import dataclass
from threading import Lock

import jwt
from fastapi import Depends, Header, HTTPException
from jwt import InvalidTokenError

from orderhub.config import settings
from orderhub.metrics import throttled_requests_total

AUTH_MODES = {"api_key", "jwt", "hybrid"}


@dataclass(frozen=True)
class Principal:
    """Caller identity resolved at the HTTP edge and passed into the core as ``uploader_id``."""

    user_id: str
    source: str
    is_admin: bool = False


class SlidingWindowRateLimiter:
    def __init__(self) -> None:
        self._events: dict[str, deque[float]] = {}
        self._lock = Lock()

    def reset(self) -> None:
        with self._lock:
            self._events.clear()

    def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        if limit <= 0:
            return True
        now = time.monotonic()
        with self._lock:
            bucket = self._events.setdefault(key, deque())
            while bucket and bucket[0] < now - window_seconds:
                bucket.popleft()
            if len(bucket) >= limit:
                return False
            bucket.append(now)
            return True


rate_limiter = SlidingWindowRateLimiter()


def _api_key_mapping() -> dict[str, str]:
    mapping: dict[str, str] = {}
    for pair in settings.api_key_mappings.split(","):
        api_key, sep, user_id = pair.strip().partition(":")
        if sep and api_key.strip() and user_id.strip():
            mapping[api_key.strip()] = user_id.strip()
    return mapping


def _admin_ids() -> set[str]:
    return {item.strip() for item in settings.admin_user_ids.split(",") if item.strip()}


def _user_from_api_key(x_api_key: str | None) -> str:
    if not x_api_key:
        raise HTTPException(status_code=401, detail="missing API key")
    user_id = _api_key_mapping().get(x_api_key)
    if not user_id:
        raise HTTPException(status_code=403, detail="invalid API key")
    return user_id


def _user_from_bearer(authorization: str | None) -> str:
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="jwt auth is enabled but jwt_secret is not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="missing bearer token")

    options: dict = {"key": settings.jwt_secret, "algorithms": [settings.jwt_algorithm]}
    if settings.jwt_audience:
        options["audience"] = settings.jwt_audience
    if settings.jwt_issuer:
        options["issuer"] = settings.jwt_issuer
    try:
        claims = jwt.decode(token.strip(), **options)
    except InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"invalid bearer token: {exc}") from exc

    user_id = str(claims.get("sub") or claims.get("user_id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="jwt missing subject claim")
    return user_id


def require_principal(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    mode = settings.auth_mode.lower().strip()
    if mode not in AUTH_MODES:
        raise HTTPException(status_code=500, detail=f"unsupported auth_mode: {settings.auth_mode}")

    if mode == "jwt" or (mode == "hybrid" and authorization):
        user_id, source = _user_from_bearer(authorization), "jwt"
    else:
        user_id, source = _user_from_api_key(x_api_key), "api_key"

    if not rate_limiter.allow(f"{source}:{user_id}", settings.api_rate_limit_per_minute, 60):
        throttled_requests_total.inc()
        raise HTTPException(
            status_code=429,
            detail="principal rate limit exceeded",
            headers={"Retry-After": "60", "X-RateLimit-Reason": "principal_rate_limit"},
        )
    return Principal(user_id=user_id, source=source, is_admin=user_id in _admin_ids())


def require_admin(principal: Principal = Depends(require_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="admin access required")
    return principal
