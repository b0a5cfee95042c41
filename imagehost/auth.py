import math
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock

import jwt
from fastapi import Depends, Header, HTTPException
from jwt import InvalidTokenError

from imagehost.config import settings
from imagehost.metrics import throttled_requests_total

AUTH_MODES = {"api_key", "jwt", "hybrid"}
RATE_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class AuthUser:
    """The principal behind a request. Upload sessions and assets are owned by ``user_id``."""

    user_id: str
    auth_source: str
    is_admin: bool = False

    def owns(self, owner_id: str) -> bool:
        return owner_id == self.user_id

    def can_manage(self, owner_id: str) -> bool:
        return self.owns(owner_id) or self.is_admin


class PrincipalRateLimiter:
    """Sliding-window request budget per user id, shared by every credential of that user."""

    def __init__(self) -> None:
        self._events: dict[str, deque[float]] = {}
        self._lock = Lock()

    def reset(self) -> None:
        with self._lock:
            self._events.clear()

    def allow(self, user_id: str, limit: int, window_seconds: int) -> bool:
        if limit <= 0:
            return True
        now = time.time()
        cutoff = now - window_seconds

        with self._lock:
            bucket = self._events.setdefault(user_id, deque())
            while bucket and bucket[0] < cutoff:
                bucket.popleft()
            if len(bucket) >= limit:
                return False
            bucket.append(now)
            return True

    def retry_after(self, user_id: str, window_seconds: int) -> int:
        with self._lock:
            bucket = self._events.get(user_id)
            if not bucket:
                return 1
            return max(1, math.ceil(bucket[0] + window_seconds - time.time()))


principal_rate_limiter = PrincipalRateLimiter()


def parse_api_key_mappings(raw: str) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for item in raw.split(","):
        api_key, sep, user_id = item.strip().partition(":")
        if sep and api_key.strip() and user_id.strip():
            mapping[api_key.strip()] = user_id.strip()
    return mapping


def admin_user_ids() -> frozenset[str]:
    return frozenset(item.strip() for item in settings.admin_user_ids.split(",") if item.strip())


def _parse_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="invalid authorization header")
    return token.strip()


def _user_from_jwt(authorization: str | None) -> str:
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="jwt auth is enabled but jwt_secret is not configured")
    options = {"key": settings.jwt_secret, "algorithms": [settings.jwt_algorithm]}
    if settings.jwt_audience:
        options["audience"] = settings.jwt_audience
    if settings.jwt_issuer:
        options["issuer"] = settings.jwt_issuer
    try:
        claims = jwt.decode(_parse_bearer_token(authorization), **options)
    except InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"invalid bearer token: {exc}") from exc
    user_id = str(claims.get("sub") or claims.get("user_id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="jwt missing subject claim")
    return user_id


def _user_from_api_key(x_api_key: str | None) -> str:
    if not x_api_key:
        raise HTTPException(status_code=401, detail="missing API key")
    user_id = parse_api_key_mappings(settings.api_key_mappings).get(x_api_key)
    if not user_id:
        raise HTTPException(status_code=403, detail="invalid API key")
    return user_id


def require_api_user(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> AuthUser:
    mode = settings.auth_mode.lower().strip()
    if mode not in AUTH_MODES:
        raise HTTPException(status_code=500, detail=f"unsupported auth_mode: {settings.auth_mode}")

    if mode == "jwt" or (mode == "hybrid" and authorization):
        user = AuthUser(user_id=_user_from_jwt(authorization), auth_source="jwt")
    else:
        user = AuthUser(user_id=_user_from_api_key(x_api_key), auth_source="api_key")

    if not principal_rate_limiter.allow(user.user_id, settings.api_rate_limit_per_minute, RATE_WINDOW_SECONDS):
        throttled_requests_total.inc()
        retry_after = principal_rate_limiter.retry_after(user.user_id, RATE_WINDOW_SECONDS)
        raise HTTPException(
            status_code=429,
            detail="principal rate limit exceeded",
            headers={"Retry-After": str(retry_after), "X-RateLimit-Reason": "principal_rate_limit"},
        )

    return AuthUser(user_id=user.user_id, auth_source=user.auth_source, is_admin=user.user_id in admin_user_ids())


def require_admin_user(user: AuthUser = Depends(require_api_user)) -> AuthUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="admin access required")
    return user


def ensure_owner(owner_id: str, user: AuthUser, resource: str, allow_admin: bool = False) -> None:
    allowed = user.can_manage(owner_id) if allow_admin else user.owns(owner_id)
    if not allowed:
        raise HTTPException(status_code=403, detail=f"forbidden for this {resource} owner")
