"""
Bearer-token authentication for the backup endpoints.

Tokens are HS256 JWTs issued by the school-records login endpoint and carry
the user id (`userId`) and role (`rol`). Backup and restore are restricted to
the administrator role.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from api.settings import settings

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthenticatedUser:
    """User identity extracted from a validated token."""

    user_id: str
    role: str
    claims: Dict[str, Any] = field(default_factory=dict)


class _InMemoryRateLimiter:
    """Process-local sliding-window limiter for failed authentication attempts."""

    def __init__(self) -> None:
        self._events: Dict[str, Deque[float]] = {}

    def check_and_add(self, *, key: str, limit: int, window_seconds: int, now: float) -> int:
        """Record an event and return seconds to wait, or 0 when allowed."""

        bucket = self._events.setdefault(key, deque())
        cutoff = now - float(window_seconds)
        while bucket and bucket[0] < cutoff:
            bucket.popleft()

        if len(bucket) >= limit:
            return int(max(1.0, bucket[0] + float(window_seconds) - now))

        bucket.append(now)
        return 0

    def reset(self) -> None:
        self._events.clear()


_rate_limiter = _InMemoryRateLimiter()

AUTH_FAILURE_LIMIT = 20
AUTH_FAILURE_WINDOW_SECONDS = 300


def _unauthorized(request: Optional[Request], detail: str) -> HTTPException:
    """Count an authentication failure and build the 401 (or 429) to raise."""

    client = request.client.host if request is not None and request.client else "unknown"
    retry_after = _rate_limiter.check_and_add(
        key=f"authfail:{client}",
        limit=AUTH_FAILURE_LIMIT,
        window_seconds=AUTH_FAILURE_WINDOW_SECONDS,
        now=datetime.now(timezone.utc).timestamp(),
    )
    if retry_after:
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many failed authentication attempts. Please retry later.",
            headers={"Retry-After": str(retry_after)},
        )
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> AuthenticatedUser:
    """
    Validate a JWT and extract the user identity.

    Raises:
        jwt.InvalidTokenError: If the signature, expiry or format is invalid
    """
    payload = jwt.decode(
        token,
        settings.get_jwt_secret(),
        algorithms=[settings.JWT_ALGORITHM],
        options={"verify_exp": True},
    )
    user_id = payload.get("userId") or payload.get("sub") or ""
    role = payload.get("rol") or payload.get("role") or ""
    return AuthenticatedUser(user_id=str(user_id), role=str(role), claims=payload)


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency returning the user behind the bearer token.

    Raises:
        HTTPException: 503 when no secret is configured, 401 for a missing or
            invalid token, 429 after too many failures
    """
    if not settings.get_jwt_secret():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication is not configured. Please set JWT_SECRET or JWT_SECRET_FILE.",
        )

    if credentials is None or not credentials.credentials:
        raise _unauthorized(request, "Not authorized. Token not provided.")

    try:
        return decode_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise _unauthorized(request, "Token has expired")
    except jwt.InvalidTokenError as e:
        raise _unauthorized(request, f"Invalid token: {str(e)}")


async def require_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    """Allow only the administrator role through."""
    if user.role != settings.ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Access denied. Required role: {settings.ADMIN_ROLE}.",
        )
    return user
