from __future__ import annotations

import threading
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Literal
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from passlib.exc import UnknownHashError

from qrattend.errors import ApiError
from qrattend.settings import get_settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

AdminRole = Literal["owner", "manager"]

_LOCK = threading.Lock()
_FAILED_ATTEMPTS: dict[str, deque[datetime]] = defaultdict(deque)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _attempt_window() -> timedelta:
    return timedelta(minutes=max(1, get_settings().login_attempt_window_minutes))


def _cleanup_attempts(key: str, now: datetime) -> None:
    queue = _FAILED_ATTEMPTS[key]
    threshold = now - _attempt_window()
    while queue and queue[0] < threshold:
        queue.popleft()
    if not queue:
        _FAILED_ATTEMPTS.pop(key, None)


def attempt_key(scope: str, ip: str | None) -> str | None:
    if not ip:
        return None
    return f"{scope}:{ip}"


def ensure_attempt_allowed(key: str | None) -> None:
    if key is None:
        return
    now = _utcnow()
    max_attempts = get_settings().login_max_attempts
    with _LOCK:
        _cleanup_attempts(key, now)
        queue = _FAILED_ATTEMPTS.get(key, deque())
        if len(queue) >= max_attempts:
            raise ApiError(
                status_code=429,
                code="TOO_MANY_ATTEMPTS",
                message="Too many failed attempts. Please try again later.",
            )


def register_attempt_failure(key: str | None) -> None:
    if key is None:
        return
    now = _utcnow()
    with _LOCK:
        _cleanup_attempts(key, now)
        _FAILED_ATTEMPTS[key].append(now)


def register_attempt_success(key: str | None) -> None:
    if key is None:
        return
    with _LOCK:
        _FAILED_ATTEMPTS.pop(key, None)


def reset_attempts() -> None:
    with _LOCK:
        _FAILED_ATTEMPTS.clear()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except (ValueError, TypeError, UnknownHashError):
        # Corrupt or foreign hash values count as a mismatch.
        return False


def create_access_token(*, role: AdminRole, subject_id: int, email: str) -> tuple[str, int, dict[str, Any]]:
    settings = get_settings()
    now = _utcnow()
    expires_in = settings.access_token_minutes * 60
    claims: dict[str, Any] = {
        "sub": f"{role}:{subject_id}",
        "role": role,
        "subject_id": subject_id,
        "email": email,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
        "jti": str(uuid4()),
        "typ": "access",
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
    return token, expires_in, claims


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    if payload.get("typ") != "access":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token type is invalid.")
    if payload.get("role") not in ("owner", "manager"):
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    if not isinstance(payload.get("subject_id"), int):
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")
    return payload


def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict[str, Any]:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    payload = decode_token(credentials.credentials)
    request.state.actor = str(payload["role"])
    request.state.actor_id = str(payload["sub"])
    return payload
