from __future__ import annotations

from typing import Any, Callable, Mapping

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from attendance_digest.errors import ApiError
from attendance_digest.settings import get_settings

# Tokens are minted by the HR platform's auth service; this service only verifies them.
bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_PERMISSION_KEYS: tuple[str, ...] = (
    "notifications",
    "audit",
)


def normalize_permissions(raw: Mapping[str, Any] | None) -> dict[str, dict[str, bool]]:
    normalized = {key: {"read": False, "write": False} for key in ADMIN_PERMISSION_KEYS}
    if not isinstance(raw, Mapping):
        return normalized
    for key in ADMIN_PERMISSION_KEYS:
        value = raw.get(key)
        if not isinstance(value, Mapping):
            continue
        can_write = bool(value.get("write"))
        normalized[key] = {"read": bool(value.get("read")) or can_write, "write": can_write}
    return normalized


def has_permission(claims: Mapping[str, Any], permission: str, *, write: bool = False) -> bool:
    if bool(claims.get("is_super_admin")):
        return True
    entry = normalize_permissions(claims.get("permissions")).get(permission)
    if entry is None:
        return False
    return entry["write"] if write else entry["read"]


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    if payload.get("role") != "admin":
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    return payload


def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict[str, Any]:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    payload = decode_token(credentials.credentials)
    request.state.actor = "admin"
    request.state.actor_id = str(payload.get("username") or payload.get("sub") or "admin")
    return payload


def require_admin_permission(permission: str, *, write: bool = False) -> Callable[..., dict[str, Any]]:
    if permission not in ADMIN_PERMISSION_KEYS:
        raise ValueError(f"Unknown admin permission: {permission}")

    def _dependency(claims: dict[str, Any] = Depends(require_admin)) -> dict[str, Any]:
        if not has_permission(claims, permission, write=write):
            raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
        return claims

    return _dependency
