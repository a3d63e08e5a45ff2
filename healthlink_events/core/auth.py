"""
Authentication and role checks.

Callers present a Bearer JWT issued by the identity service. The token
carries the principal id in ``sub`` and one HealthLink role in ``role``.
Anonymous callers are allowed through to endpoints that do not require a
principal; they are rate-limited by client address instead.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
import structlog
from fastapi import Depends, HTTPException, Request

from healthlink_events.core.config import get_settings

log = structlog.get_logger()


class Role(str, enum.Enum):
    ANONYMOUS = "ANONYMOUS"
    PATIENT = "PATIENT"
    STAFF = "STAFF"
    DOCTOR = "DOCTOR"
    ORGANIZATION = "ORGANIZATION"
    ADMIN = "ADMIN"
    PLATFORM_OWNER = "PLATFORM_OWNER"


ADMIN_ROLES = frozenset({Role.ADMIN, Role.PLATFORM_OWNER})


@dataclass(frozen=True)
class Principal:
    id: uuid.UUID
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def create_jwt(
    principal_id: uuid.UUID,
    role: Role | str,
    *,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed access token."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(principal_id),
        "role": Role(role).value,
        "iat": now,
        "exp": now + (expires_delta or timedelta(minutes=60)),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jwt.PyJWTError on failure."""
    settings = get_settings()
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


def principal_from_token(token: str) -> Principal | None:
    """Return the principal a token names, or None when it does not verify."""
    try:
        payload = decode_jwt(token)
        return Principal(id=uuid.UUID(payload["sub"]), role=Role(payload["role"]))
    except (jwt.PyJWTError, KeyError, ValueError):
        return None


def resolve_principal(request: Request) -> Principal | None:
    """Resolve the caller from the Authorization header, caching it on request.state."""
    if hasattr(request.state, "principal"):
        return request.state.principal

    principal = None
    authorization = request.headers.get("Authorization")
    if authorization and authorization.startswith("Bearer "):
        principal = principal_from_token(authorization[7:].strip())
        if principal is None:
            log.debug("auth.token_rejected", path=request.url.path)
    request.state.principal = principal
    return principal


# ---------------------------------------------------------------------------
# Authorization dependencies
# ---------------------------------------------------------------------------

async def require_principal(request: Request) -> Principal:
    """Any authenticated caller."""
    principal = resolve_principal(request)
    if principal is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return principal


def require_roles(*roles: Role):
    """Build a dependency admitting only the given roles."""
    allowed = frozenset(roles)

    async def _check(principal: Principal = Depends(require_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return principal

    return _check


require_admin = require_roles(Role.ADMIN, Role.PLATFORM_OWNER)
require_subscriber = require_roles(Role.DOCTOR, Role.ORGANIZATION, Role.ADMIN, Role.PLATFORM_OWNER)
