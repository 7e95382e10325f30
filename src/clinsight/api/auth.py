"""
Authentication Module

JWT bearer authentication with role-based access for the Clinsight API.
Roles are carried in the token's ``roles`` claim.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum

import structlog
from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, Field

from clinsight.config import get_settings

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class Role(str, Enum):
    CLINICIAN = "CLINICIAN"
    RESEARCHER = "RESEARCHER"
    DOCTOR = "DOCTOR"
    NURSE_PRACTITIONER = "NURSE_PRACTITIONER"
    CLINICAL_SPECIALIST = "CLINICAL_SPECIALIST"
    PUBLIC_HEALTH_OFFICER = "PUBLIC_HEALTH_OFFICER"
    ADMIN = "ADMIN"
    SYSTEM_MONITOR = "SYSTEM_MONITOR"


# =============================================================================
# Models
# =============================================================================

class TokenPayload(BaseModel):
    """JWT token payload."""
    sub: str
    roles: list[str] = Field(default_factory=list)
    exp: datetime | None = None
    iat: datetime | None = None


class User(BaseModel):
    """Authenticated caller."""
    id: str
    roles: list[str] = Field(default_factory=list)
    is_active: bool = True

    def has_any_role(self, roles) -> bool:
        return any(getattr(r, "value", r) in self.roles for r in roles)


# =============================================================================
# Tokens
# =============================================================================

def create_access_token(
    subject: str,
    roles: list[Role | str],
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed access token for ``subject`` carrying ``roles``."""
    settings = get_settings().auth

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.jwt_access_token_expire_minutes)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "roles": [getattr(r, "value", r) for r in roles],
        "iat": now,
        "exp": now + expires_delta,
    }
    return jwt.encode(
        payload,
        settings.jwt_secret_key.get_secret_value(),
        algorithm=settings.jwt_algorithm,
    )


def decode_token(token: str) -> TokenPayload:
    """
    Decode and validate a JWT token.

    Raises:
        HTTPException: 401 if the token is invalid or expired
    """
    settings = get_settings().auth

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key.get_secret_value(),
            algorithms=[settings.jwt_algorithm],
        )
        return TokenPayload(
            sub=payload.get("sub"),
            roles=payload.get("roles", []),
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc) if payload.get("exp") else None,
            iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc) if payload.get("iat") else None,
        )
    except (JWTError, ValueError) as e:
        logger.warning("JWT decode error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


# =============================================================================
# Dependency Injection
# =============================================================================

async def get_current_user(
    bearer: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> User:
    """
    FastAPI dependency returning the authenticated caller.

    With ``DEV_AUTO_AUTH=true`` a request without a token acts as a
    development user holding every role.
    """
    settings = get_settings()

    if bearer is None:
        if settings.auth.dev_auto_auth and not settings.is_production:
            logger.debug("Dev mode: auto-authenticating")
            return User(id="dev-user", roles=[r.value for r in Role])
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_data = decode_token(bearer.credentials)
    return User(id=token_data.sub, roles=token_data.roles)


def require_roles(*required_roles: Role):
    """
    Dependency factory requiring any one of the given roles.

    Usage:
        @router.get("/metrics")
        async def metrics(user: User = Depends(require_roles(Role.ADMIN))):
            ...
    """
    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.is_active and current_user.has_any_role(required_roles):
            return current_user

        logger.warning("Access denied", user=current_user.id, required=[r.value for r in required_roles])
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Required roles: {', '.join(r.value for r in required_roles)}",
        )

    return role_checker
