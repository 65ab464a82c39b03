"""Authentication for the inbound API.

Bearer JWTs signed with the configured secret. Claims carry the caller's
organization, which becomes the ``AuthContext`` every orchestrator
operation receives.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from compass.api.services.orchestrator import AuthContext
from compass.core.config import get_settings

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="/api/v1/auth/login",
    auto_error=False,
)


class User(BaseModel):
    """Authenticated user model."""

    id: str
    organization_id: str
    email: str | None = None
    name: str | None = None
    roles: list[str] = []
    is_active: bool = True

    def has_role(self, role: str) -> bool:
        """Check if user has a specific role."""
        return role in self.roles or "admin" in self.roles

    def to_context(self) -> AuthContext:
        return AuthContext(
            organization_id=self.organization_id,
            customer_id=self.id,
            roles=tuple(self.roles),
        )


class JWTTokenManager:
    """Manager for internal JWT tokens."""

    def __init__(self) -> None:
        self.settings = get_settings()

    def create_access_token(
        self,
        user_id: str,
        organization_id: str,
        email: str | None = None,
        name: str | None = None,
        roles: list[str] | None = None,
        expires_delta: timedelta | None = None,
    ) -> str:
        """Create a new JWT access token."""
        if expires_delta is None:
            expires_delta = timedelta(minutes=self.settings.jwt_access_token_expire_minutes)

        now = datetime.now(timezone.utc)
        to_encode = {
            "sub": user_id,
            "org": organization_id,
            "email": email,
            "name": name,
            "roles": roles or ["user"],
            "exp": now + expires_delta,
            "iat": now,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "type": "access",
        }

        return jwt.encode(
            to_encode,
            self.settings.jwt_secret_key,
            algorithm=self.settings.jwt_algorithm,
        )

    def decode_token(self, token: str) -> dict[str, Any]:
        """Decode and validate a JWT token.

        Raises:
            HTTPException: If token is invalid or expired
        """
        try:
            return jwt.decode(
                token,
                self.settings.jwt_secret_key,
                algorithms=[self.settings.jwt_algorithm],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
            )
        except JWTError as e:
            logger.warning(f"Token decode failed: {e}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Invalid token: {e}",
                headers={"WWW-Authenticate": "Bearer"},
            )


jwt_manager = JWTTokenManager()


async def get_current_user(
    request: Request,
    token: str | None = Depends(oauth2_scheme),
) -> User:
    """Dependency to get the current authenticated user."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    # Try to get token from header if not provided by OAuth2 scheme
    if not token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header[7:]

    if not token:
        raise credentials_exception

    payload = jwt_manager.decode_token(token)

    user_id = payload.get("sub")
    organization_id = payload.get("org")
    if user_id is None or organization_id is None:
        raise credentials_exception

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return User(
        id=user_id,
        organization_id=organization_id,
        email=payload.get("email"),
        name=payload.get("name"),
        roles=payload.get("roles", ["user"]),
    )


async def get_auth_context(current_user: User = Depends(get_current_user)) -> AuthContext:
    """Dependency turning the authenticated user into an ``AuthContext``."""
    if not current_user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )
    return current_user.to_context()


def require_roles(required_roles: list[str]):
    """Dependency factory to require specific roles.

    Usage:
        @router.delete("/{id}")
        async def delete(user: User = Depends(require_roles(["operator"]))):
            ...
    """
    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if "admin" in current_user.roles:
            return current_user

        has_required = any(role in current_user.roles for role in required_roles)
        if not has_required:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required roles: {', '.join(required_roles)}",
            )
        return current_user

    return role_checker
