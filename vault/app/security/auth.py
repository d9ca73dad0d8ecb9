"""
JWT-based authentication and authorization for the note vault API.

The acting user recorded in every audit entry comes from the authenticated
identity, never from request bodies or headers.

Roles:
- clinician: create, read, update and delete notes; de-identify text; sync
- auditor: read audit trails and compliance reports
- admin: full access to all operations
"""

import os
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from vault.app.models.notes import AuditContext

# HS256 with a shared secret; swap in RS256 and the identity provider's
# public key for deployment.
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

VALID_ROLES = {"clinician", "auditor", "admin"}

security = HTTPBearer()


class Identity(BaseModel):
    """Authenticated identity extracted from a validated JWT."""

    sub: str  # User ID, recorded as the audit actor
    role: str
    exp: Optional[int] = None
    session_id: Optional[str] = None

    def has_role(self, required_role: str) -> bool:
        return self.role == required_role or self.role == "admin"


def decode_jwt(token: str) -> dict:
    """
    Decode and validate a JWT.

    Raises:
        HTTPException: 401 if the token is invalid, expired or malformed
    """
    try:
        return jwt.decode(
            token,
            JWT_SECRET_KEY,
            algorithms=[JWT_ALGORITHM],
            options={
                "verify_signature": True,
                "verify_exp": True,
                "require_exp": True,
                "require_sub": True,
            },
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "invalid_token",
                "message": f"Token validation failed: {str(e)}",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )


def _missing_claim(claim: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "missing_claim", "message": f"Token missing '{claim}' claim"},
    )


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Identity:
    """
    Extract and validate identity from the bearer token.

    Raises:
        HTTPException: 401 if the token is invalid or missing required claims
    """
    payload = decode_jwt(credentials.credentials)

    sub = payload.get("sub")
    role = payload.get("role")
    if not sub:
        raise _missing_claim("sub")
    if not role:
        raise _missing_claim("role")

    if role not in VALID_ROLES:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "invalid_role",
                "message": f"Invalid role '{role}'. Must be one of: {sorted(VALID_ROLES)}",
            },
        )

    return Identity(sub=sub, role=role, exp=payload.get("exp"), session_id=payload.get("sid"))


def require_role(required_role: str):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.post("/notes")
        async def create_note(identity: Identity = Depends(require_role("clinician"))):
            ...
    """

    async def role_checker(
        identity: Identity = Depends(get_current_identity),
    ) -> Identity:
        if not identity.has_role(required_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "insufficient_permissions",
                    "message": f"Role '{required_role}' required. You have: '{identity.role}'",
                },
            )
        return identity

    return role_checker


def audit_context(request: Request, identity: Identity) -> AuditContext:
    """Request metadata recorded alongside audit entries."""
    return AuditContext(
        ip_address=request.client.host if request.client else None,
        session_id=identity.session_id,
        user_agent=request.headers.get("user-agent"),
    )


def create_jwt_token(
    sub: str, role: str, expires_in_seconds: int = 3600, session_id: Optional[str] = None
) -> str:
    """
    Create a JWT for development and tests.

    Deployed instances accept tokens from the identity provider instead.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "role": role,
        "exp": int(now.timestamp()) + expires_in_seconds,
        "iat": int(now.timestamp()),
    }
    if session_id:
        payload["sid"] = session_id
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)
