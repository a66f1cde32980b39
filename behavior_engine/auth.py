"""
Bearer token validation for the admin API.

Tokens are issued by the operator's identity service; this module only checks
them. `create_access_token` mints tokens with the same secret for local
tooling and tests.
"""

from datetime import datetime, timedelta
from typing import Optional
from fastapi import HTTPException, Security, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel

from behavior_engine.config import settings


security_scheme = HTTPBearer(
    scheme_name="Bearer",
    description="JWT bearer token with a `sub` claim and an optional `role` claim",
    auto_error=False,
)


class TokenData(BaseModel):
    """Decoded token information available in routes."""
    user_id: str
    role: str
    exp: datetime


def create_access_token(
    user_id: str,
    role: str = "admin",
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a signed access token.

    Example:
        token = create_access_token("ops-dashboard", role="admin")
    """
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.jwt_expiration_minutes))
    payload = {
        "sub": user_id,
        "role": role,
        "exp": expire,
        "iat": datetime.utcnow(),
        "type": "access"
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> TokenData:
    """
    Decode and validate a JWT token.

    Raises:
        HTTPException: If token is invalid, expired, or has no subject
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm]
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"}
        )

    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing subject",
            headers={"WWW-Authenticate": "Bearer"}
        )

    exp = payload.get("exp")
    return TokenData(
        user_id=user_id,
        role=payload.get("role", "user"),
        exp=datetime.utcfromtimestamp(exp) if exp else datetime.utcnow()
    )


async def verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security_scheme)
) -> TokenData:
    """FastAPI dependency that validates the bearer token and returns its claims."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return decode_token(credentials.credentials)


async def require_admin(
    current_user: TokenData = Depends(verify_token)
) -> TokenData:
    """FastAPI dependency that requires the admin role."""
    if current_user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user
