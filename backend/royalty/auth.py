"""
Royalty Engine - Authentication Utilities
JWT validation, role checks, and the internal-key guard for ops endpoints

Tokens are issued by the platform's auth service; this service only verifies
them. The `sub` claim is the creator id, `role` is "creator" or "admin".
"""
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from .services.engine import RoyaltyEngine

# Configuration
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 24

# Bearer token security
security = HTTPBearer()


@dataclass
class Principal:
    """Authenticated caller."""
    subject: str
    role: str = "creator"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_engine(request: Request) -> RoyaltyEngine:
    """Dependency for FastAPI - the service container built at startup."""
    return request.app.state.engine


def create_access_token(secret_key: str, subject: str, role: str = "creator",
                        expires_in: timedelta = timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)) -> str:
    """Create a JWT access token with role claim."""
    expire = datetime.now(timezone.utc) + expires_in
    to_encode = {
        "sub": subject,
        "role": role,
        "exp": expire
    }
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def decode_token(token: str, secret_key: str) -> Optional[dict]:
    """Decode and validate a JWT token (signature and expiry)."""
    try:
        payload = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
        return payload
    except JWTError:
        return None


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    engine: RoyaltyEngine = Depends(get_engine),
) -> Principal:
    """
    Dependency to get the current authenticated caller.
    Validates the JWT; there is no local user table.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(credentials.credentials, engine.settings.jwt_secret_key)
    if payload is None:
        raise credentials_exception

    subject: str = payload.get("sub")
    if subject is None:
        raise credentials_exception

    return Principal(subject=subject, role=payload.get("role", "creator"))


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """
    Dependency to require admin role.
    Use this on admin-only routes.
    """
    if not principal.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return principal


def require_account_access(account_id: str, principal: Principal) -> None:
    """Creators may only read their own account; admins may read any."""
    if not principal.is_admin and principal.subject != account_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to view this account"
        )


async def verify_internal_key(
    x_internal_key: str = Header(...),
    engine: RoyaltyEngine = Depends(get_engine),
):
    """Verify internal API key for scheduler and ingestion endpoints."""
    if not hmac.compare_digest(x_internal_key, engine.settings.internal_api_key):
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True
