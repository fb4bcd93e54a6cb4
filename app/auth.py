import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from jose import jwt as jose_jwt

from .config import SECRET_KEY
from .utils.clock import utcnow

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24

security = HTTPBearer()


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    role: str = "parent"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_access_token(user_id: str, role: str = "parent", expires_delta: Optional[timedelta] = None) -> str:
    """Issue a bearer token; the main platform issues the same shape"""
    expire = utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    return jose_jwt.encode({"sub": user_id, "role": role, "exp": expire}, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> CurrentUser:
    """Raises HTTPException(401) for anything that is not a valid token"""
    try:
        claims = jose_jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.warning(f"⚠️ Rejected bearer token: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id = claims.get("sub")
    if not user_id:
        logger.error(f"❌ Token missing user ID claim. Available claims: {list(claims.keys())}")
        raise HTTPException(status_code=401, detail="Invalid token")
    return CurrentUser(user_id=str(user_id), role=claims.get("role") or "parent")


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> CurrentUser:
    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
        )
    return decode_access_token(credentials.credentials)


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        logger.warning(f"⚠️ User {user.user_id} attempted an admin-only action")
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
