# clinic_scheduler/security.py - bearer token identity
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import get_settings
from .models import StaffRole

security_logger = logging.getLogger("security")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    """Identity every core call runs under."""
    user_id: int
    clinic_id: int
    role: StaffRole


def create_access_token(user_id: int, clinic_id: int, role: StaffRole = StaffRole.receptionist,
                        expires_delta: Optional[timedelta] = None) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode = {
        "sub": str(user_id),
        "clinic_id": clinic_id,
        "role": StaffRole(role).value,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> CurrentUser:
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as e:
        security_logger.warning(f"JWT decode failed: {e}")
        raise credentials_exception

    if payload.get("type") != "access":
        raise credentials_exception
    try:
        return CurrentUser(
            user_id=int(payload["sub"]),
            clinic_id=int(payload["clinic_id"]),
            role=StaffRole(payload.get("role", StaffRole.receptionist.value)),
        )
    except (KeyError, TypeError, ValueError):
        security_logger.warning("JWT is missing identity claims")
        raise credentials_exception


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CurrentUser:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decode_access_token(credentials.credentials)


def require_role(*roles: StaffRole):
    """Dependency factory restricting a route to the given roles."""
    allowed = {StaffRole(r) for r in roles}

    async def checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in allowed:
            security_logger.warning(
                f"User {current_user.user_id} with role {current_user.role.value} denied; needs {sorted(r.value for r in allowed)}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have permission to access this resource.",
            )
        return current_user

    return checker
