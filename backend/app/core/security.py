from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError

from app.core.config import settings
from app.core.errors import AuthenticationError
from app.core.logging import auth_logger
from app.core.monitoring import record_auth_attempt


security = HTTPBearer(auto_error=False)


def create_access_token(owner_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a bearer token whose subject is the owner id"""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode = {"sub": owner_id, "exp": expire, "type": "access"}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str) -> str:
    """Decode a bearer token and return its subject, or raise AuthenticationError"""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as e:
        auth_logger.warning("Token verification failed", error=str(e))
        raise AuthenticationError("Invalid or expired token")

    owner_id = payload.get("sub")
    if not owner_id or not isinstance(owner_id, str):
        auth_logger.warning("Token missing subject")
        raise AuthenticationError("Invalid token: missing subject")
    return owner_id


def resolve_caller(credentials: Optional[HTTPAuthorizationCredentials]) -> str:
    """Resolve the request's caller to an owner id, or fail with AuthenticationError"""
    if credentials is None or not credentials.credentials:
        record_auth_attempt(False)
        raise AuthenticationError()

    try:
        owner_id = verify_token(credentials.credentials)
    except AuthenticationError:
        record_auth_attempt(False)
        raise

    record_auth_attempt(True)
    auth_logger.debug("Caller resolved", owner_id=owner_id)
    return owner_id


async def get_current_owner(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """FastAPI dependency returning the authenticated owner id"""
    return resolve_caller(credentials)
