import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

import settings
from database import db, parse_object_id
from errors import AuthenticationError, AuthorizationError, NotFoundError

logger = logging.getLogger(__name__)

pwd_context = CryptContext(
    schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS
)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


# Helper functions for auth

def verify_password(plain_password, hashed_password):
    if not plain_password or not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def new_reset_token():
    """Return (token for the user, sha256 digest to store)."""
    token = secrets.token_urlsafe(32)
    return token, hash_reset_token(token)


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _token_from_request(request: Request, bearer: Optional[str]) -> Optional[str]:
    if bearer:
        return bearer
    return request.cookies.get(settings.COOKIE_NAME)


def _load_user(token: str):
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.debug("Rejected token: %s", e)
        raise AuthenticationError()
    user_id = payload.get("sub")
    if user_id is None:
        raise AuthenticationError()
    try:
        oid = parse_object_id(user_id, "User")
    except NotFoundError:
        raise AuthenticationError()
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise AuthenticationError("User not found")
    if not user.get("isActive", True):
        raise AuthenticationError("Account is deactivated")
    return user


async def get_current_user(request: Request, token: Optional[str] = Depends(oauth2_scheme)):
    token = _token_from_request(request, token)
    if not token:
        raise AuthenticationError()
    return _load_user(token)


async def get_optional_user(request: Request, token: Optional[str] = Depends(oauth2_scheme)):
    token = _token_from_request(request, token)
    if not token:
        return None
    try:
        return _load_user(token)
    except AuthenticationError:
        return None


def require_roles(*roles: str):
    async def checker(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise AuthorizationError(
                f"User role {user.get('role')} is not authorized to access this route"
            )
        return user

    return checker


require_admin = require_roles("admin")
