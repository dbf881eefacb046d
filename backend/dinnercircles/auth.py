"""Authentication utilities for the FastAPI application.

Accounts, passwords and token issuance belong to the account service; this
module only validates the Bearer JWT it issues (``sub`` = user e-mail),
resolves the caller against ``users`` and enforces the admin role for
privileged matching endpoints.
"""

######### Imports #########

import datetime
import logging

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from . import db as db_mod
from .settings import get_settings

auth_logger = logging.getLogger('auth')
# auto_error=False keeps the Bearer scheme in the OpenAPI docs while still
# allowing the cookie fallback below.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/login", auto_error=False)

JWT_ALGO = 'HS256'


def create_access_token(data: dict, expires_minutes: int = 60) -> str:
    """Sign a token the same way the account service does (used by scripts and tests)."""
    settings = get_settings()
    to_encode = data.copy()
    now_dt = datetime.datetime.now(datetime.timezone.utc)
    to_encode.update({"exp": now_dt + datetime.timedelta(minutes=expires_minutes), "iat": now_dt})
    if settings.jwt_issuer:
        to_encode["iss"] = settings.jwt_issuer
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=JWT_ALGO)


async def get_user_by_email(email: str):
    if not email:
        return None
    return await db_mod.db.users.find_one({"email": email.strip().lower()})


async def get_current_user(request: Request, token: str = Depends(oauth2_scheme)):
    """Dependency that returns the current authenticated user.

    Token retrieval order:
    1. Authorization: Bearer <token> header
    2. HttpOnly cookie named 'access_token'
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        token = request.cookies.get('__Host-access_token') or request.cookies.get('access_token')
        if not token:
            raise credentials_exception

    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[JWT_ALGO],
            options={"require": ["exp", "sub"]},
        )
    except JWTError as exc:
        auth_logger.info('auth.token.invalid reason=%s', exc.__class__.__name__)
        raise credentials_exception from exc
    if settings.jwt_issuer and payload.get("iss") != settings.jwt_issuer:
        raise credentials_exception
    user = await get_user_by_email(payload.get("sub"))
    if user is None or user.get('deleted_at') is not None:
        raise credentials_exception
    return user


def is_admin(user: dict) -> bool:
    return 'admin' in (user.get('roles') or [])


def require_admin(current_user=Depends(get_current_user)):
    """Dependency that allows only admin users.

    Returns the current_user on success.
    """
    if not is_admin(current_user):
        auth_logger.warning('auth.forbidden user_id=%s', current_user.get('_id'))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Admin required')
    return current_user
