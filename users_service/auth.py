import hashlib
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from common.auth import ALGORITHM, SECRET_KEY, decode_token

from . import models
from .database import get_db
from .models import Permission, UserRole

ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/users/login")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def hash_reset_token(token: str) -> str:
    """Digest stored in place of a password-reset token; the raw token only travels by e-mail."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def get_user_by_username(db: Session, username: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.username == username).first()


def authenticate_user(db: Session, username: str, password: str) -> Optional[models.User]:
    """
    Return the account matching the credentials, or None.

    Blocked accounts never authenticate, whatever the password.
    """
    user = get_user_by_username(db, username)
    if user is None or not user.is_active:
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


def create_access_token(user: models.User, expires_delta: Optional[timedelta] = None) -> str:
    """
    Issue the JWT every service trusts for this account.

    Parameters
    ----------
    user : User
        The authenticated account.
    expires_delta : Optional[timedelta]
        Lifetime of the token; ACCESS_TOKEN_EXPIRE_MINUTES by default.

    Returns
    -------
    str
        HS256 token carrying 'sub', 'user_id', 'role', 'permissions' and 'exp'.
    """
    lifetime = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {
        "sub": user.username,
        "user_id": user.id,
        "role": user.role.value,
        "permissions": sorted(user.permissions or []),
        "exp": datetime.now(timezone.utc) + lifetime,
    }
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> models.User:
    """
    Load the account behind a bearer token.

    The token is refused (401) when the account no longer exists, has
    been blocked, or has changed role since the token was issued.
    """
    claims = decode_token(token)

    user = get_user_by_username(db, claims["username"])
    if user is None or not user.is_active or claims["role"] != user.role.value:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def admin_only(current_user: models.User = Depends(get_current_user)) -> models.User:
    if current_user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operation not permitted for this role",
        )
    return current_user


def is_super_admin(user: models.User) -> bool:
    return user.role == UserRole.ADMIN and not user.permissions


async def require_super_admin(current_user: models.User = Depends(admin_only)) -> models.User:
    """
    Only administrators with an empty permission list may manage roles
    and permissions.
    """
    if not is_super_admin(current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super-admin access required",
        )
    return current_user


def require_admin_permission(permission: Permission):
    """
    Build a dependency letting through administrators that hold `permission`.

    An empty permission list means every permission.
    """

    async def dependency(current_user: models.User = Depends(admin_only)) -> models.User:
        if current_user.permissions and permission.value not in current_user.permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission.value}",
            )
        return current_user

    return dependency
