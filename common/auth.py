import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

# Shared by every service: tokens issued by users_service are verified here.
SECRET_KEY = os.getenv("JWT_SECRET", "super-secret-vehicle-rental-key")
ALGORITHM = "HS256"

ROLE_USER = "USER"
ROLE_ADMIN = "ADMIN"
ROLE_SERVICE = "SERVICE"

PERMISSION_READ = "READ"
PERMISSION_CREATE = "CREATE"
PERMISSION_DELETE = "DELETE"

SERVICE_ACCOUNT_USER_ID = 0

security = HTTPBearer()


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode a JWT and extract the caller's identity.

    Parameters
    ----------
    token : str
        Encoded JWT, without the 'Bearer ' prefix.

    Returns
    -------
    Dict[str, Any]
        A dictionary containing:
        - 'username' : str
        - 'user_id' : int
        - 'role' : str ('USER', 'ADMIN' or 'SERVICE')
        - 'permissions' : List[str]

    Raises
    ------
    HTTPException
        If the token is expired, badly signed, or lacks the required claims.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception

    username = payload.get("sub")
    user_id = payload.get("user_id")
    role = payload.get("role")
    if username is None or user_id is None or role is None:
        raise credentials_exception

    return {
        "username": username,
        "user_id": int(user_id),
        "role": str(role).upper(),
        "permissions": [str(p).upper() for p in payload.get("permissions") or []],
    }


async def get_current_user_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    """
    FastAPI dependency: claims of the bearer token on the request.
    """
    return decode_token(credentials.credentials)


def has_permission(claims: Dict[str, Any], permission: str) -> bool:
    """
    Return True if the caller holds a granular admin permission.

    An ADMIN whose permission list is empty is a super-admin and holds
    every permission. Non-admin callers never hold admin permissions.
    """
    if claims["role"] != ROLE_ADMIN:
        return False
    permissions = claims.get("permissions") or []
    return not permissions or permission in permissions


def require_roles(*allowed_roles: str) -> Callable:
    """
    Build a dependency that enforces a set of allowed roles.

    Parameters
    ----------
    allowed_roles : str
        One or more role names that are permitted to access a route.

    Returns
    -------
    Callable
        A FastAPI dependency returning the claims, or raising HTTP 403.
    """

    async def dependency(claims: Dict[str, Any] = Depends(get_current_user_claims)) -> Dict[str, Any]:
        if claims["role"] not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
            )
        return claims

    return dependency


def require_permission(permission: str) -> Callable:
    """
    Build a dependency that only lets administrators holding `permission` through.
    """

    async def dependency(claims: Dict[str, Any] = Depends(get_current_user_claims)) -> Dict[str, Any]:
        if claims["role"] != ROLE_ADMIN:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Administrator access required",
            )
        if not has_permission(claims, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
            )
        return claims

    return dependency


def make_service_account_token(service_name: str, permissions: List[str] = None) -> str:
    """
    Mint a short-lived token used for inter-service calls.
    """
    payload = {
        "sub": service_name,
        "role": ROLE_SERVICE,
        "user_id": SERVICE_ACCOUNT_USER_ID,
        "permissions": permissions or [],
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)
