import re
import secrets
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, List

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from common.auth import ROLE_ADMIN, ROLE_SERVICE, require_roles
from common.cache import delete_prefix, get_cached_json, set_cached_json
from common.clock import utcnow
from common.logging_config import configure_logging
from common.rate_limiter import SlidingWindowLimiter

from . import models, schemas
from .auth import (
    admin_only,
    authenticate_user,
    create_access_token,
    get_current_user,
    get_password_hash,
    hash_reset_token,
    require_admin_permission,
    require_super_admin,
)
from .database import Base, engine, get_db
from .models import Permission, UserRole
from .notifications import AccountNotifier, dispatcher, get_notifier

# Create tables on startup
Base.metadata.create_all(bind=engine)

SERVICE_NAME = "users"
logger = configure_logging(f"{SERVICE_NAME}_service")

RESET_TOKEN_TTL = timedelta(hours=1)
FORGOT_PASSWORD_REPLY = "If an account exists with this email, a reset link will be sent."


@asynccontextmanager
async def lifespan(app: FastAPI):
    dispatcher.start()
    yield
    dispatcher.shutdown()


app = FastAPI(title="Users Service", version="1.0.0", lifespan=lifespan)
router_v1 = APIRouter(prefix="/api/v1")

auth_limiter = SlidingWindowLimiter(
    max_hits=10,
    window_seconds=60,
    detail="Too many requests from this IP, please slow down",
)


def ip_rate_limiter(request: Request):
    """
    Rate limit unauthenticated endpoints (register, login, password recovery)
    by client IP + path.
    """
    client_ip = request.client.host if request.client else "unknown"
    auth_limiter.hit(f"{client_ip}:{request.url.path}")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "service": SERVICE_NAME,
            "path": request.url.path,
            "method": request.method,
            "status_code": exc.status_code,
            "detail": exc.detail,
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "service": SERVICE_NAME,
            "path": request.url.path,
            "method": request.method,
            "status_code": 500,
            "detail": "Internal server error",
        },
    )


@app.get("/")
def root():
    return {"service": "users", "status": "running"}


# ---------- Password Strength ----------

def validate_password_strength(password: str):
    """
    Validate password complexity rules.

    A valid password must:
    - Be between 8 and 72 characters long (bcrypt limit)
    - Contain at least one letter
    - Contain at least one digit

    Raises
    ------
    HTTPException
        If the password does not meet the strength requirements.
    """
    if len(password) < 8:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password must be at least 8 characters long",
        )
    if len(password) > 72:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password cannot exceed 72 characters",
        )
    if not re.search(r"[A-Za-z]", password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password must contain at least one letter",
        )
    if not re.search(r"\d", password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password must contain at least one digit",
        )


# ---------- Registration ----------

@router_v1.post(
    "/users/register",
    response_model=schemas.UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(ip_rate_limiter)],
)
def register_user(
    user_in: schemas.UserCreate,
    db: Session = Depends(get_db),
    notifier: AccountNotifier = Depends(get_notifier),
):
    """
    Register a new customer account.

    Behavior:
    - The first account ever created becomes ADMIN with an empty
      permission list (super-admin).
    - All subsequent public registrations become USER accounts.
    - Username and email must be unique.
    - Password strength is validated before hashing.
    - A welcome e-mail is queued once the account is stored.

    Raises
    ------
    HTTPException
        If username/email already exist or password is weak.
    """
    existing = (
        db.query(models.User)
        .filter(
            (models.User.username == user_in.username)
            | (models.User.email == user_in.email)
        )
        .first()
    )
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username or email already exists",
        )

    validate_password_strength(user_in.password)

    # --- Bootstrap admin + secure default roles ---
    assigned_role = UserRole.ADMIN if db.query(models.User).count() == 0 else UserRole.USER

    user = models.User(
        first_name=user_in.first_name,
        last_name=user_in.last_name,
        username=user_in.username,
        email=user_in.email,
        phone=user_in.phone,
        hashed_password=get_password_hash(user_in.password),
        role=assigned_role,
        permissions=[],
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Registered user %s with role %s", user.id, user.role.value)
    notifier.notify_welcome({"email": user.email, "name": user.full_name, "username": user.username})
    return user


# ---------- Login (token) ----------

@router_v1.post("/users/login", response_model=schemas.Token, dependencies=[Depends(ip_rate_limiter)])
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
):
    """
    Authenticate a user and return a JWT access token.

    The token carries user_id, role and permissions so the fleet and
    bookings services can authorize without calling back here.
    """
    user = authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
        )

    return {"access_token": create_access_token(user), "token_type": "bearer"}


# ---------- Password recovery ----------

@router_v1.post(
    "/users/forgot-password",
    response_model=schemas.MessageResponse,
    dependencies=[Depends(ip_rate_limiter)],
)
def forgot_password(
    body: schemas.ForgotPasswordRequest,
    db: Session = Depends(get_db),
    notifier: AccountNotifier = Depends(get_notifier),
):
    """
    Start a password reset.

    A 256-bit token valid for one hour is e-mailed to the account; only its
    SHA-256 digest is stored. Asking again replaces any pending token.
    The reply is identical whether or not the e-mail belongs to an
    account.
    """
    user = db.query(models.User).filter(models.User.email == body.email).first()
    if user is None:
        logger.info("Password reset requested for unknown email")
        return {"message": FORGOT_PASSWORD_REPLY}

    token = secrets.token_urlsafe(32)
    expires_at = utcnow() + RESET_TOKEN_TTL
    user.reset_password_token = hash_reset_token(token)
    user.reset_password_expiry = expires_at
    db.commit()

    logger.info("Password reset token issued for user %s", user.id)
    notifier.notify_password_reset(
        {
            "email": user.email,
            "name": user.full_name,
            "token": token,
            "expires_at": expires_at.strftime("%Y-%m-%d %H:%M"),
        }
    )
    return {"message": FORGOT_PASSWORD_REPLY}


@router_v1.post(
    "/users/reset-password",
    response_model=schemas.MessageResponse,
    dependencies=[Depends(ip_rate_limiter)],
)
def reset_password(body: schemas.PasswordResetConfirm, db: Session = Depends(get_db)):
    """
    Complete a password reset.

    The new hash is written and the token cleared by one conditional
    UPDATE, so a token can be spent only once even under concurrent
    requests.

    Raises
    ------
    HTTPException
        400 if the password is weak or the token is unknown or expired.
    """
    validate_password_strength(body.new_password)

    digest = hash_reset_token(body.token)
    now = utcnow()
    user = (
        db.query(models.User)
        .filter(
            models.User.reset_password_token == digest,
            models.User.reset_password_expiry >= now,
        )
        .first()
    )
    updated = 0
    if user is not None:
        updated = (
            db.query(models.User)
            .filter(
                models.User.id == user.id,
                models.User.reset_password_token == digest,
            )
            .update(
                {
                    models.User.hashed_password: get_password_hash(body.new_password),
                    models.User.reset_password_token: None,
                    models.User.reset_password_expiry: None,
                },
                synchronize_session=False,
            )
        )
    if not updated:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="The reset token is invalid or has expired",
        )
    db.commit()
    logger.info("Password reset completed for user %s", user.id)
    return {"message": "Password updated successfully. You can now log in."}


# ---------- Newsletter ----------

@router_v1.post(
    "/newsletter/subscribe",
    response_model=schemas.MessageResponse,
    dependencies=[Depends(ip_rate_limiter)],
)
def subscribe_newsletter(
    body: schemas.NewsletterSubscribe,
    notifier: AccountNotifier = Depends(get_notifier),
):
    """
    Send a newsletter confirmation e-mail. Subscriptions are not stored.
    """
    notifier.notify_newsletter_subscription({"email": body.email})
    return {"message": "Subscription successful. Confirmation email sent."}


# ---------- Current user profile ----------

@router_v1.get("/users/me", response_model=schemas.UserRead)
def get_my_profile(current_user: models.User = Depends(get_current_user)):
    return current_user


def _apply_profile_update(db: Session, user: models.User, update_data: schemas.UserUpdate) -> None:
    if update_data.email is not None and update_data.email != user.email:
        email_owner = (
            db.query(models.User)
            .filter(models.User.email == update_data.email)
            .first()
        )
        if email_owner and email_owner.id != user.id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Email already in use",
            )
        user.email = update_data.email

    if update_data.first_name is not None:
        user.first_name = update_data.first_name
    if update_data.last_name is not None:
        user.last_name = update_data.last_name
    if update_data.phone is not None:
        user.phone = update_data.phone


@router_v1.put("/users/me", response_model=schemas.UserRead)
def update_my_profile(
    update_data: schemas.UserUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """
    Update the authenticated user's profile (names, email, phone).

    Raises
    ------
    HTTPException
        If the new email is already used by another account.
    """
    _apply_profile_update(db, current_user, update_data)
    db.add(current_user)
    db.commit()
    db.refresh(current_user)
    delete_prefix(f"user:{current_user.id}")
    return current_user


# ---------- helpers ----------

internal_lookup = require_roles(ROLE_ADMIN, ROLE_SERVICE)


def _get_user_or_404(db: Session, user_id: int) -> models.User:
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        )
    return user


def _refuse_self(target_id: int, actor: models.User, action: str) -> None:
    if target_id == actor.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"You cannot {action} your own account",
        )


# ---------- Admin: list users, lookup, role/permissions, block, delete ----------

@router_v1.get("/users", response_model=List[schemas.UserRead])
def list_users(
    db: Session = Depends(get_db),
    _: models.User = Depends(require_admin_permission(Permission.READ)),
):
    return db.query(models.User).order_by(models.User.created_at.desc()).all()


@router_v1.get("/users/id/{user_id}", response_model=schemas.UserSnapshot)
def get_user_snapshot(
    user_id: int,
    db: Session = Depends(get_db),
    _: Dict = Depends(internal_lookup),
):
    """
    Admin / service account: customer snapshot used by the bookings service.

    Parameters
    ----------
    user_id : int
        ID of the customer.

    Returns
    -------
    UserSnapshot
        id, full name, email, phone and active flag.

    Raises
    ------
    HTTPException
        404 if the user does not exist.
    """
    cache_key = f"user:{user_id}:snapshot"
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached

    user = _get_user_or_404(db, user_id)
    snapshot = schemas.UserSnapshot(
        id=user.id,
        name=user.full_name,
        email=user.email,
        phone=user.phone,
        is_active=bool(user.is_active),
    )
    set_cached_json(cache_key, snapshot.model_dump(), ttl_seconds=300)
    return snapshot


@router_v1.put("/users/{user_id}/role", response_model=schemas.UserRead)
def change_user_role(
    user_id: int,
    role_update: schemas.UserRoleUpdate,
    db: Session = Depends(get_db),
    actor: models.User = Depends(require_super_admin),
):
    """
    Super-admin only: promote or demote a user.

    Demoting to USER clears every permission flag.
    """
    _refuse_self(user_id, actor, "change the role of")
    user = _get_user_or_404(db, user_id)

    previous = user.role
    user.role = role_update.role
    if role_update.role == UserRole.USER:
        user.permissions = []
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("User %s role %s -> %s by %s", user.id, previous.value, user.role.value, actor.id)
    return user


@router_v1.put("/users/{user_id}/permissions", response_model=schemas.UserRead)
def change_user_permissions(
    user_id: int,
    body: schemas.UserPermissionsUpdate,
    db: Session = Depends(get_db),
    actor: models.User = Depends(require_super_admin),
):
    """
    Super-admin only: replace an administrator's permission list.

    Raises
    ------
    HTTPException
        400 if the target is not an ADMIN.
    """
    user = _get_user_or_404(db, user_id)
    if user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Permissions can only be configured for ADMIN users",
        )

    user.permissions = sorted({p.value for p in body.permissions})
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("User %s permissions set to %s by %s", user.id, user.permissions, actor.id)
    return user


@router_v1.put("/users/{user_id}/block", response_model=schemas.UserRead)
def block_user(
    user_id: int,
    db: Session = Depends(get_db),
    actor: models.User = Depends(admin_only),
):
    _refuse_self(user_id, actor, "block")
    user = _get_user_or_404(db, user_id)
    user.is_active = False
    db.commit()
    db.refresh(user)
    delete_prefix(f"user:{user_id}")
    logger.info("User %s blocked by %s", user.id, actor.id)
    return user


@router_v1.put("/users/{user_id}/unblock", response_model=schemas.UserRead)
def unblock_user(
    user_id: int,
    db: Session = Depends(get_db),
    actor: models.User = Depends(admin_only),
):
    user = _get_user_or_404(db, user_id)
    user.is_active = True
    db.commit()
    db.refresh(user)
    delete_prefix(f"user:{user_id}")
    logger.info("User %s unblocked by %s", user.id, actor.id)
    return user


@router_v1.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user_admin(
    user_id: int,
    db: Session = Depends(get_db),
    actor: models.User = Depends(require_admin_permission(Permission.DELETE)),
):
    """
    Admin with DELETE permission: delete another account.

    Raises
    ------
    HTTPException
        400 when deleting oneself, 404 if the user is not found.
    """
    _refuse_self(user_id, actor, "delete")
    user = _get_user_or_404(db, user_id)
    db.delete(user)
    db.commit()
    delete_prefix(f"user:{user_id}")
    logger.warning("User %s deleted by %s", user_id, actor.id)
    return


app.include_router(router_v1)
