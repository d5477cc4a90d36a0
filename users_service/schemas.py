import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from .models import Permission, UserRole


# ---------- Input schemas ----------
class UserCreate(BaseModel):
    """
    Schema for user registration input.
    Public registration does NOT accept role; it is assigned internally.
    """
    first_name: str = Field(..., min_length=1, max_length=80)
    last_name: str = Field(..., min_length=1, max_length=80)
    username: str = Field(..., min_length=3, max_length=80)
    email: EmailStr
    password: str
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not re.match(r"^\+?\d{9,15}$", re.sub(r"[\s\-]", "", v)):
            raise ValueError("Invalid phone number, use international format (e.g. +237600123456)")
        return v


class UserUpdate(BaseModel):
    """
    Schema for updating a profile; all fields are optional.
    """
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=32)


class UserRoleUpdate(BaseModel):
    """
    Schema used by admins to change a user's role.
    """
    role: UserRole

    @field_validator("role", mode="before")
    @classmethod
    def normalize_role(cls, v):
        return v.upper() if isinstance(v, str) else v


class UserPermissionsUpdate(BaseModel):
    """
    Schema used by admins to replace another admin's permission list.

    An empty list grants unrestricted (super-admin) access.
    """
    permissions: List[Permission]

    @field_validator("permissions", mode="before")
    @classmethod
    def normalize_permissions(cls, v):
        if isinstance(v, list):
            return [p.upper() if isinstance(p, str) else p for p in v]
        return v


# ---------- Password recovery / newsletter ----------

class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class PasswordResetConfirm(BaseModel):
    """
    Schema for completing a password reset with the e-mailed token.
    """
    token: str = Field(..., min_length=1)
    new_password: str


class NewsletterSubscribe(BaseModel):
    email: EmailStr


# ---------- Output schemas ----------

class UserRead(BaseModel):
    """
    Schema returned when reading user information.

    Exposes safe, non-sensitive fields and hides the password hash.
    """
    id: int
    first_name: str
    last_name: str
    username: str
    email: EmailStr
    phone: Optional[str] = None
    role: UserRole
    permissions: List[Permission] = []
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserSnapshot(BaseModel):
    """
    Customer snapshot served to other services (bookings, tickets).
    """
    id: int
    name: str
    email: EmailStr
    phone: Optional[str] = None
    is_active: bool


# ---------- Token schemas ----------

class Token(BaseModel):
    """
    Schema for JWT access token responses.

    Attributes
    ----------
    access_token : str
        Encoded JWT.
    token_type : str
        Token type, usually 'bearer'.
    """
    access_token: str
    token_type: str = "bearer"


class MessageResponse(BaseModel):
    message: str
