from enum import Enum as PyEnum

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, Integer, String

from common.clock import utcnow

from .database import Base


class UserRole(str, PyEnum):
    """
    Enumeration of the roles a platform account can hold.

    Roles
    -----
    USER
        Customer who books and pays for vehicles.
    ADMIN
        Fleet and reservation administrator. Fine-grained rights are
        carried by the permission list; an empty list means unrestricted.
    """
    USER = "USER"
    ADMIN = "ADMIN"


class Permission(str, PyEnum):
    """
    Granular administrative permissions.
    """
    READ = "READ"
    CREATE = "CREATE"
    DELETE = "DELETE"


class User(Base):
    """
    SQLAlchemy model for platform accounts.

    Attributes
    ----------
    id : int
        Primary key.
    first_name : str
        Given name, shown on tickets and e-mails.
    last_name : str
        Family name.
    username : str
        Unique username used for login.
    email : str
        Unique email address; booking and payment e-mails go here.
    phone : str
        Optional contact number.
    hashed_password : str
        Bcrypt-hashed password.
    role : UserRole
        USER or ADMIN.
    permissions : list[str]
        Admin permissions (READ / CREATE / DELETE); empty for super-admins.
    is_active : bool
        Blocked accounts cannot log in.
    created_at : datetime
        Timestamp of account creation (naive UTC).
    reset_password_token : str
        SHA-256 digest of the pending password-reset token, if any.
    reset_password_expiry : datetime
        When the pending reset token stops being accepted (naive UTC).
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(80), nullable=False)
    last_name = Column(String(80), nullable=False)
    username = Column(String(80), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone = Column(String(32), nullable=True)
    hashed_password = Column(String, nullable=False)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.USER)
    permissions = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    reset_password_token = Column(String(64), index=True, nullable=True)
    reset_password_expiry = Column(DateTime, nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"
