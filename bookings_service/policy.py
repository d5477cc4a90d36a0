# bookings_service/policy.py
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet

from common.auth import (
    PERMISSION_CREATE,
    PERMISSION_DELETE,
    PERMISSION_READ,
    ROLE_ADMIN,
    ROLE_SERVICE,
)

from .errors import ForbiddenError
from .state_machine import BookingStatus


@dataclass(frozen=True)
class Actor:
    """
    The authenticated caller as seen by the booking engine.
    """
    user_id: int
    role: str
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "Actor":
        return cls(
            user_id=int(claims["user_id"]),
            role=str(claims["role"]).upper(),
            permissions=frozenset(str(p).upper() for p in claims.get("permissions") or []),
        )

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_service(self) -> bool:
        return self.role == ROLE_SERVICE


def has_permission(actor: Actor, permission: str) -> bool:
    """
    Return True if the actor holds an admin permission.

    Admins with an empty permission set are super-admins.
    """
    if not actor.is_admin:
        return False
    return not actor.permissions or permission in actor.permissions


def require_permission(actor: Actor, permission: str) -> None:
    if not has_permission(actor, permission):
        raise ForbiddenError(f"Missing permission: {permission}")


def can_read_all(actor: Actor) -> bool:
    return has_permission(actor, PERMISSION_READ)


def can_create_for_others(actor: Actor) -> bool:
    return has_permission(actor, PERMISSION_CREATE)


def can_delete(actor: Actor) -> bool:
    return has_permission(actor, PERMISSION_DELETE)


def authorize_view(actor: Actor, booking) -> None:
    if booking.user_id == actor.user_id or actor.is_admin:
        return
    raise ForbiddenError("You can only view your own bookings")


def authorize_status_change(actor: Actor, booking, target: BookingStatus) -> None:
    """
    Check whether the actor may request `target` on `booking`.

    Rules
    -----
    - Administrators may request any status; the transition table
      still applies afterwards.
    - The owning customer may only cancel.
    - Anyone else is refused whatever the target.

    Raises
    ------
    ForbiddenError
        If the actor has no right to request this change.
    """
    if actor.is_admin:
        return
    if booking.user_id != actor.user_id:
        raise ForbiddenError("You can only modify your own bookings")
    if target != BookingStatus.CANCELLED:
        raise ForbiddenError("Customers can only cancel their bookings")


def authorize_payment(actor: Actor, booking) -> None:
    if booking.user_id != actor.user_id:
        raise ForbiddenError("You can only pay for your own bookings")
