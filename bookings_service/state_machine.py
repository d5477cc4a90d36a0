# bookings_service/state_machine.py
from enum import Enum as PyEnum
from typing import Dict, FrozenSet, Union

from .errors import InvalidTransition, ValidationError


class BookingStatus(str, PyEnum):
    """
    Lifecycle status of a reservation.

    Values
    ------
    PENDING
        Created by a customer, waiting for an administrator.
    CONFIRMED
        Accepted; the only status that can be paid.
    CANCELLED
        Terminal. No longer holds the vehicle.
    COMPLETED
        Terminal. The rental is over.
    """
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class PaymentStatus(str, PyEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


BLOCKING_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {BookingStatus.PENDING, BookingStatus.CONFIRMED}
)
TERMINAL_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {BookingStatus.CANCELLED, BookingStatus.COMPLETED}
)

TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED}),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
}


def parse_status(raw: Union[str, BookingStatus]) -> BookingStatus:
    """
    Convert user input to a BookingStatus, ignoring letter case.

    Raises
    ------
    ValidationError
        If the value is not one of the four statuses.
    """
    if isinstance(raw, BookingStatus):
        return raw
    try:
        return BookingStatus(str(raw).strip().upper())
    except ValueError:
        allowed = ", ".join(s.value for s in BookingStatus)
        raise ValidationError(f"Invalid booking status '{raw}', expected one of: {allowed}")


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS[current]


def assert_transition(current: BookingStatus, target: BookingStatus) -> bool:
    """
    Check that a reservation may move from `current` to `target`.

    Parameters
    ----------
    current : BookingStatus
        Status currently stored.
    target : BookingStatus
        Requested status.

    Returns
    -------
    bool
        False when target equals current (nothing to write),
        True when the transition is legal.

    Raises
    ------
    InvalidTransition
        If the pair is outside the transition table.
    """
    if current == target:
        return False
    if not can_transition(current, target):
        raise InvalidTransition(current, target)
    return True
