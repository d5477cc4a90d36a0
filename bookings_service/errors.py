# bookings_service/errors.py
from fastapi import status


class BookingError(Exception):
    """
    Base class for expected booking and payment failures.

    Each subclass carries the HTTP status the API layer reports; the
    message is safe to return to the caller as-is.
    """

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class ValidationError(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(BookingError):
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(BookingError):
    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(BookingError):
    status_code = status.HTTP_409_CONFLICT


class BookingConflict(ConflictError):
    """
    The requested range overlaps blocking reservations on the vehicle.
    """

    def __init__(self, vehicle_id: int, conflict_count: int):
        self.vehicle_id = vehicle_id
        self.conflict_count = conflict_count
        super().__init__(
            f"Vehicle {vehicle_id} is already booked for this period "
            f"({conflict_count} conflicting reservation(s))"
        )


class VehicleUnavailable(ConflictError):
    pass


class InvalidTransition(ConflictError):
    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Cannot change booking status from {current.value} to {target.value}")


class BookingNotPayable(ConflictError):
    pass


class AlreadyPaid(ConflictError):
    pass


class PaymentDeclined(BookingError):
    """
    Payment refused by the card check. Nothing was written.
    """

    status_code = status.HTTP_402_PAYMENT_REQUIRED
