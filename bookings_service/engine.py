# bookings_service/engine.py
import logging
import os
import re
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Hashable, Iterator, Optional, Union

from sqlalchemy.exc import IntegrityError

from common.auth import PERMISSION_CREATE, PERMISSION_DELETE
from common.cache import availability_prefix, delete_prefix
from common.clock import utcnow

from . import models, schemas
from .clients import CustomerSnapshot, FleetClient, UsersClient, VehicleSnapshot
from .errors import (
    AlreadyPaid,
    BookingConflict,
    BookingNotPayable,
    ForbiddenError,
    NotFoundError,
    PaymentDeclined,
    ValidationError,
    VehicleUnavailable,
)
from .notifications import NotificationDispatcher
from .overlap import detect_overlap
from .policy import (
    Actor,
    authorize_payment,
    authorize_status_change,
    authorize_view,
    require_permission,
)
from .pricing import calculate_price
from .repository import BookingRepository
from .state_machine import BookingStatus, PaymentStatus, assert_transition, parse_status

logger = logging.getLogger(__name__)

PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "FCFA")
DECLINED_CARD_SUFFIX = "0002"
VEHICLE_AVAILABLE = "AVAILABLE"


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLock:
    """
    One threading.Lock per key, created on demand.

    Different keys never block each other. An entry lives only while a
    thread holds or waits on its key; the last one out removes it.
    """

    def __init__(self):
        self._locks: Dict[Hashable, _Entry] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _Entry()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]


_locks = KeyedLock()


def card_digits(card_number: str) -> str:
    return re.sub(r"\D", "", card_number or "")


def mask_card(card_number: str) -> str:
    """
    '4242 4242 4242 4242' -> '**** **** **** 4242'
    """
    digits = card_digits(card_number)
    if len(digits) < 4:
        return "****"
    return f"**** **** **** {digits[-4:]}"


def is_declined(card_number: str) -> bool:
    return card_digits(card_number).endswith(DECLINED_CARD_SUFFIX)


def generate_transaction_id() -> str:
    return f"TXN-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8].upper()}"


def build_ticket(booking: models.Booking, payment: models.Payment) -> Dict[str, Any]:
    """
    Ticket projection of a paid booking.
    """
    return {
        "transaction_id": payment.transaction_id,
        "payment_id": payment.id,
        "booking_id": booking.id,
        "processed_at": payment.processed_at or payment.created_at,
        "customer": {"name": booking.customer_name, "email": booking.customer_email},
        "vehicle": {"label": booking.vehicle_label, "image": booking.vehicle_image},
        "start_date": booking.start_date,
        "end_date": booking.end_date,
        "total_days": booking.total_days,
        "amount": payment.amount,
        "currency": payment.currency,
        "payment_method": payment.payment_method,
        "card_masked": payment.card_masked,
        "card_holder": payment.card_holder,
        "status": payment.status,
    }


class BookingEngine:
    """
    Transactional entry point for creating, changing and paying bookings.

    Parameters
    ----------
    repository : BookingRepository
        Persistence port bound to the request's session.
    fleet : FleetClient
        Source of vehicle snapshots (status, daily rate, label).
    users : UsersClient
        Source of customer snapshots (name, e-mail).
    notifier : NotificationDispatcher
        Receives post-commit events; never awaited.
    """

    def __init__(
        self,
        repository: BookingRepository,
        fleet: FleetClient,
        users: UsersClient,
        notifier: NotificationDispatcher,
    ):
        self.repo = repository
        self.fleet = fleet
        self.users = users
        self.notifier = notifier

    # ---------- helpers ----------

    @staticmethod
    def _validate_range(start: datetime, end: datetime) -> None:
        if end <= start:
            raise ValidationError("End date must be after start date")

    def _load_vehicle(self, vehicle_id: int) -> VehicleSnapshot:
        vehicle = self.fleet.get_vehicle(vehicle_id)
        if vehicle is None:
            raise NotFoundError("Vehicle not found")
        return vehicle

    def _load_customer(self, user_id: int) -> CustomerSnapshot:
        customer = self.users.get_user(user_id)
        if customer is None:
            raise NotFoundError("Customer not found")
        if not customer.is_active:
            raise ForbiddenError("Customer account is blocked")
        return customer

    def _invalidate_availability(self, vehicle_id: int) -> None:
        delete_prefix(availability_prefix(vehicle_id))

    @staticmethod
    def _booking_payload(booking: models.Booking) -> Dict[str, Any]:
        return {
            "booking_id": booking.id,
            "customer_name": booking.customer_name,
            "customer_email": booking.customer_email,
            "vehicle_label": booking.vehicle_label,
            "start_date": booking.start_date.isoformat(),
            "end_date": booking.end_date.isoformat(),
            "total_days": booking.total_days,
            "total_price": str(booking.total_price),
            "currency": PAYMENT_CURRENCY,
            "status": booking.status.value,
        }

    def _emit(self, notify, payload: Dict[str, Any]) -> None:
        # Runs after commit; notifier errors are logged only.
        try:
            notify(payload)
        except Exception:
            logger.exception("Could not hand booking %s to the notifier", payload.get("booking_id"))

    def _insert(
        self,
        request: schemas.BookingBase,
        vehicle: VehicleSnapshot,
        customer: CustomerSnapshot,
        status: BookingStatus,
        created_by: Optional[int] = None,
    ) -> models.Booking:
        """
        Overlap check, pricing and insert, serialized per vehicle.

        The process-local lock orders threads of this worker; the
        vehicle_locks row lock orders other workers sharing the database.
        """
        start, end = request.start_date, request.end_date
        with _locks.hold(("vehicle", vehicle.id)):
            try:
                self.repo.lock_vehicle(vehicle.id)
                report = detect_overlap(start, end, self.repo.list_blocking(vehicle.id, start, end))
                if not report.available:
                    raise BookingConflict(vehicle.id, report.conflict_count)

                quote = calculate_price(start, end, vehicle.price_per_day)
                booking = models.Booking(
                    user_id=customer.id,
                    vehicle_id=vehicle.id,
                    start_date=start,
                    end_date=end,
                    total_days=quote.total_days,
                    total_price=quote.total_price,
                    status=status,
                    payment_status=PaymentStatus.PENDING,
                    pickup_location=request.pickup_location,
                    dropoff_location=request.dropoff_location,
                    notes=request.notes,
                    vehicle_label=vehicle.label,
                    vehicle_image=vehicle.image,
                    customer_name=customer.name,
                    customer_email=customer.email,
                    created_by=created_by,
                )
                self.repo.add(booking)
                self.repo.commit()
            except Exception:
                self.repo.rollback()
                raise

        self.repo.refresh(booking)
        self._invalidate_availability(vehicle.id)
        self._emit(self.notifier.notify_booking_created, self._booking_payload(booking))
        return booking

    # ---------- operations ----------

    def create(self, actor: Actor, request: schemas.BookingCreate) -> models.Booking:
        """
        Book a vehicle for the calling customer.

        Returns
        -------
        Booking
            New PENDING booking with vehicle and customer snapshots.

        Raises
        ------
        ValidationError
            If end_date is not after start_date.
        NotFoundError
            If the vehicle or the customer does not exist.
        VehicleUnavailable
            If the vehicle is not AVAILABLE.
        BookingConflict
            If a PENDING or CONFIRMED booking overlaps the range.
        """
        self._validate_range(request.start_date, request.end_date)
        vehicle = self._load_vehicle(request.vehicle_id)
        if vehicle.status != VEHICLE_AVAILABLE:
            raise VehicleUnavailable("This vehicle is currently unavailable")
        customer = self._load_customer(actor.user_id)

        booking = self._insert(request, vehicle, customer, BookingStatus.PENDING)
        logger.info(
            "Booking %s created by user %s on vehicle %s (%s day(s), %s)",
            booking.id, actor.user_id, booking.vehicle_id, booking.total_days, booking.total_price,
        )
        return booking

    def admin_create(self, actor: Actor, request: schemas.AdminBookingCreate) -> models.Booking:
        """
        Book a vehicle on behalf of a customer, directly CONFIRMED.

        The vehicle only has to exist; its operational status is not checked.
        """
        require_permission(actor, PERMISSION_CREATE)
        self._validate_range(request.start_date, request.end_date)
        vehicle = self._load_vehicle(request.vehicle_id)
        customer = self._load_customer(request.user_id)

        booking = self._insert(
            request, vehicle, customer, BookingStatus.CONFIRMED, created_by=actor.user_id
        )
        logger.info(
            "Booking %s created by admin %s for user %s on vehicle %s",
            booking.id, actor.user_id, customer.id, booking.vehicle_id,
        )
        return booking

    def get(self, actor: Actor, booking_id: int) -> models.Booking:
        booking = self.repo.get(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        authorize_view(actor, booking)
        return booking

    def update_status(
        self,
        actor: Actor,
        booking_id: int,
        new_status: Union[str, BookingStatus],
    ) -> models.Booking:
        """
        Move a booking along its lifecycle.

        Raises
        ------
        NotFoundError
            If the booking does not exist.
        ForbiddenError
            If the actor may not request this status.
        InvalidTransition
            If the status change is outside the lifecycle.
        """
        target = parse_status(new_status)
        with _locks.hold(("booking", booking_id)):
            try:
                booking = self.repo.get_for_update(booking_id)
                if booking is None:
                    raise NotFoundError("Booking not found")
                authorize_status_change(actor, booking, target)

                previous = booking.status
                if not assert_transition(previous, target):
                    self.repo.rollback()
                    return booking

                booking.status = target
                self.repo.commit()
            except Exception:
                self.repo.rollback()
                raise

        self.repo.refresh(booking)
        self._invalidate_availability(booking.vehicle_id)
        logger.info(
            "Booking %s status %s -> %s by %s",
            booking.id, previous.value, target.value, actor.user_id,
        )
        return booking

    def pay(self, actor: Actor, request: schemas.PaymentRequest) -> Dict[str, Any]:
        """
        Settle a CONFIRMED booking with a (simulated) card payment.

        The payment row and the booking's payment_status are written in
        one commit. Notifications are sent only after that commit.

        Returns
        -------
        dict
            The ticket.

        Raises
        ------
        NotFoundError
            If the booking does not exist.
        ForbiddenError
            If the caller does not own the booking.
        BookingNotPayable
            If the booking is not CONFIRMED.
        AlreadyPaid
            If a COMPLETED payment already exists.
        PaymentDeclined
            If the card is refused; nothing is written.
        """
        booking_id = request.booking_id
        with _locks.hold(("booking", booking_id)):
            try:
                booking = self.repo.get_for_update(booking_id)
                if booking is None:
                    raise NotFoundError("Booking not found")
                authorize_payment(actor, booking)
                if booking.status != BookingStatus.CONFIRMED:
                    raise BookingNotPayable("Only confirmed bookings can be paid")

                payment = self.repo.get_payment(booking_id)
                if payment is not None and payment.status == PaymentStatus.COMPLETED:
                    raise AlreadyPaid("This booking has already been paid")

                if is_declined(request.card_number):
                    logger.warning(
                        "Payment declined for booking %s (card %s)",
                        booking_id, mask_card(request.card_number),
                    )
                    raise PaymentDeclined("Payment declined by issuer")

                if payment is None:
                    payment = models.Payment(booking_id=booking.id, user_id=booking.user_id)
                    self.repo.add(payment)

                payment.amount = booking.total_price
                payment.currency = PAYMENT_CURRENCY
                payment.payment_method = request.payment_method
                payment.transaction_id = generate_transaction_id()
                payment.status = PaymentStatus.COMPLETED
                payment.card_last4 = card_digits(request.card_number)[-4:]
                payment.card_holder = request.card_holder
                payment.processed_at = utcnow()
                booking.payment_status = PaymentStatus.COMPLETED

                try:
                    self.repo.commit()
                except IntegrityError:
                    self.repo.rollback()
                    raise AlreadyPaid("This booking has already been paid")
            except Exception:
                self.repo.rollback()
                raise

        self.repo.refresh(booking)
        self.repo.refresh(payment)
        ticket = build_ticket(booking, payment)
        logger.info(
            "Payment %s processed for booking %s (%s %s)",
            payment.transaction_id, booking.id, payment.amount, payment.currency,
        )

        event = self._booking_payload(booking)
        event.update(
            transaction_id=payment.transaction_id,
            amount=str(payment.amount),
            currency=payment.currency,
            card_masked=payment.card_masked,
        )
        self._emit(self.notifier.notify_payment_completed, event)
        return ticket

    def ticket(self, actor: Actor, booking_id: int) -> Dict[str, Any]:
        payment = self.repo.get_payment(booking_id)
        if payment is None:
            raise NotFoundError("Payment not found for this booking")
        if payment.booking.user_id != actor.user_id:
            raise ForbiddenError("You can only view your own payments")
        return build_ticket(payment.booking, payment)

    def delete(self, actor: Actor, booking_id: int) -> None:
        """
        Permanently remove a booking and its payment.
        """
        require_permission(actor, PERMISSION_DELETE)
        booking = self.repo.get(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")

        vehicle_id = booking.vehicle_id
        self.repo.delete(booking)
        self.repo.commit()
        self._invalidate_availability(vehicle_id)
        logger.warning("Booking %s deleted by %s", booking_id, actor.user_id)
