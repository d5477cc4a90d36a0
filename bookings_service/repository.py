# bookings_service/repository.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .state_machine import BLOCKING_STATUSES, BookingStatus, PaymentStatus

REVENUE_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.COMPLETED)


class BookingRepository:
    """
    Persistence port of the booking engine.

    Wraps one SQLAlchemy session. Nothing here commits on its own except
    lock-row creation; the engine decides when a unit of work ends.
    """

    def __init__(self, db: Session):
        self.db = db

    # ---------- transaction control ----------

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def refresh(self, instance) -> None:
        self.db.refresh(instance)

    # ---------- per-vehicle row lock ----------

    def _select_lock(self, vehicle_id: int) -> Optional[models.VehicleLock]:
        return (
            self.db.query(models.VehicleLock)
            .filter(models.VehicleLock.vehicle_id == vehicle_id)
            .with_for_update()
            .first()
        )

    def lock_vehicle(self, vehicle_id: int) -> models.VehicleLock:
        """
        Take the row lock guarding booking inserts for a vehicle.

        The lock row is created on first use. Two processes racing to
        create it both end up selecting the same row FOR UPDATE; the
        loser of the insert just rolls back its duplicate.

        Must be called before anything else is pending in the session.
        """
        lock = self._select_lock(vehicle_id)
        if lock is not None:
            return lock

        self.db.add(models.VehicleLock(vehicle_id=vehicle_id))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
        return self._select_lock(vehicle_id)

    # ---------- bookings ----------

    def get(self, booking_id: int) -> Optional[models.Booking]:
        return self.db.query(models.Booking).filter(models.Booking.id == booking_id).first()

    def get_for_update(self, booking_id: int) -> Optional[models.Booking]:
        return (
            self.db.query(models.Booking)
            .filter(models.Booking.id == booking_id)
            .with_for_update()
            .first()
        )

    def list_blocking(
        self,
        vehicle_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[models.Booking]:
        """
        PENDING or CONFIRMED bookings of a vehicle.

        When a range is given, only rows that can intersect it are
        returned (closed intervals); the overlap detector still has the
        final say.
        """
        q = (
            self.db.query(models.Booking)
            .filter(models.Booking.vehicle_id == vehicle_id)
            .filter(models.Booking.status.in_(BLOCKING_STATUSES))
        )
        if start is not None and end is not None:
            q = q.filter(models.Booking.start_date <= end).filter(models.Booking.end_date >= start)
        return q.order_by(models.Booking.start_date).all()

    def count_blocking(self, vehicle_id: int) -> int:
        return (
            self.db.query(func.count(models.Booking.id))
            .filter(models.Booking.vehicle_id == vehicle_id)
            .filter(models.Booking.status.in_(BLOCKING_STATUSES))
            .scalar()
        )

    def add(self, instance) -> None:
        self.db.add(instance)

    def delete(self, booking: models.Booking) -> None:
        self.db.delete(booking)

    def list_for_user(self, user_id: int) -> List[models.Booking]:
        return (
            self.db.query(models.Booking)
            .filter(models.Booking.user_id == user_id)
            .order_by(models.Booking.created_at.desc(), models.Booking.id.desc())
            .all()
        )

    def list_all(
        self,
        status: Optional[BookingStatus] = None,
        vehicle_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> List[models.Booking]:
        q = self.db.query(models.Booking)
        if status is not None:
            q = q.filter(models.Booking.status == status)
        if vehicle_id is not None:
            q = q.filter(models.Booking.vehicle_id == vehicle_id)
        if user_id is not None:
            q = q.filter(models.Booking.user_id == user_id)
        return q.order_by(models.Booking.created_at.desc(), models.Booking.id.desc()).all()

    def stats(self, recent: int = 10) -> Dict[str, Any]:
        def count(*criteria) -> int:
            return self.db.query(func.count(models.Booking.id)).filter(*criteria).scalar()

        revenue = (
            self.db.query(func.coalesce(func.sum(models.Booking.total_price), 0))
            .filter(models.Booking.status.in_(REVENUE_STATUSES))
            .scalar()
        )
        recent_bookings = (
            self.db.query(models.Booking)
            .order_by(models.Booking.created_at.desc(), models.Booking.id.desc())
            .limit(recent)
            .all()
        )
        return {
            "total_bookings": count(),
            "pending_bookings": count(models.Booking.status == BookingStatus.PENDING),
            "confirmed_bookings": count(models.Booking.status == BookingStatus.CONFIRMED),
            "total_revenue": Decimal(str(revenue)).quantize(Decimal("0.01")),
            "recent_bookings": recent_bookings,
        }

    # ---------- payments ----------

    def get_payment(self, booking_id: int) -> Optional[models.Payment]:
        return (
            self.db.query(models.Payment)
            .filter(models.Payment.booking_id == booking_id)
            .first()
        )

    def list_payments_for_user(self, user_id: int) -> List[models.Payment]:
        return (
            self.db.query(models.Payment)
            .filter(models.Payment.user_id == user_id)
            .order_by(models.Payment.created_at.desc(), models.Payment.id.desc())
            .all()
        )

    def list_payments(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        status: Optional[PaymentStatus] = None,
        payment_method: Optional[str] = None,
    ) -> List[models.Payment]:
        q = self.db.query(models.Payment)
        if date_from is not None:
            q = q.filter(models.Payment.created_at >= date_from)
        if date_to is not None:
            q = q.filter(models.Payment.created_at <= date_to)
        if status is not None:
            q = q.filter(models.Payment.status == status)
        if payment_method:
            q = q.filter(models.Payment.payment_method == payment_method.upper())
        return q.order_by(models.Payment.created_at.desc(), models.Payment.id.desc()).all()
