from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from common.clock import utcnow

from .database import Base
from .state_machine import BookingStatus, PaymentStatus


class Booking(Base):
    """
    SQLAlchemy model representing a vehicle reservation.

    Attributes
    ----------
    id : int
        Primary key.
    user_id : int
        Customer owning the reservation (users service id).
    vehicle_id : int
        Reserved vehicle (fleet service id).
    start_date, end_date : datetime
        Closed rental interval, naive UTC, start < end.
    total_days : int
        Billable days, partial days rounded up.
    total_price : Decimal
        Price computed at creation; never recomputed.
    status : BookingStatus
        PENDING / CONFIRMED / CANCELLED / COMPLETED.
    payment_status : PaymentStatus
        Only the payment step moves it to COMPLETED.
    pickup_location, dropoff_location, notes : str
        Free text carried for the customer and staff.
    vehicle_label, vehicle_image : str
        Vehicle snapshot taken at creation.
    customer_name, customer_email : str
        Customer snapshot taken at creation.
    created_by : int
        Administrator who created the booking on the customer's behalf, if any.
    created_at, updated_at : datetime
        Audit timestamps (naive UTC).
    """
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_vehicle_status", "vehicle_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    vehicle_id = Column(Integer, index=True, nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    total_days = Column(Integer, nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)
    status = Column(Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING)
    payment_status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    pickup_location = Column(String(255), nullable=True)
    dropoff_location = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    vehicle_label = Column(String(255), nullable=True)
    vehicle_image = Column(String(500), nullable=True)
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    payment = relationship(
        "Payment",
        back_populates="booking",
        uselist=False,
        cascade="all, delete-orphan",
    )


class Payment(Base):
    """
    SQLAlchemy model for the single payment slot of a booking.

    Attributes
    ----------
    booking_id : int
        Unique: at most one payment row per booking.
    amount : Decimal
        Copied from the booking's frozen total_price.
    status : PaymentStatus
        PENDING / COMPLETED / FAILED.
    transaction_id : str
        Identifier generated for every successful charge.
    card_last4, card_holder : str
        Card metadata; the full number is never stored.
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(
        Integer,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    user_id = Column(Integer, index=True, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    transaction_id = Column(String(64), unique=True, nullable=True)
    payment_method = Column(String(32), nullable=False)
    card_last4 = Column(String(4), nullable=True)
    card_holder = Column(String(255), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    booking = relationship("Booking", back_populates="payment")

    @property
    def card_masked(self) -> str:
        return f"**** **** **** {self.card_last4 or '****'}"


class VehicleLock(Base):
    """
    One row per vehicle, locked with SELECT ... FOR UPDATE while a
    booking is being created for that vehicle.
    """
    __tablename__ = "vehicle_locks"

    vehicle_id = Column(Integer, primary_key=True, autoincrement=False)
    created_at = Column(DateTime, default=utcnow)
