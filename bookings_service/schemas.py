import re
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from common.clock import as_utc_naive

from .state_machine import BookingStatus, PaymentStatus


def _normalize_datetime(v):
    if isinstance(v, datetime):
        return as_utc_naive(v)
    return v


class BookingBase(BaseModel):
    """
    Base schema for the vehicle and rental period of a booking.

    Aware date-times are converted to naive UTC on input.
    """
    vehicle_id: int = Field(..., ge=1)
    start_date: datetime
    end_date: datetime
    pickup_location: Optional[str] = Field(default=None, max_length=255)
    dropoff_location: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("start_date", "end_date", mode="after")
    @classmethod
    def to_utc_naive(cls, v: datetime) -> datetime:
        return _normalize_datetime(v)


class BookingCreate(BookingBase):
    """
    Schema for a customer creating a booking for themselves.

    end_date > start_date is checked by the engine, not here, so a bad
    range is reported as 400 rather than 422.
    """
    pass


class AdminBookingCreate(BookingBase):
    """
    Schema for an administrator booking on behalf of a customer.
    """
    user_id: int = Field(..., ge=1)


class BookingStatusUpdate(BaseModel):
    """
    Status change request. Accepts any letter case ('cancelled', 'CANCELLED').
    """
    status: BookingStatus

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class BookingRead(BookingBase):
    """
    Schema returned when reading a booking, snapshots included.
    """
    id: int
    user_id: int
    total_days: int
    total_price: Decimal
    status: BookingStatus
    payment_status: PaymentStatus
    vehicle_label: Optional[str] = None
    vehicle_image: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AvailabilityRead(BaseModel):
    vehicle_id: int
    start_date: datetime
    end_date: datetime
    available: bool
    conflicts: int


class ActiveCountRead(BaseModel):
    vehicle_id: int
    active_count: int


class BookingStats(BaseModel):
    """
    Dashboard figures for administrators.

    revenue sums total_price over CONFIRMED and COMPLETED bookings.
    """
    total_bookings: int
    pending_bookings: int
    confirmed_bookings: int
    total_revenue: Decimal
    recent_bookings: List[BookingRead]


# ---------- Payments ----------

class PaymentRequest(BaseModel):
    """
    Card payment for a confirmed booking.

    The card number may contain spaces or dashes; it must hold 12 to 19
    digits once those are removed. Only the last four are ever stored.
    """
    booking_id: int = Field(..., ge=1)
    card_number: str = Field(..., min_length=12, max_length=32)
    card_holder: str = Field(..., min_length=2, max_length=255)
    expiry_date: Optional[str] = Field(default=None, max_length=7)
    cvv: Optional[str] = Field(default=None, max_length=4)
    payment_method: str = Field(default="CARD", max_length=32)

    @field_validator("card_number")
    @classmethod
    def validate_card_number(cls, v: str) -> str:
        digits = re.sub(r"[\s\-]", "", v)
        if not re.fullmatch(r"\d{12,19}", digits):
            raise ValueError("Card number must contain 12 to 19 digits")
        return digits

    @field_validator("expiry_date")
    @classmethod
    def validate_expiry(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not re.fullmatch(r"(0[1-9]|1[0-2])/\d{2}", v):
            raise ValueError("Expiry date must use the MM/YY format")
        return v

    @field_validator("cvv")
    @classmethod
    def validate_cvv(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not re.fullmatch(r"\d{3,4}", v):
            raise ValueError("CVV must be 3 or 4 digits")
        return v

    @field_validator("payment_method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.strip().upper()


class TicketCustomer(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class TicketVehicle(BaseModel):
    label: Optional[str] = None
    image: Optional[str] = None


class Ticket(BaseModel):
    """
    Read-only projection returned after a successful payment.
    """
    transaction_id: str
    payment_id: int
    booking_id: int
    processed_at: datetime
    customer: TicketCustomer
    vehicle: TicketVehicle
    start_date: datetime
    end_date: datetime
    total_days: int
    amount: Decimal
    currency: str
    payment_method: str
    card_masked: str
    card_holder: Optional[str] = None
    status: PaymentStatus


class PaymentRead(BaseModel):
    id: int
    booking_id: int
    user_id: int
    transaction_id: Optional[str] = None
    amount: Decimal
    currency: str
    payment_method: str
    status: PaymentStatus
    card_masked: str
    processed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
