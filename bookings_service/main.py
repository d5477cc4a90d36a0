from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from common.auth import (
    PERMISSION_CREATE,
    PERMISSION_DELETE,
    PERMISSION_READ,
    ROLE_ADMIN,
    ROLE_SERVICE,
    ROLE_USER,
    get_current_user_claims,
    require_permission,
    require_roles,
)
from common.cache import availability_prefix, get_cached_json, set_cached_json
from common.clock import as_utc_naive
from common.logging_config import configure_logging
from common.rate_limiter import SlidingWindowLimiter
from common.service_client import UpstreamServiceError

from . import schemas
from .clients import FleetClient, UsersClient, get_fleet_client, get_users_client
from .database import Base, engine, get_db
from .engine import BookingEngine
from .errors import BookingError, ValidationError
from .notifications import NotificationDispatcher, dispatcher, get_notifier
from .overlap import detect_overlap
from .policy import Actor
from .repository import BookingRepository
from .state_machine import PaymentStatus, parse_status

# Create tables
Base.metadata.create_all(bind=engine)

SERVICE_NAME = "bookings"
logger = configure_logging(f"{SERVICE_NAME}_service")


@asynccontextmanager
async def lifespan(app: FastAPI):
    dispatcher.start()
    yield
    dispatcher.shutdown()
    engine.dispose()


app = FastAPI(title="Bookings Service", version="1.0.0", lifespan=lifespan)
router_v1 = APIRouter(prefix="/api/v1")


def _error_response(request: Request, status_code: int, detail, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "service": SERVICE_NAME,
            "path": request.url.path,
            "method": request.method,
            "status_code": status_code,
            "detail": detail,
        },
        headers=headers,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error_response(request, exc.status_code, exc.detail, getattr(exc, "headers", None))


@app.exception_handler(BookingError)
async def booking_exception_handler(request: Request, exc: BookingError):
    logger.info("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.detail)
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(UpstreamServiceError)
async def upstream_exception_handler(request: Request, exc: UpstreamServiceError):
    logger.warning("Upstream failure on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(request, 500, "Internal server error")


@app.get("/")
def root():
    """
    Health-check endpoint for the Bookings service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": "bookings", "status": "running"}


# ---------- dependencies ----------

customer_roles = require_roles(ROLE_USER, ROLE_ADMIN)
availability_roles = require_roles(ROLE_USER, ROLE_ADMIN, ROLE_SERVICE)
internal_roles = require_roles(ROLE_ADMIN, ROLE_SERVICE)

booking_limiter = SlidingWindowLimiter(
    max_hits=20,
    window_seconds=60,
    detail="Too many booking operations in a short time",
)


def booking_rate_limiter(claims: Dict = Depends(get_current_user_claims)):
    """
    Rate limit booking and payment writes per authenticated user.
    """
    booking_limiter.hit(str(claims["user_id"]))


def get_actor(claims: Dict = Depends(customer_roles)) -> Actor:
    return Actor.from_claims(claims)


def get_booking_engine(
    db: Session = Depends(get_db),
    fleet: FleetClient = Depends(get_fleet_client),
    users: UsersClient = Depends(get_users_client),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> BookingEngine:
    return BookingEngine(BookingRepository(db), fleet, users, notifier)


# ---------- Availability ----------

@router_v1.get("/bookings/availability", response_model=schemas.AvailabilityRead)
def check_availability(
    vehicle_id: int,
    start_date: datetime,
    end_date: datetime,
    db: Session = Depends(get_db),
    _: Dict = Depends(availability_roles),
):
    """
    Check if a vehicle is free during a given period.

    Parameters
    ----------
    vehicle_id : int
        Vehicle to check.
    start_date, end_date : datetime
        Requested period (ISO 8601). Touching an existing booking's
        boundary counts as a conflict.

    Returns
    -------
    AvailabilityRead
        'available' and the number of conflicting PENDING/CONFIRMED bookings.

    Raises
    ------
    ValidationError
        If end_date is not after start_date.
    """
    start, end = as_utc_naive(start_date), as_utc_naive(end_date)
    if end <= start:
        raise ValidationError("End date must be after start date")

    cache_key = f"{availability_prefix(vehicle_id)}{start.isoformat()}:{end.isoformat()}"
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached

    report = detect_overlap(start, end, BookingRepository(db).list_blocking(vehicle_id, start, end))
    data = {
        "vehicle_id": vehicle_id,
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "available": report.available,
        "conflicts": report.conflict_count,
    }
    set_cached_json(cache_key, data, ttl_seconds=30)
    return data


# ---------- Create ----------

@router_v1.post(
    "/bookings",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_rate_limiter)],
)
def create_booking(
    booking_in: schemas.BookingCreate,
    actor: Actor = Depends(get_actor),
    booking_engine: BookingEngine = Depends(get_booking_engine),
):
    """
    Book a vehicle for the authenticated customer.

    Behavior
    --------
    - end_date must be strictly after start_date (400).
    - The vehicle must exist (404) and be AVAILABLE (409).
    - Any PENDING or CONFIRMED booking overlapping the period,
      boundaries included, rejects the request (409).
    - The price is computed now and never recomputed.
    - The booking starts PENDING with payment PENDING.
    """
    return booking_engine.create(actor, booking_in)


@router_v1.post(
    "/bookings/admin-create",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_rate_limiter)],
)
def admin_create_booking(
    booking_in: schemas.AdminBookingCreate,
    claims: Dict = Depends(require_permission(PERMISSION_CREATE)),
    booking_engine: BookingEngine = Depends(get_booking_engine),
):
    """
    Admin with CREATE permission: book on behalf of a customer.

    The booking is CONFIRMED immediately. Overlap rules are the same
    as for customers.
    """
    return booking_engine.admin_create(Actor.from_claims(claims), booking_in)


# ---------- Read ----------

@router_v1.get("/bookings/me", response_model=List[schemas.BookingRead])
def list_my_bookings(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    """
    List bookings owned by the authenticated user, newest first.
    """
    return BookingRepository(db).list_for_user(actor.user_id)


@router_v1.get("/bookings/stats", response_model=schemas.BookingStats)
def booking_stats(
    db: Session = Depends(get_db),
    _: Dict = Depends(require_permission(PERMISSION_READ)),
):
    """
    Admin with READ permission: dashboard figures.

    Returns
    -------
    BookingStats
        Totals, pending and confirmed counts, revenue over CONFIRMED and
        COMPLETED bookings, and the 10 most recent bookings.
    """
    return BookingRepository(db).stats()


@router_v1.get("/bookings", response_model=List[schemas.BookingRead])
def list_all_bookings(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    vehicle_id: Optional[int] = None,
    user_id: Optional[int] = None,
    db: Session = Depends(get_db),
    _: Dict = Depends(require_permission(PERMISSION_READ)),
):
    """
    Admin with READ permission: list all bookings with optional filters.

    Parameters
    ----------
    status_filter : Optional[str]
        Booking status, any letter case (query parameter 'status').
    vehicle_id : Optional[int]
        Only bookings of this vehicle.
    user_id : Optional[int]
        Only bookings of this customer.
    """
    booking_status = parse_status(status_filter) if status_filter else None
    return BookingRepository(db).list_all(booking_status, vehicle_id, user_id)


@router_v1.get("/bookings/vehicles/{vehicle_id}/active-count", response_model=schemas.ActiveCountRead)
def active_booking_count(
    vehicle_id: int,
    db: Session = Depends(get_db),
    _: Dict = Depends(internal_roles),
):
    """
    Service account / admin: number of PENDING or CONFIRMED bookings on a vehicle.

    Used by the fleet service before deleting a vehicle.
    """
    return {
        "vehicle_id": vehicle_id,
        "active_count": BookingRepository(db).count_blocking(vehicle_id),
    }


@router_v1.get("/bookings/{booking_id}", response_model=schemas.BookingRead)
def get_booking(
    booking_id: int,
    actor: Actor = Depends(get_actor),
    booking_engine: BookingEngine = Depends(get_booking_engine),
):
    """
    Retrieve one booking. Only its owner or an administrator may see it.
    """
    return booking_engine.get(actor, booking_id)


# ---------- Status / delete ----------

@router_v1.patch(
    "/bookings/{booking_id}/status",
    response_model=schemas.BookingRead,
    dependencies=[Depends(booking_rate_limiter)],
)
def update_booking_status(
    booking_id: int,
    body: schemas.BookingStatusUpdate,
    actor: Actor = Depends(get_actor),
    booking_engine: BookingEngine = Depends(get_booking_engine),
):
    """
    Change the status of a booking.

    Rules
    -----
    - Customers may only cancel their own bookings (403 otherwise).
    - Administrators may set any status allowed by the lifecycle:
      PENDING -> CONFIRMED | CANCELLED, CONFIRMED -> CANCELLED | COMPLETED.
    - Other transitions are rejected with 409.
    - Setting the current status again changes nothing.
    """
    return booking_engine.update_status(actor, booking_id, body.status)


@router_v1.delete("/bookings/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_booking(
    booking_id: int,
    claims: Dict = Depends(require_permission(PERMISSION_DELETE)),
    booking_engine: BookingEngine = Depends(get_booking_engine),
):
    booking_engine.delete(Actor.from_claims(claims), booking_id)
    return


# ---------- Payments ----------

@router_v1.post(
    "/payments/process",
    response_model=schemas.Ticket,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_rate_limiter)],
)
def process_payment(
    payment_in: schemas.PaymentRequest,
    actor: Actor = Depends(get_actor),
    booking_engine: BookingEngine = Depends(get_booking_engine),
):
    """
    Pay a CONFIRMED booking with a card and receive the ticket.

    Behavior
    --------
    - Only the booking owner may pay (403).
    - The booking must be CONFIRMED (409).
    - A booking already paid cannot be paid again (409).
    - Cards ending in 0002 are declined (402) and nothing is written.
    """
    return booking_engine.pay(actor, payment_in)


@router_v1.get("/payments/me", response_model=List[schemas.PaymentRead])
def list_my_payments(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return BookingRepository(db).list_payments_for_user(actor.user_id)


@router_v1.get("/payments", response_model=List[schemas.PaymentRead])
def list_payments(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    payment_method: Optional[str] = None,
    db: Session = Depends(get_db),
    _: Dict = Depends(require_permission(PERMISSION_READ)),
):
    """
    Admin with READ permission: list payments, newest first.

    Filters on creation date range, payment status and payment method.
    """
    payment_status = None
    if status_filter:
        try:
            payment_status = PaymentStatus(status_filter.strip().upper())
        except ValueError:
            raise ValidationError(f"Invalid payment status '{status_filter}'")

    return BookingRepository(db).list_payments(
        date_from=as_utc_naive(date_from) if date_from else None,
        date_to=as_utc_naive(date_to) if date_to else None,
        status=payment_status,
        payment_method=payment_method,
    )


@router_v1.get("/payments/{booking_id}", response_model=schemas.Ticket)
def get_payment_ticket(
    booking_id: int,
    actor: Actor = Depends(get_actor),
    booking_engine: BookingEngine = Depends(get_booking_engine),
):
    """
    Owner only: ticket of a paid booking.

    Raises
    ------
    NotFoundError
        If the booking has no payment.
    ForbiddenError
        If the caller does not own the booking.
    """
    return booking_engine.ticket(actor, booking_id)


app.include_router(router_v1)
