from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from common.auth import (
    PERMISSION_CREATE,
    PERMISSION_DELETE,
    ROLE_ADMIN,
    require_permission,
    require_roles,
)
from common.cache import delete_prefix, get_cached_json, set_cached_json, vehicle_key
from common.logging_config import configure_logging
from common.service_client import UpstreamServiceError

from . import models, schemas
from .clients import BookingsClient, get_bookings_client
from .database import Base, engine, get_db
from .models import FuelType, Transmission, VehicleCategory, VehicleStatus

Base.metadata.create_all(bind=engine)

SERVICE_NAME = "fleet"
logger = configure_logging(f"{SERVICE_NAME}_service")

app = FastAPI(title="Fleet Service", version="1.0.0")
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
    Health-check endpoint for the Fleet service.
    """
    return {"service": "fleet", "status": "running"}


admin_only = require_roles(ROLE_ADMIN)

_REQUIRED_FIELDS = {"brand", "model", "year", "category", "price_per_day", "seats", "status", "features"}


def _get_vehicle_or_404(db: Session, vehicle_id: int) -> models.Vehicle:
    vehicle = db.query(models.Vehicle).filter(models.Vehicle.id == vehicle_id).first()
    if not vehicle:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vehicle not found")
    return vehicle


def _ensure_unique_plate(db: Session, plate: Optional[str], vehicle_id: Optional[int] = None) -> None:
    if not plate:
        return
    existing = db.query(models.Vehicle).filter(models.Vehicle.license_plate == plate).first()
    if existing and existing.id != vehicle_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A vehicle with this license plate already exists",
        )


# ---------- Create vehicle ----------

@router_v1.post("/vehicles", response_model=schemas.VehicleRead, status_code=status.HTTP_201_CREATED)
def create_vehicle(
    vehicle_in: schemas.VehicleCreate,
    db: Session = Depends(get_db),
    claims: Dict = Depends(require_permission(PERMISSION_CREATE)),
):
    """
    Register a new vehicle in the fleet.

    Access
    ------
    - ADMIN holding the CREATE permission (or super-admin).

    Parameters
    ----------
    vehicle_in : VehicleCreate
        New vehicle details.
    db : Session
        Database session.

    Returns
    -------
    VehicleRead
        The created vehicle, status AVAILABLE.

    Raises
    ------
    HTTPException
        If the license plate is already registered.
    """
    _ensure_unique_plate(db, vehicle_in.license_plate)

    vehicle = models.Vehicle(**vehicle_in.model_dump(), status=VehicleStatus.AVAILABLE)
    db.add(vehicle)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A vehicle with this license plate already exists",
        )
    db.refresh(vehicle)
    logger.info("Vehicle %s (%s) created by %s", vehicle.id, vehicle.label, claims["user_id"])
    return vehicle


# ---------- List / search vehicles ----------

@router_v1.get("/vehicles", response_model=List[schemas.VehicleRead])
def list_vehicles(
    category: Optional[VehicleCategory] = None,
    transmission: Optional[Transmission] = None,
    fuel_type: Optional[FuelType] = None,
    seats: Optional[int] = Query(default=None, ge=1),
    min_price: Optional[Decimal] = Query(default=None, ge=0),
    max_price: Optional[Decimal] = Query(default=None, ge=0),
    available: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    """
    Browse the fleet with optional filters.

    Behavior
    --------
    - seats is a minimum seat count.
    - min_price / max_price bound the daily rate.
    - available=true keeps AVAILABLE vehicles only, available=false the others.
    """
    query = db.query(models.Vehicle)

    if category is not None:
        query = query.filter(models.Vehicle.category == category)
    if transmission is not None:
        query = query.filter(models.Vehicle.transmission == transmission)
    if fuel_type is not None:
        query = query.filter(models.Vehicle.fuel_type == fuel_type)
    if seats is not None:
        query = query.filter(models.Vehicle.seats >= seats)
    if min_price is not None:
        query = query.filter(models.Vehicle.price_per_day >= min_price)
    if max_price is not None:
        query = query.filter(models.Vehicle.price_per_day <= max_price)
    if available is True:
        query = query.filter(models.Vehicle.status == VehicleStatus.AVAILABLE)
    elif available is False:
        query = query.filter(models.Vehicle.status != VehicleStatus.AVAILABLE)

    return query.order_by(models.Vehicle.created_at.desc(), models.Vehicle.id.desc()).all()


@router_v1.get("/vehicles/{vehicle_id}", response_model=schemas.VehicleRead)
def get_vehicle(vehicle_id: int, db: Session = Depends(get_db)):
    """
    Retrieve a single vehicle by its ID.

    Also used by the bookings service to build its vehicle snapshot
    (label, image, daily rate and status).

    Raises
    ------
    HTTPException
        404 if the vehicle does not exist.
    """
    cache_key = vehicle_key(vehicle_id)
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached

    vehicle = _get_vehicle_or_404(db, vehicle_id)
    data = schemas.VehicleRead.model_validate(vehicle).model_dump(mode="json")
    set_cached_json(cache_key, data, ttl_seconds=300)
    return vehicle


# ---------- Update / delete vehicles ----------

@router_v1.patch("/vehicles/{vehicle_id}", response_model=schemas.VehicleRead)
def update_vehicle(
    vehicle_id: int,
    update_data: schemas.VehicleUpdate,
    db: Session = Depends(get_db),
    claims: Dict = Depends(admin_only),
):
    """
    Partially update a vehicle (daily rate, status, details).

    Existing bookings keep the price computed when they were created.
    """
    vehicle = _get_vehicle_or_404(db, vehicle_id)

    changes = update_data.model_dump(exclude_unset=True)
    if "license_plate" in changes:
        _ensure_unique_plate(db, changes["license_plate"], vehicle.id)

    for field, value in changes.items():
        if value is None and field in _REQUIRED_FIELDS:
            continue
        setattr(vehicle, field, value)

    db.add(vehicle)
    db.commit()
    db.refresh(vehicle)
    delete_prefix(vehicle_key(vehicle_id))
    logger.info("Vehicle %s updated by %s: %s", vehicle.id, claims["user_id"], sorted(changes))
    return vehicle


@router_v1.delete("/vehicles/{vehicle_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_vehicle(
    vehicle_id: int,
    db: Session = Depends(get_db),
    claims: Dict = Depends(require_permission(PERMISSION_DELETE)),
    bookings: BookingsClient = Depends(get_bookings_client),
):
    """
    Permanently remove a vehicle from the fleet.

    Behavior
    --------
    - Asks the bookings service how many PENDING or CONFIRMED
      reservations the vehicle still has.
    - Any such reservation blocks the delete with 409.
    - If the bookings service cannot answer, the delete is refused
      (503 when its circuit is open, 502 otherwise).

    Raises
    ------
    HTTPException
        404 if the vehicle does not exist, 409 if it is still booked.
    UpstreamServiceError
        If the bookings service is unavailable.
    """
    vehicle = _get_vehicle_or_404(db, vehicle_id)

    active = bookings.count_blocking(vehicle_id)
    if active > 0:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Vehicle has {active} active booking(s) and cannot be deleted",
        )

    db.delete(vehicle)
    db.commit()
    delete_prefix(vehicle_key(vehicle_id))
    logger.warning("Vehicle %s deleted by %s", vehicle_id, claims["user_id"])
    return


app.include_router(router_v1)
