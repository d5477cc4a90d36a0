from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from common.clock import utcnow

from .models import FuelType, Transmission, VehicleCategory, VehicleStatus


def _upper(v):
    return v.upper() if isinstance(v, str) else v


class VehicleBase(BaseModel):
    """
    Base schema for vehicle information.

    Enum fields accept any letter case and are normalised to upper case.
    """
    brand: str = Field(..., min_length=2, max_length=80)
    model: str = Field(..., min_length=1, max_length=80)
    year: int = Field(..., ge=1900)
    category: VehicleCategory
    price_per_day: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    seats: int = Field(..., ge=2, le=50)
    transmission: Optional[Transmission] = None
    fuel_type: Optional[FuelType] = None
    image_url: Optional[str] = Field(default=None, max_length=500)
    features: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    license_plate: Optional[str] = Field(default=None, max_length=20)
    location: Optional[str] = Field(default=None, max_length=255)
    mileage: Optional[int] = Field(default=None, ge=0)

    @field_validator("category", "transmission", "fuel_type", mode="before")
    @classmethod
    def normalize_enums(cls, v):
        return _upper(v)

    @field_validator("year")
    @classmethod
    def validate_year(cls, v: int) -> int:
        if v > utcnow().year + 1:
            raise ValueError("year cannot be more than one year in the future")
        return v


class VehicleCreate(VehicleBase):
    """
    Schema for registering a new vehicle; new vehicles start AVAILABLE.
    """
    pass


class VehicleUpdate(BaseModel):
    """
    Schema for partial updates to a vehicle.

    Changing price_per_day never alters the price of existing bookings.
    """
    brand: Optional[str] = Field(default=None, min_length=2, max_length=80)
    model: Optional[str] = Field(default=None, min_length=1, max_length=80)
    year: Optional[int] = Field(default=None, ge=1900)
    category: Optional[VehicleCategory] = None
    price_per_day: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    seats: Optional[int] = Field(default=None, ge=2, le=50)
    transmission: Optional[Transmission] = None
    fuel_type: Optional[FuelType] = None
    image_url: Optional[str] = Field(default=None, max_length=500)
    features: Optional[List[str]] = None
    description: Optional[str] = None
    license_plate: Optional[str] = Field(default=None, max_length=20)
    location: Optional[str] = Field(default=None, max_length=255)
    mileage: Optional[int] = Field(default=None, ge=0)
    status: Optional[VehicleStatus] = None

    @field_validator("category", "transmission", "fuel_type", "status", mode="before")
    @classmethod
    def normalize_enums(cls, v):
        return _upper(v)


class VehicleRead(VehicleBase):
    """
    Schema returned when reading vehicle data.
    """
    id: int
    status: VehicleStatus
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("year")
    @classmethod
    def validate_year(cls, v: int) -> int:
        return v
