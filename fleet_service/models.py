from enum import Enum as PyEnum

from sqlalchemy import JSON, Column, DateTime, Enum, Integer, Numeric, String, Text

from common.clock import utcnow

from .database import Base


class VehicleStatus(str, PyEnum):
    """
    Operational status of a vehicle.

    Values
    ------
    AVAILABLE
        Open for new customer bookings.
    UNAVAILABLE
        Withdrawn from the catalogue.
    MAINTENANCE
        In the workshop.
    RENTED
        Currently out with a customer.
    """
    AVAILABLE = "AVAILABLE"
    UNAVAILABLE = "UNAVAILABLE"
    MAINTENANCE = "MAINTENANCE"
    RENTED = "RENTED"


class VehicleCategory(str, PyEnum):
    ECONOMY = "ECONOMY"
    COMFORT = "COMFORT"
    LUXURY = "LUXURY"
    SUV = "SUV"
    VAN = "VAN"


class Transmission(str, PyEnum):
    MANUAL = "MANUAL"
    AUTOMATIC = "AUTOMATIC"


class FuelType(str, PyEnum):
    PETROL = "PETROL"
    DIESEL = "DIESEL"
    ELECTRIC = "ELECTRIC"
    HYBRID = "HYBRID"


class Vehicle(Base):
    """
    SQLAlchemy model representing a rentable vehicle.

    Attributes
    ----------
    id : int
        Primary key.
    brand, model : str
        Manufacturer and model name (e.g. 'Toyota', 'RAV4').
    year : int
        Model year.
    category : VehicleCategory
        Catalogue category.
    price_per_day : Decimal
        Current daily rate. Bookings copy it at creation time.
    seats : int
        Number of seats.
    transmission : Transmission
        Gearbox type.
    fuel_type : FuelType
        Energy source.
    image_url : str
        Optional picture shown on tickets.
    features : list[str]
        Free-form equipment list.
    description : str
        Optional marketing text.
    license_plate : str
        Unique registration number.
    location : str
        Pickup agency / address.
    mileage : int
        Odometer reading in km.
    status : VehicleStatus
        Only AVAILABLE vehicles accept customer bookings.
    created_at, updated_at : datetime
        Audit timestamps (naive UTC).
    """
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, index=True)
    brand = Column(String(80), nullable=False)
    model = Column(String(80), nullable=False)
    year = Column(Integer, nullable=False)
    category = Column(Enum(VehicleCategory), nullable=False, index=True)
    price_per_day = Column(Numeric(12, 2), nullable=False)
    seats = Column(Integer, nullable=False)
    transmission = Column(Enum(Transmission), nullable=True)
    fuel_type = Column(Enum(FuelType), nullable=True)
    image_url = Column(String(500), nullable=True)
    features = Column(JSON, nullable=False, default=list)
    description = Column(Text, nullable=True)
    license_plate = Column(String(20), unique=True, nullable=True)
    location = Column(String(255), nullable=True)
    mileage = Column(Integer, nullable=True)
    status = Column(Enum(VehicleStatus), nullable=False, default=VehicleStatus.AVAILABLE, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def label(self) -> str:
        return f"{self.brand} {self.model} {self.year}"
