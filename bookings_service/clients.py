import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from common.circuit_breaker import CircuitBreaker
from common.service_client import ServiceClient

FLEET_SERVICE_URL = os.getenv(
    "FLEET_SERVICE_URL",
    "http://fleet_service:8002",  # Docker internal URL
)
USERS_SERVICE_URL = os.getenv(
    "USERS_SERVICE_URL",
    "http://users_service:8001",
)

fleet_circuit_breaker = CircuitBreaker("fleet_service", max_failures=3, reset_timeout_seconds=30)
users_circuit_breaker = CircuitBreaker("users_service", max_failures=3, reset_timeout_seconds=30)


@dataclass(frozen=True)
class VehicleSnapshot:
    id: int
    label: str
    image: Optional[str]
    price_per_day: Decimal
    status: str


@dataclass(frozen=True)
class CustomerSnapshot:
    id: int
    name: str
    email: str
    is_active: bool = True


class FleetClient:
    def __init__(self, client: ServiceClient):
        self.client = client

    def get_vehicle(self, vehicle_id: int) -> Optional[VehicleSnapshot]:
        """
        Fetch the fields of a vehicle the booking engine needs.

        Returns None if the fleet service does not know the vehicle.
        """
        data = self.client.get_json(f"/api/v1/vehicles/{vehicle_id}")
        if data is None:
            return None
        return VehicleSnapshot(
            id=int(data["id"]),
            label=f"{data['brand']} {data['model']} {data['year']}",
            image=data.get("image_url"),
            price_per_day=Decimal(str(data["price_per_day"])),
            status=str(data["status"]).upper(),
        )


class UsersClient:
    def __init__(self, client: ServiceClient):
        self.client = client

    def get_user(self, user_id: int) -> Optional[CustomerSnapshot]:
        data = self.client.get_json(f"/api/v1/users/id/{user_id}")
        if data is None:
            return None
        return CustomerSnapshot(
            id=int(data["id"]),
            name=data["name"],
            email=data["email"],
            is_active=bool(data.get("is_active", True)),
        )


_fleet_client = FleetClient(ServiceClient("bookings_service", FLEET_SERVICE_URL, fleet_circuit_breaker))
_users_client = UsersClient(ServiceClient("bookings_service", USERS_SERVICE_URL, users_circuit_breaker))


def get_fleet_client() -> FleetClient:
    return _fleet_client


def get_users_client() -> UsersClient:
    return _users_client
