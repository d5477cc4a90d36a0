# tests/bookings/conftest.py
from decimal import Decimal

import pytest

from bookings_service.clients import CustomerSnapshot, VehicleSnapshot
from bookings_service.database import Base, engine


class FakeFleetClient:
    """
    In-memory fleet: vehicle_id -> VehicleSnapshot.
    """

    def __init__(self):
        self.vehicles = {}
        self.calls = []
        self.error = None

    def add(self, vehicle_id: int, price="10000", status="AVAILABLE", label=None):
        self.vehicles[vehicle_id] = VehicleSnapshot(
            id=vehicle_id,
            label=label or f"Toyota RAV4 202{vehicle_id % 10}",
            image=f"https://img.example.com/{vehicle_id}.jpg",
            price_per_day=Decimal(str(price)),
            status=status,
        )
        return self.vehicles[vehicle_id]

    def set_price(self, vehicle_id: int, price):
        v = self.vehicles[vehicle_id]
        self.add(vehicle_id, price=price, status=v.status, label=v.label)

    def get_vehicle(self, vehicle_id: int):
        self.calls.append(vehicle_id)
        if self.error is not None:
            raise self.error
        return self.vehicles.get(vehicle_id)


class FakeUsersClient:
    def __init__(self):
        self.customers = {}

    def add(self, user_id: int, name: str = None, is_active: bool = True):
        self.customers[user_id] = CustomerSnapshot(
            id=user_id,
            name=name or f"Customer {user_id}",
            email=f"customer{user_id}@example.com",
            is_active=is_active,
        )

    def get_user(self, user_id: int):
        return self.customers.get(user_id)


class RecordingNotifier:
    """
    Records events instead of sending mail.
    """

    def __init__(self):
        self.events = []

    def notify_booking_created(self, payload):
        self.events.append(("booking_created", payload))

    def notify_payment_completed(self, payload):
        self.events.append(("payment_completed", payload))

    def kinds(self):
        return [kind for kind, _ in self.events]


@pytest.fixture
def fleet():
    fake = FakeFleetClient()
    fake.add(1, price="10000")
    fake.add(2, price="25000")
    return fake


@pytest.fixture
def users():
    fake = FakeUsersClient()
    for user_id in (1, 2, 3, 10):
        fake.add(user_id)
    return fake


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def bookings_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
