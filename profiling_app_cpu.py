import cProfile
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite:///./profiling.db")
os.environ.setdefault("TESTING", "1")

from fastapi.testclient import TestClient
from jose import jwt

from common.auth import ALGORITHM, SECRET_KEY

from bookings_service.clients import CustomerSnapshot, VehicleSnapshot, get_fleet_client, get_users_client
from bookings_service.database import Base as BookingsBase, engine as bookings_engine
from bookings_service.main import app as bookings_app
from bookings_service.notifications import get_notifier
from users_service.database import Base as UsersBase, engine as users_engine
from users_service.main import app as users_app

users_client = TestClient(users_app)
bookings_client = TestClient(bookings_app)


class LocalFleet:
    def get_vehicle(self, vehicle_id):
        return VehicleSnapshot(vehicle_id, f"Vehicle {vehicle_id}", None, Decimal("10000"), "AVAILABLE")


class LocalUsers:
    def get_user(self, user_id):
        return CustomerSnapshot(user_id, f"User {user_id}", f"user{user_id}@example.com")


class SilentNotifier:
    def notify_booking_created(self, payload):
        pass

    def notify_payment_completed(self, payload):
        pass


def reset_db():
    for base, engine in ((UsersBase, users_engine), (BookingsBase, bookings_engine)):
        base.metadata.drop_all(bind=engine)
        base.metadata.create_all(bind=engine)


def token_for(user_id, role):
    payload = {
        "sub": f"user{user_id}",
        "user_id": user_id,
        "role": role,
        "permissions": [],
        "exp": datetime.now(timezone.utc) + timedelta(minutes=30),
    }
    return {"Authorization": f"Bearer {jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)}"}


def scenario_users():
    """
    Register and login many users to stress the users service.
    """
    for i in range(50):
        username = f"user{i}"
        password = "User1234"
        r = users_client.post(
            "/api/v1/users/register",
            json={
                "first_name": "User",
                "last_name": str(i),
                "username": username,
                "email": f"{username}@example.com",
                "password": password,
            },
        )
        if r.status_code not in (201, 400):
            raise RuntimeError(f"Unexpected status on register: {r.status_code}")

        token_resp = users_client.post(
            "/api/v1/users/login",
            data={"username": username, "password": password},
        )
        token_resp.raise_for_status()
        headers = {"Authorization": f"Bearer {token_resp.json()['access_token']}"}
        users_client.get("/api/v1/users/me", headers=headers).raise_for_status()


def scenario_bookings():
    """
    Book, confirm and pay consecutive rentals on a handful of vehicles.
    """
    bookings_app.dependency_overrides[get_fleet_client] = LocalFleet
    bookings_app.dependency_overrides[get_users_client] = LocalUsers
    bookings_app.dependency_overrides[get_notifier] = SilentNotifier

    admin = token_for(1, "ADMIN")
    start = datetime(2030, 1, 1, tzinfo=timezone.utc)
    for i in range(100):
        customer_id = 2 + i % 10
        customer = token_for(customer_id, "USER")
        begin = start + timedelta(days=3 * (i // 5))
        r = bookings_client.post(
            "/api/v1/bookings",
            json={
                "vehicle_id": 1 + i % 5,
                "start_date": begin.isoformat(),
                "end_date": (begin + timedelta(days=2)).isoformat(),
            },
            headers=customer,
        )
        r.raise_for_status()
        booking_id = r.json()["id"]

        bookings_client.patch(
            f"/api/v1/bookings/{booking_id}/status",
            json={"status": "CONFIRMED"},
            headers=admin,
        ).raise_for_status()
        bookings_client.post(
            "/api/v1/payments/process",
            json={"booking_id": booking_id, "card_number": "4242424242424242", "card_holder": "Profiler"},
            headers=customer,
        ).raise_for_status()

    bookings_app.dependency_overrides.clear()


def main():
    reset_db()
    scenario_users()
    scenario_bookings()


if __name__ == "__main__":
    # run cProfile and sort by cumulative time
    cProfile.run("main()", sort="cumtime")
