# tests/bookings/test_concurrency.py

import threading
from datetime import datetime

import pytest

from bookings_service import models, schemas
from bookings_service.database import SessionLocal
from bookings_service.engine import BookingEngine
from bookings_service.errors import BookingConflict
from bookings_service.policy import Actor
from bookings_service.repository import BookingRepository
from bookings_service.state_machine import BookingStatus


@pytest.fixture(autouse=True)
def _db(bookings_db):
    yield


def race(fleet, users, notifier, requests):
    """
    Run one create() per (user_id, vehicle_id) at the same time.

    Each thread has its own session, like concurrent HTTP requests.
    Returns the list of outcomes: booking ids or raised exceptions.
    """
    barrier = threading.Barrier(len(requests))
    outcomes = [None] * len(requests)

    def worker(i, user_id, vehicle_id):
        db = SessionLocal()
        try:
            booking_engine = BookingEngine(BookingRepository(db), fleet, users, notifier)
            request = schemas.BookingCreate(
                vehicle_id=vehicle_id,
                start_date=datetime(2024, 1, 1),
                end_date=datetime(2024, 1, 3),
            )
            barrier.wait(timeout=5)
            outcomes[i] = booking_engine.create(Actor(user_id=user_id, role="USER"), request).id
        except Exception as exc:
            outcomes[i] = exc
        finally:
            db.close()

    threads = [
        threading.Thread(target=worker, args=(i, user_id, vehicle_id))
        for i, (user_id, vehicle_id) in enumerate(requests)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return outcomes


def blocking_rows(vehicle_id):
    db = SessionLocal()
    try:
        return (
            db.query(models.Booking)
            .filter(models.Booking.vehicle_id == vehicle_id)
            .filter(models.Booking.status.in_([BookingStatus.PENDING, BookingStatus.CONFIRMED]))
            .count()
        )
    finally:
        db.close()


def test_same_vehicle_same_range_only_one_wins(fleet, users, notifier):
    outcomes = race(fleet, users, notifier, [(1, 1), (2, 1), (3, 1)])

    winners = [o for o in outcomes if isinstance(o, int)]
    losers = [o for o in outcomes if isinstance(o, BookingConflict)]
    assert len(winners) == 1
    assert len(losers) == 2
    assert blocking_rows(1) == 1


def test_different_vehicles_do_not_block_each_other(fleet, users, notifier):
    outcomes = race(fleet, users, notifier, [(1, 1), (2, 2)])

    assert all(isinstance(o, int) for o in outcomes), outcomes
    assert blocking_rows(1) == 1
    assert blocking_rows(2) == 1
