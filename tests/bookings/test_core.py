# tests/bookings/test_core.py

import threading
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from bookings_service.engine import KeyedLock, is_declined, mask_card
from bookings_service.errors import ForbiddenError, InvalidTransition, ValidationError
from bookings_service.notifications import NotificationDispatcher
from bookings_service.overlap import conflicts_with, detect_overlap
from bookings_service.policy import (
    Actor,
    authorize_payment,
    authorize_status_change,
    has_permission,
)
from bookings_service.pricing import calculate_price
from bookings_service.state_machine import (
    BLOCKING_STATUSES,
    BookingStatus,
    assert_transition,
    parse_status,
)
from common.mailer import SmtpMailer

D0 = datetime(2024, 1, 1)


def day(n: float) -> datetime:
    return D0 + timedelta(days=n)


# ---------- Pricing ----------


def test_price_for_whole_days():
    quote = calculate_price(day(0), day(2), Decimal("10000"))
    assert quote.total_days == 2
    assert quote.total_price == Decimal("20000.00")


def test_partial_day_is_rounded_up():
    quote = calculate_price(day(0), day(0) + timedelta(hours=26), "150.50")
    assert quote.total_days == 2
    assert quote.total_price == Decimal("301.00")


def test_short_rental_costs_one_day():
    quote = calculate_price(day(0), day(0) + timedelta(minutes=30), "99.99")
    assert quote.total_days == 1
    assert quote.total_price == Decimal("99.99")


def test_price_rounds_half_up_to_cents():
    quote = calculate_price(day(0), day(3), "0.005")
    assert quote.total_price == Decimal("0.02")


def test_price_rejects_empty_range():
    with pytest.raises(ValueError):
        calculate_price(day(1), day(1), "100")


# ---------- Overlap detector ----------


def shares_an_instant(s, e, start, end) -> bool:
    return max(s, start) <= min(e, end)


def test_overlap_matches_closed_interval_intersection():
    points = range(0, 7)
    ranges = [(a, b) for a in points for b in points if a < b]
    for s, e in ranges:
        for start, end in ranges:
            expected = shares_an_instant(s, e, start, end)
            assert conflicts_with(day(start), day(end), day(s), day(e)) is expected, (s, e, start, end)


def test_touching_boundaries_conflict():
    assert conflicts_with(day(3), day(5), day(1), day(3))
    assert conflicts_with(day(0), day(1), day(1), day(3))


def test_detect_overlap_reports_conflicts():
    existing = [
        SimpleNamespace(id=1, start_date=day(0), end_date=day(4)),
        SimpleNamespace(id=2, start_date=day(10), end_date=day(12)),
    ]
    report = detect_overlap(day(3), day(5), existing)
    assert report.available is False
    assert [b.id for b in report.conflicts] == [1]
    assert report.conflict_count == 1

    assert detect_overlap(day(5), day(9), existing).available is True
    assert detect_overlap(day(5), day(9), []).available is True


# ---------- State machine ----------


@pytest.mark.parametrize(
    "current, target",
    [
        (BookingStatus.PENDING, BookingStatus.CONFIRMED),
        (BookingStatus.PENDING, BookingStatus.CANCELLED),
        (BookingStatus.CONFIRMED, BookingStatus.CANCELLED),
        (BookingStatus.CONFIRMED, BookingStatus.COMPLETED),
    ],
)
def test_allowed_transitions(current, target):
    assert assert_transition(current, target) is True


@pytest.mark.parametrize(
    "current, target",
    [
        (BookingStatus.PENDING, BookingStatus.COMPLETED),
        (BookingStatus.CONFIRMED, BookingStatus.PENDING),
        (BookingStatus.CANCELLED, BookingStatus.CONFIRMED),
        (BookingStatus.CANCELLED, BookingStatus.PENDING),
        (BookingStatus.COMPLETED, BookingStatus.CANCELLED),
    ],
)
def test_rejected_transitions(current, target):
    with pytest.raises(InvalidTransition) as exc:
        assert_transition(current, target)
    assert exc.value.status_code == 409


def test_same_status_is_a_noop():
    for s in BookingStatus:
        assert assert_transition(s, s) is False


def test_parse_status_is_case_insensitive():
    assert parse_status("cancelled") is BookingStatus.CANCELLED
    assert parse_status(" Confirmed ") is BookingStatus.CONFIRMED
    with pytest.raises(ValidationError):
        parse_status("in_progress")


def test_blocking_statuses():
    assert BLOCKING_STATUSES == {BookingStatus.PENDING, BookingStatus.CONFIRMED}


# ---------- Access policy ----------

OWNER = Actor(user_id=1, role="USER")
STRANGER = Actor(user_id=2, role="USER")
SUPER_ADMIN = Actor(user_id=9, role="ADMIN")
READER = Actor(user_id=8, role="ADMIN", permissions=frozenset({"READ"}))


def booking_of(user_id: int):
    return SimpleNamespace(user_id=user_id, status=BookingStatus.PENDING)


def test_empty_permission_set_is_super_admin():
    assert has_permission(SUPER_ADMIN, "DELETE")
    assert has_permission(READER, "READ")
    assert not has_permission(READER, "DELETE")
    assert not has_permission(OWNER, "READ")


def test_actor_from_claims_normalizes_case():
    actor = Actor.from_claims({"user_id": "5", "role": "admin", "permissions": ["read"]})
    assert actor == Actor(user_id=5, role="ADMIN", permissions=frozenset({"READ"}))


@pytest.mark.parametrize("target", [BookingStatus.CONFIRMED, BookingStatus.COMPLETED, BookingStatus.PENDING])
def test_owner_may_only_cancel(target):
    authorize_status_change(OWNER, booking_of(1), BookingStatus.CANCELLED)
    with pytest.raises(ForbiddenError):
        authorize_status_change(OWNER, booking_of(1), target)


@pytest.mark.parametrize("target", list(BookingStatus))
def test_stranger_is_always_refused(target):
    with pytest.raises(ForbiddenError):
        authorize_status_change(STRANGER, booking_of(1), target)


def test_admin_may_request_any_status():
    for target in BookingStatus:
        authorize_status_change(READER, booking_of(1), target)


def test_only_owner_may_pay():
    authorize_payment(OWNER, booking_of(1))
    with pytest.raises(ForbiddenError):
        authorize_payment(SUPER_ADMIN, booking_of(1))


# ---------- Card helpers ----------


def test_card_mask_and_decline_rule():
    assert mask_card("4242 4242 4242 4242") == "**** **** **** 4242"
    assert is_declined("4000-0000-0000-0002")
    assert not is_declined("4000000000000020")


# ---------- Notifications ----------


class ExplodingMailer(SmtpMailer):
    def send(self, to, subject, body):
        raise ConnectionRefusedError("smtp down")


def test_notification_failures_are_swallowed():
    dispatcher = NotificationDispatcher(mailer=ExplodingMailer())
    dispatcher.start()
    try:
        future = dispatcher.notify_booking_created(
            {
                "booking_id": 1,
                "customer_name": "Jane Doe",
                "customer_email": "jane@example.com",
                "vehicle_label": "Toyota RAV4 2022",
                "start_date": "2024-01-01T00:00:00",
                "end_date": "2024-01-03T00:00:00",
                "total_days": 2,
                "total_price": "20000.00",
                "currency": "FCFA",
                "status": "PENDING",
            }
        )
        assert future.result(timeout=5) is None
    finally:
        dispatcher.shutdown()


def test_simulated_mailer_sends_nothing(caplog):
    mailer = SmtpMailer(host="")
    assert mailer.simulated
    with caplog.at_level("INFO"):
        mailer.send("jane@example.com", "Hello", "Body")
    assert "[SIMULATED]" in caplog.text


# ---------- Keyed locks ----------


def test_keyed_lock_forgets_released_keys():
    locks = KeyedLock()
    for i in range(10_000):
        with locks.hold(("vehicle", i)):
            assert len(locks) == 1
    assert len(locks) == 0


def test_keyed_lock_serializes_one_key():
    locks = KeyedLock()
    entered = threading.Event()
    order = []

    def contender():
        with locks.hold(("vehicle", 1)):
            order.append("contender")
        entered.set()

    with locks.hold(("vehicle", 1)):
        worker = threading.Thread(target=contender)
        worker.start()
        assert not entered.wait(timeout=0.2)
        assert len(locks) == 1
        order.append("holder")

    worker.join(timeout=5)
    assert entered.is_set()
    assert order == ["holder", "contender"]
    assert len(locks) == 0


def test_keyed_lock_distinct_keys_do_not_block():
    locks = KeyedLock()
    with locks.hold(("vehicle", 1)):
        with locks.hold(("vehicle", 2)):
            assert len(locks) == 2
    assert len(locks) == 0


def test_keyed_lock_releases_after_error():
    locks = KeyedLock()
    with pytest.raises(RuntimeError):
        with locks.hold(("booking", 7)):
            raise RuntimeError("boom")
    assert len(locks) == 0
    with locks.hold(("booking", 7)):
        pass
