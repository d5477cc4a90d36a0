# bookings_service/overlap.py
from datetime import datetime
from typing import Iterable, List, NamedTuple, Protocol


class Reservation(Protocol):
    id: int
    start_date: datetime
    end_date: datetime


class OverlapReport(NamedTuple):
    available: bool
    conflicts: List[Reservation]

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)


def conflicts_with(
    start: datetime,
    end: datetime,
    existing_start: datetime,
    existing_end: datetime,
) -> bool:
    """
    Closed-interval overlap test between a candidate and an existing range.

    A range ending exactly when the other starts counts as a conflict.

    Parameters
    ----------
    start, end : datetime
        Candidate range.
    existing_start, existing_end : datetime
        Range of a reservation already on the calendar.

    Returns
    -------
    bool
        True if the two ranges share at least one instant.
    """
    starts_inside = existing_start <= start <= existing_end
    ends_inside = existing_start <= end <= existing_end
    contains = start <= existing_start and existing_end <= end
    return starts_inside or ends_inside or contains


def detect_overlap(
    start: datetime,
    end: datetime,
    reservations: Iterable[Reservation],
) -> OverlapReport:
    """
    Report which of the given reservations collide with [start, end].

    The caller passes only the vehicle's blocking reservations; nothing
    here touches the database and nothing raises.
    """
    conflicts = [
        r for r in reservations
        if conflicts_with(start, end, r.start_date, r.end_date)
    ]
    return OverlapReport(available=not conflicts, conflicts=conflicts)
