"""Availability checks for a single car.

Everything here is pure: callers load the car and its bookings, these
functions only decide. Booking ranges are half-open ``[start, end)``. The car's
availability window runs from ``available_from`` midnight to ``available_to``
midnight UTC, so a booking must be returned by the start of ``available_to``.
"""
from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal

from .errors import BookingConflictError, InvalidRangeError, OutOfWindowError
from .models import AvailabilityResult, BookedRange, Booking, Car

# stored bookings, or their calendar ranges
Reserved = Booking | BookedRange

ONE_DAY = timedelta(days=1)


def ranges_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and b_start < a_end


def window_bounds(available_from: date, available_to: date) -> tuple[datetime, datetime]:
    lower = datetime.combine(available_from, time.min, tzinfo=UTC)
    upper = datetime.combine(available_to, time.min, tzinfo=UTC)
    return lower, upper


def within_window(car: Car, start: datetime, end: datetime) -> bool:
    lower, upper = window_bounds(car.available_from, car.available_to)
    return lower <= start and end <= upper


def conflicting_bookings(bookings: Iterable[Reserved], start: datetime, end: datetime) -> list[Reserved]:
    """Active bookings whose range intersects ``[start, end)``."""
    return [
        b for b in bookings
        if b.is_active and ranges_overlap(b.start_date, b.end_date, start, end)
    ]


def check_availability(
    car: Car, bookings: Iterable[Reserved], start: datetime, end: datetime
) -> AvailabilityResult:
    """Decide whether ``[start, end)`` can be booked on ``car``.

    Checks run in a fixed order and the first failure wins: range shape,
    containment in the availability window, then overlap with pending or
    confirmed bookings. Every overlapping booking is reported.
    """
    result = AvailabilityResult(
        car_id=car.car_id, start_date=start, end_date=end, available=False, reason="ok"
    )
    if start >= end:
        result.reason = "invalid_range"
        return result
    if not within_window(car, start, end):
        result.reason = "out_of_window"
        return result

    conflicts = conflicting_bookings(bookings, start, end)
    if conflicts:
        result.reason = "conflict"
        result.conflicts = [
            BookedRange(
                booking_id=b.booking_id, start_date=b.start_date, end_date=b.end_date, status=b.status
            )
            for b in conflicts
        ]
        return result

    result.available = True
    return result


def ensure_bookable(car: Car, bookings: Iterable[Reserved], start: datetime, end: datetime) -> None:
    result = check_availability(car, bookings, start, end)
    if result.reason == "invalid_range":
        raise InvalidRangeError("start_date must be before end_date")
    if result.reason == "out_of_window":
        raise OutOfWindowError(
            f"Car is only available from {car.available_from.isoformat()} to {car.available_to.isoformat()}"
        )
    if result.reason == "conflict":
        raise BookingConflictError(
            "Car already booked for selected dates", (c.booking_id for c in result.conflicts)
        )


def rental_days(start: datetime, end: datetime) -> int:
    # partial days are charged as whole days
    return math.ceil((end - start) / ONE_DAY)


def total_price(price_per_day: Decimal, start: datetime, end: datetime) -> Decimal:
    if start >= end:
        raise InvalidRangeError("start_date must be before end_date")
    return rental_days(start, end) * price_per_day
