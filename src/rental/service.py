"""Car catalog and booking lifecycle operations.

The API layer and the payment event consumer both go through this module; it
loads state from :mod:`rental.dal`, makes decisions with
:mod:`rental.availability` and reports failures as :mod:`rental.errors`.
"""
from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime

from aws_lambda_powertools import Logger

from . import availability, dal, notifications
from .errors import (
    BOOKING_NOT_FOUND,
    CAR_NOT_FOUND,
    NOT_AUTHORIZED,
    BookingConflictError,
    ForbiddenError,
    InvalidRangeError,
    InvalidTransitionError,
    NotFoundError,
)
from .models import (
    ACTIVE_BOOKING_STATUSES,
    Actor,
    AvailabilityResult,
    AvailabilityWindow,
    Booking,
    BookingCreate,
    Car,
    CarCreate,
    CarFilter,
    CarUpdate,
)

logger = Logger()

# the first attempt plus one retry after a concurrent write to the same car
MAX_BOOKING_ATTEMPTS = 2

CAR_WRITER_ROLES = frozenset({"host", "admin"})


# Car catalog


def _load_car(car_id: str) -> Car:
    try:
        car = dal.get_car(car_id)
    except KeyError as exc:
        raise NotFoundError(CAR_NOT_FOUND) from exc
    if car.status != "active":
        raise NotFoundError(CAR_NOT_FOUND)
    return car


def _ensure_car_owner(car: Car, actor: Actor) -> None:
    if car.owner_id != actor.user_id and not actor.is_admin:
        raise ForbiddenError(NOT_AUTHORIZED)


def _validate_window(available_from: date, available_to: date) -> None:
    if available_from >= available_to:
        raise InvalidRangeError("available_from must be before available_to")


def create_car(payload: CarCreate, actor: Actor) -> Car:
    if actor.role not in CAR_WRITER_ROLES:
        raise ForbiddenError("Only hosts can list cars")
    _validate_window(payload.available_from, payload.available_to)
    return dal.create_car(actor.user_id, payload)


def get_car(car_id: str) -> Car:
    return _load_car(car_id)


def list_cars(filters: CarFilter) -> list[Car]:
    cars = dal.list_active_cars()
    if filters.category is not None:
        cars = [c for c in cars if c.category == filters.category]
    if filters.min_price is not None:
        cars = [c for c in cars if c.price_per_day >= filters.min_price]
    if filters.max_price is not None:
        cars = [c for c in cars if c.price_per_day <= filters.max_price]
    if filters.location:
        needle = filters.location.casefold()
        cars = [c for c in cars if needle in c.location.casefold()]
    if filters.available_from is not None and filters.available_to is not None:
        cars = [
            c for c in cars
            if c.available_from <= filters.available_from and c.available_to >= filters.available_to
        ]

    if filters.sort_by == "price_asc":
        cars.sort(key=lambda c: c.price_per_day)
    elif filters.sort_by == "price_desc":
        cars.sort(key=lambda c: c.price_per_day, reverse=True)
    else:
        cars.sort(key=lambda c: c.created_at, reverse=True)
    return cars


def get_availability_window(car_id: str) -> AvailabilityWindow:
    car = _load_car(car_id)
    return AvailabilityWindow(
        car_id=car.car_id,
        available_from=car.available_from,
        available_to=car.available_to,
        price_per_day=car.price_per_day,
        currency=car.currency,
    )


def _retry_car_write(car_id: str, actor: Actor, write: Callable[[Car], Car]) -> Car:
    # a booking or another edit may land first; the requested change still applies
    car = _load_car(car_id)
    _ensure_car_owner(car, actor)
    try:
        return write(car)
    except dal.StaleCarError:
        logger.info("Car changed during update, retrying", extra={"car_id": car_id})
        car = _load_car(car_id)
        _ensure_car_owner(car, actor)
        try:
            return write(car)
        except dal.StaleCarError as exc:
            raise BookingConflictError("Car was modified concurrently, try again") from exc


def update_availability_window(car_id: str, available_from: date, available_to: date, actor: Actor) -> Car:
    def write(car: Car) -> Car:
        _validate_window(available_from, available_to)
        return dal.update_car_window(car_id, available_from, available_to, expected_version=car.version)

    return _retry_car_write(car_id, actor, write)


def update_car(car_id: str, payload: CarUpdate, actor: Actor) -> Car:
    """Edit a car's listing. New prices apply to bookings requested afterwards."""
    changes = payload.model_dump(exclude_none=True)

    def write(car: Car) -> Car:
        if not changes:
            return car
        _validate_window(
            changes.get("available_from", car.available_from),
            changes.get("available_to", car.available_to),
        )
        return dal.update_car(car_id, changes, expected_version=car.version)

    return _retry_car_write(car_id, actor, write)


def remove_car(car_id: str, actor: Actor) -> None:
    car = _load_car(car_id)
    _ensure_car_owner(car, actor)
    open_bookings = dal.list_active_bookings_for_car(car_id)
    if open_bookings:
        raise BookingConflictError(
            "Car has open bookings and cannot be removed", (b.booking_id for b in open_bookings)
        )
    try:
        dal.remove_car(car_id, expected_version=car.version)
    except dal.StaleCarError as exc:
        raise BookingConflictError("Car was booked or modified concurrently, try again") from exc


def check_availability(car_id: str, start_date: datetime, end_date: datetime) -> AvailabilityResult:
    car = _load_car(car_id)
    existing = [] if start_date >= end_date else dal.find_overlapping(car_id, start_date, end_date)
    return availability.check_availability(car, existing, start_date, end_date)


# Booking lifecycle


def request_booking(payload: BookingCreate, actor: Actor) -> Booking:
    """Create a pending booking for ``actor`` if the range is free.

    Availability is checked against a snapshot of the car and its bookings and
    the write only commits if the car is unchanged since that snapshot. When
    another booking for the same car lands in between, the check is repeated
    once on fresh data.
    """
    for attempt in range(1, MAX_BOOKING_ATTEMPTS + 1):
        car = _load_car(payload.car_id)
        existing = (
            []
            if payload.start_date >= payload.end_date
            else dal.find_overlapping(car.car_id, payload.start_date, payload.end_date)
        )
        availability.ensure_bookable(car, existing, payload.start_date, payload.end_date)
        price = availability.total_price(car.price_per_day, payload.start_date, payload.end_date)

        try:
            booking = dal.create_booking(car, actor.user_id, payload.start_date, payload.end_date, price)
        except dal.StaleCarError:
            logger.warning(
                "Concurrent write on car, re-checking availability",
                extra={"car_id": car.car_id, "attempt": attempt},
            )
            continue

        notifications.booking_created(booking)
        return booking

    raise BookingConflictError("Car was booked concurrently for overlapping dates")


def _load_booking(booking_id: str) -> Booking:
    try:
        return dal.get_booking(booking_id)
    except KeyError as exc:
        raise NotFoundError(BOOKING_NOT_FOUND) from exc


def _is_owner_or_admin(booking: Booking, actor: Actor) -> bool:
    return actor.is_admin or booking.owner_id == actor.user_id


def get_booking(booking_id: str, actor: Actor) -> Booking:
    booking = _load_booking(booking_id)
    if booking.user_id != actor.user_id and not _is_owner_or_admin(booking, actor):
        raise ForbiddenError(NOT_AUTHORIZED)
    return booking


def list_my_bookings(actor: Actor) -> list[Booking]:
    return sorted(dal.list_bookings_for_user(actor.user_id), key=lambda b: b.created_at, reverse=True)


def list_my_car_bookings(actor: Actor) -> list[Booking]:
    return sorted(dal.list_bookings_for_owner(actor.user_id), key=lambda b: b.created_at, reverse=True)


def _transition(booking: Booking, new_status: str, allowed_from: frozenset[str]) -> Booking:
    if booking.status not in allowed_from:
        raise InvalidTransitionError(f"Cannot move booking from {booking.status} to {new_status}")
    try:
        return dal.update_booking_status(booking, new_status, allowed_from)  # type: ignore[arg-type]
    except dal.StaleBookingError as exc:
        # someone else changed the status after we read it
        raise InvalidTransitionError(f"Booking status changed concurrently, cannot move to {new_status}") from exc


def confirm(booking_id: str, actor: Actor) -> Booking:
    booking = _load_booking(booking_id)
    if not _is_owner_or_admin(booking, actor):
        raise ForbiddenError(NOT_AUTHORIZED)
    updated = _transition(booking, "confirmed", frozenset({"pending"}))
    logger.info("Booking confirmed", extra={"booking_id": booking_id, "actor": actor.user_id})
    notifications.booking_confirmed(updated)
    return updated


def cancel(booking_id: str, actor: Actor) -> Booking:
    booking = _load_booking(booking_id)
    if _is_owner_or_admin(booking, actor):
        allowed_from = ACTIVE_BOOKING_STATUSES
    elif booking.user_id == actor.user_id:
        if booking.status == "confirmed":
            raise ForbiddenError("Confirmed bookings can only be cancelled by the car owner")
        allowed_from = frozenset({"pending"})
    else:
        raise ForbiddenError(NOT_AUTHORIZED)

    updated = _transition(booking, "cancelled", allowed_from)
    logger.info("Booking cancelled", extra={"booking_id": booking_id, "actor": actor.user_id})
    notifications.booking_cancelled(updated)
    return updated


def update_status(booking_id: str, new_status: str, actor: Actor) -> Booking:
    if new_status == "confirmed":
        return confirm(booking_id, actor)
    if new_status == "cancelled":
        return cancel(booking_id, actor)
    raise InvalidTransitionError(f"Unsupported status: {new_status}")


def mark_paid(booking_id: str, actor: Actor | None = None) -> Booking:
    """Record a completed payment; the booking status is left untouched.

    ``actor`` is None when the call comes from the payment completion event.
    """
    booking = _load_booking(booking_id)
    if actor is not None and booking.user_id != actor.user_id and not actor.is_admin:
        raise ForbiddenError(NOT_AUTHORIZED)
    if booking.payment_status == "paid":
        return booking
    try:
        updated = dal.mark_paid(booking_id)
    except KeyError as exc:
        raise NotFoundError(BOOKING_NOT_FOUND) from exc
    logger.info("Booking marked paid", extra={"booking_id": booking_id})
    return updated
