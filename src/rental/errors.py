from __future__ import annotations

from collections.abc import Iterable


class RentalError(Exception):
    """Base class for failures reported back to the caller."""

    status_code = 400
    code = "rental_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, object]:
        return {"detail": self.message, "code": self.code}


class NotFoundError(RentalError):
    status_code = 404
    code = "not_found"


class ForbiddenError(RentalError):
    status_code = 403
    code = "forbidden"


class InvalidRangeError(RentalError):
    status_code = 400
    code = "invalid_range"


class OutOfWindowError(RentalError):
    status_code = 400
    code = "out_of_window"


class BookingConflictError(RentalError):
    status_code = 409
    code = "conflict"

    def __init__(self, message: str, booking_ids: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.booking_ids = list(booking_ids)

    def to_dict(self) -> dict[str, object]:
        body = super().to_dict()
        body["conflicts"] = self.booking_ids
        return body


class InvalidTransitionError(RentalError):
    status_code = 409
    code = "invalid_transition"


CAR_NOT_FOUND = "Car not found"
BOOKING_NOT_FOUND = "Booking not found"
NOT_AUTHORIZED = "Not authorized"
