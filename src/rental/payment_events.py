from __future__ import annotations

from typing import Any

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.utilities.typing import LambdaContext

from rental import service
from rental.errors import NotFoundError

logger = Logger()
tracer = Tracer()

PAYMENT_COMPLETED = "PaymentCompleted"


@tracer.capture_lambda_handler
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> dict[str, Any]:
    # Triggered by an EventBridge rule on the payment gateway's completion events
    if event.get("detail-type") != PAYMENT_COMPLETED:
        return {"status": "ignored"}

    detail = event.get("detail") or {}
    booking_id = detail.get("booking_id") if isinstance(detail, dict) else None
    if not isinstance(booking_id, str) or not booking_id:
        logger.warning("Payment event without booking id", extra={"event_id": event.get("id")})
        return {"status": "ignored"}

    try:
        booking = service.mark_paid(booking_id)
    except NotFoundError:
        # Nothing to retry: the booking will never appear
        logger.warning("Payment for unknown booking", extra={"booking_id": booking_id})
        return {"status": "unknown_booking", "booking_id": booking_id}

    logger.info("Payment recorded", extra={"booking_id": booking_id, "event_id": event.get("id")})
    return {"status": "paid", "booking_id": booking.booking_id}
