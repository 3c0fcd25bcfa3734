from __future__ import annotations

import json
import os
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from .models import Booking

logger = Logger()

_EVENT_BUS_NAME = os.environ.get("EVENT_BUS_NAME", "default")
EVENT_SOURCE = "rental.bookings"

_events = boto3.client("events")


def _detail(booking: Booking) -> dict[str, Any]:
    return {
        "version": "1.0",
        "booking_id": booking.booking_id,
        "car_id": booking.car_id,
        "user_id": booking.user_id,
        "owner_id": booking.owner_id,
        "status": booking.status,
        "start_date": booking.start_date.isoformat(),
        "end_date": booking.end_date.isoformat(),
        "total_price": str(booking.total_price),
        "currency": booking.currency,
    }


def publish(detail_type: str, booking: Booking) -> bool:
    """Best-effort publish; a failed notification never undoes a booking change."""
    detail = _detail(booking)
    logger.info("Emitting booking event", extra={"detail_type": detail_type, **detail})
    try:
        resp = _events.put_events(
            Entries=[
                {
                    "Source": EVENT_SOURCE,
                    "DetailType": detail_type,
                    "Detail": json.dumps(detail),
                    "EventBusName": _EVENT_BUS_NAME,
                }
            ]
        )
    except (BotoCoreError, ClientError):
        logger.exception("Booking event not delivered", extra={"detail_type": detail_type, "booking_id": booking.booking_id})
        return False

    if resp.get("FailedEntryCount"):
        logger.warning(
            "Booking event rejected",
            extra={"detail_type": detail_type, "booking_id": booking.booking_id, "entries": resp.get("Entries")},
        )
        return False
    return True


def booking_created(booking: Booking) -> bool:
    return publish("BookingCreated", booking)


def booking_confirmed(booking: Booking) -> bool:
    return publish("BookingConfirmed", booking)


def booking_cancelled(booking: Booking) -> bool:
    return publish("BookingCancelled", booking)
