from __future__ import annotations

import os
import uuid
from collections.abc import Iterable
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, TypedDict, cast

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    # Only for static type checking; not imported at runtime
    from mypy_boto3_dynamodb.client import DynamoDBClient
    from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    # Fallbacks to satisfy annotations at runtime
    DynamoDBClient = Any  # type: ignore[assignment]
    DynamoDBServiceResource = Any  # type: ignore[assignment]
    DynamoDBTable = Any  # type: ignore[assignment]

from .errors import BOOKING_NOT_FOUND, CAR_NOT_FOUND
from .models import BookedRange, Booking, BookingStatus, Car, CarCreate

logger = Logger()
_CARS_TABLE_NAME = os.environ.get("CARS_TABLE_NAME", "cars")
_BOOKINGS_TABLE_NAME = os.environ.get("BOOKINGS_TABLE_NAME", "bookings")
_CALENDAR_TABLE_NAME = os.environ.get("CALENDAR_TABLE_NAME", "car_calendar")

_dynamodb: DynamoDBServiceResource = boto3.resource("dynamodb")
_cars_table: DynamoDBTable = _dynamodb.Table(_CARS_TABLE_NAME)
_bookings_table: DynamoDBTable = _dynamodb.Table(_BOOKINGS_TABLE_NAME)
# Per-car copy of each booking range, keyed car_id + slot so it can be read strongly consistent
_calendar_table: DynamoDBTable = _dynamodb.Table(_CALENDAR_TABLE_NAME)
# Resource-backed client: plain Python values are serialized for us, transactions included
_client: DynamoDBClient = _dynamodb.meta.client

USER_ID_INDEX = "user_id_index"
OWNER_ID_INDEX = "owner_id_index"

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"
TRANSACTION_CANCELED = "TransactionCanceledException"


class StaleCarError(Exception):
    """The car was written by someone else between our read and our write."""


class StaleBookingError(Exception):
    """The booking's status no longer matches what the caller expected."""


class CarItem(TypedDict, total=False):
    car_id: str
    owner_id: str
    make: str
    model: str
    year: int
    category: str
    price_per_day: Decimal
    currency: str
    location: str
    description: str
    features: list[str]
    available_from: str
    available_to: str
    status: str
    version: int
    created_at: str


class BookingItem(TypedDict, total=False):
    booking_id: str
    car_id: str
    user_id: str
    owner_id: str
    start_date: str
    end_date: str
    total_price: Decimal
    currency: str
    status: str
    payment_status: str
    created_at: str
    updated_at: str


class CalendarItem(TypedDict, total=False):
    car_id: str
    slot: str
    booking_id: str
    start_date: str
    end_date: str
    status: str


def _dt_to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()


def _iso_to_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _now_iso() -> str:
    return _dt_to_iso(datetime.now(UTC))


def _slot(start_date: datetime, booking_id: str) -> str:
    # sorts by start; "start#id" < end iso exactly when start < end
    return f"{_dt_to_iso(start_date)}#{booking_id}"


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def _paginate(call: Any, **kwargs: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    while True:
        resp = cast(dict[str, Any], call(**kwargs))
        items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


# Cars


def create_car(owner_id: str, payload: CarCreate) -> Car:
    car_id = str(uuid.uuid4())
    item: CarItem = {
        "car_id": car_id,
        "owner_id": owner_id,
        "make": payload.make,
        "model": payload.model,
        "year": payload.year,
        "category": payload.category,
        "price_per_day": payload.price_per_day,
        "currency": payload.currency,
        "location": payload.location,
        "features": list(payload.features),
        "available_from": payload.available_from.isoformat(),
        "available_to": payload.available_to.isoformat(),
        "status": "active",
        "version": 0,
        "created_at": _now_iso(),
    }
    if payload.description is not None:
        item["description"] = payload.description

    logger.info("Creating car", extra={"car_id": car_id, "owner_id": owner_id})
    _cars_table.put_item(Item=item, ConditionExpression="attribute_not_exists(car_id)")  # type: ignore
    return _car_to_model(item)


def get_car(car_id: str) -> Car:
    resp = cast(dict[str, Any], _cars_table.get_item(Key={"car_id": car_id}, ConsistentRead=True))
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise KeyError(CAR_NOT_FOUND)
    return _car_to_model(cast(CarItem, item))


def list_active_cars() -> list[Car]:
    items = _paginate(
        _cars_table.scan,
        FilterExpression="#st = :active",
        ExpressionAttributeNames={"#st": "status"},
        ExpressionAttributeValues={":active": "active"},
    )
    return [_car_to_model(cast(CarItem, it)) for it in items]


def _update_car(car_id: str, expected_version: int, changes: dict[str, Any]) -> Car:
    # Every car write bumps the version and is guarded by the one we read.
    set_parts: list[str] = []
    names: dict[str, str] = {"#v": "version", "#st": "status"}
    values: dict[str, Any] = {
        ":expected": expected_version,
        ":next": expected_version + 1,
        ":active": "active",
    }

    def set_attr(name: str, value: Any) -> None:
        names[f"#_{name}"] = name
        values[f":{name}"] = value
        set_parts.append(f"#_{name} = :{name}")

    for name, value in changes.items():
        set_attr(name, value)
    set_parts.append("#v = :next")

    try:
        resp = cast(
            dict[str, Any],
            _cars_table.update_item(
                Key={"car_id": car_id},
                UpdateExpression="SET " + ", ".join(set_parts),
                ConditionExpression="#v = :expected AND #st = :active",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            ),
        )
    except ClientError as exc:
        if _error_code(exc) == CONDITIONAL_CHECK_FAILED:
            raise StaleCarError(car_id) from exc
        raise
    attrs = cast(dict[str, Any], resp.get("Attributes") or {})
    return _car_to_model(cast(CarItem, attrs))


def update_car_window(car_id: str, available_from: date, available_to: date, expected_version: int) -> Car:
    logger.info(
        "Updating availability window",
        extra={"car_id": car_id, "available_from": str(available_from), "available_to": str(available_to)},
    )
    return _update_car(
        car_id,
        expected_version,
        {"available_from": available_from.isoformat(), "available_to": available_to.isoformat()},
    )


def update_car(car_id: str, changes: dict[str, Any], expected_version: int) -> Car:
    """Apply listing edits (price, description, features, window) to a car.

    ``changes`` holds model values; dates are stored as ISO strings.
    """
    stored = {k: v.isoformat() if isinstance(v, date) else v for k, v in changes.items()}
    logger.info("Updating car", extra={"car_id": car_id, "fields": sorted(stored)})
    return _update_car(car_id, expected_version, stored)


def remove_car(car_id: str, expected_version: int) -> Car:
    logger.info("Removing car", extra={"car_id": car_id})
    return _update_car(car_id, expected_version, {"status": "removed"})


# Bookings


def create_booking(
    car: Car,
    user_id: str,
    start_date: datetime,
    end_date: datetime,
    total_price: Decimal,
) -> Booking:
    """Persist a new pending booking.

    The booking, its calendar entry and the car version bump commit together,
    conditioned on the car version the caller checked availability against.
    If any other writer touched the car in between, the transaction is
    cancelled and ``StaleCarError`` is raised.
    """
    booking_id = str(uuid.uuid4())
    now = _now_iso()
    item: BookingItem = {
        "booking_id": booking_id,
        "car_id": car.car_id,
        "user_id": user_id,
        "owner_id": car.owner_id,
        "start_date": _dt_to_iso(start_date),
        "end_date": _dt_to_iso(end_date),
        "total_price": total_price,
        "currency": car.currency,
        "status": "pending",
        "payment_status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    entry: CalendarItem = {
        "car_id": car.car_id,
        "slot": _slot(start_date, booking_id),
        "booking_id": booking_id,
        "start_date": item["start_date"],
        "end_date": item["end_date"],
        "status": "pending",
    }

    logger.info(
        "Creating booking",
        extra={"booking_id": booking_id, "car_id": car.car_id, "car_version": car.version},
    )
    try:
        _client.transact_write_items(
            TransactItems=[
                {
                    "Put": {
                        "TableName": _BOOKINGS_TABLE_NAME,
                        "Item": item,  # type: ignore[typeddict-item]
                        "ConditionExpression": "attribute_not_exists(booking_id)",
                    }
                },
                {
                    "Put": {
                        "TableName": _CALENDAR_TABLE_NAME,
                        "Item": entry,  # type: ignore[typeddict-item]
                        "ConditionExpression": "attribute_not_exists(slot)",
                    }
                },
                {
                    "Update": {
                        "TableName": _CARS_TABLE_NAME,
                        "Key": {"car_id": car.car_id},  # type: ignore[dict-item]
                        "UpdateExpression": "SET #v = :next",
                        "ConditionExpression": "#v = :expected AND #st = :active",
                        "ExpressionAttributeNames": {"#v": "version", "#st": "status"},
                        "ExpressionAttributeValues": {
                            ":expected": car.version,  # type: ignore[dict-item]
                            ":next": car.version + 1,  # type: ignore[dict-item]
                            ":active": "active",  # type: ignore[dict-item]
                        },
                    }
                },
            ]
        )
    except ClientError as exc:
        if _error_code(exc) == TRANSACTION_CANCELED:
            raise StaleCarError(car.car_id) from exc
        raise
    return _booking_to_model(item)


def get_booking(booking_id: str) -> Booking:
    resp = cast(dict[str, Any], _bookings_table.get_item(Key={"booking_id": booking_id}, ConsistentRead=True))
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise KeyError(BOOKING_NOT_FOUND)
    return _booking_to_model(cast(BookingItem, item))


def _query_calendar(car_id: str, start: str | None = None, end: str | None = None) -> list[BookedRange]:
    # strongly consistent, which no global secondary index can serve
    kwargs: dict[str, Any] = {"KeyConditionExpression": "car_id = :cid"}
    values: dict[str, Any] = {":cid": car_id}
    if end is not None:
        kwargs["KeyConditionExpression"] += " AND slot < :end"
        values[":end"] = end
    if start is not None:
        kwargs["FilterExpression"] = "end_date > :start"
        values[":start"] = start
    items = _paginate(
        _calendar_table.query,
        ExpressionAttributeValues=values,
        ConsistentRead=True,
        **kwargs,
    )
    return [_range_to_model(cast(CalendarItem, it)) for it in items]


def find_overlapping(
    car_id: str,
    start_date: datetime,
    end_date: datetime,
    exclude_statuses: Iterable[str] = ("cancelled",),
) -> list[BookedRange]:
    excluded = set(exclude_statuses)
    ranges = _query_calendar(car_id, start=_dt_to_iso(start_date), end=_dt_to_iso(end_date))
    return [r for r in ranges if r.status not in excluded]


def list_active_bookings_for_car(car_id: str) -> list[BookedRange]:
    return [r for r in _query_calendar(car_id) if r.is_active]


def list_bookings_for_user(user_id: str) -> list[Booking]:
    items = _paginate(
        _bookings_table.query,
        IndexName=USER_ID_INDEX,
        KeyConditionExpression="user_id = :uid",
        ExpressionAttributeValues={":uid": user_id},
    )
    return [_booking_to_model(cast(BookingItem, it)) for it in items]


def list_bookings_for_owner(owner_id: str) -> list[Booking]:
    items = _paginate(
        _bookings_table.query,
        IndexName=OWNER_ID_INDEX,
        KeyConditionExpression="owner_id = :oid",
        ExpressionAttributeValues={":oid": owner_id},
    )
    return [_booking_to_model(cast(BookingItem, it)) for it in items]


def update_booking_status(
    booking: Booking, new_status: BookingStatus, expected_statuses: Iterable[str]
) -> Booking:
    """Move ``booking`` to ``new_status`` if it is still in one of ``expected_statuses``.

    The booking and its calendar entry change in one transaction.
    """
    expected = sorted(set(expected_statuses))
    values: dict[str, Any] = {":s": new_status, ":u": _now_iso()}
    placeholders = []
    for i, status in enumerate(expected):
        values[f":e{i}"] = status
        placeholders.append(f":e{i}")

    logger.info(
        "Updating booking status",
        extra={"booking_id": booking.booking_id, "status": new_status, "expected": expected},
    )
    try:
        _client.transact_write_items(
            TransactItems=[
                {
                    "Update": {
                        "TableName": _BOOKINGS_TABLE_NAME,
                        "Key": {"booking_id": booking.booking_id},  # type: ignore[dict-item]
                        "UpdateExpression": "SET #s = :s, #u = :u",
                        "ConditionExpression": (
                            f"attribute_exists(booking_id) AND #s IN ({', '.join(placeholders)})"
                        ),
                        "ExpressionAttributeNames": {"#s": "status", "#u": "updated_at"},
                        "ExpressionAttributeValues": values,
                    }
                },
                {
                    "Update": {
                        "TableName": _CALENDAR_TABLE_NAME,
                        "Key": {  # type: ignore[dict-item]
                            "car_id": booking.car_id,
                            "slot": _slot(booking.start_date, booking.booking_id),
                        },
                        "UpdateExpression": "SET #s = :s",
                        "ConditionExpression": "attribute_exists(slot)",
                        "ExpressionAttributeNames": {"#s": "status"},
                        "ExpressionAttributeValues": {":s": new_status},  # type: ignore[dict-item]
                    }
                },
            ]
        )
    except ClientError as exc:
        if _error_code(exc) == TRANSACTION_CANCELED:
            raise StaleBookingError(booking.booking_id) from exc
        raise
    return get_booking(booking.booking_id)


def mark_paid(booking_id: str) -> Booking:
    try:
        resp = cast(
            dict[str, Any],
            _bookings_table.update_item(
                Key={"booking_id": booking_id},
                UpdateExpression="SET #p = :p, #u = :u",
                ConditionExpression="attribute_exists(booking_id)",
                ExpressionAttributeNames={"#p": "payment_status", "#u": "updated_at"},
                ExpressionAttributeValues={":p": "paid", ":u": _now_iso()},
                ReturnValues="ALL_NEW",
            ),
        )
    except ClientError as exc:
        if _error_code(exc) == CONDITIONAL_CHECK_FAILED:
            raise KeyError(BOOKING_NOT_FOUND) from exc
        raise
    attrs = cast(dict[str, Any], resp.get("Attributes") or {})
    return _booking_to_model(cast(BookingItem, attrs))


def _car_to_model(item: CarItem) -> Car:
    return Car(
        car_id=item["car_id"],
        owner_id=item["owner_id"],
        make=item["make"],
        model=item["model"],
        year=int(item["year"]),
        category=item["category"],  # type: ignore[arg-type]
        price_per_day=Decimal(item["price_per_day"]),
        currency=item.get("currency", "INR"),
        location=item["location"],
        description=item.get("description"),
        features=list(item.get("features", [])),
        available_from=date.fromisoformat(item["available_from"]),
        available_to=date.fromisoformat(item["available_to"]),
        status=item.get("status", "active"),  # type: ignore[arg-type]
        # DynamoDB numbers come back as Decimal
        version=int(item.get("version", 0)),
        created_at=_iso_to_dt(item["created_at"]),
    )


def _booking_to_model(item: BookingItem) -> Booking:
    return Booking(
        booking_id=item["booking_id"],
        car_id=item["car_id"],
        user_id=item["user_id"],
        owner_id=item["owner_id"],
        start_date=_iso_to_dt(item["start_date"]),
        end_date=_iso_to_dt(item["end_date"]),
        total_price=Decimal(item["total_price"]),
        currency=item.get("currency", "INR"),
        status=item.get("status", "pending"),  # type: ignore[arg-type]
        payment_status=item.get("payment_status", "pending"),  # type: ignore[arg-type]
        created_at=_iso_to_dt(item["created_at"]),
        updated_at=_iso_to_dt(item["updated_at"]),
    )


def _range_to_model(item: CalendarItem) -> BookedRange:
    return BookedRange(
        booking_id=item["booking_id"],
        start_date=_iso_to_dt(item["start_date"]),
        end_date=_iso_to_dt(item["end_date"]),
        status=item.get("status", "pending"),  # type: ignore[arg-type]
    )
