from __future__ import annotations

import operator
import os
import re
import threading
from datetime import date
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

# boto3 clients are created at import time of the modules under test
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "1")
os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "car-rental-test")

from rental import dal, notifications  # noqa: E402
from rental.models import Actor, CarCreate  # noqa: E402

_COMPARE = {
    "=": operator.eq,
    "<>": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

# One lock for the whole fake database so the threaded tests see atomic writes
_db_lock = threading.RLock()


def _name(token: str, names: dict[str, str]) -> str:
    return names.get(token, token) if token.startswith("#") else token


def evaluate(expr: str, item: dict[str, Any] | None, names: dict[str, str], values: dict[str, Any]) -> bool:
    """Evaluate the small subset of condition expressions the DAL emits."""
    for clause in (c.strip() for c in expr.split(" AND ")):
        m = re.fullmatch(r"attribute_(not_)?exists\((\S+)\)", clause)
        if m:
            present = item is not None and _name(m[2], names) in item
            if present == bool(m[1]):
                return False
            continue
        m = re.fullmatch(r"(\S+) IN \((.+)\)", clause)
        if m:
            options = [values[v.strip()] for v in m[2].split(",")]
            if item is None or item.get(_name(m[1], names)) not in options:
                return False
            continue
        m = re.fullmatch(r"(\S+) (=|<>|<=|>=|<|>) (\S+)", clause)
        if m:
            left = None if item is None else item.get(_name(m[1], names))
            if left is None or not _COMPARE[m[2]](left, values[m[3]]):
                return False
            continue
        raise ValueError(f"unsupported clause: {clause}")
    return True


def _conditional_failed(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        operation,
    )


def _apply_set(attrs: dict[str, Any], update_expr: str, names: dict[str, str], values: dict[str, Any]) -> None:
    assert update_expr.startswith("SET ")
    for assign in (a.strip() for a in update_expr[4:].split(",")):
        name, val = (s.strip() for s in assign.split("="))
        attrs[_name(name, names)] = values[val]


class FakeTable:
    """In-memory table. Index queries and default reads may lag behind writes.

    After ``lag()`` those reads serve the snapshot taken at that moment, as an
    index or replica that has not caught up would. ``ConsistentRead=True``
    reads on the base table always see the latest writes.
    """

    def __init__(self, *key: str):
        self.key = key
        self.items: dict[Any, dict[str, Any]] = {}
        self.stale: dict[Any, dict[str, Any]] | None = None
        self.query_calls: list[dict[str, Any]] = []

    def key_of(self, attrs: dict[str, Any]) -> Any:
        if len(self.key) == 1:
            return attrs[self.key[0]]
        return tuple(attrs[k] for k in self.key)

    def lag(self) -> None:
        with _db_lock:
            self.stale = {k: dict(v) for k, v in self.items.items()}

    def _source(self, consistent: bool) -> dict[Any, dict[str, Any]]:
        return self.items if consistent or self.stale is None else self.stale

    def put_item(self, Item, ConditionExpression=None, **kwargs):  # noqa NOSONAR
        with _db_lock:
            current = self.items.get(self.key_of(Item))
            if ConditionExpression and not evaluate(ConditionExpression, current, {}, {}):
                raise _conditional_failed("PutItem")
            self.items[self.key_of(Item)] = dict(Item)

    def get_item(self, Key, ConsistentRead=False):  # noqa NOSONAR
        with _db_lock:
            item = self._source(ConsistentRead).get(self.key_of(Key))
            return {"Item": dict(item)} if item else {}

    def update_item(self, **kwargs):
        key = self.key_of(kwargs["Key"])
        names = kwargs.get("ExpressionAttributeNames") or {}
        values = kwargs.get("ExpressionAttributeValues") or {}
        with _db_lock:
            current = self.items.get(key)
            condition = kwargs.get("ConditionExpression")
            if condition and not evaluate(condition, current, names, values):
                raise _conditional_failed("UpdateItem")
            attrs = dict(current) if current else dict(kwargs["Key"])
            _apply_set(attrs, kwargs["UpdateExpression"], names, values)
            self.items[key] = attrs
            return {"Attributes": dict(attrs)}

    def scan(self, ConsistentRead=False, **kwargs):  # noqa NOSONAR
        names = kwargs.get("ExpressionAttributeNames") or {}
        values = kwargs.get("ExpressionAttributeValues") or {}
        filter_expr = kwargs.get("FilterExpression")
        with _db_lock:
            items = [dict(it) for it in self._source(ConsistentRead).values()]
        return {"Items": [it for it in items if not filter_expr or evaluate(filter_expr, it, names, values)]}

    def query(self, **kwargs):
        self.query_calls.append(kwargs)
        consistent = kwargs.get("ConsistentRead", False)
        if kwargs.get("IndexName") and consistent:
            raise ClientError(
                {
                    "Error": {
                        "Code": "ValidationException",
                        "Message": "Consistent reads are not supported on global secondary indexes",
                    }
                },
                "Query",
            )
        names = kwargs.get("ExpressionAttributeNames") or {}
        values = kwargs["ExpressionAttributeValues"]
        filter_expr = kwargs.get("FilterExpression")
        with _db_lock:
            items = [dict(it) for it in self._source(consistent).values()]
        items = [it for it in items if evaluate(kwargs["KeyConditionExpression"], it, names, values)]
        return {"Items": [it for it in items if not filter_expr or evaluate(filter_expr, it, names, values)]}


class FakeDynamoClient:
    """Just enough of TransactWriteItems: all conditions checked, then all writes applied."""

    def __init__(self, tables: dict[str, FakeTable]):
        self.tables = tables
        self.transactions = 0

    def transact_write_items(self, TransactItems):  # noqa NOSONAR
        with _db_lock:
            reasons = []
            for entry in TransactItems:
                ((op, params),) = entry.items()
                table = self.tables[params["TableName"]]
                key = table.key_of(params["Item"] if op == "Put" else params["Key"])
                condition = params.get("ConditionExpression")
                passed = not condition or evaluate(
                    condition,
                    table.items.get(key),
                    params.get("ExpressionAttributeNames") or {},
                    params.get("ExpressionAttributeValues") or {},
                )
                reasons.append({"Code": "None" if passed else "ConditionalCheckFailed"})

            if any(r["Code"] != "None" for r in reasons):
                raise ClientError(
                    {
                        "Error": {"Code": "TransactionCanceledException", "Message": "Transaction cancelled"},
                        "CancellationReasons": reasons,
                    },
                    "TransactWriteItems",
                )

            for entry in TransactItems:
                ((op, params),) = entry.items()
                table = self.tables[params["TableName"]]
                if op == "Put":
                    table.items[table.key_of(params["Item"])] = dict(params["Item"])
                else:
                    table.update_item(
                        Key=params["Key"],
                        UpdateExpression=params["UpdateExpression"],
                        ExpressionAttributeNames=params.get("ExpressionAttributeNames"),
                        ExpressionAttributeValues=params.get("ExpressionAttributeValues"),
                    )
            self.transactions += 1
        return {}


class FakeStore:
    def __init__(self):
        self.cars = FakeTable("car_id")
        self.bookings = FakeTable("booking_id")
        self.calendar = FakeTable("car_id", "slot")
        self.client = FakeDynamoClient(
            {
                dal._CARS_TABLE_NAME: self.cars,
                dal._BOOKINGS_TABLE_NAME: self.bookings,
                dal._CALENDAR_TABLE_NAME: self.calendar,
            }
        )

    def lag(self) -> None:
        for table in (self.cars, self.bookings, self.calendar):
            table.lag()


@pytest.fixture(autouse=True)
def store(monkeypatch) -> FakeStore:
    fake = FakeStore()
    monkeypatch.setattr(dal, "_cars_table", fake.cars)
    monkeypatch.setattr(dal, "_bookings_table", fake.bookings)
    monkeypatch.setattr(dal, "_calendar_table", fake.calendar)
    monkeypatch.setattr(dal, "_client", fake.client)
    return fake


@pytest.fixture(autouse=True)
def fake_events(monkeypatch) -> MagicMock:
    events = MagicMock()
    events.put_events.return_value = {"FailedEntryCount": 0, "Entries": [{"EventId": "e-1"}]}
    monkeypatch.setattr(notifications, "_events", events)
    return events


@pytest.fixture()
def owner() -> Actor:
    return Actor(user_id="host-1", role="host")


@pytest.fixture()
def renter() -> Actor:
    return Actor(user_id="user-1", role="user")


@pytest.fixture()
def admin() -> Actor:
    return Actor(user_id="admin-1", role="admin")


def _car_payload(**overrides: Any) -> CarCreate:
    base: dict[str, Any] = dict(
        make="Maruti",
        model="Swift",
        year=2022,
        category="Compact",
        price_per_day=Decimal("1000"),
        location="Pune",
        available_from=date(2024, 6, 1),
        available_to=date(2024, 6, 30),
    )
    base.update(overrides)
    return CarCreate(**base)


@pytest.fixture()
def car_payload():
    return _car_payload


@pytest.fixture()
def make_car(owner):
    def _make(owner_id: str | None = None, **overrides: Any):
        return dal.create_car(owner_id or owner.user_id, _car_payload(**overrides))

    return _make


@pytest.fixture()
def car(make_car):
    return make_car()
