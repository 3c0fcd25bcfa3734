from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def _as_utc(dt: datetime) -> datetime:
    # naive datetimes are taken to be UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]

Role = Literal["user", "host", "admin"]
Category = Literal["Economy", "Compact", "Midsize", "SUV", "Van", "Luxury"]
CarStatus = Literal["active", "removed"]
BookingStatus = Literal["pending", "confirmed", "cancelled"]
PaymentStatus = Literal["pending", "paid"]

ACTIVE_BOOKING_STATUSES: frozenset[str] = frozenset({"pending", "confirmed"})


class Actor(BaseModel):
    """The authenticated principal making a request."""

    user_id: str = Field(..., min_length=1)
    role: Role = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class CarCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    make: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    year: int = Field(..., ge=1900, le=2100)
    category: Category
    price_per_day: Decimal = Field(..., gt=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    location: str = Field(..., min_length=1)
    description: str | None = None
    features: list[str] = Field(default_factory=list)
    available_from: date
    available_to: date


class CarUpdate(BaseModel):
    """Listing edits by the owner; fields left out keep their current value."""

    model_config = ConfigDict(extra="forbid")

    price_per_day: Decimal | None = Field(default=None, gt=0)
    description: str | None = None
    features: list[str] | None = None
    available_from: date | None = None
    available_to: date | None = None


class AvailabilityUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    available_from: date
    available_to: date


class Car(BaseModel):
    car_id: str
    owner_id: str
    make: str
    model: str
    year: int
    category: Category
    price_per_day: Decimal
    currency: str = "INR"
    location: str
    description: str | None = None
    features: list[str] = Field(default_factory=list)
    available_from: date
    available_to: date
    status: CarStatus = "active"
    # bumped on every write that can change whether a booking is acceptable
    version: int = 0
    created_at: UtcDatetime


class CarFilter(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: Category | None = None
    min_price: Decimal | None = Field(default=None, ge=0)
    max_price: Decimal | None = Field(default=None, ge=0)
    location: str | None = None
    available_from: date | None = None
    available_to: date | None = None
    sort_by: Literal["newest", "price_asc", "price_desc"] = "newest"


class AvailabilityWindow(BaseModel):
    car_id: str
    available_from: date
    available_to: date
    price_per_day: Decimal
    currency: str


class BookingCreate(BaseModel):
    # totals are computed server side, so no price field is accepted
    model_config = ConfigDict(extra="forbid")

    car_id: str = Field(..., min_length=1)
    start_date: UtcDatetime
    end_date: UtcDatetime


class BookingStatusUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal["confirmed", "cancelled"]


class Booking(BaseModel):
    booking_id: str
    car_id: str
    user_id: str
    owner_id: str
    start_date: UtcDatetime
    end_date: UtcDatetime
    total_price: Decimal
    currency: str = "INR"
    status: BookingStatus = "pending"
    payment_status: PaymentStatus = "pending"
    created_at: UtcDatetime
    updated_at: UtcDatetime

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_BOOKING_STATUSES


class BookedRange(BaseModel):
    """A booking's range and status: what availability checks and the public endpoint see."""

    booking_id: str
    start_date: datetime
    end_date: datetime
    status: BookingStatus

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_BOOKING_STATUSES


class AvailabilityResult(BaseModel):
    car_id: str
    start_date: datetime
    end_date: datetime
    available: bool
    reason: Literal["ok", "invalid_range", "out_of_window", "conflict"]
    conflicts: list[BookedRange] = Field(default_factory=list)
