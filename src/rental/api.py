from __future__ import annotations

from typing import Annotated

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from rental import service
from rental.auth import get_actor
from rental.errors import RentalError
from rental.models import (
    Actor,
    AvailabilityResult,
    AvailabilityUpdate,
    Booking,
    BookingCreate,
    BookingStatusUpdate,
    Car,
    CarCreate,
    CarFilter,
    CarUpdate,
    UtcDatetime,
)

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace="CarRentalAPI")

app = FastAPI(title="Car Rental Booking API", version="0.1.0")

CurrentActor = Annotated[Actor, Depends(get_actor)]


@app.exception_handler(RentalError)
def rental_error_handler(request: Request, exc: RentalError) -> JSONResponse:
    logger.info(
        "Request rejected",
        extra={"path": request.url.path, "code": exc.code, "reason": exc.message},
    )
    if exc.code == "conflict":
        metrics.add_metric(name="BookingConflict", value=1, unit=MetricUnit.Count)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@tracer.capture_method
@app.post("/cars", response_model=Car, status_code=201)
def create_car(payload: CarCreate, actor: CurrentActor) -> Car:
    return service.create_car(payload, actor)


@tracer.capture_method
@app.get("/cars", response_model=list[Car])
def list_cars(filters: Annotated[CarFilter, Query()]) -> list[Car]:
    return service.list_cars(filters)


@tracer.capture_method
@app.get("/cars/{car_id}", response_model=Car)
def get_car(car_id: str) -> Car:
    return service.get_car(car_id)


@tracer.capture_method
@app.patch("/cars/{car_id}", response_model=Car)
def update_car(car_id: str, payload: CarUpdate, actor: CurrentActor) -> Car:
    return service.update_car(car_id, payload, actor)


@tracer.capture_method
@app.patch("/cars/{car_id}/availability", response_model=Car)
def update_availability(car_id: str, payload: AvailabilityUpdate, actor: CurrentActor) -> Car:
    return service.update_availability_window(car_id, payload.available_from, payload.available_to, actor)


@tracer.capture_method
@app.delete("/cars/{car_id}")
def remove_car(car_id: str, actor: CurrentActor) -> Response:
    service.remove_car(car_id, actor)
    return Response(status_code=204)


@tracer.capture_method
@app.get("/cars/{car_id}/availability", response_model=AvailabilityResult)
def car_availability(car_id: str, start_date: UtcDatetime, end_date: UtcDatetime) -> AvailabilityResult:
    return service.check_availability(car_id, start_date, end_date)


@tracer.capture_method
@app.post("/bookings", response_model=Booking, status_code=201)
def create_booking(payload: BookingCreate, actor: CurrentActor) -> Booking:
    metrics.add_metric(name="CreateBooking", value=1, unit=MetricUnit.Count)
    return service.request_booking(payload, actor)


@tracer.capture_method
@app.get("/bookings/{booking_id}", response_model=Booking)
def get_booking(booking_id: str, actor: CurrentActor) -> Booking:
    return service.get_booking(booking_id, actor)


@tracer.capture_method
@app.patch("/bookings/{booking_id}/status", response_model=Booking)
def update_booking_status(booking_id: str, payload: BookingStatusUpdate, actor: CurrentActor) -> Booking:
    metric = "ConfirmBooking" if payload.status == "confirmed" else "CancelBooking"
    metrics.add_metric(name=metric, value=1, unit=MetricUnit.Count)
    return service.update_status(booking_id, payload.status, actor)


@tracer.capture_method
@app.patch("/bookings/{booking_id}/payment", response_model=Booking)
def update_booking_payment(booking_id: str, actor: CurrentActor) -> Booking:
    metrics.add_metric(name="MarkPaid", value=1, unit=MetricUnit.Count)
    return service.mark_paid(booking_id, actor)


@tracer.capture_method
@app.get("/users/me/bookings", response_model=list[Booking])
def list_my_bookings(actor: CurrentActor) -> list[Booking]:
    return service.list_my_bookings(actor)


@tracer.capture_method
@app.get("/users/me/car-bookings", response_model=list[Booking])
def list_my_car_bookings(actor: CurrentActor) -> list[Booking]:
    return service.list_my_car_bookings(actor)
