from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from aquaflow.database import Database
from aquaflow.errors import Forbidden, InvalidInput, NotFound
from aquaflow.models import (
    Actor,
    Availability,
    Plumber,
    PlumberActor,
    PlumberLocation,
    Pricing,
    ServiceType,
    StaffActor,
    StaffRole,
)
from aquaflow.notifier import (
    PLUMBER_AVAILABILITY_CHANGED,
    NotificationSink,
    publish_safely,
)


def get_plumber(db: Database, plumber_id: str) -> Plumber:
    plumber = db.plumbers.get(plumber_id)
    if plumber is None:
        raise NotFound(f"Plumber {plumber_id} not found", plumber_id=plumber_id)
    return plumber


async def set_availability(
    db: Database,
    notifier: NotificationSink,
    plumber_id: str,
    is_available: bool | None = None,
    emergency_available: bool | None = None,
) -> Plumber:
    stored = get_plumber(db, plumber_id)
    plumber = stored.model_copy(deep=True)
    if is_available is not None:
        plumber.availability.is_available = is_available
    if emergency_available is not None:
        plumber.availability.emergency_available = emergency_available
    plumber = db.plumbers.put(plumber.id, plumber, expected_version=stored.version)

    await publish_safely(
        notifier,
        PLUMBER_AVAILABILITY_CHANGED,
        {
            "plumber_id": plumber.id,
            "name": plumber.name,
            "is_available": plumber.availability.is_available,
            "emergency_available": plumber.availability.emergency_available,
        },
    )
    return plumber


def verify_plumber(db: Database, plumber_id: str, actor: Actor) -> Plumber:
    if not isinstance(actor, StaffActor) or actor.role != StaffRole.ADMIN:
        raise Forbidden("Only admins can verify plumbers")
    stored = get_plumber(db, plumber_id)
    plumber = stored.model_copy(deep=True)
    plumber.is_verified = True
    plumber.verified_at = datetime.now(UTC)
    return db.plumbers.put(plumber.id, plumber, expected_version=stored.version)


def update_profile(
    db: Database,
    plumber_id: str,
    actor: Actor,
    name: str | None = None,
    phone: str | None = None,
    business_name: str | None = None,
    services: list[ServiceType] | None = None,
    location: PlumberLocation | None = None,
    pricing: dict[str, Any] | None = None,
    availability: dict[str, Any] | None = None,
) -> Plumber:
    """
    Plumbers edit their own profile. Omitted fields are left alone; pricing
    and availability are merged into the stored values.
    """
    if not isinstance(actor, PlumberActor) or actor.id != plumber_id:
        raise Forbidden(
            "Only plumbers can update their own profile", plumber_id=plumber_id
        )

    for field, value in (
        ("name", name),
        ("phone", phone),
        ("business_name", business_name),
    ):
        if value is not None and not value.strip():
            raise InvalidInput(f"{field} cannot be empty", field=field)
    if services is not None and not services:
        raise InvalidInput("services cannot be empty", field="services")

    stored = get_plumber(db, plumber_id)
    plumber = stored.model_copy(deep=True)
    if name is not None:
        plumber.name = name
    if phone is not None:
        plumber.phone = phone
    if business_name is not None:
        plumber.business_name = business_name
    if services is not None:
        plumber.services = list(dict.fromkeys(services))
    if location is not None:
        plumber.location = location
    try:
        if pricing:
            plumber.pricing = Pricing.model_validate(
                {**plumber.pricing.model_dump(), **pricing}
            )
        if availability:
            plumber.availability = Availability.model_validate(
                {**plumber.availability.model_dump(), **availability}
            )
    except ValidationError as exc:
        raise InvalidInput(
            "Invalid profile update", errors=[e["msg"] for e in exc.errors()]
        ) from exc

    return db.plumbers.put(plumber.id, plumber, expected_version=stored.version)
