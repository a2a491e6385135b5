from __future__ import annotations

import json
from collections.abc import MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Protocol, TypeVar

from aquaflow.errors import ConcurrentModification
from aquaflow.geo import haversine_km
from aquaflow.models import (
    GeoPoint,
    Leak,
    Plumber,
    Priority,
    ServiceRequest,
    ServiceStatus,
    ServiceType,
    Staff,
)

K = TypeVar("K")


class Versioned(Protocol):
    version: int


V = TypeVar("V", bound=Versioned)

TERMINAL_STATUSES = frozenset({ServiceStatus.CLOSED, ServiceStatus.CANCELLED})
OPEN_STATUSES = frozenset({ServiceStatus.PENDING, ServiceStatus.PLUMBER_SEARCH})

PRIORITY_RANK = {
    Priority.EMERGENCY: 3,
    Priority.HIGH: 2,
    Priority.MEDIUM: 1,
    Priority.LOW: 0,
}


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database with optimistic versioning.

    Every successful ``put`` bumps the stored value's ``version``. Passing
    ``expected_version`` turns the write into a compare-and-swap.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}

    def put(self, key: K, value: V, expected_version: int | None = None) -> V:
        current = self._store.get(key)
        if expected_version is not None:
            current_version = current.version if current is not None else 0
            if current_version != expected_version:
                raise ConcurrentModification(
                    f"{key} was modified concurrently",
                    key=str(key),
                    expected_version=expected_version,
                    current_version=current_version,
                )
            value.version = expected_version + 1
        elif current is not None:
            value.version = current.version + 1
        self._store[key] = value
        return value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def all(self) -> list[V]:
        return list(self._store.values())

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


@dataclass
class PlumberMatch:
    """A plumber returned by a proximity query with its straight-line distance."""

    plumber: Plumber
    distance_km: float


class Database:
    """Container for all database instances."""

    def __init__(self) -> None:
        self.leaks: InMemoryKeyValueDatabase[str, Leak] = InMemoryKeyValueDatabase()
        self.plumbers: InMemoryKeyValueDatabase[str, Plumber] = (
            InMemoryKeyValueDatabase()
        )
        self.service_requests: InMemoryKeyValueDatabase[str, ServiceRequest] = (
            InMemoryKeyValueDatabase()
        )
        self.staff: InMemoryKeyValueDatabase[str, Staff] = InMemoryKeyValueDatabase()

    def find_eligible_plumbers(
        self,
        location: GeoPoint,
        radius_m: float,
        service_type: ServiceType,
    ) -> list[PlumberMatch]:
        """Active, verified, available plumbers offering the service, nearest first."""
        radius_km = radius_m / 1000
        matches = []
        for plumber in self.plumbers.all():
            if not (
                plumber.is_active
                and plumber.is_verified
                and plumber.availability.is_available
                and service_type in plumber.services
            ):
                continue
            distance_km = haversine_km(location, plumber.location)
            if distance_km <= radius_km:
                matches.append(PlumberMatch(plumber=plumber, distance_km=distance_km))
        matches.sort(key=lambda m: m.distance_km)
        return matches

    def get_service_request_by_request_id(
        self, request_id: str
    ) -> ServiceRequest | None:
        for service in self.service_requests.all():
            if service.request_id == request_id:
                return service
        return None

    def get_active_request_for_leak(self, leak_id: str) -> ServiceRequest | None:
        for service in self.service_requests.all():
            if service.leak_id == leak_id and service.status not in TERMINAL_STATUSES:
                return service
        return None

    def get_requests_by_plumber(
        self, plumber_id: str, status: ServiceStatus | None = None
    ) -> list[ServiceRequest]:
        return [
            service
            for service in self.service_requests.all()
            if service.assigned_plumber == plumber_id
            and (status is None or service.status == status)
        ]

    def list_service_requests(
        self,
        status: ServiceStatus | None = None,
        priority: Priority | None = None,
        service_type: ServiceType | None = None,
        visible_to: Plumber | None = None,
    ) -> list[ServiceRequest]:
        """
        Filtered service requests, newest first.

        With ``visible_to`` a plumber sees what is assigned to them plus open
        emergencies inside their service radius.
        """
        services = []
        for service in self.service_requests.all():
            if status is not None and service.status != status:
                continue
            if priority is not None and service.priority != priority:
                continue
            if service_type is not None and service.service_type != service_type:
                continue
            if visible_to is not None and not self._visible_to(service, visible_to):
                continue
            services.append(service)
        services.sort(key=lambda s: s.created_at, reverse=True)
        return services

    @staticmethod
    def _visible_to(service: ServiceRequest, plumber: Plumber) -> bool:
        if service.assigned_plumber == plumber.id:
            return True
        return (
            service.priority == Priority.EMERGENCY
            and service.status in OPEN_STATUSES
            and haversine_km(plumber.location, service.location)
            <= plumber.location.service_radius_km
        )

    def get_pending_in_area(
        self, location: GeoPoint, radius_km: float
    ) -> list[ServiceRequest]:
        """Open requests within the radius, most urgent first, then oldest first."""
        services = [
            service
            for service in self.service_requests.all()
            if service.status in OPEN_STATUSES
            and haversine_km(location, service.location) <= radius_km
        ]
        services.sort(key=lambda s: (-PRIORITY_RANK[s.priority], s.created_at))
        return services


_db: Database | None = None


def get_db() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
    return _db


def load_sample_data(db: Database | None = None) -> None:
    """Load sample data from sample_data.json into the database."""
    if db is None:
        db = get_db()

    sample_data_path = Path(__file__).parent.parent / "sample_data.json"
    with open(sample_data_path) as f:
        data = json.load(f)

    for staff_data in data["staff"]:
        staff = Staff(**staff_data)
        db.staff.put(staff.id, staff)

    for plumber_data in data["plumbers"]:
        plumber = Plumber(**plumber_data)
        db.plumbers.put(plumber.id, plumber)

    for leak_data in data["leaks"]:
        leak = Leak(**leak_data)
        db.leaks.put(leak.id, leak)
