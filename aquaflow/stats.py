"""
Dashboard counters over service requests, for staff and for one plumber.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from pydantic import BaseModel

from aquaflow.database import Database
from aquaflow.models import PaymentStatus, Priority, Rating, ServiceStatus
from aquaflow.plumbers import get_plumber

S = ServiceStatus

# everything before the work is handed over for verification
ACTIVE_STATUSES = frozenset(
    {
        S.PENDING,
        S.PLUMBER_SEARCH,
        S.PLUMBER_ASSIGNED,
        S.PLUMBER_CONFIRMED,
        S.PLUMBER_EN_ROUTE,
        S.PLUMBER_ARRIVED,
        S.WORK_IN_PROGRESS,
    }
)
PLUMBER_ACTIVE_STATUSES = ACTIVE_STATUSES - {S.PENDING, S.PLUMBER_SEARCH}
COMPLETED_STATUSES = frozenset({S.VERIFIED, S.CLOSED})

EMERGENCY_WINDOW = timedelta(hours=24)


class ServiceStats(BaseModel):
    total_requests: int
    active_requests: int
    completed_requests: int
    emergency_requests: int
    completion_rate: int


class PlumberStats(BaseModel):
    total_services: int
    completed_services: int
    active_services: int
    completion_rate: int
    rating: Rating
    total_earnings: float
    response_time_minutes: float


def completion_rate(completed: int, total: int) -> int:
    """Whole percent, half rounded up; 0 when there is nothing to complete."""
    if total == 0:
        return 0
    return int(completed * 100 / total + 0.5)


def service_stats(db: Database, now: datetime | None = None) -> ServiceStats:
    now = now or datetime.now(UTC)
    services = db.service_requests.all()
    completed = sum(1 for s in services if s.status in COMPLETED_STATUSES)
    return ServiceStats(
        total_requests=len(services),
        active_requests=sum(1 for s in services if s.status in ACTIVE_STATUSES),
        completed_requests=completed,
        emergency_requests=sum(
            1
            for s in services
            if s.priority == Priority.EMERGENCY
            and s.created_at >= now - EMERGENCY_WINDOW
        ),
        completion_rate=completion_rate(completed, len(services)),
    )


def plumber_stats(db: Database, plumber_id: str) -> PlumberStats:
    """Counters for one plumber. Only closed requests count as completed."""
    plumber = get_plumber(db, plumber_id)
    services = db.get_requests_by_plumber(plumber_id)
    completed = sum(1 for s in services if s.status == S.CLOSED)
    earnings = sum(
        s.pricing.total_amount
        for s in services
        if s.payment.status == PaymentStatus.COMPLETED
    )
    return PlumberStats(
        total_services=len(services),
        completed_services=completed,
        active_services=sum(
            1 for s in services if s.status in PLUMBER_ACTIVE_STATUSES
        ),
        completion_rate=completion_rate(completed, len(services)),
        rating=plumber.rating,
        total_earnings=round(earnings, 2),
        response_time_minutes=plumber.avg_response_minutes or 0.0,
    )
