from datetime import UTC, datetime, timedelta

import pytest

from aquaflow.database import Database, load_sample_data
from aquaflow.errors import NotFound
from aquaflow.models import (
    GeoPoint,
    Location,
    PaymentRecord,
    PaymentStatus,
    Priority,
    ServicePricing,
    ServiceRequest,
    ServiceStatus,
)
from aquaflow.stats import completion_rate, plumber_stats, service_stats

NOW = datetime(2025, 7, 2, 12, 0, tzinfo=UTC)
NEAR_PLUMBER_ID = "3f2b8c1e-6a4d-4e8f-9b21-7c5d0a1e2f34"


def make_request(
    n: int,
    status: ServiceStatus = ServiceStatus.PENDING,
    priority: Priority = Priority.MEDIUM,
    created_at: datetime = NOW,
    plumber_id: str | None = None,
    latitude: float = 37.7749,
) -> ServiceRequest:
    return ServiceRequest(
        id=f"svc-{n}",
        request_id=f"SR-TEST-{n:05d}",
        leak_id=f"leak-{n}",
        requested_by="staff",
        assigned_plumber=plumber_id,
        status=status,
        priority=priority,
        location=Location(longitude=-122.4194, latitude=latitude),
        created_at=created_at,
    )


@pytest.fixture
def db() -> Database:
    database = Database()
    load_sample_data(database)
    return database


@pytest.mark.parametrize(
    "completed,total,expected",
    [(0, 0, 0), (1, 2, 50), (1, 3, 33), (2, 3, 67), (1, 8, 13)],
)
def test_completion_rate(completed: int, total: int, expected: int) -> None:
    assert completion_rate(completed, total) == expected


def test_service_stats_counts_recent_emergencies_only(db: Database) -> None:
    requests = [
        make_request(1, priority=Priority.EMERGENCY),
        make_request(
            2, priority=Priority.EMERGENCY, created_at=NOW - timedelta(hours=25)
        ),
        make_request(3, status=ServiceStatus.CLOSED),
        make_request(4, status=ServiceStatus.WORK_COMPLETED),
        make_request(5, status=ServiceStatus.CANCELLED),
    ]
    for request in requests:
        db.service_requests.put(request.id, request)

    stats = service_stats(db, now=NOW)

    assert stats.total_requests == 5
    assert stats.active_requests == 2
    assert stats.completed_requests == 1
    assert stats.emergency_requests == 1
    assert stats.completion_rate == 20


def test_plumber_earnings_count_completed_payments_only(db: Database) -> None:
    paid = make_request(1, status=ServiceStatus.CLOSED, plumber_id=NEAR_PLUMBER_ID)
    paid.pricing = ServicePricing(total_amount=200.0)
    paid.payment = PaymentRecord(status=PaymentStatus.COMPLETED)
    unpaid = make_request(
        2, status=ServiceStatus.VERIFIED, plumber_id=NEAR_PLUMBER_ID
    )
    unpaid.pricing = ServicePricing(total_amount=90.0)
    other = make_request(3, status=ServiceStatus.CLOSED, plumber_id="someone-else")
    for request in (paid, unpaid, other):
        db.service_requests.put(request.id, request)

    stats = plumber_stats(db, NEAR_PLUMBER_ID)

    assert stats.total_services == 2
    assert stats.completed_services == 1
    assert stats.active_services == 0
    assert stats.total_earnings == 200.0


def test_plumber_stats_unknown_plumber(db: Database) -> None:
    with pytest.raises(NotFound):
        plumber_stats(db, "nonexistent")


def test_pending_in_area_orders_by_priority_then_age(db: Database) -> None:
    requests = [
        make_request(1, priority=Priority.LOW, created_at=NOW - timedelta(hours=3)),
        make_request(2, priority=Priority.HIGH, created_at=NOW),
        make_request(3, priority=Priority.HIGH, created_at=NOW - timedelta(hours=1)),
        make_request(4, priority=Priority.EMERGENCY, status=ServiceStatus.CLOSED),
        make_request(5, priority=Priority.EMERGENCY, latitude=38.5),
    ]
    for request in requests:
        db.service_requests.put(request.id, request)

    pending = db.get_pending_in_area(
        GeoPoint(longitude=-122.4194, latitude=37.7821), radius_km=15
    )

    assert [s.id for s in pending] == ["svc-3", "svc-2", "svc-1"]
