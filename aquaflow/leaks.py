"""
Leak reports: creation, priority and status history.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from aquaflow.database import Database
from aquaflow.errors import NotFound
from aquaflow.models import (
    ActorType,
    Leak,
    LeakStatus,
    Location,
    ReportMethod,
    SensorSnapshot,
    Severity,
    WaterShutoff,
)
from aquaflow.timeline import append_entry

SEVERITY_PRIORITY = {
    Severity.CRITICAL: 10,
    Severity.HIGH: 8,
    Severity.MEDIUM: 5,
    Severity.LOW: 3,
}
MAX_PRIORITY = 10

RESOLVED_STATUSES = frozenset({LeakStatus.RESOLVED, LeakStatus.CLOSED})


def calculate_priority(leak: Leak, now: datetime | None = None) -> int:
    """Recompute ``leak.priority`` from severity, emergency, shutoff and age."""
    priority = SEVERITY_PRIORITY[leak.severity]

    if leak.is_emergency:
        priority = min(MAX_PRIORITY, priority + 2)

    if leak.water_shutoff.required and not leak.water_shutoff.completed:
        priority = min(MAX_PRIORITY, priority + 1)

    age_hours = ((now or datetime.now(UTC)) - leak.created_at).total_seconds() / 3600
    if age_hours > 24:
        priority = min(MAX_PRIORITY, priority + 1)
    if age_hours > 48:
        priority = min(MAX_PRIORITY, priority + 1)

    leak.priority = priority
    return priority


def update_leak_status(
    leak: Leak,
    status: LeakStatus,
    actor_id: str | None,
    actor_type: ActorType | None,
    notes: str = "",
) -> Leak:
    leak.status = status
    entry = append_entry(leak.timeline, status, actor_id, actor_type, notes)
    if status in RESOLVED_STATUSES:
        if leak.resolved_at is None:
            leak.resolved_at = entry.timestamp
    else:
        leak.resolved_at = None
    return leak


def report_leak(
    db: Database,
    title: str,
    description: str,
    location: Location,
    reported_by: str,
    severity: Severity = Severity.MEDIUM,
    report_method: ReportMethod = ReportMethod.MANUAL,
    is_emergency: bool = False,
    water_shutoff_required: bool = False,
    sensor_data: SensorSnapshot | None = None,
    tags: list[str] | None = None,
    actor_type: ActorType | None = ActorType.STAFF,
) -> Leak:
    now = datetime.now(UTC)
    leak = Leak(
        id=str(uuid.uuid4()),
        title=title.strip(),
        description=description,
        severity=severity,
        location=location,
        reported_by=reported_by,
        report_method=report_method,
        sensor_data=sensor_data,
        is_emergency=is_emergency,
        water_shutoff=WaterShutoff(required=water_shutoff_required),
        tags=tags or [],
        created_at=now,
    )
    calculate_priority(leak, now)
    append_entry(
        leak.timeline,
        LeakStatus.REPORTED,
        reported_by,
        actor_type,
        f"Reported via {report_method}",
        now=now,
    )
    db.leaks.put(leak.id, leak)
    return leak


def get_leak(db: Database, leak_id: str) -> Leak:
    leak = db.leaks.get(leak_id)
    if leak is None:
        raise NotFound(f"Leak {leak_id} not found", leak_id=leak_id)
    return leak


def update_triage(
    db: Database,
    leak_id: str,
    severity: Severity | None = None,
    is_emergency: bool | None = None,
    water_shutoff_required: bool | None = None,
    water_shutoff_completed: bool | None = None,
) -> Leak:
    """Change the fields priority depends on, then recompute it."""
    stored = get_leak(db, leak_id)
    leak = stored.model_copy(deep=True)
    if severity is not None:
        leak.severity = severity
    if is_emergency is not None:
        leak.is_emergency = is_emergency
    if water_shutoff_required is not None:
        leak.water_shutoff.required = water_shutoff_required
    if water_shutoff_completed is not None:
        leak.water_shutoff.completed = water_shutoff_completed
        leak.water_shutoff.completed_at = (
            datetime.now(UTC) if water_shutoff_completed else None
        )
    calculate_priority(leak)
    return db.leaks.put(leak.id, leak, expected_version=stored.version)
