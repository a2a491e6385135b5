from __future__ import annotations

from datetime import UTC, datetime, timedelta

from aquaflow.models import ActorType, GeoPoint, TimelineEntry

_TICK = timedelta(microseconds=1)


def append_entry(
    timeline: list[TimelineEntry],
    status: str,
    actor_id: str | None = None,
    actor_type: ActorType | None = None,
    notes: str = "",
    location: GeoPoint | None = None,
    now: datetime | None = None,
) -> TimelineEntry:
    """Append a status change, keeping timestamps strictly increasing."""
    timestamp = now or datetime.now(UTC)
    if timeline and timestamp <= timeline[-1].timestamp:
        timestamp = timeline[-1].timestamp + _TICK
    entry = TimelineEntry(
        status=str(status),
        timestamp=timestamp,
        actor_id=actor_id,
        actor_type=actor_type,
        notes=notes,
        location=location,
    )
    timeline.append(entry)
    return entry
