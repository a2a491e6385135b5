"""
Plumber matching: proximity search, weighted scoring and route refinement.

The score is additive and out of 100:

    rating          (average / 5) * 40
    experience      min(completed_jobs / 50, 1) * 20
    availability    25, plus 10 for emergency-available plumbers on emergencies
    responsiveness  max(0, 15 - (avg_response_minutes / 60) * 3), or 7.5 if unknown

minus a distance penalty of min(distance_km * 2, 20), floored at 0. A routed
distance from the mapping service replaces the straight-line distance when
one is available.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Protocol, TypeVar

from aquaflow.config import settings
from aquaflow.database import PlumberMatch
from aquaflow.errors import ExternalServiceDegraded, InvalidInput
from aquaflow.geo import parse_point
from aquaflow.mapping import MappingService, RouteEstimate
from aquaflow.models import (
    GeoPoint,
    Plumber,
    Priority,
    RankedCandidate,
    RankingResult,
    ScoreBreakdown,
    ServiceType,
    Urgency,
)

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_KM = 10.0
HIGH_PRIORITY_RADIUS_KM = 15.0
EMERGENCY_RADIUS_KM = 25.0

RATING_WEIGHT = 40.0
EXPERIENCE_WEIGHT = 20.0
EXPERIENCE_JOBS_CAP = 50
AVAILABILITY_SCORE = 25.0
EMERGENCY_BONUS = 10.0
RESPONSIVENESS_WEIGHT = 15.0
UNKNOWN_RESPONSIVENESS = 7.5
DISTANCE_PENALTY_PER_KM = 2.0
MAX_DISTANCE_PENALTY = 20.0

SCORE_PRECISION = 4

E = TypeVar("E", bound=StrEnum)


class GeospatialStore(Protocol):
    def find_eligible_plumbers(
        self, location: GeoPoint, radius_m: float, service_type: ServiceType
    ) -> list[PlumberMatch]: ...


def _coerce(enum_cls: type[E], value: object, field: str) -> E:
    if value is None or value == "":
        raise InvalidInput(f"{field} is required", field=field)
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise InvalidInput(
            f"Invalid {field}: {value!r}",
            field=field,
            allowed=[member.value for member in enum_cls],
        ) from exc


def search_radius_km(priority: Priority, urgency: Urgency = Urgency.NORMAL) -> float:
    if priority == Priority.EMERGENCY or urgency == Urgency.URGENT:
        return EMERGENCY_RADIUS_KM
    if priority == Priority.HIGH:
        return HIGH_PRIORITY_RADIUS_KM
    return DEFAULT_RADIUS_KM


def score_candidate(
    plumber: Plumber, distance_km: float, priority: Priority
) -> tuple[float, ScoreBreakdown]:
    rating_score = (plumber.rating.average / 5) * RATING_WEIGHT
    experience_score = (
        min(plumber.completed_jobs / EXPERIENCE_JOBS_CAP, 1) * EXPERIENCE_WEIGHT
    )

    availability_score = 0.0
    if plumber.availability.is_available:
        availability_score = AVAILABILITY_SCORE
        if priority == Priority.EMERGENCY and plumber.availability.emergency_available:
            availability_score += EMERGENCY_BONUS

    # a zero average is what an unmeasured profile carries
    if plumber.avg_response_minutes:
        responsiveness_score = max(
            0.0,
            RESPONSIVENESS_WEIGHT - (plumber.avg_response_minutes / 60) * 3,
        )
    else:
        responsiveness_score = UNKNOWN_RESPONSIVENESS

    distance_penalty = min(distance_km * DISTANCE_PENALTY_PER_KM, MAX_DISTANCE_PENALTY)

    breakdown = ScoreBreakdown(
        rating_score=round(rating_score, SCORE_PRECISION),
        experience_score=round(experience_score, SCORE_PRECISION),
        availability_score=round(availability_score, SCORE_PRECISION),
        responsiveness_score=round(responsiveness_score, SCORE_PRECISION),
        distance_penalty=round(distance_penalty, SCORE_PRECISION),
    )
    return total_from_breakdown(breakdown), breakdown


def total_from_breakdown(breakdown: ScoreBreakdown) -> float:
    gross = (
        breakdown.rating_score
        + breakdown.experience_score
        + breakdown.availability_score
        + breakdown.responsiveness_score
    )
    return round(max(0.0, gross - breakdown.distance_penalty), SCORE_PRECISION)


class MatchingEngine:
    """Produces a ranked, bounded list of plumbers for a leak location."""

    def __init__(
        self,
        store: GeospatialStore,
        mapping: MappingService | None = None,
        max_candidates: int | None = None,
        mapping_timeout: float | None = None,
    ) -> None:
        self.store = store
        self.mapping = mapping
        self.max_candidates = max_candidates or settings.MAX_CANDIDATES
        self.mapping_timeout = mapping_timeout or settings.MAPPING_TIMEOUT_SECONDS

    async def rank_plumbers(
        self,
        location: object,
        service_type: object,
        priority: object,
        urgency: object = Urgency.NORMAL,
    ) -> RankingResult:
        point = parse_point(location)
        service = _coerce(ServiceType, service_type, "service_type")
        prio = _coerce(Priority, priority, "priority")
        urg = _coerce(Urgency, urgency or Urgency.NORMAL, "urgency")

        radius_km = search_radius_km(prio, urg)
        matches = self.store.find_eligible_plumbers(point, radius_km * 1000, service)
        if not matches:
            logger.info(
                "No %s plumbers within %.0f km of %s", service, radius_km, point
            )
            return RankingResult(candidates=[], radius_used_km=radius_km, total_found=0)

        routes = await self._refine(point, matches)
        now = datetime.now(UTC)

        candidates = []
        for match, route in zip(matches, routes):
            distance_km = route.distance_km if route else match.distance_km
            score, breakdown = score_candidate(match.plumber, distance_km, prio)
            candidates.append(
                RankedCandidate(
                    plumber_id=match.plumber.id,
                    name=match.plumber.name,
                    distance_km=round(distance_km, 3),
                    distance_source="routed" if route else "straight_line",
                    duration_seconds=route.duration_seconds if route else None,
                    estimated_arrival=(
                        now + timedelta(seconds=route.duration_seconds)
                        if route
                        else None
                    ),
                    match_score=score,
                    ranking=breakdown,
                )
            )

        # sorted() is stable, so equal scores keep proximity order
        candidates = sorted(candidates, key=lambda c: c.match_score, reverse=True)
        return RankingResult(
            candidates=candidates[: self.max_candidates],
            radius_used_km=radius_km,
            total_found=len(matches),
        )

    async def _refine(
        self, origin: GeoPoint, matches: list[PlumberMatch]
    ) -> list[RouteEstimate | None]:
        fallback: list[RouteEstimate | None] = [None] * len(matches)
        if self.mapping is None:
            return fallback

        destinations: list[GeoPoint] = [m.plumber.location for m in matches]
        try:
            routes = await asyncio.wait_for(
                self.mapping.distance_duration(origin, destinations),
                timeout=self.mapping_timeout,
            )
        except TimeoutError:
            logger.warning(
                "Mapping service timed out after %.1fs; using straight-line distance",
                self.mapping_timeout,
            )
            return fallback
        except ExternalServiceDegraded as exc:
            logger.warning("Mapping service degraded (%s); using straight-line distance", exc)
            return fallback
        except Exception:
            # ranking never fails because of the mapping collaborator
            logger.exception("Mapping service failed; using straight-line distance")
            return fallback

        if not isinstance(routes, list) or len(routes) != len(matches):
            logger.warning("Mapping service returned a partial result; ignoring it")
            return fallback
        return routes
