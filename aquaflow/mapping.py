"""
Road distance refinement through an external distance-matrix service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from aquaflow.config import settings
from aquaflow.errors import ExternalServiceDegraded
from aquaflow.models import GeoPoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteEstimate:
    distance_km: float
    duration_seconds: float


class MappingService(Protocol):
    async def distance_duration(
        self, origin: GeoPoint, destinations: list[GeoPoint]
    ) -> list[RouteEstimate | None]:
        """One entry per destination, None where no route was found."""
        ...


def _latlng(point: GeoPoint) -> str:
    return f"{point.latitude},{point.longitude}"


def _parse_element(element: dict) -> RouteEstimate | None:
    if element.get("status") != "OK":
        return None
    return RouteEstimate(
        distance_km=element["distance"]["value"] / 1000,
        duration_seconds=float(element["duration"]["value"]),
    )


class GoogleDistanceMatrixClient:
    """Driving distances from the Google Distance Matrix API."""

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url or settings.MAPPING_BASE_URL
        self.timeout = timeout or settings.MAPPING_TIMEOUT_SECONDS
        self._transport = transport

    async def distance_duration(
        self, origin: GeoPoint, destinations: list[GeoPoint]
    ) -> list[RouteEstimate | None]:
        if not destinations:
            return []

        params = {
            "origins": _latlng(origin),
            "destinations": "|".join(_latlng(d) for d in destinations),
            "mode": "driving",
            "units": "metric",
            "key": self.api_key,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(self.base_url, params=params)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceDegraded(f"Distance matrix request failed: {exc}") from exc

        try:
            status = data.get("status")
            if status != "OK":
                raise ExternalServiceDegraded(
                    f"Distance matrix returned status {status}"
                )
            estimates = [_parse_element(e) for e in data["rows"][0]["elements"]]
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise ExternalServiceDegraded(
                f"Malformed distance matrix response: {exc!r}"
            ) from exc

        if len(estimates) != len(destinations):
            logger.warning(
                "Distance matrix returned %d elements for %d destinations",
                len(estimates),
                len(destinations),
            )
            raise ExternalServiceDegraded("Distance matrix response size mismatch")
        return estimates


def build_mapping_service() -> MappingService | None:
    """The configured mapping client, or None when no API key is set."""
    if not settings.GOOGLE_MAPS_API_KEY:
        return None
    return GoogleDistanceMatrixClient(settings.GOOGLE_MAPS_API_KEY)
