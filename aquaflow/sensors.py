"""
Sensor readings: anomaly analysis and automatic leak alerts.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from pydantic import BaseModel

from aquaflow.database import Database
from aquaflow.errors import InvalidInput
from aquaflow.leaks import report_leak
from aquaflow.lifecycle import ServiceLifecycleManager
from aquaflow.matching import MatchingEngine
from aquaflow.models import (
    Location,
    Priority,
    ReportMethod,
    SensorAnalysis,
    SensorReading,
    SensorSnapshot,
    ServiceType,
    Severity,
    StaffActor,
    StaffRole,
)
from aquaflow.notifier import LEAK_ALERT_RAISED, publish_safely

logger = logging.getLogger(__name__)

ALERT_THRESHOLDS = {
    Severity.CRITICAL: 95,
    Severity.HIGH: 80,
    Severity.MEDIUM: 60,
    Severity.LOW: 40,
}


class SensorIngestResult(BaseModel):
    sensor_id: str
    analysis: SensorAnalysis
    alert_triggered: bool
    leak_id: str | None = None
    service_id: str | None = None


def alert_threshold(severity: Severity) -> int:
    return ALERT_THRESHOLDS.get(severity, ALERT_THRESHOLDS[Severity.LOW])


def _escalate(current: Severity, to: Severity) -> Severity:
    # critical is never downgraded by a later check
    return current if current == Severity.CRITICAL else to


def analyze_sensor_data(reading: SensorReading) -> SensorAnalysis:
    if all(
        value is None
        for value in (
            reading.water_level,
            reading.pressure,
            reading.flow,
            reading.temperature,
        )
    ):
        raise InvalidInput(
            "Sensor data must include at least one of: water_level, pressure, "
            "flow, temperature"
        )

    analysis = SensorAnalysis()

    if reading.water_level is not None:
        if reading.water_level > 90:
            analysis.alert_required = True
            analysis.severity = Severity.CRITICAL
            analysis.anomalies.append("Critical water level detected")
            analysis.recommendations.append("Immediate water shutoff required")
        elif reading.water_level > 70:
            analysis.alert_required = True
            analysis.severity = Severity.HIGH
            analysis.anomalies.append("High water level detected")
            analysis.recommendations.append(
                "Monitor closely and prepare for potential leak"
            )
        elif reading.water_level > 50:
            analysis.severity = Severity.MEDIUM
            analysis.anomalies.append("Elevated water level")
            analysis.recommendations.append("Check for minor leaks or blockages")

    if reading.flow is not None:
        if reading.flow > 150:
            analysis.alert_required = True
            analysis.severity = _escalate(analysis.severity, Severity.HIGH)
            analysis.anomalies.append("Abnormally high water flow detected")
            analysis.recommendations.append("Check for major pipe leaks or breaks")
        elif reading.flow > 100:
            analysis.alert_required = True
            analysis.severity = _escalate(analysis.severity, Severity.MEDIUM)
            analysis.anomalies.append("High water flow detected")
            analysis.recommendations.append("Investigate potential leak sources")
        elif 0 < reading.flow < 5:
            analysis.anomalies.append("Low water flow detected")
            analysis.recommendations.append("Check for blockages or valve issues")

    if reading.pressure is not None:
        if reading.pressure > 80:
            analysis.anomalies.append("High pressure detected")
            analysis.recommendations.append(
                "Check pressure regulators and relief valves"
            )
        elif reading.pressure < 20:
            analysis.alert_required = True
            analysis.severity = _escalate(analysis.severity, Severity.MEDIUM)
            analysis.anomalies.append("Low pressure detected")
            analysis.recommendations.append("Check for leaks or supply issues")

    if reading.temperature is not None:
        if reading.temperature > 60:
            analysis.anomalies.append("High water temperature detected")
            analysis.recommendations.append("Check water heater and hot water system")
        elif reading.temperature < 5:
            analysis.alert_required = True
            analysis.anomalies.append("Risk of pipe freezing detected")
            analysis.recommendations.append("Implement freeze prevention measures")

    if reading.ph is not None and not 6.5 <= reading.ph <= 8.5:
        analysis.anomalies.append("Water pH outside normal range")
        analysis.recommendations.append("Check water quality and treatment systems")

    return analysis


def _system_actor(db: Database) -> StaffActor | None:
    staff = db.staff.all()
    for member in staff:
        if member.role == StaffRole.ADMIN:
            return StaffActor(id=member.id, role=member.role)
    if staff:
        return StaffActor(id=staff[0].id, role=staff[0].role)
    return None


async def ingest_reading(
    db: Database,
    lifecycle: ServiceLifecycleManager,
    engine: MatchingEngine,
    sensor_id: str,
    location: Location,
    reading: SensorReading,
    alert_type: str = "data_reading",
    force_alert: bool = False,
) -> SensorIngestResult:
    """Analyze a reading and raise a leak (and emergency dispatch) if needed."""
    analysis = analyze_sensor_data(reading)
    alert = analysis.alert_required or force_alert
    result = SensorIngestResult(
        sensor_id=sensor_id, analysis=analysis, alert_triggered=alert
    )
    if not alert:
        return result

    actor = _system_actor(db)
    if actor is None:
        logger.error("No staff user found to report the alert from sensor %s", sensor_id)
        return result

    leak = report_leak(
        db,
        title=f"IoT Sensor Alert - {alert_type}",
        description=(
            f"Automated alert from sensor {sensor_id}. "
            f"Anomalies detected: {', '.join(analysis.anomalies)}"
        ),
        location=location,
        reported_by=actor.id,
        severity=analysis.severity,
        report_method=ReportMethod.IOT_SENSOR,
        is_emergency=analysis.severity == Severity.CRITICAL,
        sensor_data=SensorSnapshot(
            sensor_id=sensor_id,
            **reading.model_dump(),
            last_reading=datetime.now(UTC),
            alert_threshold=alert_threshold(analysis.severity),
        ),
        tags=["iot-alert", "sensor-detected"],
        actor_type=None,
    )
    result.leak_id = leak.id
    logger.info(
        "IoT alert processed for sensor %s: %s severity", sensor_id, analysis.severity
    )
    await publish_safely(
        lifecycle.notifier,
        LEAK_ALERT_RAISED,
        {
            "leak_id": leak.id,
            "sensor_id": sensor_id,
            "alert_type": alert_type,
            "severity": str(analysis.severity),
            "anomalies": analysis.anomalies,
        },
    )

    if analysis.severity == Severity.CRITICAL:
        service = await lifecycle.create_request(
            leak.id,
            actor,
            service_type=ServiceType.EMERGENCY_SERVICE,
            priority=Priority.EMERGENCY,
        )
        ranking = await engine.rank_plumbers(
            location, ServiceType.EMERGENCY_SERVICE, Priority.EMERGENCY
        )
        service = await lifecycle.start_search(service.id, actor, ranking)
        result.service_id = service.id

    return result
