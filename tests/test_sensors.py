import pytest

from aquaflow.database import Database, load_sample_data
from aquaflow.errors import InvalidInput
from aquaflow.lifecycle import ServiceLifecycleManager
from aquaflow.matching import MatchingEngine
from aquaflow.models import (
    Location,
    Priority,
    ReportMethod,
    SensorReading,
    ServiceStatus,
    ServiceType,
    Severity,
)
from aquaflow.notifier import (
    LEAK_ALERT_RAISED,
    SERVICE_REQUEST_DISPATCHED,
    InMemoryNotificationSink,
)
from aquaflow.sensors import alert_threshold, analyze_sensor_data, ingest_reading

ADMIN_ID = "9e8d7c6b-5a4f-4e3d-8c2b-1a0f9e8d7c6b"
SENSOR_LOCATION = Location(
    longitude=-122.4194, latitude=37.7749, building="C", room="Boiler room"
)


@pytest.fixture
def db() -> Database:
    database = Database()
    load_sample_data(database)
    return database


@pytest.fixture
def notifier() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def lifecycle(db: Database, notifier: InMemoryNotificationSink) -> ServiceLifecycleManager:
    return ServiceLifecycleManager(db, notifier=notifier)


def test_normal_reading_raises_no_alert() -> None:
    analysis = analyze_sensor_data(
        SensorReading(water_level=20, pressure=45, flow=30, temperature=18, ph=7.2)
    )

    assert not analysis.alert_required
    assert analysis.severity == Severity.LOW
    assert analysis.anomalies == []


def test_critical_water_level() -> None:
    analysis = analyze_sensor_data(SensorReading(water_level=95))

    assert analysis.alert_required
    assert analysis.severity == Severity.CRITICAL
    assert "Immediate water shutoff required" in analysis.recommendations


def test_later_checks_never_downgrade_critical() -> None:
    analysis = analyze_sensor_data(
        SensorReading(water_level=92, flow=180, pressure=10)
    )

    assert analysis.severity == Severity.CRITICAL
    assert len(analysis.anomalies) == 3


@pytest.mark.parametrize(
    "reading,alert,severity",
    [
        (SensorReading(water_level=75), True, Severity.HIGH),
        (SensorReading(water_level=60), False, Severity.MEDIUM),
        (SensorReading(flow=160), True, Severity.HIGH),
        (SensorReading(flow=120), True, Severity.MEDIUM),
        (SensorReading(flow=2), False, Severity.LOW),
        (SensorReading(pressure=10), True, Severity.MEDIUM),
        (SensorReading(pressure=95), False, Severity.LOW),
        (SensorReading(temperature=2), True, Severity.LOW),
        (SensorReading(temperature=70), False, Severity.LOW),
    ],
)
def test_threshold_table(reading: SensorReading, alert: bool, severity: Severity) -> None:
    analysis = analyze_sensor_data(reading)

    assert analysis.alert_required is alert
    assert analysis.severity == severity
    assert analysis.anomalies


def test_ph_only_reading_rejected() -> None:
    with pytest.raises(InvalidInput):
        analyze_sensor_data(SensorReading(ph=9.5))


def test_ph_out_of_range_flagged() -> None:
    analysis = analyze_sensor_data(SensorReading(pressure=50, ph=9.5))

    assert analysis.anomalies == ["Water pH outside normal range"]
    assert not analysis.alert_required


def test_alert_threshold() -> None:
    assert alert_threshold(Severity.CRITICAL) == 95
    assert alert_threshold(Severity.LOW) == 40


@pytest.mark.asyncio
async def test_quiet_reading_creates_nothing(
    db: Database, lifecycle: ServiceLifecycleManager
) -> None:
    leaks_before = len(db.leaks)

    result = await ingest_reading(
        db,
        lifecycle,
        MatchingEngine(db),
        "sensor-7",
        SENSOR_LOCATION,
        SensorReading(water_level=10, pressure=50),
    )

    assert not result.alert_triggered
    assert result.leak_id is None
    assert len(db.leaks) == leaks_before


@pytest.mark.asyncio
async def test_high_reading_reports_leak_without_dispatch(
    db: Database,
    lifecycle: ServiceLifecycleManager,
    notifier: InMemoryNotificationSink,
) -> None:
    result = await ingest_reading(
        db,
        lifecycle,
        MatchingEngine(db),
        "sensor-7",
        SENSOR_LOCATION,
        SensorReading(flow=170),
        alert_type="flow_spike",
    )

    leak = db.leaks.get(result.leak_id)
    assert leak.report_method == ReportMethod.IOT_SENSOR
    assert leak.severity == Severity.HIGH
    assert leak.reported_by == ADMIN_ID
    assert leak.sensor_data.sensor_id == "sensor-7"
    assert leak.sensor_data.alert_threshold == 80
    assert leak.title == "IoT Sensor Alert - flow_spike"
    assert result.service_id is None
    (event,) = notifier.of_type(LEAK_ALERT_RAISED)
    assert event.payload["leak_id"] == leak.id


@pytest.mark.asyncio
async def test_critical_reading_dispatches_emergency_search(
    db: Database,
    lifecycle: ServiceLifecycleManager,
    notifier: InMemoryNotificationSink,
) -> None:
    result = await ingest_reading(
        db,
        lifecycle,
        MatchingEngine(db),
        "sensor-9",
        SENSOR_LOCATION,
        SensorReading(water_level=97),
    )

    assert result.alert_triggered
    leak = db.leaks.get(result.leak_id)
    assert leak.is_emergency
    assert leak.priority == 10

    service = lifecycle.get_request(result.service_id)
    assert service.status == ServiceStatus.PLUMBER_SEARCH
    assert service.service_type == ServiceType.EMERGENCY_SERVICE
    assert service.priority == Priority.EMERGENCY
    assert len(service.nearby_plumbers) == 3
    assert len(notifier.of_type(SERVICE_REQUEST_DISPATCHED)) == 3


@pytest.mark.asyncio
async def test_forced_alert_without_anomalies(
    db: Database, lifecycle: ServiceLifecycleManager
) -> None:
    result = await ingest_reading(
        db,
        lifecycle,
        MatchingEngine(db),
        "sensor-3",
        SENSOR_LOCATION,
        SensorReading(water_level=10),
        alert_type="manual_test",
        force_alert=True,
    )

    assert result.alert_triggered
    assert db.leaks.get(result.leak_id).severity == Severity.LOW
