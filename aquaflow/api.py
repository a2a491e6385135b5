import logging
import math
from datetime import datetime

from fastapi import APIRouter, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from aquaflow.config import settings
from aquaflow.database import get_db
from aquaflow.errors import (
    AlreadyAssigned,
    AquaFlowError,
    ConcurrentModification,
    Forbidden,
    InvalidInput,
    InvalidStateTransition,
    NotFound,
    PlumberUnavailable,
    Unauthorized,
)
from aquaflow.leaks import get_leak, report_leak, update_triage
from aquaflow.lifecycle import ServiceLifecycleManager, is_payment_eligible
from aquaflow.mapping import MappingService, build_mapping_service
from aquaflow.matching import MatchingEngine
from aquaflow.models import (
    Actor,
    Charge,
    GeoPoint,
    Location,
    Material,
    PaymentMethod,
    PaymentStatus,
    PlumberLocation,
    Priority,
    SensorReading,
    ServiceStatus,
    ServiceType,
    Severity,
    StaffActor,
    Urgency,
)
from aquaflow.notifier import NotificationSink
from aquaflow.plumbers import (
    get_plumber,
    set_availability,
    update_profile,
    verify_plumber,
)
from aquaflow.sensors import ingest_reading
from aquaflow.stats import plumber_stats, service_stats

router = APIRouter()

_lifecycle: ServiceLifecycleManager | None = None
_engine: MatchingEngine | None = None
_notifier: NotificationSink | None = None
_mapping: MappingService | None = None

ERROR_STATUS_CODES: list[tuple[type[AquaFlowError], int]] = [
    (InvalidInput, status.HTTP_400_BAD_REQUEST),
    (Unauthorized, status.HTTP_401_UNAUTHORIZED),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (AlreadyAssigned, status.HTTP_409_CONFLICT),
    (PlumberUnavailable, status.HTTP_409_CONFLICT),
    (InvalidStateTransition, status.HTTP_409_CONFLICT),
    (ConcurrentModification, status.HTTP_409_CONFLICT),
]


def get_lifecycle() -> ServiceLifecycleManager:
    """Get the lifecycle manager; it owns the per-request locks."""
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = ServiceLifecycleManager(get_db(), notifier=_notifier)
    return _lifecycle


def get_engine() -> MatchingEngine:
    global _engine
    if _engine is None:
        _engine = MatchingEngine(get_db(), mapping=_mapping or build_mapping_service())
    return _engine


def reset_services(
    notifier: NotificationSink | None = None, mapping: MappingService | None = None
) -> None:
    """Drop the cached engine and lifecycle so they rebind to the current database."""
    global _lifecycle, _engine, _notifier, _mapping
    _lifecycle = None
    _engine = None
    _notifier = notifier
    _mapping = mapping


# ---------- request bodies ----------


class LeakReport(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    location: Location
    reported_by: str
    severity: Severity = Severity.MEDIUM
    is_emergency: bool = False
    water_shutoff_required: bool = False
    tags: list[str] = []


class LeakTriage(BaseModel):
    severity: Severity | None = None
    is_emergency: bool | None = None
    water_shutoff_required: bool | None = None
    water_shutoff_completed: bool | None = None


class RankRequest(BaseModel):
    location: GeoPoint
    service_type: ServiceType
    priority: Priority
    urgency: Urgency = Urgency.NORMAL


class AvailabilityUpdate(BaseModel):
    is_available: bool | None = None
    emergency_available: bool | None = None


class ActorBody(BaseModel):
    actor: Actor


class PricingUpdate(BaseModel):
    hourly_rate: float | None = None
    emergency_rate: float | None = None
    minimum_charge: float | None = None


class ProfileUpdate(ActorBody):
    name: str | None = None
    phone: str | None = None
    business_name: str | None = None
    services: list[ServiceType] | None = None
    location: PlumberLocation | None = None
    pricing: PricingUpdate | None = None
    availability: AvailabilityUpdate | None = None


class ServiceCreate(BaseModel):
    leak_id: str
    requester: StaffActor
    service_type: ServiceType = ServiceType.LEAK_REPAIR
    priority: Priority = Priority.MEDIUM
    scheduled_date: datetime | None = None
    payment_method: PaymentMethod = PaymentMethod.COMPANY_ACCOUNT


class SearchRequest(ActorBody):
    urgency: Urgency = Urgency.NORMAL


class AcceptRequest(BaseModel):
    plumber_id: str
    estimated_arrival: datetime | None = None
    message: str | None = None


class AssignRequest(ActorBody):
    plumber_id: str
    estimated_arrival: datetime | None = None


class DeclineRequest(BaseModel):
    plumber_id: str


class StatusUpdate(ActorBody):
    status: ServiceStatus
    notes: str | None = None
    location: GeoPoint | None = None
    expected_version: int | None = None


class WorkDetailsSubmission(ActorBody):
    diagnosis: str
    work_performed: str
    labor_hours: float
    materials_used: list[Material] = []
    additional_charges: list[Charge] = []
    labor_cost: float | None = None
    before_photos: list[str] = []
    after_photos: list[str] = []
    notes: str = ""


class VerifyRequest(ActorBody):
    passed: bool
    notes: str | None = None
    issues: list[str] = []
    rating: int | None = None
    feedback: str | None = None


class CancelRequest(ActorBody):
    reason: str


class MessageRequest(ActorBody):
    message: str


class PaymentUpdate(BaseModel):
    status: PaymentStatus
    transaction_id: str | None = None
    reason: str | None = None


class SensorPayload(BaseModel):
    sensor_id: str = Field(min_length=1)
    location: Location
    sensor_data: SensorReading
    alert_type: str = "data_reading"
    force_alert: bool = False


# ---------- routes ----------


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/leaks", status_code=status.HTTP_201_CREATED)
async def create_leak(body: LeakReport) -> dict:
    leak = report_leak(
        get_db(),
        title=body.title,
        description=body.description,
        location=body.location,
        reported_by=body.reported_by,
        severity=body.severity,
        is_emergency=body.is_emergency,
        water_shutoff_required=body.water_shutoff_required,
        tags=body.tags,
    )
    return {"message": "Leak reported", "leak": leak}


@router.get("/leaks/{leak_id}")
async def read_leak(leak_id: str) -> dict:
    return {"leak": get_leak(get_db(), leak_id)}


@router.patch("/leaks/{leak_id}")
async def triage_leak(leak_id: str, body: LeakTriage) -> dict:
    leak = update_triage(get_db(), leak_id, **body.model_dump())
    return {"leak": leak}


@router.post("/plumbers/rank")
async def rank_plumbers(body: RankRequest) -> dict:
    """
    Find and rank plumbers for a service at a location.
    An empty list is a valid answer; the caller decides whether to widen the search.
    """
    result = await get_engine().rank_plumbers(
        body.location, body.service_type, body.priority, body.urgency
    )
    return {
        "message": f"Found {result.total_found} plumbers for {body.service_type}",
        "plumbers": result.candidates,
        "search_radius": result.radius_used_km,
        "total_found": result.total_found,
    }


@router.put("/plumbers/{plumber_id}/availability")
async def update_availability(plumber_id: str, body: AvailabilityUpdate) -> dict:
    plumber = await set_availability(
        get_db(),
        get_lifecycle().notifier,
        plumber_id,
        is_available=body.is_available,
        emergency_available=body.emergency_available,
    )
    return {"message": "Availability updated", "availability": plumber.availability}


@router.get("/plumbers/{plumber_id}/services")
async def list_plumber_services(
    plumber_id: str,
    status_filter: ServiceStatus | None = Query(default=None, alias="status"),
) -> dict:
    db = get_db()
    get_plumber(db, plumber_id)
    services = db.get_requests_by_plumber(plumber_id, status_filter)
    return {"services": services, "count": len(services)}


@router.put("/plumbers/profile")
async def update_plumber_profile(body: ProfileUpdate) -> dict:
    plumber = update_profile(
        get_db(),
        body.actor.id,
        body.actor,
        name=body.name,
        phone=body.phone,
        business_name=body.business_name,
        services=body.services,
        location=body.location,
        pricing=body.pricing.model_dump(exclude_none=True) if body.pricing else None,
        availability=(
            body.availability.model_dump(exclude_none=True)
            if body.availability
            else None
        ),
    )
    return {"message": "Profile updated successfully", "plumber": plumber}


@router.get("/plumbers/{plumber_id}/stats")
async def read_plumber_stats(plumber_id: str) -> dict:
    return {"stats": plumber_stats(get_db(), plumber_id)}


@router.put("/plumbers/{plumber_id}/verify")
async def verify_plumber_profile(plumber_id: str, body: ActorBody) -> dict:
    plumber = verify_plumber(get_db(), plumber_id, body.actor)
    return {"message": "Plumber verified", "plumber": plumber}


@router.post("/services", status_code=status.HTTP_201_CREATED)
async def create_service(body: ServiceCreate) -> dict:
    service = await get_lifecycle().create_request(
        body.leak_id,
        body.requester,
        service_type=body.service_type,
        priority=body.priority,
        scheduled_date=body.scheduled_date,
        payment_method=body.payment_method,
    )
    return {"message": "Service request created", "service": service}


@router.get("/services")
async def list_services(
    status_filter: ServiceStatus | None = Query(default=None, alias="status"),
    priority: Priority | None = None,
    service_type: ServiceType | None = None,
    plumber_id: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> dict:
    """
    Service requests, newest first. Passing ``plumber_id`` limits the list to
    what that plumber may see.
    """
    db = get_db()
    plumber = get_plumber(db, plumber_id) if plumber_id else None
    services = db.list_service_requests(
        status=status_filter,
        priority=priority,
        service_type=service_type,
        visible_to=plumber,
    )
    start = (page - 1) * limit
    return {
        "services": services[start : start + limit],
        "total": len(services),
        "total_pages": math.ceil(len(services) / limit),
        "current_page": page,
    }


@router.get("/services/stats")
async def read_service_stats() -> dict:
    return {"stats": service_stats(get_db())}


@router.get("/services/pending/area")
async def list_pending_in_area(
    plumber_id: str, radius_km: float = Query(default=15.0, gt=0)
) -> dict:
    db = get_db()
    plumber = get_plumber(db, plumber_id)
    services = db.get_pending_in_area(plumber.location, radius_km)
    return {"services": services, "count": len(services)}


@router.get("/services/{service_id}")
async def read_service(service_id: str) -> dict:
    service = get_lifecycle().get_request(service_id)
    return {"service": service, "payment_eligible": is_payment_eligible(service)}


@router.post("/services/{service_id}/search")
async def search_plumbers(service_id: str, body: SearchRequest) -> dict:
    """
    Rank plumbers for the request and contact every candidate.
    """
    lifecycle = get_lifecycle()
    service = lifecycle.get_request(service_id)
    ranking = await get_engine().rank_plumbers(
        service.location, service.service_type, service.priority, body.urgency
    )
    service = await lifecycle.start_search(service.id, body.actor, ranking)
    return {
        "message": f"Contacted {len(ranking.candidates)} plumbers",
        "service": service,
        "search_radius": ranking.radius_used_km,
    }


@router.post("/services/{service_id}/accept")
async def accept_service(service_id: str, body: AcceptRequest) -> dict:
    service = await get_lifecycle().accept_request(
        service_id, body.plumber_id, body.estimated_arrival, body.message
    )
    return {
        "message": "Service request accepted successfully",
        "service": service,
        "estimated_arrival": service.plumber_response.estimated_arrival,
    }


@router.post("/services/{service_id}/assign")
async def assign_service(service_id: str, body: AssignRequest) -> dict:
    service = await get_lifecycle().assign_plumber(
        service_id, body.plumber_id, body.actor, body.estimated_arrival
    )
    return {"message": "Plumber assigned", "service": service}


@router.post("/services/{service_id}/decline")
async def decline_service(service_id: str, body: DeclineRequest) -> dict:
    service = await get_lifecycle().decline_request(service_id, body.plumber_id)
    return {"message": "Response recorded", "service": service}


@router.put("/services/{service_id}/status")
async def update_service_status(service_id: str, body: StatusUpdate) -> dict:
    service = await get_lifecycle().transition(
        service_id,
        body.status,
        body.actor,
        notes=body.notes,
        location=body.location,
        expected_version=body.expected_version,
    )
    return {"message": "Service status updated successfully", "service": service}


@router.post("/services/{service_id}/work-details")
async def submit_work_details(service_id: str, body: WorkDetailsSubmission) -> dict:
    service = await get_lifecycle().record_work_details(
        service_id,
        body.actor,
        diagnosis=body.diagnosis,
        work_performed=body.work_performed,
        labor_hours=body.labor_hours,
        materials=body.materials_used,
        charges=body.additional_charges,
        labor_cost=body.labor_cost,
        before_photos=body.before_photos,
        after_photos=body.after_photos,
        notes=body.notes,
    )
    return {"message": "Work details added successfully", "service": service}


@router.post("/services/{service_id}/verify")
async def verify_service(service_id: str, body: VerifyRequest) -> dict:
    service = await get_lifecycle().verify_work(
        service_id,
        body.actor,
        passed=body.passed,
        notes=body.notes,
        issues=body.issues,
        rating=body.rating,
        feedback=body.feedback,
    )
    message = "Work verified successfully" if body.passed else "Work marked for revision"
    return {"message": message, "service": service}


@router.post("/services/{service_id}/cancel")
async def cancel_service(service_id: str, body: CancelRequest) -> dict:
    service = await get_lifecycle().cancel(service_id, body.actor, body.reason)
    return {"message": "Service request cancelled successfully", "service": service}


@router.post("/services/{service_id}/messages")
async def post_message(service_id: str, body: MessageRequest) -> dict:
    entry = await get_lifecycle().add_message(service_id, body.actor, body.message)
    return {"message": "Message sent successfully", "communication": entry}


@router.post("/services/{service_id}/payment")
async def payment_webhook(service_id: str, body: PaymentUpdate) -> dict:
    """
    Relay of payment-processor outcomes. Charging and refunding happen at the processor.
    """
    service = await get_lifecycle().record_payment_status(
        service_id, body.status, body.transaction_id, body.reason
    )
    return {"received": True, "payment": service.payment}


@router.post("/iot/sensor-data")
async def receive_sensor_data(
    body: SensorPayload,
    x_api_key: str | None = Header(default=None),
    x_device_id: str | None = Header(default=None),
) -> dict:
    if not x_api_key or x_api_key != settings.IOT_API_KEY:
        raise Unauthorized("Invalid API key")
    if not x_device_id:
        raise InvalidInput("Device ID required")

    result = await ingest_reading(
        get_db(),
        get_lifecycle(),
        get_engine(),
        body.sensor_id,
        body.location,
        body.sensor_data,
        alert_type=body.alert_type,
        force_alert=body.force_alert,
    )
    return {"message": "Sensor data received successfully", **result.model_dump()}


async def handle_domain_error(request: Request, exc: AquaFlowError) -> JSONResponse:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_cls, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_cls):
            status_code = code
            break
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title="AquaFlow dispatch")
    app.include_router(router)
    app.add_exception_handler(AquaFlowError, handle_domain_error)
    return app
