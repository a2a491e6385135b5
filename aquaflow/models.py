"""
Domain models for leaks, plumbers and service requests.
"""

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, Field


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LeakStatus(StrEnum):
    REPORTED = "reported"
    CONFIRMED = "confirmed"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class ReportMethod(StrEnum):
    MANUAL = "manual"
    IOT_SENSOR = "iot_sensor"
    SYSTEM_ALERT = "system_alert"


class ServiceType(StrEnum):
    LEAK_REPAIR = "leak_repair"
    PIPE_INSTALLATION = "pipe_installation"
    DRAIN_CLEANING = "drain_cleaning"
    FIXTURE_REPAIR = "fixture_repair"
    WATER_HEATER_SERVICE = "water_heater_service"
    EMERGENCY_SERVICE = "emergency_service"
    INSPECTION = "inspection"
    MAINTENANCE = "maintenance"


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


class Urgency(StrEnum):
    NORMAL = "normal"
    URGENT = "urgent"


class ServiceStatus(StrEnum):
    PENDING = "pending"
    PLUMBER_SEARCH = "plumber_search"
    PLUMBER_ASSIGNED = "plumber_assigned"
    PLUMBER_CONFIRMED = "plumber_confirmed"
    PLUMBER_EN_ROUTE = "plumber_en_route"
    PLUMBER_ARRIVED = "plumber_arrived"
    WORK_IN_PROGRESS = "work_in_progress"
    WORK_COMPLETED = "work_completed"
    VERIFIED = "verified"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class CandidateResponse(StrEnum):
    PENDING = "pending"  # contacted, no answer yet
    ACCEPTED = "accepted"
    DECLINED = "declined"
    NO_RESPONSE = "no_response"


class PaymentMethod(StrEnum):
    CASH = "cash"
    CARD = "card"
    DIGITAL_WALLET = "digital_wallet"
    COMPANY_ACCOUNT = "company_account"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class StaffRole(StrEnum):
    STAFF = "staff"
    MANAGER = "manager"
    ADMIN = "admin"


class ActorType(StrEnum):
    STAFF = "staff"
    PLUMBER = "plumber"


# ---------- Actors ----------


class StaffActor(BaseModel):
    kind: Literal["staff"] = "staff"
    id: str
    role: StaffRole = StaffRole.STAFF


class PlumberActor(BaseModel):
    kind: Literal["plumber"] = "plumber"
    id: str


Actor = Annotated[StaffActor | PlumberActor, Field(discriminator="kind")]


# ---------- Shared ----------


class GeoPoint(BaseModel):
    longitude: float
    latitude: float


class Location(GeoPoint):
    address: str = ""
    building: str | None = None
    floor: str | None = None
    room: str | None = None


class TimelineEntry(BaseModel):
    """One immutable status change in a leak or service request history."""

    model_config = {"frozen": True}

    status: str
    timestamp: datetime
    actor_id: str | None = None
    actor_type: ActorType | None = None
    notes: str = ""
    location: GeoPoint | None = None


# ---------- Leak ----------


class SensorSnapshot(BaseModel):
    sensor_id: str
    water_level: float | None = None
    pressure: float | None = None
    flow: float | None = None
    temperature: float | None = None
    ph: float | None = None
    last_reading: datetime | None = None
    alert_threshold: float | None = None


class WaterShutoff(BaseModel):
    required: bool = False
    completed: bool = False
    location: str | None = None
    completed_at: datetime | None = None


class Leak(BaseModel):
    id: str
    title: str
    description: str
    severity: Severity = Severity.MEDIUM
    status: LeakStatus = LeakStatus.REPORTED
    location: Location
    reported_by: str
    report_method: ReportMethod = ReportMethod.MANUAL
    sensor_data: SensorSnapshot | None = None
    priority: int = Field(default=5, ge=1, le=10)
    is_emergency: bool = False
    water_shutoff: WaterShutoff = WaterShutoff()
    tags: list[str] = []
    assigned_service: str | None = None  # internal id of the active request
    timeline: list[TimelineEntry] = []
    created_at: datetime
    resolved_at: datetime | None = None
    version: int = 0


# ---------- Plumber ----------


class Availability(BaseModel):
    is_available: bool = True
    emergency_available: bool = False


class Pricing(BaseModel):
    hourly_rate: float
    emergency_rate: float | None = None
    minimum_charge: float = 0.0


class Rating(BaseModel):
    average: float = Field(default=0.0, ge=0, le=5)
    count: int = 0


class PlumberLocation(GeoPoint):
    address: str = ""
    service_radius_km: float = 10.0


class Plumber(BaseModel):
    id: str
    name: str
    phone: str
    email: str | None = None
    business_name: str | None = None
    is_verified: bool = False
    is_active: bool = True
    location: PlumberLocation
    services: list[ServiceType] = []
    availability: Availability = Availability()
    pricing: Pricing
    rating: Rating = Rating()
    completed_jobs: int = 0
    avg_response_minutes: float | None = None  # None until first measured
    verified_at: datetime | None = None
    version: int = 0


class Staff(BaseModel):
    id: str
    name: str
    role: StaffRole = StaffRole.STAFF
    phone: str | None = None
    department: str = "Maintenance"


# ---------- Matching ----------


class ScoreBreakdown(BaseModel):
    rating_score: float
    experience_score: float
    availability_score: float
    responsiveness_score: float
    distance_penalty: float


class RankedCandidate(BaseModel):
    plumber_id: str
    name: str
    distance_km: float
    distance_source: Literal["straight_line", "routed"] = "straight_line"
    duration_seconds: float | None = None
    estimated_arrival: datetime | None = None
    match_score: float
    ranking: ScoreBreakdown


class RankingResult(BaseModel):
    candidates: list[RankedCandidate]
    radius_used_km: float
    total_found: int


# ---------- Service request ----------


class PlumberResponse(BaseModel):
    accepted: bool = False
    accepted_at: datetime | None = None
    estimated_arrival: datetime | None = None
    message: str | None = None


class Material(BaseModel):
    item: str
    quantity: float = 1
    cost: float = 0.0


class Charge(BaseModel):
    description: str
    amount: float


class WorkDetails(BaseModel):
    diagnosis: str
    work_performed: str
    materials_used: list[Material] = []
    labor_hours: float = Field(ge=0)
    before_photos: list[str] = []
    after_photos: list[str] = []
    notes: str = ""


class ServicePricing(BaseModel):
    labor_cost: float = 0.0
    materials_cost: float = 0.0
    additional_charges: list[Charge] = []
    total_amount: float = 0.0
    is_emergency_rate: bool = False

    def recalculate(self) -> float:
        self.total_amount = (
            self.labor_cost
            + self.materials_cost
            + sum(c.amount for c in self.additional_charges)
        )
        return self.total_amount


class CommunicationEntry(BaseModel):
    from_id: str
    from_type: ActorType
    message: str
    timestamp: datetime
    is_read: bool = False


class PaymentRecord(BaseModel):
    method: PaymentMethod = PaymentMethod.COMPANY_ACCOUNT
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: str | None = None
    paid_at: datetime | None = None
    refunded_at: datetime | None = None
    refund_reason: str | None = None


class StaffVerification(BaseModel):
    verified: bool = False
    verified_by: str | None = None
    verified_at: datetime | None = None
    notes: str = ""


class QualityCheck(BaseModel):
    passed: bool | None = None
    checked_by: str | None = None
    checked_at: datetime | None = None
    issues: list[str] = []
    notes: str = ""


class Verification(BaseModel):
    staff_verified: StaffVerification = StaffVerification()
    quality_check: QualityCheck = QualityCheck()


class StaffRating(BaseModel):
    score: int = Field(ge=1, le=5)
    feedback: str
    rated_at: datetime


class NearbyPlumber(BaseModel):
    plumber_id: str
    distance_km: float
    match_score: float
    estimated_arrival: datetime | None = None
    contacted: bool = False
    contacted_at: datetime | None = None
    response: CandidateResponse = CandidateResponse.PENDING


class Cancellation(BaseModel):
    cancelled: bool = False
    cancelled_by: str | None = None
    cancelled_by_type: ActorType | None = None
    cancelled_at: datetime | None = None
    reason: str | None = None
    refund_issued: bool = False


class ServiceRequest(BaseModel):
    id: str
    request_id: str
    leak_id: str
    requested_by: str
    assigned_plumber: str | None = None
    status: ServiceStatus = ServiceStatus.PENDING
    service_type: ServiceType = ServiceType.LEAK_REPAIR
    priority: Priority = Priority.MEDIUM
    scheduled_date: datetime | None = None
    location: Location
    plumber_response: PlumberResponse = PlumberResponse()
    work_details: WorkDetails | None = None
    pricing: ServicePricing = ServicePricing()
    timeline: list[TimelineEntry] = []
    communication: list[CommunicationEntry] = []
    payment: PaymentRecord = PaymentRecord()
    verification: Verification = Verification()
    staff_rating: StaffRating | None = None
    nearby_plumbers: list[NearbyPlumber] = []
    cancellation: Cancellation = Cancellation()
    created_at: datetime
    version: int = 0


# ---------- Sensors ----------


class SensorReading(BaseModel):
    water_level: float | None = None
    pressure: float | None = None
    flow: float | None = None
    temperature: float | None = None
    ph: float | None = None


class SensorAnalysis(BaseModel):
    alert_required: bool = False
    severity: Severity = Severity.LOW
    anomalies: list[str] = []
    recommendations: list[str] = []
