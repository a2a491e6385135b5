"""
Service request state machine.

    pending -> plumber_search -> plumber_assigned -> plumber_confirmed ->
    plumber_en_route -> plumber_arrived -> work_in_progress -> work_completed ->
    verified -> closed

A failed quality check loops ``work_completed`` back to ``work_in_progress``.
Any state before ``work_completed`` may be cancelled. Every accepted change
appends a timeline entry and publishes ``ServiceStatusChanged``.

Only one operation may be in flight per request: a second one is rejected
with ``ConcurrentModification`` instead of waiting. Plumber statistics are
updated under a per-plumber lock so concurrent verifications never lose a
rating.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Protocol, assert_never

from aquaflow.config import settings
from aquaflow.database import Database
from aquaflow.errors import (
    AlreadyAssigned,
    ConcurrentModification,
    Forbidden,
    InvalidInput,
    InvalidStateForVerification,
    InvalidStateTransition,
    NotFound,
    PlumberUnavailable,
    TerminalStateCancelReject,
)
from aquaflow.leaks import update_leak_status
from aquaflow.models import (
    Actor,
    ActorType,
    CandidateResponse,
    Cancellation,
    Charge,
    CommunicationEntry,
    GeoPoint,
    LeakStatus,
    Material,
    NearbyPlumber,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    Plumber,
    PlumberActor,
    PlumberResponse,
    Priority,
    QualityCheck,
    RankingResult,
    ServiceRequest,
    ServiceStatus,
    ServiceType,
    StaffActor,
    StaffRating,
    StaffRole,
    StaffVerification,
    WorkDetails,
)
from aquaflow.notifier import (
    SERVICE_REQUEST_DISPATCHED,
    SERVICE_STATUS_CHANGED,
    LoggingNotificationSink,
    NotificationSink,
    publish_safely,
)
from aquaflow.timeline import append_entry

logger = logging.getLogger(__name__)

S = ServiceStatus

ALLOWED_TRANSITIONS: dict[ServiceStatus, frozenset[ServiceStatus]] = {
    S.PENDING: frozenset({S.PLUMBER_SEARCH, S.PLUMBER_ASSIGNED}),
    S.PLUMBER_SEARCH: frozenset({S.PLUMBER_ASSIGNED}),
    S.PLUMBER_ASSIGNED: frozenset({S.PLUMBER_CONFIRMED}),
    S.PLUMBER_CONFIRMED: frozenset({S.PLUMBER_EN_ROUTE}),
    S.PLUMBER_EN_ROUTE: frozenset({S.PLUMBER_ARRIVED}),
    S.PLUMBER_ARRIVED: frozenset({S.WORK_IN_PROGRESS}),
    S.WORK_IN_PROGRESS: frozenset({S.WORK_COMPLETED}),
    S.WORK_COMPLETED: frozenset({S.VERIFIED, S.WORK_IN_PROGRESS}),
    S.VERIFIED: frozenset({S.CLOSED}),
    S.CLOSED: frozenset(),
    S.CANCELLED: frozenset(),
}

PLUMBER_DRIVEN = frozenset(
    {
        S.PLUMBER_CONFIRMED,
        S.PLUMBER_EN_ROUTE,
        S.PLUMBER_ARRIVED,
        S.WORK_IN_PROGRESS,
        S.WORK_COMPLETED,
    }
)
STAFF_DRIVEN = frozenset({S.PLUMBER_SEARCH, S.VERIFIED, S.CLOSED})
NOT_CANCELLABLE = frozenset({S.WORK_COMPLETED, S.VERIFIED, S.CLOSED, S.CANCELLED})
ASSIGNABLE = frozenset({S.PENDING, S.PLUMBER_SEARCH})
TERMINAL = frozenset({S.CLOSED, S.CANCELLED})

# processor-reported payment movements the relay accepts
PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING}),
    PaymentStatus.PROCESSING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED}
    ),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PROCESSING}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}

_BASE36 = string.digits + string.ascii_lowercase


class PaymentProcessor(Protocol):
    async def payment_status(self, request_id: str) -> PaymentStatus | None: ...


def _base36(value: int) -> str:
    digits = []
    while True:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
        if value == 0:
            break
    return "".join(reversed(digits))


def generate_request_id() -> str:
    timestamp = _base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"SR-{timestamp}-{random_part}".upper()


def incremental_mean(average: float, count: int, value: float) -> float:
    return (average * count + value) / (count + 1)


def actor_type_of(actor: Actor) -> ActorType:
    match actor:
        case StaffActor():
            return ActorType.STAFF
        case PlumberActor():
            return ActorType.PLUMBER
        case _:
            assert_never(actor)


def is_payment_eligible(service: ServiceRequest) -> bool:
    """Whether the processor may be asked to charge for this request."""
    return (
        service.status in (S.VERIFIED, S.CLOSED)
        and service.payment.status in (PaymentStatus.PENDING, PaymentStatus.FAILED)
        and service.pricing.total_amount > 0
    )


class ServiceLifecycleManager:
    def __init__(
        self,
        db: Database,
        notifier: NotificationSink | None = None,
        payments: PaymentProcessor | None = None,
        default_arrival_minutes: int | None = None,
    ) -> None:
        self.db = db
        self.notifier = notifier or LoggingNotificationSink()
        self.payments = payments
        self.default_arrival = timedelta(
            minutes=default_arrival_minutes or settings.DEFAULT_ARRIVAL_MINUTES
        )
        self._request_locks: dict[str, asyncio.Lock] = {}
        self._plumber_locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    # ---------- locking ----------

    async def _get_lock(self, registry: dict[str, asyncio.Lock], key: str) -> asyncio.Lock:
        """Get or create the lock guarding one entity."""
        async with self._locks_lock:
            if key not in registry:
                registry[key] = asyncio.Lock()
            return registry[key]

    @asynccontextmanager
    async def _exclusive(self, service_id: str) -> AsyncIterator[None]:
        lock = await self._get_lock(self._request_locks, service_id)
        if lock.locked():
            raise ConcurrentModification(
                f"Service request {service_id} has another operation in flight",
                service_id=service_id,
            )
        async with lock:
            # yield once so a caller started in the same tick sees the lock held
            await asyncio.sleep(0)
            yield

    # ---------- lookup ----------

    def get_request(self, service_id: str) -> ServiceRequest:
        """Resolve by internal id or by the public ``SR-`` request id."""
        service = self.db.service_requests.get(service_id)
        if service is None:
            service = self.db.get_service_request_by_request_id(service_id)
        if service is None:
            raise NotFound(
                f"Service request {service_id} not found", service_id=service_id
            )
        return service

    def _get_plumber(self, plumber_id: str) -> Plumber:
        plumber = self.db.plumbers.get(plumber_id)
        if plumber is None:
            raise NotFound(f"Plumber {plumber_id} not found", plumber_id=plumber_id)
        return plumber

    def _load_for_update(
        self, service_id: str, expected_version: int | None
    ) -> tuple[ServiceRequest, ServiceRequest]:
        stored = self.get_request(service_id)
        if expected_version is not None and stored.version != expected_version:
            raise ConcurrentModification(
                f"Service request {stored.request_id} was modified concurrently",
                service_id=stored.id,
                expected_version=expected_version,
                current_version=stored.version,
            )
        return stored, stored.model_copy(deep=True)

    def _save(self, stored: ServiceRequest, service: ServiceRequest) -> ServiceRequest:
        return self.db.service_requests.put(
            service.id, service, expected_version=stored.version
        )

    # ---------- shared steps ----------

    def _apply_status(
        self,
        service: ServiceRequest,
        status: ServiceStatus,
        actor: Actor,
        notes: str | None = None,
        location: GeoPoint | None = None,
    ) -> None:
        service.status = status
        append_entry(
            service.timeline,
            status,
            actor.id,
            actor_type_of(actor),
            notes or "",
            location,
        )

    async def _publish_status(self, service: ServiceRequest, actor: Actor) -> None:
        match actor:
            case StaffActor():
                recipient = service.assigned_plumber
            case PlumberActor():
                recipient = service.requested_by
            case _:
                assert_never(actor)
        timestamp = service.timeline[-1].timestamp if service.timeline else None
        await publish_safely(
            self.notifier,
            SERVICE_STATUS_CHANGED,
            {
                "request_id": service.request_id,
                "service_id": service.id,
                "status": str(service.status),
                "actor_id": actor.id,
                "actor_type": str(actor_type_of(actor)),
                "recipient_id": recipient,
                "timestamp": (timestamp or datetime.now(UTC)).isoformat(),
            },
        )

    def _update_leak(
        self, leak_id: str, status: LeakStatus, actor: Actor, notes: str
    ) -> None:
        stored = self.db.leaks.get(leak_id)
        if stored is None:
            logger.warning("Leak %s referenced by a service request is missing", leak_id)
            return
        leak = stored.model_copy(deep=True)
        update_leak_status(leak, status, actor.id, actor_type_of(actor), notes)
        self.db.leaks.put(leak.id, leak, expected_version=stored.version)

    async def _update_plumber(
        self, plumber_id: str, mutate: Callable[[Plumber], None]
    ) -> Plumber | None:
        """Read-modify-write one plumber while holding its lock."""
        lock = await self._get_lock(self._plumber_locks, plumber_id)
        async with lock:
            stored = self.db.plumbers.get(plumber_id)
            if stored is None:
                logger.warning("Plumber %s no longer exists; stats not updated", plumber_id)
                return None
            plumber = stored.model_copy(deep=True)
            mutate(plumber)
            return self.db.plumbers.put(
                plumber.id, plumber, expected_version=stored.version
            )

    async def record_rating(self, plumber_id: str, score: float) -> Plumber | None:
        def _apply(plumber: Plumber) -> None:
            plumber.rating.average = incremental_mean(
                plumber.rating.average, plumber.rating.count, score
            )
            plumber.rating.count += 1

        return await self._update_plumber(plumber_id, _apply)

    async def _increment_completed_jobs(self, plumber_id: str) -> Plumber | None:
        def _apply(plumber: Plumber) -> None:
            plumber.completed_jobs += 1

        return await self._update_plumber(plumber_id, _apply)

    def _require_transition(self, service: ServiceRequest, status: ServiceStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[service.status]:
            raise InvalidStateTransition(
                f"Cannot move {service.request_id} from {service.status} to {status}",
                current_status=service.status,
                requested_status=status,
            )

    def _forbid(
        self, service: ServiceRequest, status: ServiceStatus | str, reason: str
    ) -> Forbidden:
        return Forbidden(
            reason,
            current_status=str(service.status),
            requested_status=str(status),
        )

    def _require_staff(
        self, service: ServiceRequest, actor: Actor, status: ServiceStatus | str
    ) -> StaffActor:
        match actor:
            case StaffActor():
                return actor
            case PlumberActor():
                raise self._forbid(service, status, "Only staff may perform this action")
            case _:
                assert_never(actor)

    def _require_assigned_plumber(
        self, service: ServiceRequest, actor: Actor, status: ServiceStatus | str
    ) -> PlumberActor:
        match actor:
            case StaffActor():
                raise self._forbid(
                    service, status, "Only the assigned plumber may perform this action"
                )
            case PlumberActor():
                if service.assigned_plumber != actor.id:
                    raise self._forbid(
                        service, status, "Plumber is not assigned to this service request"
                    )
                return actor
            case _:
                assert_never(actor)

    async def _require_payment_settled(self, service: ServiceRequest) -> None:
        status = service.payment.status
        if self.payments is not None:
            status = await self.payments.payment_status(service.request_id) or status
        if status == PaymentStatus.COMPLETED:
            return
        if service.payment.method == PaymentMethod.COMPANY_ACCOUNT:
            return
        raise InvalidStateTransition(
            f"Payment for {service.request_id} is {status}; it must be completed before closing",
            current_status=service.status,
            requested_status=S.CLOSED,
            payment_status=str(status),
        )

    # ---------- operations ----------

    async def create_request(
        self,
        leak_id: str,
        requester: StaffActor,
        service_type: ServiceType = ServiceType.LEAK_REPAIR,
        priority: Priority = Priority.MEDIUM,
        scheduled_date: datetime | None = None,
        payment_method: PaymentMethod = PaymentMethod.COMPANY_ACCOUNT,
    ) -> ServiceRequest:
        stored_leak = self.db.leaks.get(leak_id)
        if stored_leak is None:
            raise NotFound(f"Leak {leak_id} not found", leak_id=leak_id)

        active = self.db.get_active_request_for_leak(leak_id)
        if active is not None:
            raise AlreadyAssigned(
                f"Leak {leak_id} already has active service request {active.request_id}",
                leak_id=leak_id,
                request_id=active.request_id,
                current_status=str(active.status),
            )

        service = ServiceRequest(
            id=str(uuid.uuid4()),
            request_id=generate_request_id(),
            leak_id=leak_id,
            requested_by=requester.id,
            service_type=service_type,
            priority=priority,
            scheduled_date=scheduled_date,
            location=stored_leak.location.model_copy(),
            payment=PaymentRecord(method=payment_method),
            created_at=datetime.now(UTC),
        )
        self.db.service_requests.put(service.id, service)

        leak = stored_leak.model_copy(deep=True)
        leak.assigned_service = service.id
        update_leak_status(
            leak,
            LeakStatus.ASSIGNED,
            requester.id,
            ActorType.STAFF,
            f"Service request {service.request_id} created",
        )
        self.db.leaks.put(leak.id, leak, expected_version=stored_leak.version)

        logger.info("Created service request %s for leak %s", service.request_id, leak_id)
        await self._publish_status(service, requester)
        return service

    async def start_search(
        self,
        service_id: str,
        actor: Actor,
        ranking: RankingResult,
        expected_version: int | None = None,
    ) -> ServiceRequest:
        """Record the ranked candidates and contact each of them."""
        service_id = self.get_request(service_id).id
        async with self._exclusive(service_id):
            stored, service = self._load_for_update(service_id, expected_version)
            self._require_staff(service, actor, S.PLUMBER_SEARCH)
            if service.status != S.PLUMBER_SEARCH:
                self._require_transition(service, S.PLUMBER_SEARCH)

            now = datetime.now(UTC)
            service.nearby_plumbers = [
                NearbyPlumber(
                    plumber_id=candidate.plumber_id,
                    distance_km=candidate.distance_km,
                    match_score=candidate.match_score,
                    estimated_arrival=candidate.estimated_arrival,
                    contacted=True,
                    contacted_at=now,
                )
                for candidate in ranking.candidates
            ]
            transitioned = service.status != S.PLUMBER_SEARCH
            if transitioned:
                self._apply_status(
                    service,
                    S.PLUMBER_SEARCH,
                    actor,
                    f"Contacted {len(ranking.candidates)} plumbers within "
                    f"{ranking.radius_used_km:g} km",
                )
            service = self._save(stored, service)

            for candidate in ranking.candidates:
                await publish_safely(
                    self.notifier,
                    SERVICE_REQUEST_DISPATCHED,
                    {
                        "request_id": service.request_id,
                        "service_id": service.id,
                        "plumber_id": candidate.plumber_id,
                        "service_type": str(service.service_type),
                        "priority": str(service.priority),
                        "match_score": candidate.match_score,
                    },
                )
            if transitioned:
                await self._publish_status(service, actor)
        return service

    async def transition(
        self,
        service_id: str,
        new_status: ServiceStatus | str,
        actor: Actor,
        notes: str | None = None,
        location: GeoPoint | None = None,
        expected_version: int | None = None,
    ) -> ServiceRequest:
        try:
            status = ServiceStatus(new_status)
        except ValueError as exc:
            raise InvalidInput(
                f"Unknown status {new_status!r}",
                allowed=[s.value for s in ServiceStatus],
            ) from exc

        current = self.get_request(service_id)
        if status == S.CANCELLED:
            return await self.cancel(
                current.id, actor, notes or "", expected_version=expected_version
            )
        if status == S.PLUMBER_ASSIGNED:
            match actor:
                case PlumberActor():
                    return await self.accept_request(
                        current.id, actor.id, expected_version=expected_version
                    )
                case StaffActor():
                    raise InvalidInput(
                        "Staff assignment needs a plumber; use assign_plumber",
                        current_status=str(current.status),
                        requested_status=str(status),
                    )
                case _:
                    assert_never(actor)
        if status == S.VERIFIED or (
            status == S.WORK_IN_PROGRESS and current.status == S.WORK_COMPLETED
        ):
            return await self.verify_work(
                current.id,
                actor,
                passed=status == S.VERIFIED,
                notes=notes,
                expected_version=expected_version,
            )

        async with self._exclusive(current.id):
            stored, service = self._load_for_update(
                current.id,
                expected_version if expected_version is not None else current.version,
            )
            if status in PLUMBER_DRIVEN:
                self._require_assigned_plumber(service, actor, status)
            else:
                self._require_staff(service, actor, status)
            self._require_transition(service, status)
            if status == S.CLOSED:
                await self._require_payment_settled(service)

            self._apply_status(service, status, actor, notes, location)
            if status == S.WORK_COMPLETED:
                service.pricing.recalculate()
            service = self._save(stored, service)

            if status == S.WORK_COMPLETED and service.assigned_plumber:
                await self._increment_completed_jobs(service.assigned_plumber)
            await self._publish_status(service, actor)
        return service

    async def accept_request(
        self,
        service_id: str,
        plumber_id: str,
        estimated_arrival: datetime | None = None,
        message: str | None = None,
        expected_version: int | None = None,
    ) -> ServiceRequest:
        actor = PlumberActor(id=plumber_id)
        return await self._assign(
            service_id,
            plumber_id,
            actor,
            estimated_arrival,
            message,
            "Plumber accepted the service request",
            expected_version,
        )

    async def assign_plumber(
        self,
        service_id: str,
        plumber_id: str,
        actor: Actor,
        estimated_arrival: datetime | None = None,
        expected_version: int | None = None,
    ) -> ServiceRequest:
        self._require_staff(self.get_request(service_id), actor, S.PLUMBER_ASSIGNED)
        return await self._assign(
            service_id,
            plumber_id,
            actor,
            estimated_arrival,
            None,
            "Plumber assigned to service request",
            expected_version,
        )

    async def _assign(
        self,
        service_id: str,
        plumber_id: str,
        actor: Actor,
        estimated_arrival: datetime | None,
        message: str | None,
        notes: str,
        expected_version: int | None,
    ) -> ServiceRequest:
        service_id = self.get_request(service_id).id
        async with self._exclusive(service_id):
            stored, service = self._load_for_update(service_id, expected_version)
            plumber = self._get_plumber(plumber_id)

            if service.assigned_plumber:
                raise AlreadyAssigned(
                    f"Service request {service.request_id} already assigned",
                    current_status=str(service.status),
                    requested_status=str(S.PLUMBER_ASSIGNED),
                    assigned_plumber=service.assigned_plumber,
                )
            if service.status not in ASSIGNABLE:
                self._require_transition(service, S.PLUMBER_ASSIGNED)
            if not plumber.availability.is_available:
                raise PlumberUnavailable(
                    f"Plumber {plumber_id} is not available",
                    plumber_id=plumber_id,
                    current_status=str(service.status),
                    requested_status=str(S.PLUMBER_ASSIGNED),
                )

            now = datetime.now(UTC)
            service.assigned_plumber = plumber.id
            service.plumber_response = PlumberResponse(
                accepted=True,
                accepted_at=now,
                estimated_arrival=estimated_arrival or now + self.default_arrival,
                message=message,
            )
            for candidate in service.nearby_plumbers:
                if candidate.plumber_id == plumber.id:
                    candidate.response = CandidateResponse.ACCEPTED
            if message:
                service.communication.append(
                    CommunicationEntry(
                        from_id=plumber.id,
                        from_type=ActorType.PLUMBER,
                        message=message,
                        timestamp=now,
                    )
                )
            self._apply_status(service, S.PLUMBER_ASSIGNED, actor, notes)
            service = self._save(stored, service)

            self._update_leak(
                service.leak_id,
                LeakStatus.IN_PROGRESS,
                actor,
                "Plumber assigned and accepted",
            )
            await self._publish_status(service, actor)
        return service

    async def decline_request(self, service_id: str, plumber_id: str) -> ServiceRequest:
        service_id = self.get_request(service_id).id
        async with self._exclusive(service_id):
            stored, service = self._load_for_update(service_id, None)
            for candidate in service.nearby_plumbers:
                if candidate.plumber_id == plumber_id:
                    candidate.response = CandidateResponse.DECLINED
                    break
            else:
                raise NotFound(
                    f"Plumber {plumber_id} was not contacted for {service.request_id}",
                    plumber_id=plumber_id,
                )
            service = self._save(stored, service)
        return service

    async def record_work_details(
        self,
        service_id: str,
        actor: Actor,
        diagnosis: str,
        work_performed: str,
        labor_hours: float,
        materials: Iterable[Material] = (),
        charges: Iterable[Charge] = (),
        labor_cost: float | None = None,
        before_photos: Iterable[str] = (),
        after_photos: Iterable[str] = (),
        notes: str = "",
        expected_version: int | None = None,
    ) -> ServiceRequest:
        if not diagnosis or not diagnosis.strip():
            raise InvalidInput("Diagnosis is required", field="diagnosis")
        if not work_performed or not work_performed.strip():
            raise InvalidInput(
                "Work performed description is required", field="work_performed"
            )
        if labor_hours is None or labor_hours < 0:
            raise InvalidInput("Labor hours must be a non-negative number", field="labor_hours")

        service_id = self.get_request(service_id).id
        async with self._exclusive(service_id):
            stored, service = self._load_for_update(service_id, expected_version)
            self._require_assigned_plumber(service, actor, S.WORK_COMPLETED)
            self._require_transition(service, S.WORK_COMPLETED)
            plumber = self._get_plumber(actor.id)

            service.work_details = WorkDetails(
                diagnosis=diagnosis,
                work_performed=work_performed,
                materials_used=list(materials),
                labor_hours=labor_hours,
                before_photos=list(before_photos),
                after_photos=list(after_photos),
                notes=notes,
            )

            emergency = service.priority == Priority.EMERGENCY
            rate = plumber.pricing.hourly_rate
            if emergency and plumber.pricing.emergency_rate:
                rate = plumber.pricing.emergency_rate
            if labor_cost is None:
                labor_cost = max(labor_hours * rate, plumber.pricing.minimum_charge)

            service.pricing.labor_cost = labor_cost
            service.pricing.materials_cost = sum(
                m.cost for m in service.work_details.materials_used
            )
            service.pricing.additional_charges = list(charges)
            service.pricing.is_emergency_rate = emergency
            service.pricing.recalculate()

            self._apply_status(
                service,
                S.WORK_COMPLETED,
                actor,
                "Work details added and marked complete",
            )
            service = self._save(stored, service)

            await self._increment_completed_jobs(plumber.id)
            await self._publish_status(service, actor)
        return service

    async def update_pricing(
        self,
        service_id: str,
        actor: Actor,
        labor_cost: float | None = None,
        materials_cost: float | None = None,
        additional_charges: Iterable[Charge] | None = None,
        expected_version: int | None = None,
    ) -> ServiceRequest:
        """Adjust cost components; the total is always recomputed."""
        service_id = self.get_request(service_id).id
        async with self._exclusive(service_id):
            stored, service = self._load_for_update(service_id, expected_version)
            match actor:
                case StaffActor():
                    pass
                case PlumberActor():
                    self._require_assigned_plumber(service, actor, service.status)
                case _:
                    assert_never(actor)
            if service.status in TERMINAL:
                raise InvalidStateTransition(
                    f"Pricing of {service.request_id} is frozen once {service.status}",
                    current_status=service.status,
                    requested_status=service.status,
                )
            for value in (labor_cost, materials_cost):
                if value is not None and value < 0:
                    raise InvalidInput("Costs cannot be negative")

            if labor_cost is not None:
                service.pricing.labor_cost = labor_cost
            if materials_cost is not None:
                service.pricing.materials_cost = materials_cost
            if additional_charges is not None:
                service.pricing.additional_charges = list(additional_charges)
            service.pricing.recalculate()
            service = self._save(stored, service)
        return service

    async def verify_work(
        self,
        service_id: str,
        actor: Actor,
        passed: bool,
        notes: str | None = None,
        issues: Iterable[str] = (),
        rating: int | None = None,
        feedback: str | None = None,
        expected_version: int | None = None,
    ) -> ServiceRequest:
        requested = S.VERIFIED if passed else S.WORK_IN_PROGRESS
        if rating is not None and not (
            isinstance(rating, int) and not isinstance(rating, bool) and 1 <= rating <= 5
        ):
            raise InvalidInput("Rating must be an integer from 1 to 5", field="rating")

        service_id = self.get_request(service_id).id
        async with self._exclusive(service_id):
            stored, service = self._load_for_update(service_id, expected_version)
            staff = self._require_staff(service, actor, requested)
            if service.status != S.WORK_COMPLETED:
                raise InvalidStateForVerification(
                    "Work must be completed before verification",
                    current_status=service.status,
                    requested_status=requested,
                )

            now = datetime.now(UTC)
            service.verification.staff_verified = StaffVerification(
                verified=True,
                verified_by=staff.id,
                verified_at=now,
                notes=notes or "",
            )
            service.verification.quality_check = QualityCheck(
                passed=passed,
                checked_by=staff.id,
                checked_at=now,
                issues=list(issues),
                notes=notes or "",
            )
            rate_plumber = passed and rating is not None and bool(feedback)
            if rate_plumber:
                service.staff_rating = StaffRating(
                    score=rating, feedback=feedback, rated_at=now
                )
            self._apply_status(
                service,
                requested,
                actor,
                notes or ("Work verified successfully" if passed else "Work needs revision"),
            )
            service = self._save(stored, service)

            if passed:
                self._update_leak(
                    service.leak_id,
                    LeakStatus.RESOLVED,
                    actor,
                    "Work verified and leak resolved",
                )
                if rate_plumber and service.assigned_plumber:
                    await self.record_rating(service.assigned_plumber, rating)
            await self._publish_status(service, actor)
        return service

    async def cancel(
        self,
        service_id: str,
        actor: Actor,
        reason: str,
        expected_version: int | None = None,
    ) -> ServiceRequest:
        if not reason or not reason.strip():
            raise InvalidInput("Cancellation reason is required", field="reason")

        service_id = self.get_request(service_id).id
        async with self._exclusive(service_id):
            stored, service = self._load_for_update(service_id, expected_version)
            match actor:
                case StaffActor():
                    permitted = (
                        actor.id == service.requested_by or actor.role == StaffRole.ADMIN
                    )
                case PlumberActor():
                    permitted = (
                        service.assigned_plumber is not None
                        and actor.id == service.assigned_plumber
                    )
                case _:
                    assert_never(actor)
            if not permitted:
                raise self._forbid(
                    service, S.CANCELLED, "Not authorized to cancel this service request"
                )
            if service.status in NOT_CANCELLABLE:
                raise TerminalStateCancelReject(
                    "Cannot cancel completed service requests",
                    current_status=service.status,
                    requested_status=S.CANCELLED,
                )

            service.cancellation = Cancellation(
                cancelled=True,
                cancelled_by=actor.id,
                cancelled_by_type=actor_type_of(actor),
                cancelled_at=datetime.now(UTC),
                reason=reason,
                refund_issued=False,
            )
            self._apply_status(service, S.CANCELLED, actor, reason)
            service = self._save(stored, service)
            await self._publish_status(service, actor)
        return service

    async def add_message(
        self, service_id: str, actor: Actor, message: str
    ) -> CommunicationEntry:
        if not message or not message.strip():
            raise InvalidInput("Message is required", field="message")

        service_id = self.get_request(service_id).id
        async with self._exclusive(service_id):
            stored, service = self._load_for_update(service_id, None)
            if isinstance(actor, PlumberActor):
                self._require_assigned_plumber(service, actor, service.status)
            entry = CommunicationEntry(
                from_id=actor.id,
                from_type=actor_type_of(actor),
                message=message,
                timestamp=datetime.now(UTC),
            )
            service.communication.append(entry)
            self._save(stored, service)
        return entry

    async def record_payment_status(
        self,
        service_id: str,
        status: PaymentStatus,
        transaction_id: str | None = None,
        reason: str | None = None,
    ) -> ServiceRequest:
        """Relay a payment outcome reported by the processor."""
        service_id = self.get_request(service_id).id
        async with self._exclusive(service_id):
            stored, service = self._load_for_update(service_id, None)
            current = service.payment.status
            if status not in PAYMENT_TRANSITIONS[current]:
                raise InvalidStateTransition(
                    f"Payment for {service.request_id} cannot move from {current} to {status}",
                    current_status=current,
                    requested_status=status,
                )

            now = datetime.now(UTC)
            service.payment.status = status
            if transaction_id:
                service.payment.transaction_id = transaction_id
            if status == PaymentStatus.COMPLETED:
                service.payment.paid_at = now
            elif status == PaymentStatus.REFUNDED:
                service.payment.refunded_at = now
                service.payment.refund_reason = reason
                service.cancellation.refund_issued = True
            service = self._save(stored, service)
        logger.info("Payment for %s is now %s", service.request_id, status)
        return service
