import asyncio

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from aquaflow.api import create_app, reset_services
from aquaflow.config import settings
from aquaflow.database import get_db, load_sample_data
from aquaflow.models import LeakStatus, ServiceStatus
from aquaflow.notifier import (
    PLUMBER_AVAILABILITY_CHANGED,
    SERVICE_STATUS_CHANGED,
    InMemoryNotificationSink,
)

LEAK_ID = "6d5c4b3a-2f1e-4d0c-9b8a-7f6e5d4c3b2a"
STAFF_ID = "5b1f0c2e-93d4-4c8a-a7e6-2d9f1b3c4e5a"
ADMIN_ID = "9e8d7c6b-5a4f-4e3d-8c2b-1a0f9e8d7c6b"
NEAR_PLUMBER_ID = "3f2b8c1e-6a4d-4e8f-9b21-7c5d0a1e2f34"
SECOND_PLUMBER_ID = "8a7c6b5d-4e3f-4a21-b0c9-d8e7f6a5b4c3"
UNVERIFIED_PLUMBER_ID = "d4c3b2a1-f6e5-4d8c-9b7a-1f2e3d4c5b6a"

STAFF = {"kind": "staff", "id": STAFF_ID}
ADMIN = {"kind": "staff", "id": ADMIN_ID, "role": "admin"}
PLUMBER = {"kind": "plumber", "id": NEAR_PLUMBER_ID}

notifier = InMemoryNotificationSink()


@pytest_asyncio.fixture
async def client():
    """
    Test fixture that creates an async client for the API.
    """
    app = create_app()
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client


@pytest_asyncio.fixture(autouse=True)
def reset_db():
    """Reset database and rebind services before each test."""
    import aquaflow.database

    aquaflow.database._db = None
    db = get_db()
    db.leaks.clear()
    db.plumbers.clear()
    db.service_requests.clear()
    db.staff.clear()
    load_sample_data()
    notifier.clear()
    reset_services(notifier=notifier)
    yield


async def create_service(client: AsyncClient, **overrides) -> dict:
    body = {"leak_id": LEAK_ID, "requester": {"id": STAFF_ID}, **overrides}
    response = await client.post("/services", json=body)
    assert response.status_code == 201
    return response.json()["service"]


async def set_status(client: AsyncClient, service_id: str, status: str, actor=PLUMBER):
    return await client.put(
        f"/services/{service_id}/status", json={"actor": actor, "status": status}
    )


async def drive_to_work_completed(client: AsyncClient, **overrides) -> str:
    service = await create_service(client, **overrides)
    service_id = service["id"]
    response = await client.post(
        f"/services/{service_id}/accept", json={"plumber_id": NEAR_PLUMBER_ID}
    )
    assert response.status_code == 200
    for status in (
        "plumber_confirmed",
        "plumber_en_route",
        "plumber_arrived",
        "work_in_progress",
    ):
        response = await set_status(client, service_id, status)
        assert response.status_code == 200
    response = await client.post(
        f"/services/{service_id}/work-details",
        json={
            "actor": PLUMBER,
            "diagnosis": "Split supply line",
            "work_performed": "Replaced supply line",
            "labor_hours": 1.5,
            "materials_used": [{"item": "Braided hose", "quantity": 1, "cost": 18}],
        },
    )
    assert response.status_code == 200
    return service_id


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_report_leak(client: AsyncClient) -> None:
    """Test a reported leak gets a computed priority and first timeline entry."""
    response = await client.post(
        "/leaks",
        json={
            "title": "Flooded plant room",
            "description": "Standing water around the pumps",
            "location": {"longitude": -122.41, "latitude": 37.78, "building": "D"},
            "reported_by": STAFF_ID,
            "severity": "high",
            "is_emergency": True,
        },
    )
    assert response.status_code == 201
    leak = response.json()["leak"]
    assert leak["priority"] == 10
    assert leak["timeline"][0]["status"] == "reported"

    response = await client.get(f"/leaks/{leak['id']}")
    assert response.status_code == 200
    assert response.json()["leak"]["title"] == "Flooded plant room"


@pytest.mark.asyncio
async def test_leak_not_found(client: AsyncClient) -> None:
    response = await client.get("/leaks/nonexistent")
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_triage_leak(client: AsyncClient) -> None:
    response = await client.patch(
        f"/leaks/{LEAK_ID}", json={"severity": "critical", "is_emergency": True}
    )
    assert response.status_code == 200
    assert response.json()["leak"]["priority"] == 10


@pytest.mark.asyncio
async def test_rank_plumbers(client: AsyncClient) -> None:
    """Test only eligible plumbers inside the radius come back, best first."""
    response = await client.post(
        "/plumbers/rank",
        json={
            "location": {"longitude": -122.4194, "latitude": 37.7749},
            "service_type": "leak_repair",
            "priority": "medium",
        },
    )
    assert response.status_code == 200
    data = response.json()
    assert data["search_radius"] == 10.0
    assert data["total_found"] == 2
    assert [p["plumber_id"] for p in data["plumbers"]] == [
        NEAR_PLUMBER_ID,
        SECOND_PLUMBER_ID,
    ]
    assert data["plumbers"][0]["ranking"]["distance_penalty"] > 0


@pytest.mark.asyncio
async def test_rank_plumbers_empty_is_not_an_error(client: AsyncClient) -> None:
    response = await client.post(
        "/plumbers/rank",
        json={
            "location": {"longitude": 2.3522, "latitude": 48.8566},
            "service_type": "leak_repair",
            "priority": "emergency",
        },
    )
    assert response.status_code == 200
    assert response.json()["plumbers"] == []
    assert response.json()["search_radius"] == 25.0


@pytest.mark.asyncio
async def test_rank_plumbers_bad_coordinates(client: AsyncClient) -> None:
    response = await client.post(
        "/plumbers/rank",
        json={
            "location": {"longitude": -122.4194, "latitude": 137.7749},
            "service_type": "leak_repair",
            "priority": "medium",
        },
    )
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_input"


@pytest.mark.asyncio
async def test_service_lifecycle_over_http(client: AsyncClient) -> None:
    """Test a request from creation through search, work, verification and close."""
    service = await create_service(client, priority="high")
    service_id = service["id"]
    assert service["status"] == "pending"
    assert service["request_id"].startswith("SR-")

    response = await client.post(
        f"/services/{service_id}/search", json={"actor": STAFF}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["search_radius"] == 15.0
    assert data["service"]["status"] == "plumber_search"
    assert len(data["service"]["nearby_plumbers"]) == 3

    response = await client.post(
        f"/services/{service['request_id']}/accept",
        json={"plumber_id": NEAR_PLUMBER_ID, "message": "Twenty minutes out"},
    )
    assert response.status_code == 200
    assert response.json()["estimated_arrival"] is not None

    for status in (
        "plumber_confirmed",
        "plumber_en_route",
        "plumber_arrived",
        "work_in_progress",
    ):
        response = await set_status(client, service_id, status)
        assert response.status_code == 200
        assert response.json()["service"]["status"] == status

    response = await client.post(
        f"/services/{service_id}/work-details",
        json={
            "actor": PLUMBER,
            "diagnosis": "Corroded valve",
            "work_performed": "Replaced isolation valve",
            "labor_hours": 3,
            "materials_used": [{"item": "Ball valve", "quantity": 1, "cost": 42}],
            "additional_charges": [{"description": "After hours", "amount": 30}],
        },
    )
    assert response.status_code == 200
    pricing = response.json()["service"]["pricing"]
    assert pricing["labor_cost"] == 255
    assert pricing["total_amount"] == 327

    response = await client.post(
        f"/services/{service_id}/verify",
        json={"actor": STAFF, "passed": True, "rating": 4, "feedback": "Good work"},
    )
    assert response.status_code == 200
    assert response.json()["service"]["staff_rating"]["score"] == 4

    response = await set_status(client, service_id, "closed", actor=STAFF)
    assert response.status_code == 200

    response = await client.get(f"/services/{service_id}")
    data = response.json()
    assert data["service"]["status"] == "closed"
    assert len(data["service"]["timeline"]) == 9
    assert data["payment_eligible"] is True

    db = get_db()
    assert db.leaks.get(LEAK_ID).status == LeakStatus.RESOLVED
    assert db.plumbers.get(NEAR_PLUMBER_ID).rating.count == 26
    assert len(notifier.of_type(SERVICE_STATUS_CHANGED)) == 10


@pytest.mark.asyncio
async def test_service_not_found(client: AsyncClient) -> None:
    response = await client.get("/services/SR-NOPE-00000")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_duplicate_request_for_leak_conflicts(client: AsyncClient) -> None:
    await create_service(client)

    response = await client.post(
        "/services", json={"leak_id": LEAK_ID, "requester": {"id": STAFF_ID}}
    )
    assert response.status_code == 409
    assert response.json()["error"] == "already_assigned"


@pytest.mark.asyncio
async def test_invalid_transition_reports_both_states(client: AsyncClient) -> None:
    service = await create_service(client)
    await client.post(
        f"/services/{service['id']}/accept", json={"plumber_id": NEAR_PLUMBER_ID}
    )

    response = await set_status(client, service["id"], "work_completed")
    assert response.status_code == 409
    data = response.json()
    assert data["error"] == "invalid_state_transition"
    assert data["current_status"] == "plumber_assigned"
    assert data["requested_status"] == "work_completed"


@pytest.mark.asyncio
async def test_plumber_cannot_verify(client: AsyncClient) -> None:
    service_id = await drive_to_work_completed(client)

    response = await client.post(
        f"/services/{service_id}/verify", json={"actor": PLUMBER, "passed": True}
    )
    assert response.status_code == 403
    assert get_db().service_requests.get(service_id).status == (
        ServiceStatus.WORK_COMPLETED
    )


@pytest.mark.asyncio
async def test_cancel_after_work_completed_conflicts(client: AsyncClient) -> None:
    service_id = await drive_to_work_completed(client)

    response = await client.post(
        f"/services/{service_id}/cancel",
        json={"actor": STAFF, "reason": "Changed our minds"},
    )
    assert response.status_code == 409
    assert response.json()["error"] == "terminal_state_cancel_reject"
    assert get_db().service_requests.get(service_id).cancellation.cancelled is False


@pytest.mark.asyncio
async def test_card_payment_must_complete_before_close(client: AsyncClient) -> None:
    service_id = await drive_to_work_completed(client, payment_method="card")
    await client.post(
        f"/services/{service_id}/verify", json={"actor": STAFF, "passed": True}
    )

    response = await set_status(client, service_id, "closed", actor=STAFF)
    assert response.status_code == 409

    for payment_status in ("processing", "completed"):
        response = await client.post(
            f"/services/{service_id}/payment",
            json={"status": payment_status, "transaction_id": "txn_42"},
        )
        assert response.status_code == 200
    assert response.json()["payment"]["status"] == "completed"

    response = await set_status(client, service_id, "closed", actor=STAFF)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_concurrent_status_updates(client: AsyncClient) -> None:
    """Test two racing updates from the same snapshot apply exactly once."""
    service = await create_service(client)
    response = await client.post(
        f"/services/{service['id']}/accept", json={"plumber_id": NEAR_PLUMBER_ID}
    )
    version = response.json()["service"]["version"]

    body = {"actor": PLUMBER, "status": "plumber_confirmed", "expected_version": version}
    responses = await asyncio.gather(
        client.put(f"/services/{service['id']}/status", json=body),
        client.put(f"/services/{service['id']}/status", json=body),
    )

    codes = sorted(r.status_code for r in responses)
    assert codes == [200, 409]
    stored = get_db().service_requests.get(service["id"])
    assert [e.status for e in stored.timeline].count("plumber_confirmed") == 1


@pytest.mark.asyncio
async def test_assign_unavailable_plumber(client: AsyncClient) -> None:
    service = await create_service(client)
    await client.put(
        f"/plumbers/{SECOND_PLUMBER_ID}/availability", json={"is_available": False}
    )

    response = await client.post(
        f"/services/{service['id']}/assign",
        json={"actor": STAFF, "plumber_id": SECOND_PLUMBER_ID},
    )
    assert response.status_code == 409
    assert response.json()["error"] == "plumber_unavailable"


@pytest.mark.asyncio
async def test_messages(client: AsyncClient) -> None:
    service = await create_service(client)

    response = await client.post(
        f"/services/{service['id']}/messages",
        json={"actor": STAFF, "message": "Access via loading dock"},
    )
    assert response.status_code == 200
    assert response.json()["communication"]["from_type"] == "staff"

    response = await client.post(
        f"/services/{service['id']}/messages", json={"actor": STAFF, "message": ""}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_update_availability(client: AsyncClient) -> None:
    response = await client.put(
        f"/plumbers/{NEAR_PLUMBER_ID}/availability",
        json={"is_available": False},
    )
    assert response.status_code == 200
    assert response.json()["availability"] == {
        "is_available": False,
        "emergency_available": True,
    }
    (event,) = notifier.of_type(PLUMBER_AVAILABILITY_CHANGED)
    assert event.payload["plumber_id"] == NEAR_PLUMBER_ID


@pytest.mark.asyncio
async def test_list_plumber_services(client: AsyncClient) -> None:
    service = await create_service(client)
    await client.post(
        f"/services/{service['id']}/accept", json={"plumber_id": NEAR_PLUMBER_ID}
    )

    response = await client.get(f"/plumbers/{NEAR_PLUMBER_ID}/services")
    assert response.status_code == 200
    assert response.json()["count"] == 1

    response = await client.get(
        f"/plumbers/{NEAR_PLUMBER_ID}/services", params={"status": "closed"}
    )
    assert response.json()["services"] == []

    response = await client.get("/plumbers/nobody/services")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_verify_plumber_requires_admin(client: AsyncClient) -> None:
    response = await client.put(
        f"/plumbers/{UNVERIFIED_PLUMBER_ID}/verify", json={"actor": STAFF}
    )
    assert response.status_code == 403

    response = await client.put(
        f"/plumbers/{UNVERIFIED_PLUMBER_ID}/verify", json={"actor": ADMIN}
    )
    assert response.status_code == 200
    assert response.json()["plumber"]["is_verified"] is True


@pytest.mark.asyncio
async def test_sensor_data_requires_api_key(client: AsyncClient) -> None:
    body = {
        "sensor_id": "sensor-1",
        "location": {"longitude": -122.4194, "latitude": 37.7749},
        "sensor_data": {"water_level": 97},
    }

    response = await client.post(
        "/iot/sensor-data", json=body, headers={"x-api-key": "wrong"}
    )
    assert response.status_code == 401

    response = await client.post(
        "/iot/sensor-data", json=body, headers={"x-api-key": settings.IOT_API_KEY}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_critical_sensor_reading_dispatches(client: AsyncClient) -> None:
    response = await client.post(
        "/iot/sensor-data",
        json={
            "sensor_id": "sensor-1",
            "location": {"longitude": -122.4194, "latitude": 37.7749},
            "sensor_data": {"water_level": 97, "flow": 160},
            "alert_type": "water_level",
        },
        headers={"x-api-key": settings.IOT_API_KEY, "x-device-id": "device-1"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["alert_triggered"] is True
    assert data["analysis"]["severity"] == "critical"

    service = get_db().service_requests.get(data["service_id"])
    assert service.status == ServiceStatus.PLUMBER_SEARCH
    assert get_db().leaks.get(data["leak_id"]).is_emergency


async def create_leak(client: AsyncClient, title: str = "Dripping ceiling") -> str:
    response = await client.post(
        "/leaks",
        json={
            "title": title,
            "description": "Water coming through the tiles",
            "location": {"longitude": -122.4194, "latitude": 37.7749},
            "reported_by": STAFF_ID,
        },
    )
    assert response.status_code == 201
    return response.json()["leak"]["id"]


@pytest.mark.asyncio
async def test_list_services_filters_and_pages(client: AsyncClient) -> None:
    await create_service(client, priority="low")
    await create_service(
        client, leak_id=await create_leak(client), priority="emergency"
    )

    response = await client.get("/services")
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert data["total_pages"] == 1

    response = await client.get("/services", params={"priority": "emergency"})
    services = response.json()["services"]
    assert [s["priority"] for s in services] == ["emergency"]

    response = await client.get("/services", params={"status": "closed"})
    assert response.json()["total"] == 0

    response = await client.get("/services", params={"limit": 1, "page": 2})
    data = response.json()
    assert len(data["services"]) == 1
    assert data["total_pages"] == 2
    assert data["current_page"] == 2


@pytest.mark.asyncio
async def test_list_services_for_plumber(client: AsyncClient) -> None:
    """A plumber sees their own work plus open emergencies within their radius."""
    low = await create_service(client, priority="low")
    emergency = await create_service(
        client, leak_id=await create_leak(client), priority="emergency"
    )

    response = await client.get("/services", params={"plumber_id": SECOND_PLUMBER_ID})
    assert [s["id"] for s in response.json()["services"]] == [emergency["id"]]

    await client.post(
        f"/services/{low['id']}/accept", json={"plumber_id": SECOND_PLUMBER_ID}
    )
    response = await client.get("/services", params={"plumber_id": SECOND_PLUMBER_ID})
    ids = {s["id"] for s in response.json()["services"]}
    assert ids == {low["id"], emergency["id"]}

    response = await client.get("/services", params={"plumber_id": "nonexistent"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_pending_in_area_most_urgent_first(client: AsyncClient) -> None:
    low = await create_service(client, priority="low")
    emergency = await create_service(
        client, leak_id=await create_leak(client), priority="emergency"
    )

    response = await client.get(
        "/services/pending/area", params={"plumber_id": NEAR_PLUMBER_ID}
    )
    assert response.status_code == 200
    ids = [s["id"] for s in response.json()["services"]]
    assert ids == [emergency["id"], low["id"]]

    response = await client.get(
        "/services/pending/area",
        params={"plumber_id": NEAR_PLUMBER_ID, "radius_km": 0.5},
    )
    assert response.json()["count"] == 0


@pytest.mark.asyncio
async def test_service_stats(client: AsyncClient) -> None:
    service_id = await drive_to_work_completed(client)
    await client.post(
        f"/services/{service_id}/verify", json={"actor": STAFF, "passed": True}
    )
    await create_service(
        client, leak_id=await create_leak(client), priority="emergency"
    )

    response = await client.get("/services/stats")
    assert response.status_code == 200
    assert response.json()["stats"] == {
        "total_requests": 2,
        "active_requests": 1,
        "completed_requests": 1,
        "emergency_requests": 1,
        "completion_rate": 50,
    }


@pytest.mark.asyncio
async def test_plumber_stats(client: AsyncClient) -> None:
    service_id = await drive_to_work_completed(client, payment_method="card")
    await client.post(
        f"/services/{service_id}/verify", json={"actor": STAFF, "passed": True}
    )
    for payment_status in ("processing", "completed"):
        await client.post(
            f"/services/{service_id}/payment", json={"status": payment_status}
        )
    response = await set_status(client, service_id, "closed", actor=STAFF)
    assert response.status_code == 200
    total_amount = response.json()["service"]["pricing"]["total_amount"]

    second = await create_service(client, leak_id=await create_leak(client))
    await client.post(
        f"/services/{second['id']}/accept", json={"plumber_id": NEAR_PLUMBER_ID}
    )

    response = await client.get(f"/plumbers/{NEAR_PLUMBER_ID}/stats")
    assert response.status_code == 200
    stats = response.json()["stats"]
    assert stats["total_services"] == 2
    assert stats["completed_services"] == 1
    assert stats["active_services"] == 1
    assert stats["completion_rate"] == 50
    assert stats["total_earnings"] == total_amount
    assert stats["response_time_minutes"] == 30
    assert stats["rating"]["count"] == 25

    response = await client.get("/plumbers/nonexistent/stats")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_update_plumber_profile(client: AsyncClient) -> None:
    response = await client.put(
        "/plumbers/profile",
        json={
            "actor": PLUMBER,
            "business_name": "Reyes Plumbing Co",
            "pricing": {"hourly_rate": 90},
            "availability": {"emergency_available": False},
        },
    )
    assert response.status_code == 200
    plumber = response.json()["plumber"]
    assert plumber["business_name"] == "Reyes Plumbing Co"
    assert plumber["pricing"]["hourly_rate"] == 90
    assert plumber["pricing"]["emergency_rate"] == 127.5
    assert plumber["availability"] == {
        "is_available": True,
        "emergency_available": False,
    }
    assert get_db().plumbers.get(NEAR_PLUMBER_ID).name == "Jordan Reyes"


@pytest.mark.asyncio
async def test_update_plumber_profile_rejections(client: AsyncClient) -> None:
    response = await client.put(
        "/plumbers/profile", json={"actor": STAFF, "name": "Someone"}
    )
    assert response.status_code == 403

    response = await client.put(
        "/plumbers/profile", json={"actor": PLUMBER, "name": " "}
    )
    assert response.status_code == 400
    assert response.json()["field"] == "name"

    response = await client.put(
        "/plumbers/profile", json={"actor": PLUMBER, "services": []}
    )
    assert response.status_code == 400
    assert get_db().plumbers.get(NEAR_PLUMBER_ID).services != []
