"""
API integration tests using httpx AsyncClient against the FastAPI app.
"""

import pytest

from tests.conftest import DROPOFF, MID, NEAR, PICKUP

RIDER_HEADERS = {"X-User-Id": "rider-1", "X-User-Role": "rider"}
OTHER_RIDER_HEADERS = {"X-User-Id": "rider-2", "X-User-Role": "rider"}


def driver_headers(driver_id: str) -> dict:
    return {"X-User-Id": driver_id, "X-User-Role": "driver"}


def point(coords, address=""):
    return {"lat": coords[0], "lng": coords[1], "address": address}


RIDE_BODY = {
    "pickup": point(PICKUP, "Union Square"),
    "dropoff": point(DROPOFF, "Fisherman's Wharf"),
}


async def go_online(client, driver_id, coords):
    resp = await client.post(
        "/api/v1/drivers/status",
        json={"online": True, "lat": coords[0], "lng": coords[1]},
        headers=driver_headers(driver_id),
    )
    assert resp.status_code == 200
    return resp


async def request_ride(client, headers=RIDER_HEADERS, **extra):
    resp = await client.post("/api/v1/rides", json={**RIDE_BODY, **extra}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def accepted_ride(client):
    await go_online(client, "driver-1", NEAR)
    ride = await request_ride(client)
    resp = await client.post(
        f"/api/v1/rides/{ride['id']}/accept", headers=driver_headers("driver-1")
    )
    assert resp.status_code == 200
    return resp.json()


# ── Identity ────────────────────────────────────────────────────────


class TestIdentity:
    @pytest.mark.asyncio
    async def test_missing_headers_unauthorized(self, client):
        resp = await client.post("/api/v1/rides", json=RIDE_BODY)
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_role_unauthorized(self, client):
        resp = await client.get(
            "/api/v1/rides", headers={"X-User-Id": "u1", "X-User-Role": "admin"}
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_driver_cannot_request_ride(self, client):
        resp = await client.post(
            "/api/v1/rides", json=RIDE_BODY, headers=driver_headers("driver-1")
        )
        assert resp.status_code == 403
        assert resp.json()["code"] == "forbidden"

    @pytest.mark.asyncio
    async def test_rider_cannot_use_driver_routes(self, client):
        resp = await client.get("/api/v1/drivers/me", headers=RIDER_HEADERS)
        assert resp.status_code == 403


# ── Rides ───────────────────────────────────────────────────────────


class TestRides:
    @pytest.mark.asyncio
    async def test_estimate_lists_every_class(self, client):
        await go_online(client, "driver-1", NEAR)
        resp = await client.post(
            "/api/v1/rides/estimate",
            json={"pickup": point(PICKUP), "dropoff": point(DROPOFF)},
            headers=RIDER_HEADERS,
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["distance_miles"] > 0
        assert data["surge_multiplier"] == 1.0
        options = {o["service_class"]: o for o in data["options"]}
        assert set(options) == {"STANDARD", "XL", "BLACK", "GREEN"}
        assert options["STANDARD"]["available_drivers"] == 1
        assert options["STANDARD"]["eta_minutes"] >= 1
        assert options["BLACK"]["available_drivers"] == 0
        assert options["BLACK"]["eta_minutes"] is None
        assert options["BLACK"]["fare"]["total_fare"] > options["STANDARD"]["fare"]["total_fare"]

    @pytest.mark.asyncio
    async def test_request_without_drivers_returns_no_drivers(self, client):
        ride = await request_ride(client)
        assert ride["status"] == "NO_DRIVERS"
        assert ride["rider_id"] == "rider-1"
        assert ride["pickup"]["address"] == "Union Square"
        assert ride["fare"]["total_fare"] > 0

    @pytest.mark.asyncio
    async def test_request_dispatches_to_nearby_driver(self, client):
        await go_online(client, "driver-1", NEAR)
        ride = await request_ride(client)
        assert ride["status"] == "REQUESTED"
        assert ride["driver_id"] is None

    @pytest.mark.asyncio
    async def test_idempotency_key_returns_same_ride(self, client):
        await go_online(client, "driver-1", NEAR)
        first = await request_ride(client, idempotency_key="key-abc")
        second = await request_ride(client, idempotency_key="key-abc")
        assert first["id"] == second["id"]

    @pytest.mark.asyncio
    async def test_second_active_ride_rejected(self, client):
        await go_online(client, "driver-1", NEAR)
        await request_ride(client)
        resp = await client.post("/api/v1/rides", json=RIDE_BODY, headers=RIDER_HEADERS)
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_schedule_in_past_is_validation_error(self, client):
        resp = await client.post(
            "/api/v1/rides",
            json={**RIDE_BODY, "scheduled_for": "2020-01-01T00:00:00Z"},
            headers=RIDER_HEADERS,
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_body_is_unprocessable(self, client):
        resp = await client.post(
            "/api/v1/rides",
            json={"pickup": {"lat": 120, "lng": 0}, "dropoff": point(DROPOFF)},
            headers=RIDER_HEADERS,
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_get_ride_with_driver_and_location(self, client):
        ride = await accepted_ride(client)
        resp = await client.get(f"/api/v1/rides/{ride['id']}", headers=RIDER_HEADERS)
        assert resp.status_code == 200
        data = resp.json()
        assert data["ride"]["status"] == "ACCEPTED"
        assert data["driver"]["id"] == "driver-1"
        assert data["driver_location"]["lat"] == NEAR[0]

    @pytest.mark.asyncio
    async def test_get_ride_of_someone_else_forbidden(self, client):
        ride = await request_ride(client)
        resp = await client.get(f"/api/v1/rides/{ride['id']}", headers=OTHER_RIDER_HEADERS)
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_get_unknown_ride_not_found(self, client):
        resp = await client.get("/api/v1/rides/nope", headers=RIDER_HEADERS)
        assert resp.status_code == 404
        assert resp.json()["code"] == "not_found"

    @pytest.mark.asyncio
    async def test_history(self, client):
        await request_ride(client)
        resp = await client.get("/api/v1/rides", headers=RIDER_HEADERS)
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["rides"][0]["status"] == "NO_DRIVERS"

        resp = await client.get(
            "/api/v1/rides", params={"status": "COMPLETED"}, headers=RIDER_HEADERS
        )
        assert resp.json()["total"] == 0

    @pytest.mark.asyncio
    async def test_cancel_before_accept_is_free(self, client):
        await go_online(client, "driver-1", NEAR)
        ride = await request_ride(client)
        resp = await client.post(
            f"/api/v1/rides/{ride['id']}/cancel",
            json={"reason": "changed plans"},
            headers=RIDER_HEADERS,
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["cancellation_fee"] == 0.0
        assert data["ride"]["status"] == "CANCELLED"
        assert data["ride"]["cancelled_by"] == "RIDER"

    @pytest.mark.asyncio
    async def test_cancel_after_accept_charges_fee(self, client):
        ride = await accepted_ride(client)
        resp = await client.post(f"/api/v1/rides/{ride['id']}/cancel", headers=RIDER_HEADERS)
        assert resp.status_code == 200
        assert resp.json()["cancellation_fee"] == 5.00

        # The driver arriving afterwards loses to the cancellation
        resp = await client.post(
            f"/api/v1/rides/{ride['id']}/arrive", headers=driver_headers("driver-1")
        )
        assert resp.status_code == 409
        body = resp.json()
        assert body["code"] == "conflict"
        assert body["current_status"] == "CANCELLED"


# ── Driver actions ──────────────────────────────────────────────────


class TestTripOverHttp:
    @pytest.mark.asyncio
    async def test_full_trip(self, client):
        ride = await accepted_ride(client)
        ride_id = ride["id"]
        assert ride["driver_id"] == "driver-1"
        headers = driver_headers("driver-1")

        for action, status in (
            ("arrive", "ARRIVED"),
            ("start", "IN_PROGRESS"),
            ("complete", "COMPLETED"),
        ):
            resp = await client.post(f"/api/v1/rides/{ride_id}/{action}", headers=headers)
            assert resp.status_code == 200, resp.text
            assert resp.json()["status"] == status

        resp = await client.post(
            f"/api/v1/rides/{ride_id}/tip", json={"amount": 4.0}, headers=RIDER_HEADERS
        )
        assert resp.status_code == 200
        assert resp.json()["fare"]["tip"] == 4.0

        resp = await client.post(
            f"/api/v1/rides/{ride_id}/rate",
            json={"score": 5, "comment": "Great"},
            headers=RIDER_HEADERS,
        )
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

        resp = await client.get("/api/v1/drivers/me/earnings", headers=headers)
        assert resp.status_code == 200
        earnings = resp.json()
        assert earnings["rides"] == 1
        assert earnings["tips"] == 4.0
        assert earnings["earnings"][0]["ride_id"] == ride_id

    @pytest.mark.asyncio
    async def test_second_accept_conflicts(self, client):
        await go_online(client, "driver-1", NEAR)
        await go_online(client, "driver-2", MID)
        ride = await request_ride(client)

        first = await client.post(
            f"/api/v1/rides/{ride['id']}/accept", headers=driver_headers("driver-1")
        )
        second = await client.post(
            f"/api/v1/rides/{ride['id']}/accept", headers=driver_headers("driver-2")
        )
        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json()["detail"] == "Ride no longer available"
        assert second.json()["current_status"] == "ACCEPTED"

    @pytest.mark.asyncio
    async def test_skipping_a_step_conflicts(self, client):
        ride = await accepted_ride(client)
        resp = await client.post(
            f"/api/v1/rides/{ride['id']}/complete", headers=driver_headers("driver-1")
        )
        assert resp.status_code == 409
        assert resp.json()["current_status"] == "ACCEPTED"

    @pytest.mark.asyncio
    async def test_decline_acknowledged(self, client):
        await go_online(client, "driver-1", NEAR)
        await go_online(client, "driver-2", MID)
        ride = await request_ride(client)
        resp = await client.post(
            f"/api/v1/rides/{ride['id']}/decline", headers=driver_headers("driver-1")
        )
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_tip_before_completion_rejected(self, client):
        ride = await accepted_ride(client)
        resp = await client.post(
            f"/api/v1/rides/{ride['id']}/tip", json={"amount": 2.0}, headers=RIDER_HEADERS
        )
        assert resp.status_code == 400


# ── Drivers ─────────────────────────────────────────────────────────


class TestDrivers:
    @pytest.mark.asyncio
    async def test_status_online_and_offline(self, client):
        resp = await go_online(client, "driver-1", NEAR)
        assert resp.json() == {"status": "online"}

        resp = await client.post(
            "/api/v1/drivers/status", json={"online": False}, headers=driver_headers("driver-1")
        )
        assert resp.status_code == 200
        assert resp.json() == {"status": "offline"}

    @pytest.mark.asyncio
    async def test_going_online_needs_position(self, client):
        resp = await client.post(
            "/api/v1/drivers/status", json={"online": True}, headers=driver_headers("driver-1")
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unapproved_driver_cannot_go_online(self, client):
        resp = await client.post(
            "/api/v1/drivers/status",
            json={"online": True, "lat": NEAR[0], "lng": NEAR[1]},
            headers=driver_headers("driver-pending"),
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_location_ping(self, client):
        await go_online(client, "driver-1", NEAR)
        resp = await client.post(
            "/api/v1/drivers/location",
            json={"lat": MID[0], "lng": MID[1]},
            headers=driver_headers("driver-1"),
        )
        assert resp.status_code == 200

        resp = await client.get("/api/v1/admin/online-drivers")
        drivers = {d["driver_id"]: d for d in resp.json()}
        assert drivers["driver-1"]["lat"] == MID[0]

    @pytest.mark.asyncio
    async def test_profile(self, client):
        resp = await client.get("/api/v1/drivers/me", headers=driver_headers("driver-1"))
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == "driver-1"
        assert data["status"] == "APPROVED"
        assert "STANDARD" in data["service_types"]

    @pytest.mark.asyncio
    async def test_unknown_driver_profile_not_found(self, client):
        resp = await client.get("/api/v1/drivers/me", headers=driver_headers("ghost"))
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_earnings_period_validated(self, client):
        resp = await client.get(
            "/api/v1/drivers/me/earnings",
            params={"period": "decade"},
            headers=driver_headers("driver-1"),
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_open_requests_polling(self, client):
        await go_online(client, "driver-1", NEAR)
        ride = await request_ride(client)

        resp = await client.get("/api/v1/drivers/requests", headers=driver_headers("driver-1"))
        assert resp.status_code == 200
        requests = resp.json()["requests"]
        assert [r["id"] for r in requests] == [ride["id"]]
        assert requests[0]["service_class"] == "STANDARD"
        assert requests[0]["driver_earnings"] == ride["fare"]["driver_earnings"]

        resp = await client.get("/api/v1/drivers/requests", headers=driver_headers("driver-2"))
        assert resp.json() == {"requests": []}

    @pytest.mark.asyncio
    async def test_open_requests_refused(self, client):
        resp = await client.get(
            "/api/v1/drivers/requests", headers=driver_headers("driver-pending")
        )
        assert resp.status_code == 403
        resp = await client.get("/api/v1/drivers/requests", headers=RIDER_HEADERS)
        assert resp.status_code == 403


# ── Admin ───────────────────────────────────────────────────────────


class TestAdmin:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/v1/admin/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "connected_sessions": 0}

    @pytest.mark.asyncio
    async def test_online_drivers(self, client):
        await go_online(client, "driver-1", NEAR)
        await go_online(client, "driver-2", MID)
        resp = await client.get("/api/v1/admin/online-drivers")
        assert resp.status_code == 200
        assert {d["driver_id"] for d in resp.json()} == {"driver-1", "driver-2"}
