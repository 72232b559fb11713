import httpx
import pytest

from seatlock.main import app
from seatlock.services.identity import create_access_token
from seatlock.services.seat_lock import get_lock_manager

GUEST = {"X-Guest-Session": "guest-session-0001"}
SERVICE = {"X-Service-Key": "test-service-key"}


def bearer(user_id):
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
async def client(manager):
    app.dependency_overrides[get_lock_manager] = lambda: manager
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def test_lock_seats(client):
    resp = await client.post("/trips/T1/seats/lock", json={"seat_codes": ["1A", "1B"]}, headers=GUEST)

    assert resp.status_code == 201
    body = resp.json()
    assert body["seats"] == ["1A", "1B"]
    assert body["already_held"] == []
    assert body["ttl_seconds"] == 600
    assert resp.headers["X-Trace-Id"]


async def test_lock_conflict_maps_to_409(client):
    await client.post("/trips/T1/seats/lock", json={"seat_codes": ["1A"]}, headers=bearer(1))

    resp = await client.post("/trips/T1/seats/lock", json={"seat_codes": ["1A", "1B"]}, headers=bearer(2))

    assert resp.status_code == 409
    assert resp.json() == {"detail": "Seats already locked: 1A", "code": "SEATS_LOCKED", "seats": ["1A"]}


async def test_ceiling_maps_to_409(client):
    seats = ["1A", "1B", "1C", "1D", "1E", "1F"]

    resp = await client.post("/trips/T1/seats/lock", json={"seat_codes": seats}, headers=bearer(1))

    assert resp.status_code == 409
    assert resp.json()["code"] == "MAX_SEATS_EXCEEDED"


async def test_identity_is_required(client):
    resp = await client.post("/trips/T1/seats/lock", json={"seat_codes": ["1A"]})

    assert resp.status_code == 401


async def test_invalid_seat_code_is_422(client):
    resp = await client.post("/trips/T1/seats/lock", json={"seat_codes": ["bad seat"]}, headers=GUEST)

    assert resp.status_code == 422
    assert resp.json()["code"] == "VAL_001"


async def test_malformed_body_is_422(client):
    resp = await client.post("/trips/T1/seats/lock", json={"seats": ["1A"]}, headers=GUEST)

    assert resp.status_code == 422
    assert resp.json()["code"] == "VAL_001"


async def test_extend_foreign_seat_is_403(client):
    await client.post("/trips/T1/seats/lock", json={"seat_codes": ["1A"]}, headers=bearer(1))

    resp = await client.post("/trips/T1/seats/extend", json={"seat_codes": ["1A"]}, headers=bearer(2))

    assert resp.status_code == 403
    assert resp.json()["code"] == "LOCK_PERMISSION_DENIED"


async def test_extend_missing_lock_is_409(client):
    resp = await client.post("/trips/T1/seats/extend", json={"seat_codes": ["1A"]}, headers=GUEST)

    assert resp.status_code == 409
    assert resp.json()["code"] == "LOCK_EXPIRED"


async def test_release_and_release_all(client):
    await client.post("/trips/T1/seats/lock", json={"seat_codes": ["1A", "1B", "1C"]}, headers=GUEST)

    resp = await client.post("/trips/T1/seats/release", json={"seat_codes": ["1A"]}, headers=GUEST)
    assert resp.json() == {"trip_id": "T1", "released_seats": ["1A"], "count": 1}

    resp = await client.post("/trips/T1/seats/release-all", headers=GUEST)
    assert resp.status_code == 200
    assert resp.json()["released_seats"] == ["1B", "1C"]

    resp = await client.post("/trips/T1/seats/release-all", headers=GUEST)
    assert resp.json()["count"] == 0


async def test_my_locks_and_trip_locks(client):
    await client.post("/trips/T1/seats/lock", json={"seat_codes": ["1A"]}, headers=GUEST)
    await client.post("/trips/T1/seats/lock", json={"seat_codes": ["2A"]}, headers=bearer(7))

    mine = (await client.get("/trips/T1/seats/my-locks", headers=GUEST)).json()
    assert [lock["seat_code"] for lock in mine["locks"]] == ["1A"]
    assert mine["locks"][0]["remaining_seconds"] == 600

    public = (await client.get("/trips/T1/seats/locks")).json()
    assert public == {"trip_id": "T1", "locked_seats": ["1A", "2A"], "count": 2}


async def test_transfer_guest_locks(client):
    await client.post("/trips/T1/seats/lock", json={"seat_codes": ["B1", "B2"]}, headers=GUEST)

    resp = await client.post(
        "/trips/T1/seats/transfer-guest-locks",
        json={"guest_session_id": GUEST["X-Guest-Session"]},
        headers=bearer(9),
    )

    assert resp.status_code == 200
    assert resp.json() == {"trip_id": "T1", "transferred_seats": ["B1", "B2"], "rejected_seats": []}
    mine = (await client.get("/trips/T1/seats/my-locks", headers=bearer(9))).json()
    assert [lock["seat_code"] for lock in mine["locks"]] == ["B1", "B2"]


async def test_transfer_needs_a_valid_bearer(client):
    resp = await client.post(
        "/trips/T1/seats/transfer-guest-locks",
        json={"guest_session_id": GUEST["X-Guest-Session"]},
        headers=GUEST,
    )

    assert resp.status_code == 401


async def test_service_release(client):
    await client.post("/trips/T1/seats/lock", json={"seat_codes": ["1A"]}, headers=bearer(1))

    denied = await client.post("/trips/T1/seats/service-release", json={"seat_codes": ["1A"]})
    assert denied.status_code == 403

    wrong = await client.post(
        "/trips/T1/seats/service-release", json={"seat_codes": ["1A"]}, headers={"X-Service-Key": "nope"}
    )
    assert wrong.status_code == 403

    resp = await client.post("/trips/T1/seats/service-release", json={"seat_codes": ["1A"]}, headers=SERVICE)
    assert resp.json()["released_seats"] == ["1A"]


async def test_service_endpoints(client):
    assert (await client.get("/health")).json() == {"status": "ok"}
    ready = await client.get("/ready")
    assert ready.status_code == 200
    assert ready.json()["store"] == "InMemoryLockStore"
    metrics = await client.get("/metrics")
    assert "seatlock_operations_total" in metrics.text
