import os
import sys
from datetime import datetime, timedelta, timezone

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_bookings.db")
os.environ.pop("REDIS_URL", None)

import pytest
import redis
from fastapi.testclient import TestClient
from jose import jwt

from bookings_service.config import ALGORITHM, SECRET_KEY
from bookings_service.database import Base, engine
from bookings_service.errors import RepositoryUnavailable
from bookings_service import main
from bookings_service.main import app, get_booking_service
from bookings_service.repository import InMemoryBookingRepository
from bookings_service.rooms import Room, RoomCatalog
from bookings_service.service import BookingService
from common import cache

client = TestClient(app)


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


def make_token(user_id: str, username: str = None) -> str:
    payload = {
        "sub": username or f"user-{user_id}",
        "role": "regular",
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=30),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def booking_body(room_id="r1", start="2024-06-01T09:00:00", end="2024-06-01T10:00:00", **extra):
    body = {"room_id": room_id, "start_time": start, "end_time": end}
    body.update(extra)
    return body


def create(user_id: str, **kwargs):
    return client.post("/api/v1/bookings", json=booking_body(**kwargs), headers=auth(user_id))


def test_root_reports_running():
    res = client.get("/")
    assert res.status_code == 200
    assert res.json()["status"] == "running"


def test_list_rooms_returns_catalog():
    res = client.get("/api/v1/rooms")
    assert res.status_code == 200
    assert [r["id"] for r in res.json()] == ["r1", "r2", "r3"]

    res = client.get("/api/v1/rooms/r9")
    assert res.status_code == 404


def test_create_booking_owner_is_implicit_participant():
    res = create("u1", notes="standup")
    assert res.status_code == 201
    data = res.json()
    assert data["owner_id"] == "u1"
    assert data["room_id"] == "r1"
    assert data["room_name"] == "Room A"
    assert data["status"] == "active"
    assert data["state"] == "active-empty"
    assert data["participants"] == []
    assert data["participant_count"] == 1
    assert data["notes"] == "standup"


def test_create_booking_from_date_and_clock_times():
    body = {"room_id": "r2", "date": "2024-06-01", "start": "14:00", "end": "15:30"}
    res = client.post("/api/v1/bookings", json=body, headers=auth("u1"))
    assert res.status_code == 201
    data = res.json()
    assert data["start_time"] == "2024-06-01T14:00:00"
    assert data["end_time"] == "2024-06-01T15:30:00"


def test_overlap_conflicts_but_back_to_back_succeeds():
    assert create("u1").status_code == 201

    res = create("u2", start="2024-06-01T09:30:00", end="2024-06-01T10:30:00")
    assert res.status_code == 409
    assert res.json()["code"] == "TimeSlotConflict"
    assert "already booked" in res.json()["detail"].lower()

    res = create("u2", start="2024-06-01T10:00:00", end="2024-06-01T11:00:00")
    assert res.status_code == 201


def test_same_slot_in_other_room_is_allowed():
    assert create("u1", room_id="r1").status_code == 201
    assert create("u2", room_id="r2").status_code == 201


@pytest.mark.parametrize(
    "body, code",
    [
        (booking_body(end="2024-06-01T09:00:00"), "InvalidTimeRange"),
        (booking_body(end="2024-06-01T08:00:00"), "InvalidTimeRange"),
        (booking_body(end="2024-06-01T13:30:00"), "DurationExceeded"),
        (booking_body(room_id="r42"), "UnknownRoom"),
        ({"room_id": "r1"}, "MissingField"),
        ({"start_time": "2024-06-01T09:00:00", "end_time": "2024-06-01T10:00:00"}, "MissingField"),
        ({"room_id": "r1", "date": "2024-06-01", "start": "09:00"}, "MissingField"),
    ],
)
def test_invalid_bookings_are_rejected(body, code):
    res = client.post("/api/v1/bookings", json=body, headers=auth("u1"))
    assert res.status_code == 400
    assert res.json()["code"] == code
    assert client.get("/api/v1/bookings", headers=auth("u1")).json() == []


def test_missing_or_invalid_token_is_unauthenticated():
    res = client.post("/api/v1/bookings", json=booking_body())
    assert res.status_code == 401
    assert res.json()["code"] == "Unauthenticated"

    res = client.get("/api/v1/bookings", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


def test_join_and_leave_flow():
    booking_id = create("u1").json()["id"]

    res = client.post(f"/api/v1/bookings/{booking_id}/join", headers=auth("u2"))
    assert res.status_code == 200
    assert res.json()["participants"] == ["u2"]
    assert res.json()["state"] == "active-joined"

    res = client.post(f"/api/v1/bookings/{booking_id}/join", headers=auth("u2"))
    assert res.status_code == 409
    assert res.json()["code"] == "AlreadyJoined"

    res = client.post(f"/api/v1/bookings/{booking_id}/leave", headers=auth("u2"))
    assert res.status_code == 200
    assert res.json()["participants"] == []

    res = client.post(f"/api/v1/bookings/{booking_id}/leave", headers=auth("u2"))
    assert res.status_code == 403
    assert res.json()["code"] == "NotAParticipant"


def test_owner_cannot_join_or_leave_own_booking():
    booking_id = create("u1").json()["id"]

    res = client.post(f"/api/v1/bookings/{booking_id}/join", headers=auth("u1"))
    assert res.status_code == 403
    assert res.json()["code"] == "OwnerCannotJoinOwnBooking"

    res = client.post(f"/api/v1/bookings/{booking_id}/leave", headers=auth("u1"))
    assert res.status_code == 403
    assert res.json()["code"] == "OwnerCannotLeave"


def test_join_unknown_booking_is_not_found():
    res = client.post("/api/v1/bookings/does-not-exist/join", headers=auth("u2"))
    assert res.status_code == 404
    assert res.json()["code"] == "NotFound"


def test_room_full_with_small_room():
    service = BookingService(
        InMemoryBookingRepository(),
        RoomCatalog([Room(id="r1", name="Phone Booth", capacity=2)]),
    )
    app.dependency_overrides[get_booking_service] = lambda: service

    booking_id = create("u1").json()["id"]

    res = client.post(f"/api/v1/bookings/{booking_id}/join", headers=auth("u2"))
    assert res.status_code == 200
    assert res.json()["participant_count"] == 2
    assert res.json()["state"] == "active-full"

    res = client.post(f"/api/v1/bookings/{booking_id}/join", headers=auth("u3"))
    assert res.status_code == 409
    assert res.json()["code"] == "RoomFull"


def test_cancel_keeps_participants_and_frees_room():
    booking_id = create("u1").json()["id"]
    client.post(f"/api/v1/bookings/{booking_id}/join", headers=auth("u2"))

    res = client.post(f"/api/v1/bookings/{booking_id}/cancel", headers=auth("u2"))
    assert res.status_code == 403
    assert res.json()["code"] == "Forbidden"

    res = client.post(f"/api/v1/bookings/{booking_id}/cancel", headers=auth("u1"))
    assert res.status_code == 200
    assert res.json()["status"] == "cancelled"
    assert res.json()["state"] == "cancelled"
    assert res.json()["participants"] == ["u2"]

    res = client.post(f"/api/v1/bookings/{booking_id}/join", headers=auth("u3"))
    assert res.status_code == 409
    assert res.json()["code"] == "BookingCancelled"

    res = client.post(f"/api/v1/bookings/{booking_id}/leave", headers=auth("u2"))
    assert res.status_code == 409
    assert res.json()["code"] == "BookingCancelled"

    # cancelled bookings no longer block the slot
    assert create("u3").status_code == 201


def test_delete_only_by_owner_even_with_participants():
    booking_id = create("u1").json()["id"]
    client.post(f"/api/v1/bookings/{booking_id}/join", headers=auth("u2"))

    res = client.delete(f"/api/v1/bookings/{booking_id}", headers=auth("u2"))
    assert res.status_code == 403
    assert client.get(f"/api/v1/bookings/{booking_id}", headers=auth("u2")).status_code == 200

    res = client.delete(f"/api/v1/bookings/{booking_id}", headers=auth("u1"))
    assert res.status_code == 204

    res = client.get(f"/api/v1/bookings/{booking_id}", headers=auth("u1"))
    assert res.status_code == 404

    res = client.delete(f"/api/v1/bookings/{booking_id}", headers=auth("u1"))
    assert res.status_code == 404


def test_list_mine_includes_owned_and_joined():
    own_id = create("u1", room_id="r1").json()["id"]
    other_id = create("u2", room_id="r2").json()["id"]
    create("u3", room_id="r3")

    client.post(f"/api/v1/bookings/{other_id}/join", headers=auth("u1"))

    res = client.get("/api/v1/bookings?scope=mine", headers=auth("u1"))
    assert res.status_code == 200
    assert {b["id"] for b in res.json()} == {own_id, other_id}


def test_list_by_room_and_user_scope():
    first = create("u1", room_id="r1").json()["id"]
    second = create("u2", room_id="r1", start="2024-06-01T12:00:00", end="2024-06-01T13:00:00").json()["id"]
    create("u1", room_id="r2")

    res = client.get("/api/v1/bookings?scope=room:r1", headers=auth("u3"))
    assert [b["id"] for b in res.json()] == [first, second]

    res = client.get("/api/v1/bookings?scope=user:u2", headers=auth("u3"))
    assert [b["id"] for b in res.json()] == [second]

    client.post(f"/api/v1/bookings/{first}/cancel", headers=auth("u1"))
    res = client.get("/api/v1/bookings?scope=room:r1&active_only=true", headers=auth("u3"))
    assert [b["id"] for b in res.json()] == [second]

    res = client.get("/api/v1/bookings?scope=floor:1", headers=auth("u3"))
    assert res.status_code == 400


def test_availability_reports_blocking_bookings():
    booking_id = create("u1").json()["id"]
    params = {"room_id": "r1", "start_time": "2024-06-01T09:30:00", "end_time": "2024-06-01T09:45:00"}

    res = client.get("/api/v1/bookings/availability", params=params, headers=auth("u2"))
    assert res.status_code == 200
    assert res.json()["available"] is False
    assert res.json()["conflicting_booking_ids"] == [booking_id]

    params["start_time"], params["end_time"] = "2024-06-01T10:00:00", "2024-06-01T11:00:00"
    res = client.get("/api/v1/bookings/availability", params=params, headers=auth("u2"))
    assert res.json()["available"] is True


class UnavailableRepository(InMemoryBookingRepository):
    def find(self, booking_id):
        raise RepositoryUnavailable()


def test_repository_outage_is_retryable_503():
    app.dependency_overrides[get_booking_service] = lambda: BookingService(UnavailableRepository(), RoomCatalog())

    res = client.get("/api/v1/bookings/abc", headers=auth("u1"))
    assert res.status_code == 503
    assert res.json()["code"] == "RepositoryUnavailable"
    assert "Retry-After" in res.headers


def test_redis_outage_does_not_fail_committed_writes(monkeypatch):
    dead = redis.from_url(
        "redis://127.0.0.1:1/0", decode_responses=True, socket_connect_timeout=0.2, socket_timeout=0.2
    )
    monkeypatch.setattr(cache, "_redis_client", dead)

    res = create("u1")
    assert res.status_code == 201

    # the first write was stored and reported, so a retry is a plain conflict
    res = create("u1")
    assert res.status_code == 409
    assert res.json()["code"] == "TimeSlotConflict"

    params = {"room_id": "r1", "start_time": "2024-06-01T09:00:00", "end_time": "2024-06-01T10:00:00"}
    res = client.get("/api/v1/bookings/availability", params=params, headers=auth("u2"))
    assert res.status_code == 200
    assert res.json()["available"] is False


class FakeRedis:
    """Dict-backed stand-in for the handful of Redis commands the cache uses."""

    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value

    def incr(self, key):
        self.store[key] = str(int(self.store.get(key, 0)) + 1)
        return int(self.store[key])

    def scan_iter(self, pattern):
        prefix = pattern.rstrip("*")
        return [key for key in list(self.store) if key.startswith(prefix)]

    def delete(self, key):
        self.store.pop(key, None)


def test_availability_cache_is_dropped_by_booking_writes(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(cache, "_redis_client", fake)
    params = {"room_id": "r1", "start_time": "2024-06-01T09:00:00", "end_time": "2024-06-01T10:00:00"}

    res = client.get("/api/v1/bookings/availability", params=params, headers=auth("u2"))
    assert res.json()["available"] is True
    assert any(key.startswith("bookings:availability:r1:g0:") for key in fake.store)

    booking_id = create("u1").json()["id"]
    res = client.get("/api/v1/bookings/availability", params=params, headers=auth("u2"))
    assert res.json()["available"] is False
    assert not any(key.startswith("bookings:availability:r1:g0:") for key in fake.store)

    client.post(f"/api/v1/bookings/{booking_id}/cancel", headers=auth("u1"))
    res = client.get("/api/v1/bookings/availability", params=params, headers=auth("u2"))
    assert res.json()["available"] is True


class WriteDuringCheckService(BookingService):
    """Lets a booking land between computing availability and caching it."""

    def check_availability(self, room_id, start_time, end_time):
        conflicts = super().check_availability(room_id, start_time, end_time)
        main.booking_service.create_booking("u1", room_id, start_time, end_time)
        main.invalidate_availability(room_id)
        return conflicts


def test_result_computed_before_a_write_is_not_served_after_it(monkeypatch):
    monkeypatch.setattr(cache, "_redis_client", FakeRedis())
    params = {"room_id": "r1", "start_time": "2024-06-01T09:00:00", "end_time": "2024-06-01T10:00:00"}

    app.dependency_overrides[get_booking_service] = lambda: WriteDuringCheckService(
        main.booking_service.repository, main.booking_service.catalog
    )
    res = client.get("/api/v1/bookings/availability", params=params, headers=auth("u2"))
    assert res.json()["available"] is True
    app.dependency_overrides.clear()

    res = client.get("/api/v1/bookings/availability", params=params, headers=auth("u2"))
    assert res.json()["available"] is False
    assert len(res.json()["conflicting_booking_ids"]) == 1
