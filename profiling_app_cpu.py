import cProfile
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite:///./profiling_bookings.db")

from fastapi.testclient import TestClient
from jose import jwt

from bookings_service.config import ALGORITHM, SECRET_KEY
from bookings_service.database import Base, engine
from bookings_service.main import app

client = TestClient(app)


def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def auth_headers(user_id: str) -> dict:
    token = jwt.encode(
        {"sub": user_id, "user_id": user_id, "exp": datetime.now(timezone.utc) + timedelta(minutes=30)},
        SECRET_KEY,
        algorithm=ALGORITHM,
    )
    return {"Authorization": f"Bearer {token}"}


def scenario_bookings():
    """
    Book back-to-back slots across the catalog, then have guests join and leave.
    """
    day = datetime(2024, 6, 1, 8, 0)
    for i in range(100):
        room_id = ("r1", "r2", "r3")[i % 3]
        start = day + timedelta(minutes=30 * (i // 3))
        r = client.post(
            "/api/v1/bookings",
            json={
                "room_id": room_id,
                "start_time": start.isoformat(),
                "end_time": (start + timedelta(minutes=30)).isoformat(),
            },
            headers=auth_headers(f"owner{i}"),
        )
        if r.status_code != 201:
            raise RuntimeError(f"Unexpected status on create: {r.status_code}")

        booking_id = r.json()["id"]
        for guest in range(3):
            client.post(f"/api/v1/bookings/{booking_id}/join", headers=auth_headers(f"guest{guest}"))
        client.post(f"/api/v1/bookings/{booking_id}/leave", headers=auth_headers("guest0"))

    client.get("/api/v1/bookings?scope=mine", headers=auth_headers("guest1")).raise_for_status()


def main():
    reset_db()
    scenario_bookings()


if __name__ == "__main__":
    # run cProfile and sort by cumulative time
    cProfile.run("main()", sort="cumtime")
