from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import NotFound


class Room(BaseModel):
    """
    Read-only description of a bookable room.

    Attributes
    ----------
    id : str
        Catalog key referenced by bookings (e.g. 'r1').
    name : str
        Human-readable room name.
    capacity : int
        Maximum number of people, booking owner included.
    location : str
        Floor or building description.
    tags : Tuple[str, ...]
        Equipment and features (e.g. 'projector').
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    capacity: int = Field(..., ge=1)
    location: str = ""
    tags: Tuple[str, ...] = ()


DEFAULT_ROOMS = (
    Room(id="r1", name="Room A", capacity=6, location="1F", tags=("projector",)),
    Room(id="r2", name="Room B", capacity=10, location="2F", tags=("whiteboard",)),
    Room(id="r3", name="Room C", capacity=8, location="3F", tags=("conference",)),
)


class RoomCatalog:
    """
    Static room reference data consumed by the booking core.

    The catalog is built once and never mutated, so it is safe to share
    between requests without locking.
    """

    def __init__(self, rooms: Iterable[Room] = DEFAULT_ROOMS):
        self._rooms: Dict[str, Room] = {room.id: room for room in rooms}

    def find_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def get_room(self, room_id: str) -> Room:
        room = self.find_room(room_id)
        if room is None:
            raise NotFound("Room not found")
        return room

    def list_rooms(self) -> List[Room]:
        return sorted(self._rooms.values(), key=lambda r: r.id)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms
