"""
In-memory RideStore: for tests and for running the bot without a database.
"""
from __future__ import annotations

from typing import Any

from app.core.exceptions import RideNotFoundError
from app.db.ride_store import RideStore
from app.domain.models import Participant, Ride, RidePage, utcnow


class InMemoryRideStore(RideStore):
    """Keeps rides in a dict; every read and write goes through a copy"""

    def __init__(self) -> None:
        self._rides: dict[str, Ride] = {}

    async def create_ride(self, ride: Ride) -> Ride:
        self._rides[ride.id] = ride.copy()
        return ride.copy()

    async def get_ride(self, ride_id: str) -> Ride | None:
        ride = self._rides.get(ride_id)
        return ride.copy() if ride else None

    async def update_ride(self, ride_id: str, fields: dict[str, Any]) -> Ride:
        ride = self._rides.get(ride_id)
        if ride is None:
            raise RideNotFoundError(ride_id)

        for key, value in fields.items():
            if key == "messages":
                value = list(value)
            elif key == "participants":
                value = dict(value)
            setattr(ride, key, value)
        ride.updated_at = utcnow()
        return ride.copy()

    async def delete_ride(self, ride_id: str) -> bool:
        return self._rides.pop(ride_id, None) is not None

    async def list_by_creator(self, creator_id: int, offset: int = 0, limit: int = 10) -> RidePage:
        rides = sorted(
            (ride for ride in self._rides.values() if ride.created_by == creator_id),
            key=lambda ride: ride.date,
            reverse=True,
        )
        return RidePage(rides=[ride.copy() for ride in rides[offset:offset + limit]], total=len(rides))

    async def get_participants(self, ride_id: str) -> list[Participant]:
        ride = self._rides.get(ride_id)
        if ride is None:
            raise RideNotFoundError(ride_id)
        return list(ride.participants.values())
