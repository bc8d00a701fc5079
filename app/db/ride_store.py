"""
Ride persistence: the RideStore contract and its SQLAlchemy implementation.

The core services depend only on RideStore, so tests can swap in the
in-memory store (app/db/memory_store.py).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import RideNotFoundError
from app.core.logging import get_logger
from app.db.models.ride import RideRecord
from app.domain.models import MessageRef, Participant, Ride, RidePage, utcnow

logger = get_logger(__name__)


class RideStore(ABC):
    """
    ממשק אחסון לרכיבות.

    get_ride מחזיר None לרכיבה שלא קיימת (להבדיל מרכיבה מבוטלת);
    update_ride / get_participants זורקים RideNotFoundError.
    """

    @abstractmethod
    async def create_ride(self, ride: Ride) -> Ride:
        """Persist a new ride and return the stored copy"""

    @abstractmethod
    async def get_ride(self, ride_id: str) -> Ride | None:
        """Fetch the latest stored state of a ride"""

    @abstractmethod
    async def update_ride(self, ride_id: str, fields: dict[str, Any]) -> Ride:
        """Apply a partial update (only the given keys)"""

    @abstractmethod
    async def delete_ride(self, ride_id: str) -> bool:
        """Remove a ride; returns whether anything was removed"""

    @abstractmethod
    async def list_by_creator(self, creator_id: int, offset: int = 0, limit: int = 10) -> RidePage:
        """Rides created by a user, newest ride date first"""

    @abstractmethod
    async def get_participants(self, ride_id: str) -> list[Participant]:
        """Participants of a ride in insertion order"""


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    # SQLite מחזיר datetime נאיבי גם לעמודה עם timezone=True
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_domain(record: RideRecord) -> Ride:
    participants = {
        int(user_id): Participant.from_dict({**data, "user_id": int(user_id)})
        for user_id, data in (record.participants or {}).items()
    }
    return Ride(
        id=record.id,
        title=record.title,
        category=record.category,
        organizer=record.organizer,
        date=_as_utc(record.date),
        meeting_point=record.meeting_point,
        route_link=record.route_link,
        distance=record.distance,
        duration=record.duration,
        speed_min=record.speed_min,
        speed_max=record.speed_max,
        additional_info=record.additional_info,
        created_by=record.created_by,
        updated_by=record.updated_by,
        cancelled=bool(record.cancelled),
        messages=[MessageRef.from_dict(ref) for ref in (record.messages or [])],
        participants=participants,
        created_at=_as_utc(record.created_at),
        updated_at=_as_utc(record.updated_at),
    )


def _to_columns(fields: dict[str, Any]) -> dict[str, Any]:
    """המרת ערכי דומיין לערכי עמודות (JSON לרשימות/מילונים, UTC לתאריכים)"""
    values = dict(fields)
    if "messages" in values:
        values["messages"] = [ref.to_dict() for ref in values["messages"]]
    if "participants" in values:
        values["participants"] = {
            str(user_id): participant.to_dict() for user_id, participant in values["participants"].items()
        }
    for key in ("date", "created_at", "updated_at"):
        if values.get(key) is not None:
            values[key] = _as_utc(values[key])
    return values


class SqlAlchemyRideStore(RideStore):
    """RideStore over an AsyncSession (PostgreSQL/asyncpg in production, SQLite in tests)"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load(self, ride_id: str) -> RideRecord | None:
        # populate_existing: קריאה טרייה מה-DB גם אם האובייקט כבר ב-identity map
        result = await self.db.execute(
            select(RideRecord)
            .where(RideRecord.id == ride_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_ride(self, ride: Ride) -> Ride:
        values = _to_columns({
            **ride.descriptive_fields(),
            "id": ride.id,
            "created_by": ride.created_by,
            "updated_by": ride.updated_by,
            "cancelled": ride.cancelled,
            "messages": ride.messages,
            "participants": ride.participants,
            "created_at": ride.created_at,
            "updated_at": ride.updated_at,
        })
        record = RideRecord(**values)
        self.db.add(record)
        await self.db.commit()
        await self.db.refresh(record)
        return _to_domain(record)

    async def get_ride(self, ride_id: str) -> Ride | None:
        record = await self._load(ride_id)
        return _to_domain(record) if record else None

    async def update_ride(self, ride_id: str, fields: dict[str, Any]) -> Ride:
        record = await self._load(ride_id)
        if record is None:
            raise RideNotFoundError(ride_id)

        values = _to_columns({**fields, "updated_at": utcnow()})
        for key, value in values.items():
            # השמה של אובייקט חדש (לא מוטציה) כדי ש-SQLAlchemy יזהה שינוי בעמודות JSON
            setattr(record, key, value)

        await self.db.commit()
        await self.db.refresh(record)
        return _to_domain(record)

    async def delete_ride(self, ride_id: str) -> bool:
        result = await self.db.execute(delete(RideRecord).where(RideRecord.id == ride_id))
        await self.db.commit()
        return (result.rowcount or 0) > 0

    async def list_by_creator(self, creator_id: int, offset: int = 0, limit: int = 10) -> RidePage:
        total = await self.db.scalar(
            select(func.count()).select_from(RideRecord).where(RideRecord.created_by == creator_id)
        )
        result = await self.db.execute(
            select(RideRecord)
            .where(RideRecord.created_by == creator_id)
            .order_by(RideRecord.date.desc())
            .offset(offset)
            .limit(limit)
        )
        rides = [_to_domain(record) for record in result.scalars().all()]
        return RidePage(rides=rides, total=total or 0)

    async def get_participants(self, ride_id: str) -> list[Participant]:
        ride = await self.get_ride(ride_id)
        if ride is None:
            raise RideNotFoundError(ride_id)
        return list(ride.participants.values())
