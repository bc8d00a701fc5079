"""
Ride State Machine - lifecycle and authorization of rides

States:
    ACTIVE (cancelled=False) <-> CANCELLED (cancelled=True)
    DELETED is terminal: the aggregate is removed from the store.

Every mutation of a ride (fields, flags, posted messages, participants) goes
through this service, as a read-modify-write against the RideStore.
"""
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Iterable, Optional

from app.core.config import settings
from app.core.exceptions import (
    AuthorizationError,
    ConflictError,
    DuplicateDestinationError,
    ErrorCode,
    RideNotFoundError,
    ValidationError,
)
from app.core.logging import get_logger
from app.core.validation import DateTimeParser, is_valid_url, normalize_category
from app.db.ride_store import RideStore
from app.domain.models import (
    RIDE_FIELDS,
    MessageRef,
    Participant,
    Ride,
    RidePage,
    generate_ride_id,
)

logger = get_logger(__name__)

_OPTIONAL_TEXT_FIELDS = ("organizer", "meeting_point", "route_link", "additional_info")


class RideStateMachine:
    """Owns the Ride aggregate and its legal transitions"""

    def __init__(self, store: RideStore):
        self.store = store

    @staticmethod
    def is_creator(ride: Ride, user_id: int) -> bool:
        return ride.created_by == user_id

    async def get(self, ride_id: str) -> Ride:
        ride = await self.store.get_ride(ride_id)
        if ride is None:
            raise RideNotFoundError(ride_id)
        return ride

    async def _get_authorized(self, ride_id: str, user_id: int, action: str) -> Ride:
        ride = await self.get(ride_id)
        if not self.is_creator(ride, user_id):
            logger.warning(
                "Non-creator attempted ride operation",
                extra_data={"ride_id": ride_id, "user_id": user_id, "action": action},
            )
            raise AuthorizationError(action, user_id=user_id, ride_id=ride_id)
        return ride

    # ==================== Validation ====================

    @staticmethod
    def _validate_fields(fields: dict[str, Any]) -> dict[str, Any]:
        """
        Normalize and validate the given ride fields (partial).

        Raises:
            ValidationError: naming the offending field
        """
        unknown = set(fields) - set(RIDE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown ride field(s): {', '.join(sorted(unknown))}", field=sorted(unknown)[0])

        clean: dict[str, Any] = {}
        for key, value in fields.items():
            if key in _OPTIONAL_TEXT_FIELDS or key == "title":
                value = value.strip() if isinstance(value, str) else value
                if value == "":
                    value = None
            clean[key] = value

        if "title" in clean and not clean["title"]:
            raise ValidationError("Title cannot be empty", field="title")

        if "category" in clean:
            clean["category"] = normalize_category(clean["category"])

        if "date" in clean:
            date = clean["date"]
            if isinstance(date, str):
                date = DateTimeParser.parse(date, allow_past=True)
            if not isinstance(date, datetime):
                raise ValidationError("Date is required", field="date")
            if date.tzinfo is None:
                raise ValidationError("Date must include a timezone", field="date")
            clean["date"] = date

        if clean.get("route_link") is not None and not is_valid_url(clean["route_link"]):
            raise ValidationError("Invalid route URL format.", field="route_link")

        for key in ("distance", "speed_min", "speed_max"):
            if clean.get(key) is not None:
                try:
                    clean[key] = float(clean[key])
                except (TypeError, ValueError):
                    raise ValidationError(f"{key} must be a number", field=key)
                if clean[key] < 0:
                    raise ValidationError(f"{key} cannot be negative", field=key)

        if clean.get("duration") is not None:
            try:
                clean["duration"] = int(clean["duration"])
            except (TypeError, ValueError):
                raise ValidationError("duration must be a whole number of minutes", field="duration")
            if clean["duration"] < 0:
                raise ValidationError("duration cannot be negative", field="duration")

        return clean

    @staticmethod
    def _check_speed_range(speed_min: Optional[float], speed_max: Optional[float]) -> None:
        if speed_min is not None and speed_max is not None and speed_min > speed_max:
            raise ValidationError(
                "Minimum speed cannot be greater than maximum speed",
                field="speed_min",
                details={"speed_min": speed_min, "speed_max": speed_max},
            )

    # ==================== Transitions ====================

    async def create(self, fields: dict[str, Any], creator_id: int) -> Ride:
        """Validate and persist a new, active ride with no messages or participants"""
        clean = self._validate_fields(fields)
        if not clean.get("title"):
            raise ValidationError("Title cannot be empty", field="title")
        if clean.get("date") is None:
            raise ValidationError("Date is required", field="date")
        self._check_speed_range(clean.get("speed_min"), clean.get("speed_max"))
        clean.setdefault("category", normalize_category(None))

        ride = Ride(
            id=generate_ride_id(),
            created_by=creator_id,
            cancelled=False,
            messages=[],
            participants={},
            **clean,
        )
        created = await self.store.create_ride(ride)

        logger.info(
            "Ride created",
            extra_data={"ride_id": created.id, "created_by": creator_id, "date": created.date.isoformat()},
        )
        return created

    async def update(self, ride_id: str, fields: dict[str, Any], requesting_user_id: int) -> Ride:
        """Partial update by the creator; only the given fields change"""
        ride = await self._get_authorized(ride_id, requesting_user_id, "update")
        clean = self._validate_fields(fields)
        if "date" in clean and clean["date"] is None:
            raise ValidationError("Date is required", field="date")
        self._check_speed_range(
            clean.get("speed_min", ride.speed_min),
            clean.get("speed_max", ride.speed_max),
        )

        updated = await self.store.update_ride(ride_id, {**clean, "updated_by": requesting_user_id})
        logger.info(
            "Ride updated",
            extra_data={"ride_id": ride_id, "updated_by": requesting_user_id, "fields": sorted(clean)},
        )
        return updated

    async def cancel(self, ride_id: str, requesting_user_id: int) -> Ride:
        ride = await self._get_authorized(ride_id, requesting_user_id, "cancel")
        if ride.cancelled:
            raise ConflictError(
                "This ride has already been cancelled",
                error_code=ErrorCode.RIDE_ALREADY_CANCELLED,
                details={"ride_id": ride_id},
            )

        updated = await self.store.update_ride(ride_id, {"cancelled": True, "updated_by": requesting_user_id})
        logger.info("Ride cancelled", extra_data={"ride_id": ride_id, "user_id": requesting_user_id})
        return updated

    async def resume(self, ride_id: str, requesting_user_id: int) -> Ride:
        ride = await self._get_authorized(ride_id, requesting_user_id, "resume")
        if not ride.cancelled:
            raise ConflictError(
                "This ride is not cancelled",
                error_code=ErrorCode.RIDE_NOT_CANCELLED,
                details={"ride_id": ride_id},
            )

        updated = await self.store.update_ride(ride_id, {"cancelled": False, "updated_by": requesting_user_id})
        logger.info("Ride resumed", extra_data={"ride_id": ride_id, "user_id": requesting_user_id})
        return updated

    async def delete(self, ride_id: str, requesting_user_id: int) -> bool:
        await self._get_authorized(ride_id, requesting_user_id, "delete")
        deleted = await self.store.delete_ride(ride_id)
        logger.info("Ride deleted", extra_data={"ride_id": ride_id, "user_id": requesting_user_id, "deleted": deleted})
        return deleted

    async def duplicate(self, ride_id: str, fields: dict[str, Any], requesting_user_id: int) -> Ride:
        """
        Create a new ride from an existing one.

        Fields not given are copied from the source. Without a date the copy
        is scheduled for the same time on the next day.
        """
        source = await self._get_authorized(ride_id, requesting_user_id, "duplicate")
        data = source.descriptive_fields()
        if "date" not in fields:
            data["date"] = default_duplicate_date(source)
        data.update(fields)

        duplicate = await self.create(data, requesting_user_id)
        logger.info(
            "Ride duplicated",
            extra_data={"source_ride_id": ride_id, "ride_id": duplicate.id, "user_id": requesting_user_id},
        )
        return duplicate

    async def list_by_creator(self, creator_id: int, offset: int = 0, limit: int = 10) -> RidePage:
        return await self.store.list_by_creator(creator_id, offset=offset, limit=limit)

    # ==================== Messages & participants ====================

    async def add_message(self, ride_id: str, ref: MessageRef) -> Ride:
        """Append a posted card; one card per (chat, thread)"""
        ride = await self.get(ride_id)
        if ride.has_destination(ref.destination):
            raise DuplicateDestinationError(ride_id, ref.chat_id, ref.thread_id)
        return await self.store.update_ride(ride_id, {"messages": [*ride.messages, ref]})

    async def remove_messages(self, ride_id: str, refs: Iterable[MessageRef]) -> Ride:
        """Drop exactly the given refs from the latest stored list"""
        to_remove = set(refs)
        ride = await self.get(ride_id)
        if not to_remove:
            return ride
        remaining = [ref for ref in ride.messages if ref not in to_remove]
        if len(remaining) == len(ride.messages):
            return ride
        return await self.store.update_ride(ride_id, {"messages": remaining})

    async def set_participant(self, ride_id: str, participant: Participant) -> Ride:
        ride = await self.get(ride_id)
        participants = dict(ride.participants)
        participants[participant.user_id] = participant
        return await self.store.update_ride(ride_id, {"participants": participants})

    async def get_participants(self, ride_id: str) -> list[Participant]:
        return await self.store.get_participants(ride_id)


def default_duplicate_date(source: Ride, tz: Optional[tzinfo] = None) -> datetime:
    """Same wall-clock time, next day, relative to the source ride"""
    # יום קלנדרי בשעון המקומי, לא 24 שעות
    local = source.date.astimezone(tz or settings.timezone)
    return (local + timedelta(days=1)).astimezone(timezone.utc)
