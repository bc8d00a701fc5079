"""
Ride domain objects.

Plain dataclasses shared by the state machine, the stores and the
propagation engine. Stores return detached copies of these, so the
SQLAlchemy and in-memory stores are interchangeable.
"""
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

DEFAULT_CATEGORY = "Regular/Mixed Ride"

RIDE_CATEGORIES = (
    DEFAULT_CATEGORY,
    "Road Ride",
    "Gravel Ride",
    "Mountain/Enduro/Downhill Ride",
    "MTB-XC Ride",
    "E-Bike Ride",
    "Virtual/Indoor Ride",
)

# שדות תיאוריים שניתנים לעדכון חלקי
RIDE_FIELDS = (
    "title",
    "category",
    "organizer",
    "date",
    "meeting_point",
    "route_link",
    "distance",
    "duration",
    "speed_min",
    "speed_max",
    "additional_info",
)

_BASE62 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
RIDE_ID_LENGTH = 11


def generate_ride_id() -> str:
    """מזהה קצר (11 תווים base62) מתוך ביטים של UUID4: נוח להקלדה בפקודות"""
    n = uuid.uuid4().int
    chars = []
    for _ in range(RIDE_ID_LENGTH):
        n, rem = divmod(n, 62)
        chars.append(_BASE62[rem])
    return "".join(chars)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ParticipationState(str, Enum):
    """One user's current stance on a ride"""
    JOINED = "joined"
    THINKING = "thinking"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Destination:
    """A (chat, thread) pair where a ride card can be rendered"""
    chat_id: int
    thread_id: Optional[int] = None

    @property
    def key(self) -> tuple[int, Optional[int]]:
        return (self.chat_id, self.thread_id)


@dataclass(frozen=True)
class MessageRef:
    """Pointer to one rendered card at one destination"""
    chat_id: int
    message_id: int
    thread_id: Optional[int] = None

    @property
    def destination(self) -> Destination:
        return Destination(self.chat_id, self.thread_id)

    @property
    def key(self) -> tuple[int, Optional[int]]:
        return (self.chat_id, self.thread_id)

    def to_dict(self) -> dict[str, Any]:
        return {"chat_id": self.chat_id, "message_id": self.message_id, "thread_id": self.thread_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MessageRef":
        thread_id = data.get("thread_id")
        return cls(
            chat_id=int(data["chat_id"]),
            message_id=int(data["message_id"]),
            thread_id=int(thread_id) if thread_id is not None else None,
        )


@dataclass(frozen=True)
class Participant:
    user_id: int
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    state: ParticipationState = ParticipationState.JOINED

    @property
    def display_name(self) -> str:
        full_name = f"{self.first_name} {self.last_name}".strip()
        if full_name:
            return full_name
        if self.username:
            return f"@{self.username}"
        return str(self.user_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "state": self.state.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Participant":
        return cls(
            user_id=int(data["user_id"]),
            username=data.get("username") or "",
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            state=ParticipationState(data.get("state", ParticipationState.JOINED.value)),
        )


@dataclass
class Ride:
    """Aggregate root: a scheduled group ride and every place it was posted"""

    id: str
    title: str
    date: datetime
    created_by: int
    category: str = DEFAULT_CATEGORY
    organizer: Optional[str] = None
    meeting_point: Optional[str] = None
    route_link: Optional[str] = None
    distance: Optional[float] = None
    duration: Optional[int] = None
    speed_min: Optional[float] = None
    speed_max: Optional[float] = None
    additional_info: Optional[str] = None
    updated_by: Optional[int] = None
    cancelled: bool = False
    messages: list[MessageRef] = field(default_factory=list)
    participants: dict[int, Participant] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def has_destination(self, destination: Destination) -> bool:
        return any(ref.key == destination.key for ref in self.messages)

    def participants_in(self, state: ParticipationState) -> list[Participant]:
        return [p for p in self.participants.values() if p.state == state]

    def descriptive_fields(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in RIDE_FIELDS}

    def copy(self) -> "Ride":
        return replace(self, messages=list(self.messages), participants=dict(self.participants))


@dataclass
class RidePage:
    rides: list[Ride]
    total: int


@dataclass
class RenderedCard:
    """Output of the card renderer: HTML body plus inline keyboard rows"""
    body: str
    controls: list[list[dict[str, str]]] = field(default_factory=list)
