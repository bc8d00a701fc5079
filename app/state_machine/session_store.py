"""
Wizard Session Store - ephemeral per-user conversation state

Sessions live in process memory, keyed by (user_id, chat_id). An expired
session is discarded when accessed; a periodic sweep task removes the ones
nobody comes back to. Nothing here is ever persisted.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from app.core.config import settings
from app.core.exceptions import SessionNotFoundError
from app.core.logging import get_logger
from app.domain.models import utcnow
from app.state_machine.states import WizardStep

logger = get_logger(__name__)

SessionKey = tuple[int, int]


@dataclass
class ConversationSession:
    """State of one in-progress wizard"""

    user_id: int
    chat_id: int
    step: WizardStep = WizardStep.TITLE
    collected: dict[str, Any] = field(default_factory=dict)
    is_update: bool = False
    original_ride_id: Optional[str] = None
    # נושא בפורום שבו האשף הופעל (להודעת הרכיבה)
    thread_id: Optional[int] = None
    history: list[WizardStep] = field(default_factory=list)
    expires_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> SessionKey:
        return (self.user_id, self.chat_id)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class SessionStore(ABC):
    """ממשק לאחסון סשנים של האשף"""

    @abstractmethod
    def get(self, user_id: int, chat_id: int) -> Optional[ConversationSession]:
        """Live session for the key, or None (expired sessions are dropped)"""

    @abstractmethod
    def put(self, session: ConversationSession) -> None:
        """Store the session and extend its expiry"""

    @abstractmethod
    def delete(self, user_id: int, chat_id: int) -> bool:
        """Remove the session; True if one existed"""

    @abstractmethod
    def sweep_expired(self) -> int:
        """Remove all expired sessions and return how many were removed"""

    def require(self, user_id: int, chat_id: int) -> ConversationSession:
        """
        Like ``get`` but for callers that need a session.

        Raises:
            SessionNotFoundError: no live session for the key
        """
        session = self.get(user_id, chat_id)
        if session is None:
            raise SessionNotFoundError(user_id, chat_id)
        return session


class InMemorySessionStore(SessionStore):

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ttl = timedelta(seconds=ttl_seconds or settings.WIZARD_SESSION_TTL_SECONDS)
        self._clock = clock
        self._sessions: dict[SessionKey, ConversationSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, user_id: int, chat_id: int) -> Optional[ConversationSession]:
        key = (user_id, chat_id)
        session = self._sessions.get(key)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            del self._sessions[key]
            logger.info("Wizard session expired", extra_data={"user_id": user_id, "chat_id": chat_id})
            return None
        return session

    def put(self, session: ConversationSession) -> None:
        session.expires_at = self._clock() + self.ttl
        self._sessions[session.key] = session

    def delete(self, user_id: int, chat_id: int) -> bool:
        return self._sessions.pop((user_id, chat_id), None) is not None

    def sweep_expired(self) -> int:
        now = self._clock()
        expired = [key for key, session in self._sessions.items() if session.is_expired(now)]
        for key in expired:
            del self._sessions[key]
        if expired:
            logger.info("Swept expired wizard sessions", extra_data={"count": len(expired)})
        return len(expired)


# Process-wide store, shared by all webhook requests
_session_store: Optional[InMemorySessionStore] = None


def get_session_store() -> InMemorySessionStore:
    global _session_store
    if _session_store is None:
        _session_store = InMemorySessionStore()
    return _session_store


def reset_session_store() -> None:
    """Drop the process-wide store (for testing)"""
    global _session_store
    _session_store = None


async def run_session_sweeper(
    store: SessionStore,
    interval_seconds: Optional[float] = None,
) -> None:
    """Background loop removing expired sessions until cancelled"""
    interval = interval_seconds or settings.WIZARD_SWEEP_INTERVAL_SECONDS
    logger.info("Wizard session sweeper started", extra_data={"interval_seconds": interval})
    while True:
        await asyncio.sleep(interval)
        try:
            store.sweep_expired()
        except Exception as e:
            logger.error("Wizard session sweep failed", extra_data={"error": str(e)}, exc_info=True)
