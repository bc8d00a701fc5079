"""
Message Propagation Engine - keeps every posted ride card in sync

A ride card may be posted in several chats and forum threads. After every
ride mutation the engine re-renders the card and edits it everywhere, in
parallel (bounded), and prunes destinations the platform reports as gone
for good. Transient failures (rate limit, timeout, open circuit breaker)
leave the destination in place, so the next synchronize retries it.
"""
import asyncio
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from app.core.config import settings
from app.core.exceptions import (
    ConflictError,
    DuplicateDestinationError,
    ErrorCode,
    GatewayError,
    RideNotFoundError,
)
from app.core.logging import get_logger, log_async_operation, ride_log_context
from app.domain.models import Destination, MessageRef, RenderedCard, Ride
from app.domain.services.card_renderer import RideCardRenderer
from app.domain.services.messaging_gateway import MessagingGateway
from app.domain.services.ride_service import RideStateMachine

logger = get_logger(__name__)


class DeliveryOutcome(str, Enum):
    UPDATED = "updated"
    REMOVED = "removed"
    FAILED = "failed"


@dataclass
class DestinationError:
    """Transient failure at one destination (the destination is kept)"""
    chat_id: int
    message_id: int
    thread_id: Optional[int]
    error: str
    error_code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "message_id": self.message_id,
            "thread_id": self.thread_id,
            "error": self.error,
            "error_code": self.error_code,
        }


@dataclass
class SyncResult:
    success: bool = True
    updated_count: int = 0
    removed_count: int = 0
    errors: list[DestinationError] = field(default_factory=list)
    ride: Optional[Ride] = None

    def summary(self) -> str:
        """User-facing one-liner: "Updated N message(s)" [+ "Removed M unavailable message(s)"]"""
        text = f"Updated {self.updated_count} message(s)"
        if self.removed_count > 0:
            text += f"\nRemoved {self.removed_count} unavailable message(s)"
        return text


class MessagePropagationEngine:
    """Fans a rendered ride card out to all of a ride's destinations"""

    # נעילה לכל רכיבה (ברמת התהליך): עדכונים ליעד מסוים נשלחים לפי סדר השינויים
    _ride_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def __init__(
        self,
        rides: RideStateMachine,
        gateway: MessagingGateway,
        renderer: Optional[RideCardRenderer] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.rides = rides
        self.gateway = gateway
        self.renderer = renderer or RideCardRenderer()
        self.max_concurrency = max_concurrency or settings.PROPAGATION_MAX_CONCURRENCY

    @classmethod
    def _lock_for(cls, ride_id: str) -> asyncio.Lock:
        lock = cls._ride_locks.get(ride_id)
        if lock is None:
            lock = asyncio.Lock()
            cls._ride_locks[ride_id] = lock
        return lock

    @classmethod
    def reset_locks(cls) -> None:
        """Forget all per-ride locks (for testing)"""
        cls._ride_locks.clear()

    def _render(self, ride: Ride) -> RenderedCard:
        return self.renderer.render(ride, list(ride.participants.values()))

    # ==================== announce ====================

    async def announce(self, ride: Ride, destination: Destination) -> MessageRef:
        """
        Post the ride card to a new (chat, thread) destination.

        Raises:
            DuplicateDestinationError: the ride is already posted there
            ConflictError: the ride is cancelled
            GatewayError: the card could not be sent
        """
        with ride_log_context(ride.id):
            async with self._lock_for(ride.id):
                current = await self.rides.get(ride.id)
                if current.cancelled:
                    raise ConflictError(
                        "Cannot post a cancelled ride",
                        error_code=ErrorCode.RIDE_ALREADY_CANCELLED,
                        details={"ride_id": ride.id},
                    )
                if current.has_destination(destination):
                    raise DuplicateDestinationError(ride.id, destination.chat_id, destination.thread_id)

                ref = await self.gateway.send(destination, self._render(current))

                try:
                    await self.rides.add_message(ride.id, ref)
                except (ConflictError, RideNotFoundError):
                    # הכרטיס נשלח אבל לא נרשם (announce מקביל / הרכיבה נמחקה): לא משאירים כרטיס יתום
                    await self._delete_quietly(ref)
                    raise

            logger.info(
                "Ride announced",
                extra_data={
                    "ride_id": ride.id,
                    "chat_id": ref.chat_id,
                    "thread_id": ref.thread_id,
                    "message_id": ref.message_id,
                },
            )
        return ref

    # ==================== synchronize ====================

    async def _edit_one(
        self,
        ref: MessageRef,
        card: RenderedCard,
        semaphore: asyncio.Semaphore,
    ) -> tuple[DeliveryOutcome, Optional[Exception]]:
        async with semaphore:
            try:
                await self.gateway.edit(ref, card)
            except GatewayError as e:
                if e.permanent:
                    return DeliveryOutcome.REMOVED, e
                return DeliveryOutcome.FAILED, e
            except Exception as e:
                logger.error(
                    "Unexpected error updating ride card",
                    extra_data={"chat_id": ref.chat_id, "message_id": ref.message_id, "error": str(e)},
                    exc_info=True,
                )
                return DeliveryOutcome.FAILED, e
        return DeliveryOutcome.UPDATED, None

    @log_async_operation("ride synchronize")
    async def synchronize(self, ride: Ride) -> SyncResult:
        """
        Push the current ride state to every known destination.

        Never raises GatewayError: per-destination failures are folded into
        the result. Permanently unreachable destinations are removed from
        the ride in a single store write after all attempts have settled.
        """
        with ride_log_context(ride.id):
            async with self._lock_for(ride.id):
                try:
                    current = await self.rides.get(ride.id)
                except RideNotFoundError:
                    logger.warning("Synchronize skipped: ride no longer exists", extra_data={"ride_id": ride.id})
                    return SyncResult(success=True, ride=None)

                refs = list(current.messages)
                if not refs:
                    return SyncResult(success=True, ride=current)

                card = self._render(current)
                semaphore = asyncio.Semaphore(self.max_concurrency)
                outcomes = await asyncio.gather(*(self._edit_one(ref, card, semaphore) for ref in refs))

                result = SyncResult(ride=current)
                removed: list[MessageRef] = []
                for ref, (outcome, error) in zip(refs, outcomes):
                    if outcome == DeliveryOutcome.UPDATED:
                        result.updated_count += 1
                    elif outcome == DeliveryOutcome.REMOVED:
                        removed.append(ref)
                        logger.info(
                            "Pruning unreachable destination",
                            extra_data={
                                "ride_id": current.id,
                                "chat_id": ref.chat_id,
                                "thread_id": ref.thread_id,
                                "error": str(error),
                            },
                        )
                    else:
                        result.errors.append(DestinationError(
                            chat_id=ref.chat_id,
                            message_id=ref.message_id,
                            thread_id=ref.thread_id,
                            error=str(error),
                            error_code=getattr(getattr(error, "error_code", None), "value", None),
                        ))

                if removed:
                    try:
                        result.ride = await self.rides.remove_messages(current.id, removed)
                    except RideNotFoundError:
                        result.ride = None
                    result.removed_count = len(removed)

                result.success = not (refs and len(result.errors) == len(refs))

            log = logger.info if result.success else logger.warning
            log(
                "Ride cards synchronized",
                extra_data={
                    "ride_id": ride.id,
                    "destinations": len(refs),
                    "updated": result.updated_count,
                    "removed": result.removed_count,
                    "failed": len(result.errors),
                },
            )
        return result

    # ==================== remove ====================

    async def _delete_quietly(self, ref: MessageRef) -> bool:
        try:
            await self.gateway.delete(ref)
        except Exception as e:
            logger.warning(
                "Failed to delete ride card",
                extra_data={"chat_id": ref.chat_id, "message_id": ref.message_id, "error": str(e)},
            )
            return False
        return True

    async def remove(self, ride: Ride) -> None:
        """Best-effort delete of the card at every destination"""
        refs = list(ride.messages)
        if not refs:
            return

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _delete(ref: MessageRef) -> bool:
            async with semaphore:
                return await self._delete_quietly(ref)

        with ride_log_context(ride.id):
            async with self._lock_for(ride.id):
                results = await asyncio.gather(*(_delete(ref) for ref in refs))

            logger.info(
                "Ride cards removed",
                extra_data={"ride_id": ride.id, "deleted": sum(results), "failed": len(results) - sum(results)},
            )
