"""
Messaging gateway: sending, editing and deleting ride cards on the platform.

MessagingGateway is the contract the propagation engine depends on.
TelegramGateway implements it over the Telegram Bot API with httpx,
a request timeout and the shared Telegram circuit breaker.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from app.core.circuit_breaker import CircuitBreaker, get_telegram_circuit_breaker
from app.core.config import settings
from app.core.exceptions import ServiceTimeoutError, TelegramError
from app.core.logging import get_logger
from app.domain.models import Destination, MessageRef, RenderedCard

logger = get_logger(__name__)


class MessagingGateway(ABC):
    """
    ממשק אחיד לפעולות על כרטיסי רכיבה.

    כל כשלון נזרק כ-GatewayError; ``permanent=True`` רק כשהפלטפורמה
    אישרה שהיעד לא קיים יותר.
    """

    @abstractmethod
    async def send(self, destination: Destination, card: RenderedCard) -> MessageRef:
        """Post a card to a new destination"""

    @abstractmethod
    async def edit(self, ref: MessageRef, card: RenderedCard) -> None:
        """Replace the content of a posted card"""

    @abstractmethod
    async def delete(self, ref: MessageRef) -> None:
        """Remove a posted card"""


def _reply_markup(controls: Optional[list[list[dict[str, str]]]]) -> dict[str, Any]:
    return {"inline_keyboard": controls or []}


class TelegramGateway(MessagingGateway):
    """Telegram Bot API client used for ride cards and bot replies"""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.token = token if token is not None else settings.TELEGRAM_BOT_TOKEN
        self.base_url = (base_url or settings.TELEGRAM_API_BASE_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.GATEWAY_TIMEOUT_SECONDS
        self._client = client
        self.circuit_breaker = circuit_breaker or get_telegram_circuit_breaker()

    async def _post(self, method: str, payload: dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}/bot{self.token}/{method}"
        if self._client is not None:
            return await self._client.post(url, json=payload, timeout=self.timeout_seconds)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(url, json=payload)

    async def call(self, method: str, payload: dict[str, Any]) -> Any:
        """
        Invoke a Bot API method and return its ``result``.

        Raises:
            TelegramError: API-level failure (classified permanent/transient)
            ServiceTimeoutError: request exceeded the gateway timeout
            CircuitBreakerOpenError: too many recent transient failures
        """
        if not self.token:
            raise TelegramError("bot token not configured", details={"operation": method})

        async def _call() -> Any:
            try:
                response = await self._post(method, payload)
            except httpx.TimeoutException:
                raise ServiceTimeoutError("telegram", self.timeout_seconds)
            except httpx.HTTPError as e:
                raise TelegramError(f"{method} transport error: {e}", details={"operation": method})

            if response.status_code != 200:
                raise TelegramError.from_response(method, response)
            data = response.json()
            if not data.get("ok", False):
                raise TelegramError.from_response(method, response)
            return data.get("result")

        return await self.circuit_breaker.execute(_call)

    # ==================== MessagingGateway ====================

    async def send(self, destination: Destination, card: RenderedCard) -> MessageRef:
        payload: dict[str, Any] = {
            "chat_id": destination.chat_id,
            "text": card.body,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
            "reply_markup": _reply_markup(card.controls),
        }
        if destination.thread_id is not None:
            payload["message_thread_id"] = destination.thread_id

        result = await self.call("sendMessage", payload)
        return MessageRef(
            chat_id=destination.chat_id,
            message_id=int(result["message_id"]),
            thread_id=destination.thread_id,
        )

    async def edit(self, ref: MessageRef, card: RenderedCard) -> None:
        payload = {
            "chat_id": ref.chat_id,
            "message_id": ref.message_id,
            "text": card.body,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
            # מקלדת ריקה מסירה את הכפתורים (רכיבה מבוטלת)
            "reply_markup": _reply_markup(card.controls),
        }
        try:
            await self.call("editMessageText", payload)
        except TelegramError as e:
            if e.is_not_modified:
                logger.debug("Card already up to date", extra_data={"chat_id": ref.chat_id, "message_id": ref.message_id})
                return
            raise

    async def delete(self, ref: MessageRef) -> None:
        await self.call("deleteMessage", {"chat_id": ref.chat_id, "message_id": ref.message_id})

    # ==================== Bot replies ====================

    async def send_text(
        self,
        chat_id: int | str,
        text: str,
        keyboard: Optional[list[list[dict[str, str]]]] = None,
        thread_id: Optional[int] = None,
    ) -> Optional[int]:
        """Reply to a user; failures are logged, never raised"""
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if keyboard:
            payload["reply_markup"] = _reply_markup(keyboard)
        if thread_id is not None:
            payload["message_thread_id"] = thread_id

        try:
            result = await self.call("sendMessage", payload)
        except Exception as e:
            logger.error(
                "Telegram send failed",
                extra_data={"chat_id": chat_id, "error": str(e)},
                exc_info=True
            )
            return None
        return int(result["message_id"]) if result else None

    async def edit_text(
        self,
        chat_id: int | str,
        message_id: int,
        text: str,
        keyboard: Optional[list[list[dict[str, str]]]] = None,
    ) -> bool:
        """Edit a bot reply in place (wizard steps, paging); failures are logged, never raised"""
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
            "reply_markup": _reply_markup(keyboard),
        }
        try:
            await self.call("editMessageText", payload)
        except TelegramError as e:
            if e.is_not_modified:
                return True
            logger.error(
                "Telegram edit failed",
                extra_data={"chat_id": chat_id, "message_id": message_id, "error": str(e)},
            )
            return False
        except Exception as e:
            logger.error(
                "Telegram edit failed",
                extra_data={"chat_id": chat_id, "message_id": message_id, "error": str(e)},
                exc_info=True
            )
            return False
        return True

    async def answer_callback_query(
        self,
        callback_query_id: str,
        text: Optional[str] = None,
        show_alert: bool = False,
    ) -> None:
        """Answer callback query to remove the loading state"""
        payload: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        if show_alert:
            payload["show_alert"] = True

        try:
            await self.call("answerCallbackQuery", payload)
        except Exception as e:
            logger.error(
                "Answer callback failed",
                extra_data={"callback_query_id": callback_query_id, "error": str(e)},
                exc_info=True
            )
