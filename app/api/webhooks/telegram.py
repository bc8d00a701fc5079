"""
Telegram Webhook Handler - Bot Gateway Layer
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import verify_telegram_webhook_token
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.ride_store import SqlAlchemyRideStore
from app.domain.models import Participant
from app.domain.services.command_service import BotReply, CommandContext, RideCommandService
from app.domain.services.messaging_gateway import TelegramGateway
from app.domain.services.participation_service import ParticipationTracker
from app.domain.services.propagation_service import MessagePropagationEngine
from app.domain.services.ride_service import RideStateMachine
from app.domain.services.route_service import RouteParser
from app.state_machine.session_store import get_session_store
from app.state_machine.wizard import ConversationWizard

logger = get_logger(__name__)

router = APIRouter()

UNEXPECTED_ERROR_TEXT = "❌ Something went wrong. Please try again later."


class TelegramUser(BaseModel):
    id: int
    first_name: str = ""
    last_name: Optional[str] = None
    username: Optional[str] = None


class TelegramChat(BaseModel):
    id: int
    type: str
    is_forum: Optional[bool] = None


class TelegramMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: int
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    chat: TelegramChat
    text: Optional[str] = None
    date: int
    # נושא (topic) בקבוצת פורום
    message_thread_id: Optional[int] = None
    is_topic_message: Optional[bool] = None
    reply_to_message: Optional["TelegramMessage"] = None


TelegramMessage.model_rebuild()


class TelegramCallbackQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    message: Optional[TelegramMessage] = None
    data: Optional[str] = None


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None
    callback_query: Optional[TelegramCallbackQuery] = None


@dataclass(frozen=True)
class _InboundTelegramEvent:
    """אירוע נכנס מנורמל מה-update של טלגרם"""

    context: CommandContext
    text: str
    is_callback: bool
    callback_query_id: Optional[str] = None
    # ההודעה שעליה נלחץ הכפתור (לעריכה במקום)
    message_id: Optional[int] = None


def _participant(user: TelegramUser) -> Participant:
    return Participant(
        user_id=user.id,
        username=user.username or "",
        first_name=user.first_name or "",
        last_name=user.last_name or "",
    )


def _thread_id(message: TelegramMessage) -> Optional[int]:
    # message_thread_id רלוונטי רק להודעות בתוך נושא של פורום
    if message.is_topic_message and message.message_thread_id is not None:
        return message.message_thread_id
    return None


def _parse_inbound_event(update: TelegramUpdate) -> Optional[_InboundTelegramEvent]:
    """נרמול update לאירוע אחיד (טקסט/כפתור)."""
    if update.callback_query:
        callback = update.callback_query
        message = callback.message
        if callback.from_user is None or message is None:
            logger.warning(
                "Telegram callback_query without from_user or message; skipping processing",
                extra_data={"callback_query_id": callback.id},
            )
            return None

        # חשוב: זיהוי משתמש לפי from_user.id (מי לחץ), לא לפי chat.id (איפה ההודעה)
        context = CommandContext(
            user=_participant(callback.from_user),
            chat_id=message.chat.id,
            chat_type=message.chat.type,
            thread_id=_thread_id(message),
        )
        return _InboundTelegramEvent(
            context=context,
            text=callback.data or "",
            is_callback=True,
            callback_query_id=callback.id,
            message_id=message.message_id,
        )

    if update.message:
        message = update.message
        if message.from_user is None or not message.text:
            return None

        context = CommandContext(
            user=_participant(message.from_user),
            chat_id=message.chat.id,
            chat_type=message.chat.type,
            thread_id=_thread_id(message),
            reply_text=message.reply_to_message.text if message.reply_to_message else None,
        )
        return _InboundTelegramEvent(context=context, text=message.text, is_callback=False)

    return None


def get_messaging_gateway() -> TelegramGateway:
    return TelegramGateway()


def get_route_parser() -> RouteParser:
    return RouteParser()


def get_command_service(
    db: AsyncSession = Depends(get_db),
    gateway: TelegramGateway = Depends(get_messaging_gateway),
    route_parser: RouteParser = Depends(get_route_parser),
) -> RideCommandService:
    """Wire the ride services for one webhook request"""
    rides = RideStateMachine(SqlAlchemyRideStore(db))
    engine = MessagePropagationEngine(rides, gateway)
    wizard = ConversationWizard(get_session_store(), rides, engine, route_parser)
    return RideCommandService(rides, ParticipationTracker(rides), engine, wizard, route_parser)


async def _deliver_reply(gateway: TelegramGateway, event: _InboundTelegramEvent, reply: Optional[BotReply]) -> None:
    """שליחת התשובה למשתמש (הודעה / עריכה / toast)"""
    if event.is_callback and event.callback_query_id:
        # תמיד עונים ל-callback כדי להסיר את מצב הטעינה
        await gateway.answer_callback_query(
            event.callback_query_id,
            reply.toast if reply else None,
            show_alert=reply.show_alert if reply else False,
        )

    if reply is None or not reply.text:
        return

    context = event.context
    if reply.edit and event.message_id is not None:
        await gateway.edit_text(context.chat_id, event.message_id, reply.text, reply.keyboard)
        return
    await gateway.send_text(context.chat_id, reply.text, reply.keyboard, thread_id=context.thread_id)


@router.post(
    "/webhook",
    summary="Webhook - Telegram (incoming updates)",
    description=(
        "Entry point for Telegram Bot API updates: bot commands, "
        "wizard answers and inline button presses."
    ),
)
async def telegram_webhook(
    update: TelegramUpdate,
    background_tasks: BackgroundTasks,
    _: None = Depends(verify_telegram_webhook_token),
    service: RideCommandService = Depends(get_command_service),
    gateway: TelegramGateway = Depends(get_messaging_gateway),
):
    """
    Handle incoming Telegram updates.

    Always answers {"ok": true} once the update is routed, so Telegram does
    not redeliver it; failures are logged and reported to the user.
    """
    event = _parse_inbound_event(update)
    if event is None:
        if update.callback_query:
            # עונים גם לכפתור שלא ניתן לעבד, אחרת הטעינה נשארת אצל המשתמש
            background_tasks.add_task(gateway.answer_callback_query, update.callback_query.id)
        return {"ok": True}

    try:
        if event.is_callback:
            reply = await service.handle_callback(event.context, event.text)
        else:
            reply = await service.handle_message(event.context, event.text)
    except Exception as e:
        logger.error(
            "Telegram update processing failed",
            extra_data={
                "update_id": update.update_id,
                "user_id": event.context.user_id,
                "chat_id": event.context.chat_id,
                "error": str(e),
            },
            exc_info=True,
        )
        if event.is_callback:
            reply = BotReply(toast="An error occurred")
        else:
            reply = BotReply(UNEXPECTED_ERROR_TEXT)

    background_tasks.add_task(_deliver_reply, gateway, event, reply)
    return {"ok": True}
