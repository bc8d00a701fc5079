"""
Ride Command Service - bot commands and inline buttons

Turns a normalized inbound event (command, free text or button press) into
calls on the ride state machine, the participation tracker, the propagation
engine and the wizard, and phrases the result for the user. Transport is
left to the caller: every handler returns a BotReply.
"""
import math
import re
from dataclasses import dataclass, replace
from typing import Any, Optional

from app.core.config import settings
from app.core.exceptions import (
    AppException,
    AuthorizationError,
    GatewayError,
    RideNotFoundError,
    ValidationError,
)
from app.core.logging import get_logger
from app.core.validation import CommandParams, extract_ride_id
from app.domain.models import Destination, Participant, ParticipationState, Ride
from app.domain.services.card_renderer import PARTICIPATION_CALLBACKS, Buttons, RideCardRenderer
from app.domain.services.participation_service import ParticipationTracker
from app.domain.services.propagation_service import MessagePropagationEngine
from app.domain.services.ride_service import RideStateMachine, default_duplicate_date
from app.domain.services.route_service import RouteParser
from app.state_machine.wizard import SKIP_TOKEN, ConversationWizard, WizardReply

logger = get_logger(__name__)

COMMAND_RE = re.compile(r"^/(?P<name>[a-zA-Z_]+)(?:@(?P<bot>\w+))?(?:\s+(?P<args>.*))?$")
PARTICIPATION_CALLBACK_RE = re.compile(r"^(?P<action>join|thinking|skip):(?P<ride_id>\w+)$")
WIZARD_CALLBACK_RE = re.compile(r"^wiz:(?P<action>\w+)$")
WIZARD_CATEGORY_CALLBACK_RE = re.compile(r"^wizcat:(?P<category>.+)$")
DELETE_CALLBACK_RE = re.compile(r"^delete:(?P<action>confirm|cancel):(?P<ride_id>\w+)$")
LIST_CALLBACK_RE = re.compile(r"^list:(?P<page>\d+)$")

_CALLBACK_STATES = {name: state for state, name in PARTICIPATION_CALLBACKS.items()}

PARTICIPATION_TOASTS = {
    ParticipationState.JOINED: "You have joined the ride!",
    ParticipationState.THINKING: "You are thinking about this ride",
    ParticipationState.SKIPPED: "You have passed on this ride",
}
PARTICIPATION_UNCHANGED_TOASTS = {
    ParticipationState.JOINED: "You have already joined this ride",
    ParticipationState.THINKING: "You are already thinking about this ride",
    ParticipationState.SKIPPED: "You have already passed on this ride",
}

WIZARD_PRIVATE_ONLY = (
    "⚠️ Wizard commands are only available in private chats with the bot. "
    "Please use the command with parameters instead."
)
DELETE_CONFIRMATION = "⚠️ Are you sure you want to delete this ride? This action cannot be undone."

START_TEXT = (
    "<b>🚲 Welcome to Ride Bot!</b>\n\n"
    "I help you announce group bike rides in several chats at once and keep "
    "every announcement up to date.\n\n"
    "<b>Quick start:</b>\n"
    "1. Send /newride here to create a ride with the wizard\n"
    "2. Join your ride with the buttons on the card\n"
    "3. Post it to other chats with /shareride@{bot} RIDE_ID\n"
    "4. Participants and changes sync everywhere automatically\n\n"
    "Send /help for all commands."
)

HELP_TEXT = (
    "<b>🚲 Ride Bot Help</b>\n\n"
    "<b>➕ /newride</b>\n"
    "Without parameters starts the wizard (private chat only). "
    "With parameters, one per line:\n"
    "<pre>/newride\n"
    "title: Evening Ride\n"
    "when: tomorrow at 6pm\n"
    "category: Road Ride\n"
    "organizer: Jane\n"
    "meet: Bike shop on Main St\n"
    "route: https://www.strava.com/routes/123456\n"
    "dist: 35\n"
    "duration: 2h 30m\n"
    "speed: 25-28\n"
    "info: Bring lights</pre>\n\n"
    "<b>Managing a ride</b> (creator only)\n"
    "Refer to a ride by ID (<code>/cancelride abc123</code>), with an <code>id:</code> "
    "parameter, or by replying to the ride card.\n"
    "• /updateride - change details (no parameters starts the wizard)\n"
    "• /cancelride and /resumeride\n"
    "• /deleteride - asks for confirmation\n"
    "• /dupride - copy a ride, by default to the next day\n"
    "• /shareride@{bot} RIDE_ID - post the ride in the current chat\n\n"
    "<b>Other</b>\n"
    "• /listrides - the rides you created\n"
    "• /listparticipants RIDE_ID - who is in\n\n"
    "Send a dash (-) as a value to clear an optional field."
)


@dataclass(frozen=True)
class CommandContext:
    """Who sent an event, and where"""

    user: Participant
    chat_id: int
    chat_type: str = "private"
    thread_id: Optional[int] = None
    # טקסט ההודעה שעליה המשתמש הגיב (לזיהוי רכיבה לפי הכרטיס)
    reply_text: Optional[str] = None

    @property
    def user_id(self) -> int:
        return self.user.user_id

    @property
    def is_private(self) -> bool:
        return self.chat_type == "private"

    @property
    def destination(self) -> Destination:
        return Destination(chat_id=self.chat_id, thread_id=self.thread_id)


class BotReply:
    """What to send back: a message, an edit of the pressed message, and/or a toast"""

    def __init__(
        self,
        text: Optional[str] = None,
        keyboard: Optional[list[list[dict[str, str]]]] = None,
        toast: Optional[str] = None,
        show_alert: bool = False,
        edit: bool = False,
    ):
        self.text = text
        self.keyboard = keyboard or []
        self.toast = toast
        self.show_alert = show_alert
        # True: לערוך את ההודעה שעליה נלחץ הכפתור במקום לשלוח הודעה חדשה
        self.edit = edit

    @classmethod
    def from_wizard(cls, reply: WizardReply, edit: bool = False) -> "BotReply":
        return cls(text=reply.text, keyboard=reply.keyboard, edit=edit)


def _error_text(error: AppException) -> str:
    if isinstance(error, RideNotFoundError):
        return f"❌ Ride #{error.ride_id} not found."
    # הודעות פירוס תאריך כבר מתחילות ב-❌
    if error.message.startswith("❌"):
        return error.message
    return f"❌ {error.message}"


class RideCommandService:
    """Routes bot commands and button presses to the ride services"""

    def __init__(
        self,
        rides: RideStateMachine,
        tracker: ParticipationTracker,
        engine: MessagePropagationEngine,
        wizard: ConversationWizard,
        route_parser: Optional[RouteParser] = None,
        renderer: Optional[RideCardRenderer] = None,
    ):
        self.rides = rides
        self.tracker = tracker
        self.engine = engine
        self.wizard = wizard
        self.route_parser = route_parser or RouteParser()
        self.renderer = renderer or engine.renderer

    # ==================== Messages ====================

    async def handle_message(self, ctx: CommandContext, text: str) -> Optional[BotReply]:
        """
        Route a text message: a bot command, or an answer to the wizard.

        Returns None when there is nothing to say (plain chat, or a command
        addressed to another bot).
        """
        text = (text or "").strip()
        if not text:
            return None

        first_line = text.split("\n", 1)[0].strip()
        match = COMMAND_RE.match(first_line)
        if match is None:
            reply = await self.wizard.handle_input(ctx.user_id, ctx.chat_id, text)
            return BotReply.from_wizard(reply) if reply else None

        bot_name = match.group("bot")
        if bot_name and bot_name.lower() != settings.BOT_USERNAME.lower():
            return None

        name = match.group("name").lower()
        if f"/{name}" == SKIP_TOKEN:
            reply = await self.wizard.handle_input(ctx.user_id, ctx.chat_id, SKIP_TOKEN)
            return BotReply.from_wizard(reply) if reply else None

        handler = self._get_handler(name)
        if handler is None:
            return None

        logger.info(
            "Bot command received",
            extra_data={"command": name, "user_id": ctx.user_id, "chat_id": ctx.chat_id, "thread_id": ctx.thread_id},
        )
        try:
            return await handler(ctx, (match.group("args") or "").strip(), text)
        except AppException as e:
            logger.info(
                "Bot command rejected",
                extra_data={"command": name, "user_id": ctx.user_id, "error_code": e.error_code.value, "error": e.message},
            )
            return BotReply(_error_text(e))

    def _get_handler(self, command: str):
        """Get handler function for command"""
        handlers = {
            "start": self._handle_start,
            "help": self._handle_help,
            "newride": self._handle_new_ride,
            "updateride": self._handle_update_ride,
            "cancelride": self._handle_cancel_ride,
            "resumeride": self._handle_resume_ride,
            "deleteride": self._handle_delete_ride,
            "dupride": self._handle_duplicate_ride,
            "shareride": self._handle_share_ride,
            "postride": self._handle_share_ride,
            "listrides": self._handle_list_rides,
            "listparticipants": self._handle_list_participants,
        }
        return handlers.get(command)

    # ==================== Helpers ====================

    @staticmethod
    def _params(text: str) -> dict[str, str]:
        return CommandParams.parse(text)

    @staticmethod
    def _field_params(params: dict[str, str]) -> dict[str, str]:
        return {key: value for key, value in params.items() if key != "id"}

    @staticmethod
    def _require_ride_id(ctx: CommandContext, args: str, params: dict[str, str]) -> str:
        ride_id = extract_ride_id(args, params, ctx.reply_text)
        if not ride_id:
            raise ValidationError("Please provide a ride ID or reply to a ride message.", field="id")
        return ride_id

    async def _get_owned_ride(self, ride_id: str, user_id: int, action: str) -> Ride:
        ride = await self.rides.get(ride_id)
        if not self.rides.is_creator(ride, user_id):
            raise AuthorizationError(action, user_id=user_id, ride_id=ride_id)
        return ride

    async def _with_route_info(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Prefill distance/duration from a known route provider when not given"""
        link = fields.get("route_link")
        if not link or not self.route_parser.is_known_provider(link):
            return fields
        if fields.get("distance") is not None and fields.get("duration") is not None:
            return fields

        info = await self.route_parser.parse(link)
        if info is None:
            return fields
        enriched = dict(fields)
        if enriched.get("distance") is None and info.distance is not None:
            enriched["distance"] = info.distance
        if enriched.get("duration") is None and info.duration is not None:
            enriched["duration"] = info.duration
        return enriched

    async def _announce_here(self, ctx: CommandContext, ride: Ride, created_text: str) -> Optional[BotReply]:
        """Post the card in the current chat; the card itself is the reply"""
        try:
            await self.engine.announce(ride, ctx.destination)
        except GatewayError as e:
            logger.warning(
                "Could not post ride card",
                extra_data={"ride_id": ride.id, "chat_id": ctx.chat_id, "thread_id": ctx.thread_id, "error": str(e)},
            )
            return BotReply(f"{created_text}, but I couldn't post it in this chat.\nRide ID: <code>{ride.id}</code>")
        return None

    # ==================== Commands ====================

    async def _handle_start(self, ctx: CommandContext, args: str, text: str) -> BotReply:
        return BotReply(START_TEXT.format(bot=settings.BOT_USERNAME))

    async def _handle_help(self, ctx: CommandContext, args: str, text: str) -> BotReply:
        return BotReply(HELP_TEXT.format(bot=settings.BOT_USERNAME))

    async def _handle_new_ride(self, ctx: CommandContext, args: str, text: str) -> Optional[BotReply]:
        params = self._params(text)
        if not params:
            if not ctx.is_private:
                return BotReply(WIZARD_PRIVATE_ONLY)
            reply = self.wizard.start(ctx.user_id, ctx.chat_id, thread_id=ctx.thread_id)
            return BotReply.from_wizard(reply)

        fields = await self._with_route_info(CommandParams.to_fields(params))
        ride = await self.rides.create(fields, ctx.user_id)
        return await self._announce_here(ctx, ride, "✅ Ride created")

    async def _handle_update_ride(self, ctx: CommandContext, args: str, text: str) -> BotReply:
        params = self._params(text)
        ride_id = self._require_ride_id(ctx, args, params)
        field_params = self._field_params(params)

        if not field_params:
            if not ctx.is_private:
                return BotReply(WIZARD_PRIVATE_ONLY)
            ride = await self._get_owned_ride(ride_id, ctx.user_id, "update")
            reply = self.wizard.start(
                ctx.user_id,
                ctx.chat_id,
                prefill=ride.descriptive_fields(),
                is_update=True,
                original_ride_id=ride.id,
                thread_id=ctx.thread_id,
            )
            return BotReply.from_wizard(reply)

        fields = await self._with_route_info(CommandParams.to_fields(field_params, is_update=True))
        ride = await self.rides.update(ride_id, fields, ctx.user_id)
        result = await self.engine.synchronize(ride)
        return BotReply(f"✅ Ride updated successfully!\n{result.summary()}")

    async def _handle_cancel_ride(self, ctx: CommandContext, args: str, text: str) -> BotReply:
        ride_id = self._require_ride_id(ctx, args, self._params(text))
        ride = await self.rides.cancel(ride_id, ctx.user_id)
        result = await self.engine.synchronize(ride)
        return BotReply(f"✅ Ride cancelled. {result.summary()}")

    async def _handle_resume_ride(self, ctx: CommandContext, args: str, text: str) -> BotReply:
        ride_id = self._require_ride_id(ctx, args, self._params(text))
        ride = await self.rides.resume(ride_id, ctx.user_id)
        result = await self.engine.synchronize(ride)
        return BotReply(f"✅ Ride resumed. {result.summary()}")

    async def _handle_delete_ride(self, ctx: CommandContext, args: str, text: str) -> BotReply:
        ride_id = self._require_ride_id(ctx, args, self._params(text))
        ride = await self._get_owned_ride(ride_id, ctx.user_id, "delete")
        keyboard = [[
            {"text": Buttons.CONFIRM_DELETE, "callback_data": f"delete:confirm:{ride.id}"},
            {"text": Buttons.CANCEL_DELETE, "callback_data": f"delete:cancel:{ride.id}"},
        ]]
        return BotReply(DELETE_CONFIRMATION, keyboard=keyboard)

    async def _handle_duplicate_ride(self, ctx: CommandContext, args: str, text: str) -> Optional[BotReply]:
        params = self._params(text)
        ride_id = self._require_ride_id(ctx, args, params)
        field_params = self._field_params(params)

        if not field_params and ctx.is_private:
            source = await self._get_owned_ride(ride_id, ctx.user_id, "duplicate")
            prefill = source.descriptive_fields()
            prefill["date"] = default_duplicate_date(source)
            reply = self.wizard.start(
                ctx.user_id,
                ctx.chat_id,
                prefill=prefill,
                original_ride_id=source.id,
                thread_id=ctx.thread_id,
            )
            return BotReply.from_wizard(reply)

        # בקבוצה בלי פרמטרים: שכפול ישיר עם ברירות המחדל
        fields = await self._with_route_info(CommandParams.to_fields(field_params))
        ride = await self.rides.duplicate(ride_id, fields, ctx.user_id)
        return await self._announce_here(ctx, ride, "✅ Ride duplicated")

    async def _handle_share_ride(self, ctx: CommandContext, args: str, text: str) -> Optional[BotReply]:
        ride_id = self._require_ride_id(ctx, args, self._params(text))
        ride = await self._get_owned_ride(ride_id, ctx.user_id, "share")
        try:
            await self.engine.announce(ride, ctx.destination)
        except GatewayError as e:
            logger.warning(
                "Ride share failed",
                extra_data={"ride_id": ride.id, "chat_id": ctx.chat_id, "thread_id": ctx.thread_id, "error": str(e)},
            )
            return BotReply("❌ Failed to post the ride in this chat. Please try again later.")
        return None

    async def _handle_list_rides(self, ctx: CommandContext, args: str, text: str) -> BotReply:
        return await self._rides_page(ctx.user_id, 1)

    async def _handle_list_participants(self, ctx: CommandContext, args: str, text: str) -> BotReply:
        ride_id = self._require_ride_id(ctx, args, self._params(text))
        ride = await self.rides.get(ride_id)
        grouped = await self.tracker.get_participants(ride_id)
        return BotReply(self.renderer.render_participants(ride, grouped))

    async def _rides_page(self, user_id: int, page: int, edit: bool = False) -> BotReply:
        page_size = settings.RIDES_PAGE_SIZE
        page = max(1, page)
        result = await self.rides.list_by_creator(user_id, offset=(page - 1) * page_size, limit=page_size)
        total_pages = max(1, math.ceil(result.total / page_size))

        navigation = []
        if page > 1:
            navigation.append({"text": Buttons.PREVIOUS, "callback_data": f"list:{page - 1}"})
        if page < total_pages:
            navigation.append({"text": Buttons.NEXT, "callback_data": f"list:{page + 1}"})

        return BotReply(
            self.renderer.render_list(result, page, total_pages),
            keyboard=[navigation] if navigation else None,
            edit=edit,
        )

    # ==================== Callbacks ====================

    async def handle_callback(self, ctx: CommandContext, data: str) -> BotReply:
        """Route an inline button press; the reply always carries a toast or a message"""
        data = (data or "").strip()
        try:
            match = PARTICIPATION_CALLBACK_RE.match(data)
            if match:
                return await self._handle_participation(ctx, match.group("ride_id"), _CALLBACK_STATES[match.group("action")])

            match = WIZARD_CALLBACK_RE.match(data)
            if match:
                return await self._handle_wizard_action(ctx, match.group("action"))

            match = WIZARD_CATEGORY_CALLBACK_RE.match(data)
            if match:
                return await self._handle_wizard_action(ctx, "category", match.group("category"))

            match = DELETE_CALLBACK_RE.match(data)
            if match:
                return await self._handle_delete_decision(ctx, match.group("action"), match.group("ride_id"))

            match = LIST_CALLBACK_RE.match(data)
            if match:
                return await self._rides_page(ctx.user_id, int(match.group("page")), edit=True)
        except AppException as e:
            logger.info(
                "Callback rejected",
                extra_data={"data": data, "user_id": ctx.user_id, "error_code": e.error_code.value, "error": e.message},
            )
            return BotReply(toast=_error_text(e).removeprefix("❌ "), show_alert=True)

        logger.warning("Unknown callback data", extra_data={"data": data, "user_id": ctx.user_id})
        return BotReply()

    async def _handle_participation(
        self,
        ctx: CommandContext,
        ride_id: str,
        state: ParticipationState,
    ) -> BotReply:
        try:
            result = await self.tracker.set_participation(ride_id, replace(ctx.user, state=state), state)
        except RideNotFoundError:
            return BotReply(toast="Ride not found")

        if not result.success:
            if result.ride.cancelled:
                return BotReply(toast="This ride has been cancelled")
            return BotReply(toast=PARTICIPATION_UNCHANGED_TOASTS[state])

        sync = await self.engine.synchronize(result.ride)
        if not sync.success:
            return BotReply(toast=f"{PARTICIPATION_TOASTS[state]} (message updates failed)")
        return BotReply(toast=PARTICIPATION_TOASTS[state])

    async def _handle_wizard_action(self, ctx: CommandContext, action: str, value: Optional[str] = None) -> BotReply:
        reply = await self.wizard.handle_action(ctx.user_id, ctx.chat_id, action, value)
        if reply is None:
            return BotReply(toast="Wizard session expired")
        return BotReply.from_wizard(reply, edit=True)

    async def _handle_delete_decision(self, ctx: CommandContext, action: str, ride_id: str) -> BotReply:
        if action == "cancel":
            return BotReply("Deletion cancelled.", edit=True)

        ride = await self._get_owned_ride(ride_id, ctx.user_id, "delete")
        await self.rides.delete(ride_id, ctx.user_id)
        await self.engine.remove(ride)
        return BotReply("✅ Ride deleted successfully!", edit=True)
