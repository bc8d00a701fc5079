"""
Ride Wizard - collects or edits ride fields over several messages

One session per (user, chat). Each text message answers the current step:
invalid input re-prompts the same step, valid input advances exactly one
step. Nothing is written to the store before the user confirms.
"""
from html import escape
from typing import Any, Optional

from app.core.exceptions import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    NotFoundError,
    SessionNotFoundError,
    ValidationError,
)
from app.core.logging import get_logger
from app.core.validation import (
    CLEAR_TOKEN,
    DateTimeParser,
    DurationParser,
    SpeedParser,
    is_valid_url,
    normalize_category,
    parse_distance,
)
from app.domain.models import DEFAULT_CATEGORY, RIDE_CATEGORIES, RIDE_FIELDS, Destination, Ride
from app.domain.services.card_renderer import Buttons, RideCardRenderer, format_when
from app.domain.services.propagation_service import MessagePropagationEngine
from app.domain.services.ride_service import RideStateMachine
from app.domain.services.route_service import RouteParser
from app.state_machine.session_store import ConversationSession, SessionStore
from app.state_machine.states import REQUIRED_STEPS, STEP_FIELDS, WizardStep, next_step

logger = get_logger(__name__)

# טוקן דילוג בהודעת טקסט (שקול לכפתור Skip / Keep)
SKIP_TOKEN = "/skip"

_CLEAR_HINT = "\n<i>Send a dash (-) to clear this field or /skip to keep it</i>"

STEP_PROMPTS = {
    WizardStep.TITLE: "📝 Please enter the ride title:",
    WizardStep.CATEGORY: "🚲 Please select the ride category:",
    WizardStep.DATETIME: (
        "📅 When is the ride?\n"
        "You can use natural language like:\n"
        "• tomorrow at 6pm\n"
        "• in 2 hours\n"
        "• next saturday 10am\n"
        "• 21 Jul 14:30"
    ),
    WizardStep.MEETING_POINT: "📍 Please enter the meeting point:" + _CLEAR_HINT,
    WizardStep.ROUTE: "🔗 Please enter the route link:" + _CLEAR_HINT,
    WizardStep.DISTANCE: "📏 Please enter the distance in kilometers:" + _CLEAR_HINT,
    WizardStep.DURATION: '⏱ Please enter the duration (e.g. "2h 30m", "90m", "1.5h"):' + _CLEAR_HINT,
    WizardStep.SPEED: "🚴 Please enter the speed range in km/h (e.g. 25-28):" + _CLEAR_HINT,
    WizardStep.INFO: "ℹ️ Please enter any additional information:" + _CLEAR_HINT,
}

REQUIRED_FIELD_ERROR = "❌ This field is required."


class WizardReply:
    """Response to be sent to the user"""

    def __init__(
        self,
        text: str,
        keyboard: Optional[list[list[dict[str, str]]]] = None,
        done: bool = False,
        ride: Optional[Ride] = None,
    ):
        self.text = text
        self.keyboard = keyboard or []
        # האשף הסתיים (נוצר/עודכן/בוטל) והסשן נמחק
        self.done = done
        self.ride = ride


def _button(text: str, action: str) -> dict[str, str]:
    return {"text": text, "callback_data": f"wiz:{action}"}


class ConversationWizard:
    """Turn-based ride input; commits through the state machine, then propagates"""

    def __init__(
        self,
        sessions: SessionStore,
        rides: RideStateMachine,
        engine: MessagePropagationEngine,
        route_parser: Optional[RouteParser] = None,
        renderer: Optional[RideCardRenderer] = None,
    ):
        self.sessions = sessions
        self.rides = rides
        self.engine = engine
        self.route_parser = route_parser or RouteParser()
        self.renderer = renderer or engine.renderer

    # ==================== Entry points ====================

    def has_session(self, user_id: int, chat_id: int) -> bool:
        return self.sessions.get(user_id, chat_id) is not None

    def start(
        self,
        user_id: int,
        chat_id: int,
        prefill: Optional[dict[str, Any]] = None,
        is_update: bool = False,
        original_ride_id: Optional[str] = None,
        thread_id: Optional[int] = None,
    ) -> WizardReply:
        """Open a new session (replacing any earlier one for the same user and chat)"""
        if self.sessions.delete(user_id, chat_id):
            logger.info("Wizard session superseded", extra_data={"user_id": user_id, "chat_id": chat_id})

        collected = {key: value for key, value in (prefill or {}).items() if key in RIDE_FIELDS}
        session = ConversationSession(
            user_id=user_id,
            chat_id=chat_id,
            collected=collected,
            is_update=is_update,
            original_ride_id=original_ride_id,
            thread_id=thread_id,
        )
        self.sessions.put(session)

        logger.info(
            "Wizard started",
            extra_data={
                "user_id": user_id,
                "chat_id": chat_id,
                "is_update": is_update,
                "original_ride_id": original_ride_id,
                "prefilled": sorted(collected),
            },
        )
        return self._prompt(session)

    async def handle_input(self, user_id: int, chat_id: int, text: str) -> Optional[WizardReply]:
        """
        Interpret a text message as the answer to the current step.

        Returns None when the user has no live session, so the caller can
        treat the message as ordinary chat.
        """
        try:
            session = self.sessions.require(user_id, chat_id)
        except SessionNotFoundError:
            return None

        text = (text or "").strip()

        # בשלב האישור כל טקסט מציג מחדש את הסיכום
        if session.step == WizardStep.CONFIRM:
            self.sessions.put(session)
            return self._prompt(session)

        if text.lower() == SKIP_TOKEN:
            return self._skip(session)

        handler = self._get_handler(session.step)
        try:
            updates = await handler(text, session)
        except ValidationError as e:
            self.sessions.put(session)
            return self._prompt(session, error=e.message)

        session.collected.update(updates)
        self._advance(session)
        self.sessions.put(session)
        return self._prompt(session)

    async def handle_action(
        self,
        user_id: int,
        chat_id: int,
        action: str,
        value: Optional[str] = None,
    ) -> Optional[WizardReply]:
        """Button press: back, skip / keep, cancel, confirm, category"""
        try:
            session = self.sessions.require(user_id, chat_id)
        except SessionNotFoundError:
            return None

        if action == "cancel":
            self.sessions.delete(user_id, chat_id)
            logger.info("Wizard cancelled", extra_data={"user_id": user_id, "chat_id": chat_id})
            return WizardReply(
                "Ride update cancelled." if session.is_update else "Ride creation cancelled.",
                done=True,
            )

        if action == "back":
            if session.history:
                session.step = session.history.pop()
            self.sessions.put(session)
            return self._prompt(session)

        if action in ("skip", "keep"):
            return self._skip(session)

        if action == "category" and session.step == WizardStep.CATEGORY:
            session.collected["category"] = normalize_category(value)
            self._advance(session)
            self.sessions.put(session)
            return self._prompt(session)

        if action == "confirm" and session.step == WizardStep.CONFIRM:
            return await self._confirm(session)

        logger.warning(
            "Wizard action not valid for current step",
            extra_data={"user_id": user_id, "chat_id": chat_id, "action": action, "step": session.step.value},
        )
        self.sessions.put(session)
        return self._prompt(session)

    # ==================== Transitions ====================

    @staticmethod
    def _has_value(session: ConversationSession, step: WizardStep) -> bool:
        return any(session.collected.get(name) not in (None, "") for name in STEP_FIELDS[step])

    def _advance(self, session: ConversationSession) -> None:
        target = next_step(session.step)
        if target is None:
            return
        session.history.append(session.step)
        session.step = target

    def _skip(self, session: ConversationSession) -> WizardReply:
        if session.step == WizardStep.CONFIRM:
            self.sessions.put(session)
            return self._prompt(session)
        if session.step in REQUIRED_STEPS and not self._has_value(session, session.step):
            self.sessions.put(session)
            return self._prompt(session, error=REQUIRED_FIELD_ERROR)

        self._advance(session)
        self.sessions.put(session)
        return self._prompt(session)

    async def _confirm(self, session: ConversationSession) -> WizardReply:
        fields = {key: value for key, value in session.collected.items() if key in RIDE_FIELDS}

        try:
            if session.is_update:
                ride = await self.rides.update(session.original_ride_id, fields, session.user_id)
            else:
                ride = await self.rides.create(fields, session.user_id)
        except ValidationError as e:
            # נשארים בשלב האישור כדי לתקן שדה בלי להתחיל מחדש
            self.sessions.put(session)
            return self._prompt(session, error=f"❌ {e.message}")
        except (AuthorizationError, NotFoundError, ConflictError) as e:
            self.sessions.delete(session.user_id, session.chat_id)
            return WizardReply(f"❌ {e.message}", done=True)

        self.sessions.delete(session.user_id, session.chat_id)

        if session.is_update:
            result = await self.engine.synchronize(ride)
            return WizardReply(f"✅ Ride updated successfully!\n{result.summary()}", done=True, ride=result.ride or ride)

        destination = Destination(chat_id=session.chat_id, thread_id=session.thread_id)
        try:
            await self.engine.announce(ride, destination)
        except (GatewayError, ConflictError) as e:
            logger.warning(
                "Ride created but not posted",
                extra_data={"ride_id": ride.id, "chat_id": session.chat_id, "error": str(e)},
            )
            return WizardReply(
                f"✅ Ride created, but I couldn't post it here.\n"
                f"Use /shareride {ride.id} in a chat to post it.",
                done=True,
                ride=ride,
            )
        return WizardReply(
            f"✅ Ride created! Use /shareride {ride.id} to post it in other chats.",
            done=True,
            ride=ride,
        )

    # ==================== Step handlers ====================

    def _get_handler(self, step: WizardStep):
        """Get handler function for step"""
        handlers = {
            WizardStep.TITLE: self._handle_title,
            WizardStep.CATEGORY: self._handle_category,
            WizardStep.DATETIME: self._handle_datetime,
            WizardStep.MEETING_POINT: self._handle_meeting_point,
            WizardStep.ROUTE: self._handle_route,
            WizardStep.DISTANCE: self._handle_distance,
            WizardStep.DURATION: self._handle_duration,
            WizardStep.SPEED: self._handle_speed,
            WizardStep.INFO: self._handle_info,
        }
        return handlers[step]

    async def _handle_title(self, text: str, session: ConversationSession) -> dict[str, Any]:
        if not text or text == CLEAR_TOKEN:
            raise ValidationError("❌ Title cannot be empty.", field="title")
        return {"title": text}

    async def _handle_category(self, text: str, session: ConversationSession) -> dict[str, Any]:
        if text == CLEAR_TOKEN:
            return {"category": DEFAULT_CATEGORY}
        return {"category": normalize_category(text)}

    async def _handle_datetime(self, text: str, session: ConversationSession) -> dict[str, Any]:
        return {"date": DateTimeParser.parse(text)}

    async def _handle_meeting_point(self, text: str, session: ConversationSession) -> dict[str, Any]:
        return {"meeting_point": None if text == CLEAR_TOKEN else text}

    async def _handle_route(self, text: str, session: ConversationSession) -> dict[str, Any]:
        if text == CLEAR_TOKEN:
            return {"route_link": None}
        if not is_valid_url(text):
            raise ValidationError(
                "❌ Invalid route URL format. Please provide a valid URL, "
                "send a dash (-) to clear the field or /skip.",
                field="route_link",
            )

        updates: dict[str, Any] = {"route_link": text}
        if self.route_parser.is_known_provider(text):
            info = await self.route_parser.parse(text)
            # ממלאים מרחק/משך רק אם עדיין ריקים
            if info is not None:
                if info.distance is not None and session.collected.get("distance") is None:
                    updates["distance"] = info.distance
                if info.duration is not None and session.collected.get("duration") is None:
                    updates["duration"] = info.duration
        return updates

    async def _handle_distance(self, text: str, session: ConversationSession) -> dict[str, Any]:
        return {"distance": None if text == CLEAR_TOKEN else parse_distance(text)}

    async def _handle_duration(self, text: str, session: ConversationSession) -> dict[str, Any]:
        return {"duration": None if text == CLEAR_TOKEN else DurationParser.parse(text)}

    async def _handle_speed(self, text: str, session: ConversationSession) -> dict[str, Any]:
        if text == CLEAR_TOKEN:
            return {"speed_min": None, "speed_max": None}
        speed_min, speed_max = SpeedParser.parse(text)
        if speed_min is not None and speed_max is not None and speed_min > speed_max:
            raise ValidationError("❌ Minimum speed cannot be greater than maximum speed.", field="speed_min")
        return {"speed_min": speed_min, "speed_max": speed_max}

    async def _handle_info(self, text: str, session: ConversationSession) -> dict[str, Any]:
        return {"additional_info": None if text == CLEAR_TOKEN else text}

    # ==================== Prompts ====================

    def _current_value(self, session: ConversationSession) -> Optional[str]:
        collected = session.collected
        step = session.step
        if not self._has_value(session, step):
            return None
        if step == WizardStep.DATETIME:
            return format_when(collected["date"], self.renderer.tz)
        if step == WizardStep.DISTANCE:
            return f"{collected['distance']:g} km"
        if step == WizardStep.DURATION:
            return DurationParser.format(collected["duration"])
        if step == WizardStep.SPEED:
            return SpeedParser.format(collected.get("speed_min"), collected.get("speed_max"))
        return escape(str(collected[STEP_FIELDS[step][0]]))

    def _keyboard(self, session: ConversationSession) -> list[list[dict[str, str]]]:
        rows: list[list[dict[str, str]]] = []
        if session.step == WizardStep.CATEGORY:
            rows.extend(
                [{"text": category, "callback_data": f"wizcat:{category}"}]
                for category in RIDE_CATEGORIES
            )

        if session.step == WizardStep.CONFIRM:
            confirm = Buttons.WIZARD_UPDATE if session.is_update else Buttons.WIZARD_CREATE
            rows.append([_button(confirm, "confirm")])
            rows.append([_button(Buttons.WIZARD_BACK, "back"), _button(Buttons.WIZARD_CANCEL, "cancel")])
            return rows

        navigation = []
        if session.history:
            navigation.append(_button(Buttons.WIZARD_BACK, "back"))
        if self._has_value(session, session.step):
            navigation.append(_button(Buttons.WIZARD_KEEP, "keep"))
        elif session.step not in REQUIRED_STEPS:
            navigation.append(_button(Buttons.WIZARD_SKIP, "skip"))
        navigation.append(_button(Buttons.WIZARD_CANCEL, "cancel"))
        rows.append(navigation)
        return rows

    def _prompt(self, session: ConversationSession, error: Optional[str] = None) -> WizardReply:
        parts = []
        if error:
            parts.append(error)

        if session.step == WizardStep.CONFIRM:
            parts.append(self.renderer.render_confirmation(session.collected, session.is_update))
        else:
            parts.append(STEP_PROMPTS[session.step])
            current = self._current_value(session)
            if current:
                parts.append(f"Current value: {current}")

        return WizardReply("\n\n".join(parts), keyboard=self._keyboard(session))
