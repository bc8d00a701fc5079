"""
Ride card rendering (Telegram HTML).

The same card body is posted to every destination of a ride; the ride id
marker at the bottom ("🎫 #Ride #<id>") lets commands sent as a reply to a
card find the ride.
"""
from datetime import datetime, tzinfo
from html import escape
from typing import Any, Iterable, Optional

from app.core.config import settings
from app.core.validation import DurationParser, SpeedParser
from app.domain.models import (
    DEFAULT_CATEGORY,
    Participant,
    ParticipationState,
    RenderedCard,
    Ride,
    RidePage,
)


class Buttons:
    JOIN = "I'm in! 🚴"
    THINKING = "Maybe 🤔"
    PASS = "Pass 🙅"
    PREVIOUS = "◀️ Previous"
    NEXT = "Next ▶️"
    CONFIRM_DELETE = "Yes, delete ❌"
    CANCEL_DELETE = "No, keep it ✅"

    # אשף
    WIZARD_BACK = "◀️ Back"
    WIZARD_SKIP = "⏩ Skip"
    WIZARD_KEEP = "⏩ Keep current"
    WIZARD_CANCEL = "❌ Cancel"
    WIZARD_CREATE = "✅ Create"
    WIZARD_UPDATE = "✅ Update"


CANCELLED_BADGE = "❌ CANCELLED"
NO_PARTICIPANTS = "No one yet"

# callback_data: "<state>:<ride_id>"
PARTICIPATION_CALLBACKS = {
    ParticipationState.JOINED: "join",
    ParticipationState.THINKING: "thinking",
    ParticipationState.SKIPPED: "skip",
}


def format_when(date: datetime, tz: Optional[tzinfo] = None) -> str:
    local = date.astimezone(tz or settings.timezone)
    return f"{local.strftime(settings.DATE_FORMAT)} at {local.strftime(settings.TIME_FORMAT)}"


def _mention(participant: Participant) -> str:
    return f'<a href="tg://user?id={participant.user_id}">{escape(participant.display_name)}</a>'


def _mentions(participants: Iterable[Participant]) -> str:
    names = [_mention(p) for p in participants]
    return ", ".join(names) if names else NO_PARTICIPANTS


def _number(value: float) -> str:
    return f"{value:g}"


class RideCardRenderer:
    """Pure function of (ride, participants) -> RenderedCard"""

    def __init__(self, tz: Optional[tzinfo] = None):
        self.tz = tz

    def render(self, ride: Ride, participants: Optional[list[Participant]] = None) -> RenderedCard:
        if participants is None:
            participants = list(ride.participants.values())

        joined = [p for p in participants if p.state == ParticipationState.JOINED]
        thinking = [p for p in participants if p.state == ParticipationState.THINKING]
        skipped = [p for p in participants if p.state == ParticipationState.SKIPPED]

        badge = f" {CANCELLED_BADGE}" if ride.cancelled else ""
        lines = [f"🚲 <b>{escape(ride.title)}</b>{badge}", ""]
        lines.extend(self.detail_lines(ride.descriptive_fields()))
        lines.append("")
        lines.append(f"🚴 Joined ({len(joined)}): {_mentions(joined)}")
        lines.append(f"🤔 Thinking ({len(thinking)}): {_mentions(thinking)}")
        lines.append(f"🙅 Not interested: {len(skipped)}")
        lines.append("")
        lines.append(f"🎫 #Ride #{ride.id}")
        if ride.cancelled:
            lines.append("")
            lines.append("This ride has been cancelled.")

        return RenderedCard(body="\n".join(lines), controls=self.controls(ride))

    def controls(self, ride: Ride) -> list[list[dict[str, str]]]:
        # לרכיבה מבוטלת אין כפתורי השתתפות
        if ride.cancelled:
            return []
        return [[
            {"text": Buttons.JOIN, "callback_data": f"{PARTICIPATION_CALLBACKS[ParticipationState.JOINED]}:{ride.id}"},
            {"text": Buttons.THINKING, "callback_data": f"{PARTICIPATION_CALLBACKS[ParticipationState.THINKING]}:{ride.id}"},
            {"text": Buttons.PASS, "callback_data": f"{PARTICIPATION_CALLBACKS[ParticipationState.SKIPPED]}:{ride.id}"},
        ]]

    def detail_lines(self, fields: dict[str, Any]) -> list[str]:
        """Ride field lines shared by the card and the wizard confirmation"""
        lines = []
        category = fields.get("category")
        if category and category != DEFAULT_CATEGORY:
            lines.append(f"🚵 Category: {escape(category)}")
        if fields.get("organizer"):
            lines.append(f"👤 Organizer: {escape(fields['organizer'])}")
        if fields.get("date"):
            lines.append(f"📅 When: {format_when(fields['date'], self.tz)}")
        if fields.get("meeting_point"):
            lines.append(f"📍 Meeting point: {escape(fields['meeting_point'])}")
        if fields.get("route_link"):
            lines.append(f'🔄 Route: <a href="{escape(fields["route_link"], quote=True)}">Link</a>')
        if fields.get("distance") is not None:
            lines.append(f"📏 Distance: {_number(fields['distance'])} km")
        if fields.get("duration") is not None:
            lines.append(f"⏱ Duration: {DurationParser.format(fields['duration'])}")
        speed = SpeedParser.format(fields.get("speed_min"), fields.get("speed_max"))
        if speed:
            lines.append(f"⚡ Speed: {speed}")
        if fields.get("additional_info"):
            lines.append(f"ℹ️ Info: {escape(fields['additional_info'])}")
        return lines

    def render_confirmation(self, fields: dict[str, Any], is_update: bool) -> str:
        header = f"<b>Please confirm the {'update' if is_update else 'ride'} details:</b>"
        title = fields.get("title") or ""
        category = fields.get("category") or DEFAULT_CATEGORY
        lines = [header, "", f"📝 Title: {escape(title)}", f"🚲 Category: {escape(category)}"]
        lines.extend(line for line in self.detail_lines(fields) if not line.startswith("🚵"))
        return "\n".join(lines)

    def render_list(self, page: RidePage, page_number: int, total_pages: int) -> str:
        if not page.rides:
            return "You have not created any rides yet."

        lines = ["🚲 <b>Your Rides</b>", ""]
        for ride in page.rides:
            status = f" {CANCELLED_BADGE}" if ride.cancelled else ""
            lines.append(f"<b>{escape(ride.title)}</b>{status}")
            lines.append(f"📅 {format_when(ride.date, self.tz)}")
            lines.append(f"👥 Joined: {len(ride.participants_in(ParticipationState.JOINED))}")
            lines.append(f"🎫 Ride #{ride.id}")
            lines.append("")
        lines.append(f"Page {page_number}/{total_pages}")
        return "\n".join(lines)

    def render_participants(self, ride: Ride, grouped: dict[ParticipationState, list[Participant]]) -> str:
        joined = grouped[ParticipationState.JOINED]
        thinking = grouped[ParticipationState.THINKING]
        skipped = grouped[ParticipationState.SKIPPED]
        total = len(joined) + len(thinking) + len(skipped)

        lines = [f"👥 <b>Participants for \"{escape(ride.title)}\"</b> ({total})", ""]
        for label, group in (("🚴 Joined", joined), ("🤔 Thinking", thinking), ("🙅 Not interested", skipped)):
            if group:
                lines.append(f"<b>{label} ({len(group)}):</b>")
                lines.extend(f"• {_mention(p)}" for p in group)
                lines.append("")
        if total == 0:
            lines.append(NO_PARTICIPANTS)
        return "\n".join(lines).rstrip()
