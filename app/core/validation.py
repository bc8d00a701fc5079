"""
Input Validation Utilities

Parses the free-form values users type for ride fields:
- Date/time expressions (relative and absolute)
- Durations, distances and speed ranges
- Ride categories
- ``key: value`` command parameters and ride id lookup
"""
import re
from datetime import datetime, timedelta, tzinfo
from typing import Any, Optional
from urllib.parse import urlparse

from app.core.exceptions import ValidationError
from app.domain.models import DEFAULT_CATEGORY, RIDE_CATEGORIES

# ערך שמנקה שדה אופציונלי בעדכון / באשף
CLEAR_TOKEN = "-"

DATE_FORMAT_HELP = (
    "❌ I couldn't understand that date/time format. Please try something like:\n"
    "• tomorrow at 6pm\n"
    "• in 2 hours\n"
    "• next saturday 10am\n"
    "• 21 Jul 14:30"
)
PAST_DATE_ERROR = "❌ The ride can't be scheduled in the past! Please provide a future date and time."
DURATION_FORMAT_HELP = (
    "❌ I couldn't understand that duration format. Please try something like:\n"
    "• 90 (for 90 minutes)\n"
    "• 2h (for 2 hours)\n"
    "• 2h 30m (for 2 hours and 30 minutes)\n"
    "• 1.5h (for 1 hour and 30 minutes)"
)


class ValidationPatterns:
    """Regex patterns for validation"""

    # 14:30, 6:05pm, 18.30 לא נתמך (מתנגש עם DD.MM)
    TIME_HM = re.compile(r"\b(?P<h>\d{1,2}):(?P<m>\d{2})\s*(?P<ampm>am|pm)?\b")
    # 6pm, 10 am
    TIME_AMPM = re.compile(r"\b(?P<h>\d{1,2})\s*(?P<ampm>am|pm)\b")
    TIME_WORDS = re.compile(r"\b(?P<word>noon|midnight)\b")

    RELATIVE = re.compile(
        r"^in\s+(?P<n>\d+|an?|one)\s+(?P<unit>min(?:ute)?s?|hours?|hrs?|days?|weeks?)$"
    )
    WEEKDAY = re.compile(
        r"^(?:(?P<mod>next|this)\s+)?(?P<day>mon|tue|tues|wed|thu|thur|thurs|fri|sat|sun)"
        r"(?:day|sday|nesday|rsday|urday)?$"
    )
    DAY_MONTH = re.compile(r"^(?P<d>\d{1,2})(?:st|nd|rd|th)?\s+(?P<mon>[a-z]+)\.?(?:\s+(?P<y>\d{4}))?$")
    MONTH_DAY = re.compile(r"^(?P<mon>[a-z]+)\.?\s+(?P<d>\d{1,2})(?:st|nd|rd|th)?(?:\s+(?P<y>\d{4}))?$")
    NUMERIC_DATE = re.compile(r"^(?P<d>\d{1,2})[./](?P<m>\d{1,2})(?:[./](?P<y>\d{2}|\d{4}))?$")
    ISO_DATE = re.compile(r"^(?P<y>\d{4})-(?P<m>\d{1,2})-(?P<d>\d{1,2})$")

    DURATION_HOURS = re.compile(r"(\d*\.?\d+)\s*h(?:ours?|rs?)?(?![a-z])")
    DURATION_MINUTES = re.compile(r"(\d+)\s*m(?:in(?:ute)?s?)?(?![a-z])")
    DURATION_CLOCK = re.compile(r"^(\d{1,2}):(\d{2})$")

    NUMBER = re.compile(r"^\d+(?:[.,]\d+)?$")
    DISTANCE = re.compile(r"^(?P<n>\d+(?:[.,]\d+)?)\s*(?:km|k)?$")

    PARAM_LINE = re.compile(r"^\s*(\w+)\s*:\s*(.+)$")
    RIDE_ID_MARKER = re.compile(r"🎫\s*#Ride\s*#(\w+)")


_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_WEEKDAYS = {"mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6}
_DEFAULT_HOUR = 12


def _month_number(name: str) -> Optional[int]:
    key = name[:3]
    if key not in _MONTHS:
        return None
    # "sept", "september", "jul", "july": מוודאים שזה באמת שם חודש ולא מילה אקראית
    full_names = (
        "january", "february", "march", "april", "may", "june", "july",
        "august", "september", "october", "november", "december",
    )
    if any(full.startswith(name) for full in full_names) or name == "sept":
        return _MONTHS[key]
    return None


class DateTimeParser:
    """Free-form date/time parsing, always resolving forward in time"""

    @staticmethod
    def _extract_time(text: str) -> tuple[Optional[tuple[int, int]], str]:
        """מחלץ שעה מהטקסט ומחזיר (שעה, שארית הטקסט)"""
        match = ValidationPatterns.TIME_HM.search(text)
        if not match:
            match = ValidationPatterns.TIME_AMPM.search(text)
        if match:
            hour = int(match.group("h"))
            minute = int(match.groupdict().get("m") or 0)
            ampm = match.group("ampm")
            if ampm:
                if not 1 <= hour <= 12:
                    raise ValidationError(DATE_FORMAT_HELP, field="date")
                hour = hour % 12 + (12 if ampm == "pm" else 0)
            if hour > 23 or minute > 59:
                raise ValidationError(DATE_FORMAT_HELP, field="date")
            rest = (text[:match.start()] + " " + text[match.end():]).strip()
            return (hour, minute), rest

        match = ValidationPatterns.TIME_WORDS.search(text)
        if match:
            hour = 12 if match.group("word") == "noon" else 0
            rest = (text[:match.start()] + " " + text[match.end():]).strip()
            return (hour, 0), rest

        return None, text

    @staticmethod
    def _normalize(text: str) -> str:
        text = text.strip().lower()
        text = re.sub(r"(\d)t(\d)", r"\1 \2", text)  # ISO 2026-07-21T14:30
        text = re.sub(r"[,]", " ", text)
        text = re.sub(r"\bat\b", " ", text)
        text = re.sub(r"\bon\b", " ", text)
        return re.sub(r"\s+", " ", text).strip()

    @staticmethod
    def _build(year: int, month: int, day: int, time: Optional[tuple[int, int]], tz: tzinfo) -> datetime:
        hour, minute = time if time else (_DEFAULT_HOUR, 0)
        try:
            return datetime(year, month, day, hour, minute, tzinfo=tz)
        except ValueError:
            raise ValidationError(DATE_FORMAT_HELP, field="date")

    @classmethod
    def parse(
        cls,
        text: str,
        now: Optional[datetime] = None,
        tz: Optional[tzinfo] = None,
        allow_past: bool = False,
    ) -> datetime:
        """
        Resolve a date/time expression to an aware datetime.

        Args:
            text: User input ("tomorrow 18:00", "next sat 10am", "21 Jul 14:30")
            now: Reference instant (defaults to current time)
            tz: Timezone used for wall-clock expressions
            allow_past: Skip the "must be in the future" check

        Raises:
            ValidationError: Unparseable input or a past instant
        """
        if tz is None:
            from app.core.config import settings
            tz = settings.timezone
        now = (now or datetime.now(tz)).astimezone(tz)

        if not text or not text.strip():
            raise ValidationError(DATE_FORMAT_HELP, field="date")

        normalized = cls._normalize(text)
        result = cls._resolve(normalized, now, tz)
        if result is None:
            raise ValidationError(DATE_FORMAT_HELP, field="date")

        if not allow_past and result < now:
            raise ValidationError(PAST_DATE_ERROR, field="date")
        return result

    @classmethod
    def _resolve(cls, text: str, now: datetime, tz: tzinfo) -> Optional[datetime]:
        if text == "now":
            return now

        relative = ValidationPatterns.RELATIVE.match(text)
        if relative:
            raw = relative.group("n")
            amount = int(raw) if raw.isdigit() else 1
            unit = relative.group("unit")
            if unit.startswith("min"):
                delta = timedelta(minutes=amount)
            elif unit.startswith("h"):
                delta = timedelta(hours=amount)
            elif unit.startswith("d"):
                delta = timedelta(days=amount)
            else:
                delta = timedelta(weeks=amount)
            return now + delta

        time, rest = cls._extract_time(text)
        today = now.date()

        if rest in ("", "today", "tonight"):
            if time is None:
                return None
            candidate = cls._build(today.year, today.month, today.day, time, tz)
            # שעה בלבד שכבר עברה היום: הכוונה כנראה למחר
            if rest == "" and candidate < now:
                candidate += timedelta(days=1)
            return candidate

        if rest == "tomorrow":
            day = today + timedelta(days=1)
            return cls._build(day.year, day.month, day.day, time, tz)

        if rest in ("day after tomorrow", "the day after tomorrow"):
            day = today + timedelta(days=2)
            return cls._build(day.year, day.month, day.day, time, tz)

        weekday = ValidationPatterns.WEEKDAY.match(rest)
        if weekday:
            target = _WEEKDAYS[weekday.group("day")[:3]]
            days_ahead = (target - today.weekday()) % 7
            candidate_day = today + timedelta(days=days_ahead)
            candidate = cls._build(candidate_day.year, candidate_day.month, candidate_day.day, time, tz)
            if weekday.group("mod") == "next" and days_ahead == 0:
                candidate += timedelta(days=7)
            elif candidate < now:
                candidate += timedelta(days=7)
            return candidate

        for pattern in (ValidationPatterns.DAY_MONTH, ValidationPatterns.MONTH_DAY):
            match = pattern.match(rest)
            if match:
                month = _month_number(match.group("mon"))
                if month is None:
                    return None
                return cls._with_year(int(match.group("d")), month, match.group("y"), time, now, tz)

        match = ValidationPatterns.NUMERIC_DATE.match(rest)
        if match:
            year = match.group("y")
            if year and len(year) == 2:
                year = f"20{year}"
            return cls._with_year(int(match.group("d")), int(match.group("m")), year, time, now, tz)

        match = ValidationPatterns.ISO_DATE.match(rest)
        if match:
            return cls._build(int(match.group("y")), int(match.group("m")), int(match.group("d")), time, tz)

        return None

    @classmethod
    def _with_year(
        cls,
        day: int,
        month: int,
        year: Optional[str],
        time: Optional[tuple[int, int]],
        now: datetime,
        tz: tzinfo,
    ) -> datetime:
        if year:
            return cls._build(int(year), month, day, time, tz)
        candidate = cls._build(now.year, month, day, time, tz)
        # תאריך בלי שנה שכבר עבר: השנה הבאה
        if candidate < now:
            candidate = cls._build(now.year + 1, month, day, time, tz)
        return candidate


class DurationParser:
    """Ride duration in minutes"""

    @staticmethod
    def parse(text: str) -> int:
        text = (text or "").strip().lower()
        if text.isdigit():
            return int(text)

        clock = ValidationPatterns.DURATION_CLOCK.match(text)
        if clock:
            return int(clock.group(1)) * 60 + int(clock.group(2))

        total = 0
        matched = False
        hours = ValidationPatterns.DURATION_HOURS.search(text)
        if hours:
            total += round(float(hours.group(1)) * 60)
            matched = True
        minutes = ValidationPatterns.DURATION_MINUTES.search(text)
        if minutes:
            total += int(minutes.group(1))
            matched = True

        if not matched:
            raise ValidationError(DURATION_FORMAT_HELP, field="duration")
        return total

    @staticmethod
    def format(minutes: Optional[int]) -> str:
        if minutes is None:
            return ""
        if minutes < 60:
            return f"{minutes} min"
        hours, rest = divmod(minutes, 60)
        return f"{hours} h" if rest == 0 else f"{hours} h {rest} min"


def _to_number(raw: str) -> float:
    return float(raw.replace(",", "."))


def _format_number(value: float) -> str:
    return f"{value:g}"


class SpeedParser:
    """Speed range in km/h: "25-28", "25" / "25+" (min only), "-28" (max only)"""

    @staticmethod
    def parse(text: str) -> tuple[Optional[float], Optional[float]]:
        cleaned = (text or "").strip().lower().replace("–", "-").replace("km/h", "").strip()
        if cleaned.endswith("+"):
            cleaned = cleaned[:-1].strip()

        parts = [p.strip() for p in cleaned.split("-")]
        if len(parts) > 2 or not any(parts):
            raise ValidationError(
                "Please enter the speed range like 25-28 (km/h), or a single number.",
                field="speed",
            )

        values: list[Optional[float]] = []
        for part in parts:
            if not part:
                values.append(None)
                continue
            if not ValidationPatterns.NUMBER.match(part):
                raise ValidationError(
                    "Please enter the speed range like 25-28 (km/h), or a single number.",
                    field="speed",
                )
            values.append(_to_number(part))

        speed_min = values[0]
        speed_max = values[1] if len(values) > 1 else None
        return speed_min, speed_max

    @staticmethod
    def format(speed_min: Optional[float], speed_max: Optional[float]) -> str:
        if speed_min is not None and speed_max is not None:
            return f"{_format_number(speed_min)}-{_format_number(speed_max)} km/h"
        if speed_min is not None:
            return f"{_format_number(speed_min)}+ km/h"
        if speed_max is not None:
            return f"up to {_format_number(speed_max)} km/h"
        return ""


def parse_distance(text: str) -> float:
    match = ValidationPatterns.DISTANCE.match((text or "").strip().lower())
    if not match:
        raise ValidationError(
            "Please enter a valid number for distance, or use a dash (-) to clear the field.",
            field="distance",
        )
    return _to_number(match.group("n"))


def normalize_category(text: Optional[str]) -> str:
    """מיפוי קלט חופשי לקטגוריה מוכרת; קלט לא מזוהה => ברירת המחדל"""
    if not text or not text.strip():
        return DEFAULT_CATEGORY

    normalized = text.strip().lower()

    for category in RIDE_CATEGORIES:
        if category.lower() == normalized:
            return category

    for category in RIDE_CATEGORIES:
        without_ride = " ".join(part for part in category.lower().split(" ") if part != "ride")
        if without_ride == normalized or normalized in category.lower():
            return category

    for category in RIDE_CATEGORIES:
        for part in category.lower().split("/"):
            if part.replace(" ride", "").strip() == normalized:
                return category

    return DEFAULT_CATEGORY


def is_valid_url(text: Optional[str]) -> bool:
    if not text:
        return False
    parsed = urlparse(text.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class CommandParams:
    """``key: value`` parameters following a bot command line"""

    VALID_PARAMS = {
        "title": "Title of the ride",
        "category": "Ride category",
        "organizer": "Ride organizer name",
        "when": "Date and time of the ride",
        "meet": "Meeting point",
        "route": "Route URL",
        "dist": "Distance in kilometers",
        "duration": "Duration in minutes or e.g. 2h 30m",
        "speed": "Speed range (e.g. 25-28)",
        "info": "Additional information",
        "id": "Ride ID (for commands that need it)",
    }

    @classmethod
    def parse(cls, text: str) -> dict[str, str]:
        """
        Parse parameter lines (the command line itself is skipped).

        Raises:
            ValidationError: Unknown keys or lines that are not ``key: value``
        """
        params: dict[str, str] = {}
        unknown: list[str] = []

        for line in (text or "").split("\n")[1:]:
            if not line.strip():
                continue
            match = ValidationPatterns.PARAM_LINE.match(line)
            if not match:
                unknown.append(line.strip())
                continue
            key = match.group(1).strip().lower()
            if key in cls.VALID_PARAMS:
                params[key] = match.group(2).strip()
            else:
                unknown.append(match.group(1).strip())

        if unknown:
            valid = "\n".join(f"{key}: {desc}" for key, desc in cls.VALID_PARAMS.items())
            raise ValidationError(
                f"Unknown parameter(s): {', '.join(unknown)}\n\nValid parameters are:\n{valid}",
                details={"unknown": unknown},
            )
        return params

    @staticmethod
    def to_fields(params: dict[str, str], is_update: bool = False) -> dict[str, Any]:
        """
        Map command parameters to ride fields.

        "-" clears an optional field; for the category it restores the
        default. The route link is validated but not fetched here.
        """
        fields: dict[str, Any] = {}

        def cleared(key: str) -> bool:
            return params[key].strip() == CLEAR_TOKEN

        if "title" in params:
            fields["title"] = "" if cleared("title") else params["title"]

        if "category" in params:
            fields["category"] = DEFAULT_CATEGORY if cleared("category") else normalize_category(params["category"])

        for key, field_name in (("organizer", "organizer"), ("meet", "meeting_point"), ("info", "additional_info")):
            if key in params:
                fields[field_name] = None if cleared(key) else params[key]

        if "when" in params:
            fields["date"] = DateTimeParser.parse(params["when"])

        if "route" in params:
            if cleared("route"):
                fields["route_link"] = None
            elif not is_valid_url(params["route"]):
                raise ValidationError("Invalid route URL format.", field="route_link")
            else:
                fields["route_link"] = params["route"].strip()

        if "dist" in params:
            fields["distance"] = None if cleared("dist") else parse_distance(params["dist"])

        if "duration" in params:
            fields["duration"] = None if cleared("duration") else DurationParser.parse(params["duration"])

        if "speed" in params:
            if cleared("speed"):
                fields["speed_min"], fields["speed_max"] = None, None
            else:
                speed_min, speed_max = SpeedParser.parse(params["speed"])
                if is_update:
                    # בעדכון: רק הערכים שסופקו
                    if speed_min is not None:
                        fields["speed_min"] = speed_min
                    if speed_max is not None:
                        fields["speed_max"] = speed_max
                else:
                    fields["speed_min"], fields["speed_max"] = speed_min, speed_max

        return fields


def extract_ride_id(
    args: Optional[str] = None,
    params: Optional[dict[str, str]] = None,
    reply_text: Optional[str] = None,
) -> Optional[str]:
    """
    Find the ride id a command refers to.

    Order: the command argument ("/cancelride abc123" or "#abc123"),
    then an ``id:`` parameter, then the ride marker of the card the
    command replies to.
    """
    if args and args.strip():
        return args.strip().split()[0].lstrip("#")

    if params and params.get("id"):
        return params["id"].strip().lstrip("#")

    if reply_text:
        match = ValidationPatterns.RIDE_ID_MARKER.search(reply_text)
        if match:
            return match.group(1)

    return None
