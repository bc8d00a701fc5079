"""
בדיקות property-based עם hypothesis.

בודקים אינווריאנטים על:
1. השתתפות ברכיבה: רצפי לחיצות אקראיים של כמה משתמשים
2. פירוס תאריכים, מהירויות ופרמטרים: קלט אקראי
3. איתור מזהה רכיבה מתוך כרטיס שפורסם
"""
from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, settings as h_settings, HealthCheck
from hypothesis.strategies import (
    composite,
    datetimes,
    integers,
    just,
    lists,
    sampled_from,
    text,
    tuples,
)

from app.core.exceptions import ValidationError
from app.core.validation import CommandParams, DateTimeParser, SpeedParser, extract_ride_id
from app.domain.models import ParticipationState, Ride
from app.domain.services.card_renderer import RideCardRenderer
from app.domain.services.participation_service import ParticipationTracker
from tests.factories import CREATOR_ID, make_participant

UTC = timezone.utc
BASE62 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"


# ============================================================================
# אסטרטגיות (strategies)
# ============================================================================

# לחיצה אחת: (משתמש, מצב)
CLICKS = lists(
    tuples(integers(min_value=1, max_value=4), sampled_from(list(ParticipationState))),
    min_size=1,
    max_size=20,
)

REFERENCE_NOW = datetimes(
    min_value=datetime(2024, 1, 1),
    max_value=datetime(2030, 12, 31),
    timezones=just(UTC),
)

WEEKDAY_NAMES = sampled_from([
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
])

RIDE_IDS = text(alphabet=BASE62, min_size=1, max_size=11)


@composite
def unknown_param_key(draw):
    """מפתח פרמטר שאינו ברשימת הפרמטרים המוכרים"""
    key = draw(text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=1, max_size=12))
    if key in CommandParams.VALID_PARAMS:
        key = f"x{key}"
    return key


# ============================================================================
# בדיקות property-based להשתתפות
# ============================================================================


class TestParticipationProperties:
    """אינווריאנטים של מצב ההשתתפות לאורך רצפי לחיצות"""

    @pytest.mark.asyncio
    @given(clicks=CLICKS)
    @h_settings(
        max_examples=50,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
        deadline=None,
    )
    async def test_state_is_last_click_per_user(
        self, clicks: list[tuple[int, ParticipationState]], tracker: ParticipationTracker, ride_factory
    ):
        """
        אינווריאנט: לכל משתמש רשומה אחת בדיוק, והמצב שלה הוא
        הלחיצה האחרונה של אותו משתמש.
        """
        ride = await ride_factory()
        expected: dict[int, ParticipationState] = {}

        for user_id, state in clicks:
            result = await tracker.set_participation(ride.id, make_participant(user_id), state)
            # לחיצה חוזרת על אותו מצב היא no-op
            assert result.success == (expected.get(user_id) != state)
            expected[user_id] = state

        final = result.ride
        assert set(final.participants) == set(expected)
        assert {uid: p.state for uid, p in final.participants.items()} == expected

    @pytest.mark.asyncio
    @given(clicks=CLICKS)
    @h_settings(
        max_examples=30,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
        deadline=None,
    )
    async def test_card_counts_match_participants(
        self, clicks: list[tuple[int, ParticipationState]], tracker: ParticipationTracker, ride_factory
    ):
        """אינווריאנט: המונים בכרטיס תואמים לרשימת המשתתפים"""
        ride = await ride_factory()
        for user_id, state in clicks:
            await tracker.set_participation(ride.id, make_participant(user_id), state)

        grouped = await tracker.get_participants(ride.id)
        body = RideCardRenderer(tz=UTC).render((await tracker.rides.get(ride.id))).body

        assert f"Joined ({len(grouped[ParticipationState.JOINED])})" in body
        assert f"Thinking ({len(grouped[ParticipationState.THINKING])})" in body
        assert f"Not interested: {len(grouped[ParticipationState.SKIPPED])}" in body


# ============================================================================
# בדיקות property-based לפירוס קלט
# ============================================================================


class TestParsingProperties:

    @pytest.mark.unit
    @given(now=REFERENCE_NOW, hours=integers(min_value=1, max_value=500))
    def test_relative_hours(self, now: datetime, hours: int):
        assert DateTimeParser.parse(f"in {hours} hours", now=now, tz=UTC) == now + timedelta(hours=hours)

    @pytest.mark.unit
    @given(now=REFERENCE_NOW, day=WEEKDAY_NAMES)
    def test_weekday_resolves_within_a_week(self, now: datetime, day: str):
        """אינווריאנט: שם יום תמיד נפתר למופע הקרוב שלו, לא בעבר"""
        result = DateTimeParser.parse(day, now=now, tz=UTC)

        assert now <= result < now + timedelta(days=7)
        assert result.strftime("%A").lower() == day

    @pytest.mark.unit
    @given(low=integers(min_value=1, max_value=60), spread=integers(min_value=0, max_value=20))
    def test_speed_range(self, low: int, spread: int):
        assert SpeedParser.parse(f"{low}-{low + spread}") == (low, low + spread)

    @pytest.mark.unit
    @given(key=unknown_param_key(), value=text(alphabet="abc xyz123", min_size=1, max_size=20).filter(str.strip))
    def test_unknown_params_are_rejected(self, key: str, value: str):
        with pytest.raises(ValidationError) as exc_info:
            CommandParams.parse(f"/newride\ntitle: Ride\n{key}: {value}")
        assert exc_info.value.details["unknown"] == [key]


# ============================================================================
# בדיקות property-based לאיתור מזהה רכיבה
# ============================================================================


class TestRideIdProperties:

    @pytest.mark.unit
    @given(ride_id=RIDE_IDS, title=text(min_size=1, max_size=40))
    def test_id_found_in_rendered_card(self, ride_id: str, title: str):
        """אינווריאנט: תשובה לכל כרטיס מאתרת את הרכיבה שלו"""
        ride = Ride(
            id=ride_id,
            title=title,
            date=datetime(2026, 7, 18, 10, 0, tzinfo=UTC),
            created_by=CREATOR_ID,
        )
        body = RideCardRenderer(tz=UTC).render(ride).body

        assert extract_ride_id(reply_text=body) == ride_id
