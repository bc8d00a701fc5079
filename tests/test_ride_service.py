"""
Tests for the ride state machine: lifecycle, authorization and validation
"""
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from app.core.exceptions import (
    AuthorizationError,
    ConflictError,
    DuplicateDestinationError,
    ErrorCode,
    RideNotFoundError,
    ValidationError,
)
from app.domain.models import DEFAULT_CATEGORY, MessageRef, ParticipationState
from app.domain.services.ride_service import RideStateMachine, default_duplicate_date
from tests.factories import CREATOR_ID, GROUP_CHAT_ID, OTHER_USER_ID, make_participant


class TestCreateRide:
    """יצירת רכיבה"""

    @pytest.mark.unit
    async def test_create_sets_defaults(self, rides: RideStateMachine, future_date):
        ride = await rides.create({"title": "Morning Loop", "date": future_date}, CREATOR_ID)

        assert len(ride.id) == 11
        assert ride.created_by == CREATOR_ID
        assert ride.category == DEFAULT_CATEGORY
        assert ride.cancelled is False
        assert ride.messages == []
        assert ride.participants == {}

    @pytest.mark.unit
    async def test_create_persists_ride(self, rides: RideStateMachine, future_date):
        ride = await rides.create({"title": "Morning Loop", "date": future_date}, CREATOR_ID)

        stored = await rides.get(ride.id)
        assert stored.title == "Morning Loop"
        assert stored.date == future_date

    @pytest.mark.unit
    async def test_create_ids_are_unique(self, ride_factory):
        first = await ride_factory()
        second = await ride_factory()
        assert first.id != second.id

    @pytest.mark.unit
    async def test_create_requires_title(self, rides: RideStateMachine, future_date):
        with pytest.raises(ValidationError) as exc_info:
            await rides.create({"title": "   ", "date": future_date}, CREATOR_ID)
        assert exc_info.value.field == "title"

    @pytest.mark.unit
    async def test_create_requires_date(self, rides: RideStateMachine):
        with pytest.raises(ValidationError) as exc_info:
            await rides.create({"title": "No date"}, CREATOR_ID)
        assert exc_info.value.field == "date"

    @pytest.mark.unit
    async def test_create_rejects_naive_date(self, rides: RideStateMachine, future_date):
        with pytest.raises(ValidationError):
            await rides.create({"title": "Naive", "date": future_date.replace(tzinfo=None)}, CREATOR_ID)

    @pytest.mark.unit
    async def test_create_rejects_inverted_speed_range(self, rides: RideStateMachine, future_date):
        with pytest.raises(ValidationError) as exc_info:
            await rides.create(
                {"title": "Fast", "date": future_date, "speed_min": 30, "speed_max": 25},
                CREATOR_ID,
            )
        assert exc_info.value.field == "speed_min"

    @pytest.mark.unit
    async def test_create_rejects_invalid_route(self, rides: RideStateMachine, future_date):
        with pytest.raises(ValidationError) as exc_info:
            await rides.create({"title": "R", "date": future_date, "route_link": "not a url"}, CREATOR_ID)
        assert exc_info.value.field == "route_link"

    @pytest.mark.unit
    async def test_create_rejects_unknown_field(self, rides: RideStateMachine, future_date):
        with pytest.raises(ValidationError):
            await rides.create({"title": "R", "date": future_date, "color": "red"}, CREATOR_ID)

    @pytest.mark.unit
    async def test_create_normalizes_category(self, ride_factory):
        ride = await ride_factory(category="gravel")
        assert ride.category == "Gravel Ride"

    @pytest.mark.unit
    async def test_blank_optional_text_becomes_none(self, ride_factory):
        ride = await ride_factory(meeting_point="   ", organizer="Dana")
        assert ride.meeting_point is None
        assert ride.organizer == "Dana"


class TestUpdateRide:
    """עדכון חלקי"""

    @pytest.mark.unit
    async def test_update_changes_only_given_fields(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory(meeting_point="Cafe", distance=40)

        updated = await rides.update(ride.id, {"title": "Renamed"}, CREATOR_ID)

        assert updated.title == "Renamed"
        assert updated.meeting_point == "Cafe"
        assert updated.distance == 40
        assert updated.updated_by == CREATOR_ID

    @pytest.mark.unit
    async def test_update_can_clear_optional_field(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory(meeting_point="Cafe")
        updated = await rides.update(ride.id, {"meeting_point": None}, CREATOR_ID)
        assert updated.meeting_point is None

    @pytest.mark.unit
    async def test_update_by_non_creator_is_rejected(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()

        with pytest.raises(AuthorizationError) as exc_info:
            await rides.update(ride.id, {"title": "Hijacked"}, OTHER_USER_ID)

        assert exc_info.value.message == "Only the ride creator can update this ride"
        assert (await rides.get(ride.id)).title == ride.title

    @pytest.mark.unit
    async def test_update_checks_speed_against_stored_values(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory(speed_min=25, speed_max=28)
        with pytest.raises(ValidationError):
            await rides.update(ride.id, {"speed_min": 30}, CREATOR_ID)

    @pytest.mark.unit
    async def test_update_cannot_clear_date(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()
        with pytest.raises(ValidationError):
            await rides.update(ride.id, {"date": None}, CREATOR_ID)

    @pytest.mark.unit
    async def test_update_unknown_ride(self, rides: RideStateMachine):
        with pytest.raises(RideNotFoundError):
            await rides.update("missing", {"title": "X"}, CREATOR_ID)


class TestCancelResume:
    """ביטול וחידוש"""

    @pytest.mark.unit
    async def test_cancel_then_resume(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()

        cancelled = await rides.cancel(ride.id, CREATOR_ID)
        assert cancelled.cancelled is True

        resumed = await rides.resume(ride.id, CREATOR_ID)
        assert resumed.cancelled is False

    @pytest.mark.unit
    async def test_cancel_twice_is_conflict(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()
        await rides.cancel(ride.id, CREATOR_ID)

        with pytest.raises(ConflictError) as exc_info:
            await rides.cancel(ride.id, CREATOR_ID)
        assert exc_info.value.error_code == ErrorCode.RIDE_ALREADY_CANCELLED

    @pytest.mark.unit
    async def test_resume_active_ride_is_conflict(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()
        with pytest.raises(ConflictError) as exc_info:
            await rides.resume(ride.id, CREATOR_ID)
        assert exc_info.value.error_code == ErrorCode.RIDE_NOT_CANCELLED

    @pytest.mark.unit
    async def test_cancel_keeps_participants(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()
        await rides.set_participant(ride.id, make_participant(OTHER_USER_ID))

        cancelled = await rides.cancel(ride.id, CREATOR_ID)
        assert OTHER_USER_ID in cancelled.participants

    @pytest.mark.unit
    async def test_cancel_by_non_creator(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()
        with pytest.raises(AuthorizationError):
            await rides.cancel(ride.id, OTHER_USER_ID)
        assert (await rides.get(ride.id)).cancelled is False

    @pytest.mark.unit
    async def test_resume_by_non_creator(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()
        await rides.cancel(ride.id, CREATOR_ID)

        with pytest.raises(AuthorizationError):
            await rides.resume(ride.id, OTHER_USER_ID)
        assert (await rides.get(ride.id)).cancelled is True


class TestDeleteAndDuplicate:

    @pytest.mark.unit
    async def test_delete_removes_ride(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()

        assert await rides.delete(ride.id, CREATOR_ID) is True
        with pytest.raises(RideNotFoundError):
            await rides.get(ride.id)

    @pytest.mark.unit
    async def test_delete_by_non_creator(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()
        with pytest.raises(AuthorizationError):
            await rides.delete(ride.id, OTHER_USER_ID)
        assert await rides.get(ride.id)

    @pytest.mark.unit
    async def test_duplicate_defaults_to_next_day(self, rides: RideStateMachine, ride_factory):
        source = await ride_factory(meeting_point="Cafe", distance=55.5)
        await rides.set_participant(source.id, make_participant(OTHER_USER_ID))
        await rides.add_message(source.id, MessageRef(chat_id=GROUP_CHAT_ID, message_id=1))

        copy = await rides.duplicate(source.id, {}, CREATOR_ID)

        assert copy.id != source.id
        assert copy.date == source.date + timedelta(days=1)
        assert copy.meeting_point == "Cafe"
        assert copy.distance == 55.5
        # רכיבה חדשה: בלי משתתפים ובלי הודעות
        assert copy.participants == {}
        assert copy.messages == []

    @pytest.mark.unit
    async def test_duplicate_applies_overrides(self, rides: RideStateMachine, ride_factory, future_date):
        source = await ride_factory()
        copy = await rides.duplicate(
            source.id, {"title": "Second edition", "date": future_date + timedelta(days=14)}, CREATOR_ID
        )
        assert copy.title == "Second edition"
        assert copy.date == future_date + timedelta(days=14)

    @pytest.mark.unit
    async def test_duplicate_by_non_creator(self, rides: RideStateMachine, ride_factory):
        source = await ride_factory()
        with pytest.raises(AuthorizationError):
            await rides.duplicate(source.id, {}, OTHER_USER_ID)

    @pytest.mark.unit
    async def test_default_duplicate_date(self, ride_factory):
        ride = await ride_factory()
        assert default_duplicate_date(ride) == ride.date + timedelta(days=1)

    @pytest.mark.unit
    @pytest.mark.parametrize("source_utc, expected_utc", [
        # סוף שעון קיץ: 18:00 ב-26.10 (UTC+2) -> 18:00 ב-27.10 (UTC+1)
        (datetime(2030, 10, 26, 16, 0, tzinfo=timezone.utc), datetime(2030, 10, 27, 17, 0, tzinfo=timezone.utc)),
        # תחילת שעון קיץ: 18:00 ב-30.3 (UTC+1) -> 18:00 ב-31.3 (UTC+2)
        (datetime(2030, 3, 30, 17, 0, tzinfo=timezone.utc), datetime(2030, 3, 31, 16, 0, tzinfo=timezone.utc)),
    ])
    async def test_default_duplicate_date_keeps_local_time_across_dst(
        self, ride_factory, source_utc: datetime, expected_utc: datetime
    ):
        berlin = ZoneInfo("Europe/Berlin")
        ride = await ride_factory(date=source_utc)

        copy_date = default_duplicate_date(ride, tz=berlin)

        assert copy_date == expected_utc
        assert copy_date.astimezone(berlin).hour == 18


class TestMessagesAndParticipants:

    @pytest.mark.unit
    async def test_add_message_rejects_same_destination(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()
        await rides.add_message(ride.id, MessageRef(chat_id=GROUP_CHAT_ID, message_id=1))

        with pytest.raises(DuplicateDestinationError):
            await rides.add_message(ride.id, MessageRef(chat_id=GROUP_CHAT_ID, message_id=2))

    @pytest.mark.unit
    async def test_same_chat_different_thread_is_allowed(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()
        await rides.add_message(ride.id, MessageRef(chat_id=GROUP_CHAT_ID, message_id=1))
        updated = await rides.add_message(ride.id, MessageRef(chat_id=GROUP_CHAT_ID, message_id=2, thread_id=7))
        assert len(updated.messages) == 2

    @pytest.mark.unit
    async def test_remove_messages_removes_only_given_refs(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()
        first = MessageRef(chat_id=GROUP_CHAT_ID, message_id=1)
        second = MessageRef(chat_id=-1, message_id=2)
        await rides.add_message(ride.id, first)
        await rides.add_message(ride.id, second)

        updated = await rides.remove_messages(ride.id, [first])
        assert updated.messages == [second]

    @pytest.mark.unit
    async def test_set_participant_replaces_state(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()
        participant = make_participant(OTHER_USER_ID)
        await rides.set_participant(ride.id, participant)

        updated = await rides.set_participant(ride.id, replace(participant, state=ParticipationState.SKIPPED))

        assert len(updated.participants) == 1
        assert updated.participants[OTHER_USER_ID].state == ParticipationState.SKIPPED

    @pytest.mark.unit
    async def test_reads_are_copies(self, rides: RideStateMachine, ride_factory):
        ride = await ride_factory()
        ride.title = "mutated locally"
        ride.messages.append(MessageRef(chat_id=1, message_id=1))

        stored = await rides.get(ride.id)
        assert stored.title == "Evening Ride"
        assert stored.messages == []

    @pytest.mark.unit
    async def test_list_by_creator_pages(self, rides: RideStateMachine, ride_factory, future_date):
        for offset in range(3):
            await ride_factory(title=f"Ride {offset}", date=future_date + timedelta(days=offset))
        await ride_factory(title="Not mine", creator_id=OTHER_USER_ID)

        page = await rides.list_by_creator(CREATOR_ID, offset=0, limit=2)

        assert page.total == 3
        assert [r.title for r in page.rides] == ["Ride 2", "Ride 1"]
