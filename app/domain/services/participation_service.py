"""
Participation Tracker - per-user join / maybe / pass state on a ride
"""
from dataclasses import dataclass, replace
from typing import Optional

from app.core.logging import get_logger
from app.domain.models import Participant, ParticipationState, Ride
from app.domain.services.ride_service import RideStateMachine

logger = get_logger(__name__)


@dataclass
class ParticipationResult:
    success: bool
    ride: Ride
    previous_state: Optional[ParticipationState] = None


class ParticipationTracker:
    """
    Records one current state per user per ride.

    Repeating the current state, or acting on a cancelled ride, is a
    silent no-op (success=False) rather than an error, so repeated button
    clicks never toggle the user away from the state they chose.
    """

    def __init__(self, rides: RideStateMachine):
        self.rides = rides

    async def set_participation(
        self,
        ride_id: str,
        participant: Participant,
        desired_state: ParticipationState | str,
    ) -> ParticipationResult:
        desired_state = ParticipationState(desired_state)
        ride = await self.rides.get(ride_id)

        if ride.cancelled:
            return ParticipationResult(success=False, ride=ride)

        current = ride.participants.get(participant.user_id)
        previous_state = current.state if current else None
        if previous_state == desired_state:
            return ParticipationResult(success=False, ride=ride, previous_state=previous_state)

        updated = await self.rides.set_participant(ride_id, replace(participant, state=desired_state))

        logger.info(
            "Participation changed",
            extra_data={
                "ride_id": ride_id,
                "user_id": participant.user_id,
                "from": previous_state.value if previous_state else None,
                "to": desired_state.value,
            },
        )
        return ParticipationResult(success=True, ride=updated, previous_state=previous_state)

    async def get_participants(self, ride_id: str) -> dict[ParticipationState, list[Participant]]:
        """Participants grouped by state (every state present, possibly empty)"""
        participants = await self.rides.get_participants(ride_id)
        grouped: dict[ParticipationState, list[Participant]] = {state: [] for state in ParticipationState}
        for participant in participants:
            grouped[participant.state].append(participant)
        return grouped
