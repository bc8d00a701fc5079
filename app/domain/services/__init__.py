"""
Domain Services
"""
from app.domain.services.card_renderer import RideCardRenderer
from app.domain.services.command_service import RideCommandService
from app.domain.services.messaging_gateway import MessagingGateway, TelegramGateway
from app.domain.services.participation_service import ParticipationTracker
from app.domain.services.propagation_service import MessagePropagationEngine
from app.domain.services.ride_service import RideStateMachine
from app.domain.services.route_service import RouteParser

__all__ = [
    "RideCardRenderer",
    "RideCommandService",
    "MessagingGateway",
    "TelegramGateway",
    "ParticipationTracker",
    "MessagePropagationEngine",
    "RideStateMachine",
    "RouteParser",
]
