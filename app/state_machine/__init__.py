"""
State Machine Module for the Ride Wizard Flow
"""
from app.state_machine.states import WizardStep
from app.state_machine.session_store import ConversationSession, InMemorySessionStore, SessionStore
from app.state_machine.wizard import ConversationWizard, WizardReply

__all__ = [
    "WizardStep",
    "ConversationSession",
    "SessionStore",
    "InMemorySessionStore",
    "ConversationWizard",
    "WizardReply",
]
