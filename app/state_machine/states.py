"""
State Definitions for the Ride Wizard Flow
"""
from enum import Enum
from typing import Optional


class WizardStep(str, Enum):
    """Steps of the ride creation / update wizard"""

    TITLE = "WIZARD.TITLE"
    CATEGORY = "WIZARD.CATEGORY"
    DATETIME = "WIZARD.DATETIME"
    MEETING_POINT = "WIZARD.MEETING_POINT"
    ROUTE = "WIZARD.ROUTE"
    DISTANCE = "WIZARD.DISTANCE"
    DURATION = "WIZARD.DURATION"
    SPEED = "WIZARD.SPEED"
    INFO = "WIZARD.INFO"

    # Confirmation
    CONFIRM = "WIZARD.CONFIRM"


WIZARD_STEP_ORDER = [
    WizardStep.TITLE,
    WizardStep.CATEGORY,
    WizardStep.DATETIME,
    WizardStep.MEETING_POINT,
    WizardStep.ROUTE,
    WizardStep.DISTANCE,
    WizardStep.DURATION,
    WizardStep.SPEED,
    WizardStep.INFO,
    WizardStep.CONFIRM,
]

# State transitions mapping - כל שלב מתקדם רק לשלב הבא
WIZARD_TRANSITIONS = {
    step: [WIZARD_STEP_ORDER[index + 1]]
    for index, step in enumerate(WIZARD_STEP_ORDER[:-1])
}
WIZARD_TRANSITIONS[WizardStep.CONFIRM] = []

# שלבי חובה - אי אפשר לדלג עליהם כשאין ערך קיים
REQUIRED_STEPS = {WizardStep.TITLE, WizardStep.DATETIME}

# שדות הרכיבה שכל שלב ממלא
STEP_FIELDS = {
    WizardStep.TITLE: ("title",),
    WizardStep.CATEGORY: ("category",),
    WizardStep.DATETIME: ("date",),
    WizardStep.MEETING_POINT: ("meeting_point",),
    WizardStep.ROUTE: ("route_link",),
    WizardStep.DISTANCE: ("distance",),
    WizardStep.DURATION: ("duration",),
    WizardStep.SPEED: ("speed_min", "speed_max"),
    WizardStep.INFO: ("additional_info",),
    WizardStep.CONFIRM: (),
}


def next_step(step: WizardStep) -> Optional[WizardStep]:
    targets = WIZARD_TRANSITIONS.get(step) or []
    return targets[0] if targets else None
