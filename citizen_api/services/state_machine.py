from enum import Enum


class ConversationStep(str, Enum):
    START = "start"
    LANGUAGE_SELECTION = "language_selection"
    MAIN_MENU = "main_menu"
    OTP_VERIFICATION = "otp_verification"
    GRIEVANCE_NAME = "grievance_name"
    GRIEVANCE_CATEGORY = "grievance_category"
    GRIEVANCE_DESCRIPTION = "grievance_description"
    GRIEVANCE_LOCATION = "grievance_location"
    GRIEVANCE_PHOTO = "grievance_photo"


GRIEVANCE_STEPS = (
    ConversationStep.GRIEVANCE_NAME,
    ConversationStep.GRIEVANCE_CATEGORY,
    ConversationStep.GRIEVANCE_DESCRIPTION,
    ConversationStep.GRIEVANCE_LOCATION,
    ConversationStep.GRIEVANCE_PHOTO,
)

# Forward-only flow. Staying on the same step is not a transition.
# Leaving the grievance flow (completion, failure, reset) clears the session instead.
VALID_TRANSITIONS = {
    ConversationStep.START: [ConversationStep.LANGUAGE_SELECTION, ConversationStep.MAIN_MENU],
    ConversationStep.LANGUAGE_SELECTION: [ConversationStep.MAIN_MENU],
    ConversationStep.MAIN_MENU: [ConversationStep.OTP_VERIFICATION, ConversationStep.GRIEVANCE_NAME],
    ConversationStep.OTP_VERIFICATION: [ConversationStep.GRIEVANCE_NAME, ConversationStep.MAIN_MENU],
    ConversationStep.GRIEVANCE_NAME: [ConversationStep.GRIEVANCE_CATEGORY],
    ConversationStep.GRIEVANCE_CATEGORY: [ConversationStep.GRIEVANCE_DESCRIPTION],
    ConversationStep.GRIEVANCE_DESCRIPTION: [ConversationStep.GRIEVANCE_LOCATION],
    ConversationStep.GRIEVANCE_LOCATION: [ConversationStep.GRIEVANCE_PHOTO],
    ConversationStep.GRIEVANCE_PHOTO: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_step: ConversationStep, to_step: ConversationStep):
        self.from_step = from_step
        self.to_step = to_step
        super().__init__(f"Invalid transition: {from_step.value} -> {to_step.value}")


def can_transition(from_step: ConversationStep, to_step: ConversationStep) -> bool:
    """Check if transition is valid."""
    return to_step in VALID_TRANSITIONS.get(from_step, [])


def transition(from_step: ConversationStep, to_step: ConversationStep) -> ConversationStep:
    """Perform step transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_step, to_step):
        raise InvalidTransitionError(from_step, to_step)
    return to_step
