from enum import Enum


class DialogueStatus(str, Enum):
    ANALYZING = "analyzing"
    QUESTIONING = "questioning"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DialogueKind(str, Enum):
    MEDIA_DIALOGUE = "media_dialogue"
    MEDIA_CONFIRM = "media_confirm"
    OPEN_ENDED_DIALOGUE = "open_ended_dialogue"


ACTIVE_STATUSES = (DialogueStatus.ANALYZING, DialogueStatus.QUESTIONING)
TERMINAL_STATUSES = (DialogueStatus.COMPLETED, DialogueStatus.CANCELLED)

VALID_TRANSITIONS = {
    DialogueStatus.ANALYZING: [DialogueStatus.QUESTIONING, DialogueStatus.CANCELLED],
    DialogueStatus.QUESTIONING: [DialogueStatus.COMPLETED, DialogueStatus.CANCELLED],
    DialogueStatus.COMPLETED: [],
    DialogueStatus.CANCELLED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: DialogueStatus, to_state: DialogueStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def is_active(status: DialogueStatus) -> bool:
    return status in ACTIVE_STATUSES


def is_terminal(status: DialogueStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(from_state: DialogueStatus, to_state: DialogueStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: DialogueStatus, to_state: DialogueStatus) -> DialogueStatus:
    """Perform status transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def complete(current_state: DialogueStatus) -> DialogueStatus:
    """Identification confirmed (media) or listing produced (product)."""
    return transition(current_state, DialogueStatus.COMPLETED)


def cancel(current_state: DialogueStatus) -> DialogueStatus:
    """Explicit user cancel, idle expiry, or superseded by a new session."""
    return transition(current_state, DialogueStatus.CANCELLED)
