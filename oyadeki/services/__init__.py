from oyadeki.services.dialogue_engine import (
    on_image_received,
    on_text_received,
)
from oyadeki.services.state_machine import (
    DialogueKind,
    DialogueStatus,
    InvalidTransitionError,
    can_transition,
    cancel,
    complete,
    transition,
)
