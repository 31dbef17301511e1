from oyadeki.models.dialogue_session import DialogueSession
from oyadeki.models.media_log import MediaLog
from oyadeki.models.usage_log import UsageLog

__all__ = [
    "DialogueSession",
    "MediaLog",
    "UsageLog",
]
