from oyadeki.schemas.dialogue import DialogueReply, ImageInput
from oyadeki.schemas.line import LineEvent, LineWebhookBody, LineWebhookResponse

__all__ = ["DialogueReply", "ImageInput", "LineEvent", "LineWebhookBody", "LineWebhookResponse"]
