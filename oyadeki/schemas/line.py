from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class LineSource(BaseModel):
    type: str = "user"  # user, group, room
    user_id: Optional[str] = Field(default=None, alias="userId")
    group_id: Optional[str] = Field(default=None, alias="groupId")

    model_config = ConfigDict(populate_by_name=True)


class LineMessage(BaseModel):
    id: str
    type: str  # text, image, sticker, video, audio, file, location
    text: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class LinePostback(BaseModel):
    data: str


class LineDeliveryContext(BaseModel):
    is_redelivery: bool = Field(default=False, alias="isRedelivery")

    model_config = ConfigDict(populate_by_name=True)


class LineEvent(BaseModel):
    type: str  # message, postback, follow, unfollow, ...
    timestamp: int = 0
    webhook_event_id: Optional[str] = Field(default=None, alias="webhookEventId")
    reply_token: Optional[str] = Field(default=None, alias="replyToken")
    source: Optional[LineSource] = None
    message: Optional[LineMessage] = None
    postback: Optional[LinePostback] = None
    delivery_context: Optional[LineDeliveryContext] = Field(default=None, alias="deliveryContext")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def owner_id(self) -> Optional[str]:
        return self.source.user_id if self.source else None


class LineWebhookBody(BaseModel):
    destination: Optional[str] = None
    events: list[LineEvent] = Field(default_factory=list)


class LineWebhookResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    processed: int = 0
