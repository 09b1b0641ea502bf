from datetime import datetime, timezone
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class WhatsAppEvent(BaseModel):
    """Message event as posted by the WhatsApp gateway.

    Both inbound messages and messages created from the bot's own account
    (``fromMe``) arrive through the same shape.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    sender: str = Field(validation_alias=AliasChoices("from", "sender"))
    to: Optional[str] = None
    body: str = ""
    has_media: bool = Field(default=False, validation_alias=AliasChoices("hasMedia", "has_media"))
    type: str = "chat"
    timestamp: Optional[int] = None
    is_group: bool = Field(default=False, validation_alias=AliasChoices("isGroup", "is_group"))
    is_status: bool = Field(default=False, validation_alias=AliasChoices("isStatus", "is_status"))
    from_me: bool = Field(default=False, validation_alias=AliasChoices("fromMe", "from_me"))

    @property
    def chat_id(self) -> str:
        """Conversation the event belongs to (peer side for own messages)."""
        if self.from_me and self.to:
            return self.to
        return self.sender

    @property
    def is_group_chat(self) -> bool:
        return self.is_group or self.chat_id.endswith("@g.us")

    @property
    def received_at(self) -> Optional[datetime]:
        if not self.timestamp:
            return None
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)


class WebhookResponse(BaseModel):
    success: bool
    message: str
    conversation_id: Optional[str] = None
