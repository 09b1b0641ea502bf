from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TurnKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    FILE = "file"


OPERATOR_ATTRIBUTION = "operator"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Turn(BaseModel):
    """One message unit in a conversation log."""

    model_config = ConfigDict(frozen=True)

    role: TurnRole
    content: str
    kind: TurnKind = TurnKind.TEXT
    timestamp: datetime = Field(default_factory=utcnow)
    attribution: Optional[str] = None  # "operator" when a human typed it through the bot's account
    summary: bool = False

    @property
    def is_operator(self) -> bool:
        return self.attribution == OPERATOR_ATTRIBUTION

    def to_record(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_record(cls, data: dict) -> "Turn":
        return cls.model_validate(data)


def user_turn(content: str, kind: TurnKind = TurnKind.TEXT, timestamp: Optional[datetime] = None) -> Turn:
    return Turn(role=TurnRole.USER, content=content, kind=kind, timestamp=timestamp or utcnow())


def assistant_turn(content: str, *, operator: bool = False) -> Turn:
    return Turn(
        role=TurnRole.ASSISTANT,
        content=content,
        attribution=OPERATOR_ATTRIBUTION if operator else None,
    )


def summary_turn(summary: str) -> Turn:
    return Turn(
        role=TurnRole.SYSTEM,
        content=f"Краткое содержание предыдущего разговора: {summary}",
        summary=True,
    )


class MuteEntry(BaseModel):
    """Suppression of automated replies; until=None means indefinite."""

    conversation_id: str
    until: Optional[datetime] = None
    reason: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return self.until is None or self.until > now
