from sqlalchemy import JSON, Column, DateTime, String

from frontdesk.database import Base


class ConversationRecord(Base):
    __tablename__ = "conversation_records"

    key = Column(String(255), primary_key=True)  # history:<chat id>, mute:<chat id>
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
