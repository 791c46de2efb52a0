from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, JSON, Index
from sqlalchemy.orm import relationship
from convo_ai.database import Base


def utcnow() -> datetime:
    """Microsecond-precision timestamp; message order depends on it"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Conversation(Base):
    """A thread of messages owned by one user, optionally tied to an assessment"""
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), index=True, nullable=False)
    assessment_id = Column(String(255), nullable=True)
    assessment_pattern = Column(String(255), nullable=True)
    assessment_snapshot = Column(JSON, nullable=True)
    title = Column(String(200), default="New Chat")
    preview = Column(Text, nullable=True)  # latest assistant reply, truncated
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    # Relationships
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
    )


class Message(Base):
    """A single turn; parent_message_id points at the previous message in the chain"""
    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("ix_chat_messages_conversation_created", "conversation_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(
        Integer, ForeignKey("conversations.id", ondelete="CASCADE"), index=True, nullable=False
    )
    role = Column(String(50), nullable=False)  # "user", "assistant" or "system"
    content = Column(Text, nullable=False)
    parent_message_id = Column(Integer, nullable=True)
    # "metadata" is reserved on declarative classes
    message_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    edited_at = Column(DateTime, nullable=True)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "parent_message_id": self.parent_message_id,
            "metadata": self.message_metadata or {},
            "created_at": self.created_at,
            "edited_at": self.edited_at,
        }
