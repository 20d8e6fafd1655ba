from sqlalchemy import Column, String, Text, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import relationship
from app.database.connection import Base


class Message(Base):
    __tablename__ = "messages"

    # Canonical id, see app.core.identifiers.normalize_message_id
    id = Column(String(36), primary_key=True)
    chat_id = Column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    role = Column(String(50), nullable=False)
    content = Column(Text, nullable=False)  # Plain text or JSON-serialized parts
    created_at = Column(String(64), nullable=False)  # Client-supplied, kept verbatim

    # Relationships
    chat = relationship("Chat", back_populates="messages")

    __table_args__ = (
        CheckConstraint(
            "role IN ('user', 'assistant', 'system')",
            name="check_message_role",
        ),
        Index("ix_messages_chat_user_created", "chat_id", "user_id", "created_at"),
    )

    def __repr__(self):
        return f"<Message(id={self.id}, chat_id={self.chat_id}, role={self.role})>"
