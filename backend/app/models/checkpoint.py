from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.database.connection import Base


class Checkpoint(Base):
    """A restore point: the position in a chat's message sequence at `timestamp`"""

    __tablename__ = "checkpoints"

    # Client-supplied id, used as-is
    id = Column(String(255), primary_key=True)
    chat_id = Column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    message_index = Column(Integer, nullable=False, default=0)
    timestamp = Column(String(64), nullable=False)  # Client-supplied, kept verbatim
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relationships
    chat = relationship("Chat", back_populates="checkpoints")

    __table_args__ = (
        Index("ix_checkpoints_chat_user", "chat_id", "user_id", "message_index"),
    )
