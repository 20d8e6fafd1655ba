from sqlalchemy import Column, String, Text, Boolean, DateTime, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.identifiers import new_canonical_id
from app.database.connection import Base


class Chat(Base):
    __tablename__ = "chats"

    id = Column(String(36), primary_key=True, default=new_canonical_id)
    # Owner id as issued by the identity service
    user_id = Column(String(255), nullable=False, index=True)
    title = Column(String(255), nullable=False, default="New chat")
    model = Column(String(255), nullable=True)
    context = Column(Text, nullable=True)  # System prompt / conversation context
    is_pinned = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relationships
    messages = relationship("Message", back_populates="chat", cascade="all, delete-orphan", passive_deletes=True)
    checkpoints = relationship("Checkpoint", back_populates="chat", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index("ix_chats_user_updated", "user_id", "updated_at"),
    )

    def __repr__(self):
        return f"<Chat(id={self.id}, user_id={self.user_id}, title={self.title!r})>"
