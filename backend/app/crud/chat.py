from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.identifiers import new_canonical_id
from app.database.connection import timed_operation
from app.models.chat import Chat
from app.models.checkpoint import Checkpoint
from app.models.message import Message
from app.schemas.chat import ChatCreateRequest


class ForeignRowConflict(Exception):
    """An upsert key already belongs to another chat or owner"""

    def __init__(self, relation: str, row_id: str):
        super().__init__(f"{relation} row {row_id} belongs to another chat")
        self.relation = relation
        self.row_id = row_id


def create_chat(db: Session, request: ChatCreateRequest, user_id: str) -> Chat:
    """Create a new chat"""
    db_chat = Chat(
        id=new_canonical_id(),
        user_id=user_id,
        title=request.title or settings.default_chat_title,
        model=request.model or settings.default_model,
        context=request.context,
        is_pinned=bool(request.pinned),
        updated_at=datetime.now(timezone.utc),
    )
    with timed_operation("create_chat"):
        db.add(db_chat)
        db.commit()
    db.refresh(db_chat)
    return db_chat


def get_user_chats(db: Session, user_id: str) -> List[Chat]:
    """Get all chats for a user, most recently updated first"""
    return (
        db.query(Chat)
        .filter(Chat.user_id == user_id)
        .order_by(Chat.updated_at.desc())
        .all()
    )


def get_chat_by_id(db: Session, chat_id: str, user_id: str) -> Optional[Chat]:
    """Get chat by ID for specific user"""
    return (
        db.query(Chat)
        .filter(Chat.id == chat_id, Chat.user_id == user_id)
        .first()
    )


def get_chat_messages(db: Session, chat_id: str, user_id: str) -> List[Message]:
    return (
        db.query(Message)
        .filter(Message.chat_id == chat_id, Message.user_id == user_id)
        .order_by(Message.created_at.asc())
        .all()
    )


def get_chat_checkpoints(db: Session, chat_id: str, user_id: str) -> List[Checkpoint]:
    return (
        db.query(Checkpoint)
        .filter(Checkpoint.chat_id == chat_id, Checkpoint.user_id == user_id)
        .order_by(Checkpoint.timestamp.asc())
        .all()
    )


def get_messages_for_chats(db: Session, chat_ids: Sequence[str], user_id: str) -> List[Message]:
    """Messages of several chats in one query, oldest first"""
    if not chat_ids:
        return []
    return (
        db.query(Message)
        .filter(Message.user_id == user_id, Message.chat_id.in_(chat_ids))
        .order_by(Message.created_at.asc())
        .all()
    )


def get_checkpoints_for_chats(db: Session, chat_ids: Sequence[str], user_id: str) -> List[Checkpoint]:
    if not chat_ids:
        return []
    return (
        db.query(Checkpoint)
        .filter(Checkpoint.user_id == user_id, Checkpoint.chat_id.in_(chat_ids))
        .order_by(Checkpoint.timestamp.asc())
        .all()
    )


def update_chat_metadata(db: Session, chat_id: str, user_id: str, patch: Dict[str, Any]) -> int:
    """Apply a column patch to one chat, scoped by owner.

    Returns the number of rows matched; 0 means the chat vanished or changed
    hands since it was looked up.
    """
    with timed_operation("update_chat_metadata"):
        matched = (
            db.query(Chat)
            .filter(Chat.id == chat_id, Chat.user_id == user_id)
            .update(patch, synchronize_session=False)
        )
        db.commit()
    return matched


def _upsert_row(db: Session, model, values: Dict[str, Any], chat_id: str, user_id: str) -> None:
    existing = db.get(model, values["id"])
    if existing is None:
        db.add(model(chat_id=chat_id, user_id=user_id, **values))
        return
    if existing.chat_id != chat_id or existing.user_id != user_id:
        raise ForeignRowConflict(model.__tablename__, values["id"])
    for field, value in values.items():
        setattr(existing, field, value)


def _replace_rows(
    db: Session, model, chat_id: str, user_id: str, rows: Sequence[Dict[str, Any]]
) -> Tuple[int, int]:
    """Make the chat's rows of `model` match `rows`: prune the absent ones, upsert the rest.

    Runs in one transaction; the caller rolls back on failure.
    """
    keep_ids = [row["id"] for row in rows]
    pruned = (
        db.query(model)
        .filter(model.chat_id == chat_id, model.user_id == user_id, model.id.notin_(keep_ids))
        .delete(synchronize_session=False)
    )
    for row in rows:
        _upsert_row(db, model, row, chat_id, user_id)
    db.commit()
    return len(rows), pruned


def replace_messages(
    db: Session, chat_id: str, user_id: str, rows: Sequence[Dict[str, Any]]
) -> Tuple[int, int]:
    """Upsert message rows keyed by canonical id. Returns (upserted, pruned)."""
    with timed_operation("replace_messages"):
        return _replace_rows(db, Message, chat_id, user_id, rows)


def replace_checkpoints(
    db: Session, chat_id: str, user_id: str, rows: Sequence[Dict[str, Any]]
) -> Tuple[int, int]:
    """Upsert checkpoint rows keyed by their own id. Returns (upserted, pruned)."""
    with timed_operation("replace_checkpoints"):
        return _replace_rows(db, Checkpoint, chat_id, user_id, rows)


def delete_chat(db: Session, chat_id: str, user_id: str) -> bool:
    """Delete a chat with its messages and checkpoints"""
    with timed_operation("delete_chat"):
        exists = (
            db.query(Chat)
            .filter(Chat.id == chat_id, Chat.user_id == user_id)
            .count()
        )
        if not exists:
            return False

        db.query(Message).filter(Message.chat_id == chat_id, Message.user_id == user_id).delete(
            synchronize_session=False
        )
        db.query(Checkpoint).filter(Checkpoint.chat_id == chat_id, Checkpoint.user_id == user_id).delete(
            synchronize_session=False
        )
        db.query(Chat).filter(Chat.id == chat_id, Chat.user_id == user_id).delete(
            synchronize_session=False
        )
        db.commit()
    return True
