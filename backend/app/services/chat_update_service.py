"""
Chat update reconciliation.

Applies a validated partial update to the store in three portions, each
committed on its own:

1. chat metadata (always, refreshes ``updated_at``)
2. messages snapshot (if a non-empty list was sent)
3. checkpoints snapshot (if a non-empty list was sent)

Ownership is confirmed before anything is written and enforced again by the
owner predicate on every write. A failure after step 1 leaves the metadata
applied; the result says so instead of collapsing into a single failure.
"""
import json
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import APIError, NotFoundError, PartialApplyError, StoreError
from app.core.identifiers import normalize_message_id
from app.core.logging import chat_logger
from app.core.monitoring import record_chat_update, record_rows_pruned, record_rows_upserted
from app.crud import chat as chat_crud
from app.schemas.chat import ChatMessageIn, ChatSummary, CheckpointIn, UpdateChatRequest


class UpdateOutcome(str, Enum):
    APPLIED = "applied"
    METADATA_ONLY = "metadata_only"
    REJECTED = "rejected"


@dataclass
class ChatUpdateResult:
    outcome: UpdateOutcome
    chat: Optional[ChatSummary] = None
    error: Optional[APIError] = None

    @property
    def applied(self) -> bool:
        return self.outcome is UpdateOutcome.APPLIED

    def raise_for_outcome(self) -> ChatSummary:
        """Return the chat summary, or raise the error behind a partial or rejected update"""
        if self.error is not None:
            raise self.error
        return self.chat


def serialize_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, separators=(",", ":"), ensure_ascii=False)


def build_message_rows(messages: List[ChatMessageIn]) -> List[Dict[str, Any]]:
    """Map wire messages to rows keyed by canonical id; a repeated id keeps its last version"""
    rows: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for message in messages:
        message_id = normalize_message_id(message.id)
        rows[message_id] = {
            "id": message_id,
            "role": message.role,
            "content": serialize_content(message.content),
            "created_at": message.created_at,
        }
    return list(rows.values())


def build_checkpoint_rows(checkpoints: List[CheckpointIn]) -> List[Dict[str, Any]]:
    rows: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for checkpoint in checkpoints:
        rows[checkpoint.id] = {
            "id": checkpoint.id,
            "message_index": checkpoint.message_index,
            "timestamp": checkpoint.timestamp,
        }
    return list(rows.values())


def _rejected(error: APIError) -> ChatUpdateResult:
    record_chat_update(UpdateOutcome.REJECTED.value)
    return ChatUpdateResult(outcome=UpdateOutcome.REJECTED, error=error)


def reconcile_chat_update(db: Session, owner_id: str, request: UpdateChatRequest) -> ChatUpdateResult:
    """Apply a validated update for owner_id and report how much of it landed"""
    chat_id = request.id

    chat = chat_crud.get_chat_by_id(db, chat_id, owner_id)
    if chat is None:
        chat_logger.info("Update for unknown chat", chat_id=chat_id, owner_id=owner_id)
        return _rejected(NotFoundError("Chat"))

    patch = {"updated_at": datetime.now(timezone.utc), **request.metadata_fields()}
    try:
        matched = chat_crud.update_chat_metadata(db, chat_id, owner_id, patch)
    except SQLAlchemyError as e:
        db.rollback()
        chat_logger.error("Chat metadata update failed", chat_id=chat_id, error=str(e))
        return _rejected(StoreError("Failed to update chat"))

    if not matched:
        # Ownership changed between the lookup and the write
        chat_logger.warning("Chat disappeared before update", chat_id=chat_id, owner_id=owner_id)
        return _rejected(NotFoundError("Chat"))

    db.refresh(chat)
    summary = ChatSummary.from_chat(chat)

    portions = []
    if request.messages:
        portions.append(("messages", chat_crud.replace_messages, build_message_rows(request.messages)))
    if request.checkpoints:
        portions.append(("checkpoints", chat_crud.replace_checkpoints, build_checkpoint_rows(request.checkpoints)))

    for relation, replace, rows in portions:
        try:
            upserted, pruned = replace(db, chat_id, owner_id, rows)
        except (SQLAlchemyError, OverflowError, chat_crud.ForeignRowConflict) as e:
            db.rollback()
            chat_logger.error(
                "Chat update partially applied",
                chat_id=chat_id,
                failed=relation,
                error=str(e),
            )
            record_chat_update(UpdateOutcome.METADATA_ONLY.value)
            return ChatUpdateResult(
                outcome=UpdateOutcome.METADATA_ONLY,
                chat=summary,
                error=PartialApplyError(chat_id, relation),
            )
        record_rows_upserted(relation, upserted)
        record_rows_pruned(relation, pruned)

    chat_logger.info(
        "Chat updated",
        chat_id=chat_id,
        fields=sorted(request.model_fields_set - {"id"}),
        messages=len(request.messages or []),
        checkpoints=len(request.checkpoints or []),
    )
    record_chat_update(UpdateOutcome.APPLIED.value)
    return ChatUpdateResult(outcome=UpdateOutcome.APPLIED, chat=summary)
