import json
from collections import defaultdict
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, ValidationError
from app.core.identifiers import is_canonical_id
from app.core.logging import get_logger
from app.core.security import get_current_owner
from app.crud import chat as chat_crud
from app.database.connection import get_db
from app.schemas.chat import (
    ChatCreateRequest,
    ChatDeleteRequest,
    ChatDetail,
    parse_request,
    parse_update_request,
)
from app.services.chat_update_service import reconcile_chat_update

logger = get_logger(__name__)
router = APIRouter(prefix="/api/chat", tags=["chat"])


async def read_json_body(request: Request) -> Any:
    """Decode the request body, turning malformed JSON into a ValidationError"""
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON in request body")


@router.post("/create", status_code=status.HTTP_201_CREATED)
async def create_chat(
    request: Request,
    owner_id: str = Depends(get_current_owner),
    db: Session = Depends(get_db)
):
    """Create a new chat"""
    body = await read_json_body(request) if await request.body() else {}
    chat_request = parse_request(ChatCreateRequest, body)

    db_chat = chat_crud.create_chat(db, chat_request, owner_id)
    logger.info("Chat created", chat_id=db_chat.id, owner_id=owner_id)

    return {"success": True, "chat": ChatDetail.from_chat(db_chat).to_wire()}


@router.get("/list")
async def list_chats(
    id: Optional[str] = None,
    owner_id: str = Depends(get_current_owner),
    db: Session = Depends(get_db)
):
    """Return every chat of the caller keyed by id, or one chat when `id` is given.

    The bulk form carries messages and checkpoints too, so a client can
    rebuild its local cache from a single call. `order` is most recently
    updated first.
    """
    if id is None:
        chats = chat_crud.get_user_chats(db, owner_id)
        order = [chat.id for chat in chats]

        messages = defaultdict(list)
        for message in chat_crud.get_messages_for_chats(db, order, owner_id):
            messages[message.chat_id].append(message)
        checkpoints = defaultdict(list)
        for checkpoint in chat_crud.get_checkpoints_for_chats(db, order, owner_id):
            checkpoints[checkpoint.chat_id].append(checkpoint)

        return {
            "chats": {
                chat.id: ChatDetail.from_chat(chat, messages[chat.id], checkpoints[chat.id]).to_wire()
                for chat in chats
            },
            "order": order,
            "selectedId": order[0] if order else None,
        }

    if not is_canonical_id(id):
        raise ValidationError("Invalid chat ID format", details=[{"field": "id", "message": "must be a valid UUID"}])

    db_chat = chat_crud.get_chat_by_id(db, id, owner_id)
    if db_chat is None:
        raise NotFoundError("Chat")

    detail = ChatDetail.from_chat(
        db_chat,
        messages=chat_crud.get_chat_messages(db, id, owner_id),
        checkpoints=chat_crud.get_chat_checkpoints(db, id, owner_id),
    )
    return {"chat": detail.to_wire()}


@router.api_route("/update", methods=["PATCH", "PUT"])
async def update_chat(
    request: Request,
    owner_id: str = Depends(get_current_owner),
    db: Session = Depends(get_db)
):
    """Apply a partial update: metadata patch, message and checkpoint upserts"""
    update_request = parse_update_request(await read_json_body(request))

    result = reconcile_chat_update(db, owner_id, update_request)
    summary = result.raise_for_outcome()

    return {"success": True, "chat": summary.to_wire()}


@router.delete("/delete")
async def delete_chat(
    request: Request,
    owner_id: str = Depends(get_current_owner),
    db: Session = Depends(get_db)
):
    """Delete a chat together with its messages and checkpoints"""
    delete_request = parse_request(ChatDeleteRequest, await read_json_body(request))

    if not chat_crud.delete_chat(db, delete_request.id, owner_id):
        raise NotFoundError("Chat")

    logger.info("Chat deleted", chat_id=delete_request.id, owner_id=owner_id)
    return {"success": True, "message": "Chat deleted successfully"}
