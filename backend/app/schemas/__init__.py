from .chat import (
    ChatMessageIn, CheckpointIn, UpdateChatRequest, ChatCreateRequest, ChatDeleteRequest,
    ChatSummary, ChatDetail, ChatMessageOut, CheckpointOut,
    parse_request, parse_update_request,
)

__all__ = [
    "ChatMessageIn", "CheckpointIn", "UpdateChatRequest", "ChatCreateRequest", "ChatDeleteRequest",
    "ChatSummary", "ChatDetail", "ChatMessageOut", "CheckpointOut",
    "parse_request", "parse_update_request",
]
