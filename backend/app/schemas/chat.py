import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from app.core.config import settings
from app.core.errors import ValidationError
from app.core.identifiers import is_canonical_id

# Fields of an update request that change something; `id` only selects the chat.
UPDATABLE_FIELDS = frozenset({"title", "pinned", "model", "context", "messages", "checkpoints"})

# Upper bound of the message_index INTEGER column
MAX_MESSAGE_INDEX = 2**31 - 1


def _require_text(value: str) -> str:
    if not value.strip():
        raise ValueError("must be a non-empty string")
    return value


def _reject_null(value: Any) -> Any:
    # Optional fields may be omitted, but an explicit null is not an update
    if value is None:
        raise ValueError("must not be null")
    return value


def _require_chat_id(value: str) -> str:
    if not is_canonical_id(value):
        raise ValueError("Chat ID is required and must be a valid UUID")
    return value


def _clean_title(value: str) -> str:
    title = _require_text(value).strip()
    if len(title) > settings.chat_title_max_length:
        raise ValueError(f"must be at most {settings.chat_title_max_length} characters")
    return title


class WireModel(BaseModel):
    """Strict JSON input; camelCase on the wire, snake_case in Python"""

    model_config = ConfigDict(strict=True, alias_generator=to_camel, populate_by_name=True)


class ChatMessageIn(WireModel):
    id: StrictStr
    role: StrictStr
    # Plain text or a list of content parts (text, reasoning, tool calls, files)
    content: Union[StrictStr, List[Any]]
    created_at: StrictStr

    @field_validator("id", "role", "created_at")
    @classmethod
    def not_blank(cls, value: str) -> str:
        return _require_text(value)


class CheckpointIn(WireModel):
    id: StrictStr
    message_index: Union[StrictInt, StrictFloat]
    timestamp: StrictStr

    @field_validator("id", "timestamp")
    @classmethod
    def not_blank(cls, value: str) -> str:
        return _require_text(value)

    @field_validator("message_index")
    @classmethod
    def whole_non_negative(cls, value: Union[int, float]) -> int:
        if isinstance(value, float):
            if not math.isfinite(value) or not value.is_integer():
                raise ValueError("must be a whole number")
            value = int(value)
        if value < 0:
            raise ValueError("must not be negative")
        if value > MAX_MESSAGE_INDEX:
            raise ValueError(f"must be at most {MAX_MESSAGE_INDEX}")
        return value


class UpdateChatRequest(WireModel):
    """Partial update of one chat: metadata patch plus message/checkpoint snapshots"""

    id: StrictStr
    title: Optional[StrictStr] = None
    pinned: Optional[StrictBool] = None
    model: Optional[StrictStr] = None
    context: Optional[StrictStr] = None
    messages: Optional[List[ChatMessageIn]] = None
    checkpoints: Optional[List[CheckpointIn]] = None

    @field_validator(*sorted(UPDATABLE_FIELDS), mode="before")
    @classmethod
    def no_nulls(cls, value: Any) -> Any:
        return _reject_null(value)

    @field_validator("id")
    @classmethod
    def chat_id(cls, value: str) -> str:
        return _require_chat_id(value)

    @field_validator("title")
    @classmethod
    def clean_title(cls, value: str) -> str:
        return _clean_title(value)

    @field_validator("model")
    @classmethod
    def clean_model(cls, value: str) -> str:
        return _require_text(value).strip()

    @field_validator("messages")
    @classmethod
    def cap_messages(cls, value: List[ChatMessageIn]) -> List[ChatMessageIn]:
        if len(value) > settings.max_messages_per_update:
            raise ValueError(f"must contain at most {settings.max_messages_per_update} messages")
        return value

    @model_validator(mode="after")
    def require_change(self):
        if not self.model_fields_set & UPDATABLE_FIELDS:
            raise ValueError("At least one field to update is required")
        return self

    def metadata_fields(self) -> Dict[str, Any]:
        """Supplied chat-level fields, keyed by column name"""
        columns = {"title": "title", "pinned": "is_pinned", "model": "model", "context": "context"}
        return {
            column: getattr(self, field)
            for field, column in columns.items()
            if field in self.model_fields_set
        }


class ChatCreateRequest(WireModel):
    title: Optional[StrictStr] = None
    model: Optional[StrictStr] = None
    context: Optional[StrictStr] = None
    pinned: Optional[StrictBool] = None

    @field_validator("title")
    @classmethod
    def clean_title(cls, value: str) -> str:
        return _clean_title(value)


class ChatDeleteRequest(WireModel):
    id: StrictStr

    @field_validator("id")
    @classmethod
    def chat_id(cls, value: str) -> str:
        return _require_chat_id(value)


def _error_message(error: Dict[str, Any]) -> str:
    if error["type"] == "value_error" and "error" in error.get("ctx", {}):
        return str(error["ctx"]["error"])
    return error["msg"]


def _error_details(exc: PydanticValidationError) -> List[Dict[str, str]]:
    return [
        {
            "field": ".".join(str(part) for part in error["loc"]) or "body",
            "message": _error_message(error),
        }
        for error in exc.errors()
    ]


def parse_request(schema: type, payload: Any):
    """Validate a decoded JSON payload against schema.

    Raises ValidationError carrying one `{field, message}` entry per problem.
    Nothing is partially accepted: one bad element in a list rejects the
    whole request.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    try:
        return schema.model_validate(payload)
    except PydanticValidationError as e:
        details = _error_details(e)
        first = details[0]
        message = first["message"] if first["field"] == "body" else f"{first['field']}: {first['message']}"
        raise ValidationError(message, details=details)


def parse_update_request(payload: Any) -> UpdateChatRequest:
    return parse_request(UpdateChatRequest, payload)


# Responses

class ResponseModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ChatSummary(ResponseModel):
    id: str
    title: str
    pinned: bool = False
    updated_at: datetime

    @field_validator("updated_at")
    @classmethod
    def as_utc(cls, value: datetime) -> datetime:
        # SQLite reads DateTime(timezone=True) back naive; stored values are UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @classmethod
    def from_chat(cls, chat) -> "ChatSummary":
        return cls(id=chat.id, title=chat.title, pinned=bool(chat.is_pinned), updated_at=chat.updated_at)


class ChatMessageOut(ResponseModel):
    id: str
    role: str
    content: str  # Structured content comes back as its JSON text
    created_at: str


class CheckpointOut(ResponseModel):
    id: str
    message_index: int
    timestamp: str


class ChatDetail(ChatSummary):
    model: Optional[str] = None
    context: Optional[str] = None
    messages: List[ChatMessageOut] = Field(default_factory=list)
    checkpoints: List[CheckpointOut] = Field(default_factory=list)

    @classmethod
    def from_chat(cls, chat, messages=(), checkpoints=()) -> "ChatDetail":
        return cls(
            id=chat.id,
            title=chat.title,
            pinned=bool(chat.is_pinned),
            updated_at=chat.updated_at,
            model=chat.model,
            context=chat.context,
            messages=[ChatMessageOut.model_validate(m) for m in messages],
            checkpoints=[CheckpointOut.model_validate(c) for c in checkpoints],
        )
