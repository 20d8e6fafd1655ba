"""
Message identifier normalization.

Clients may generate their own message ids ("msg-1", nanoid strings, ...).
Storage keys are UUIDs, so non-canonical ids are mapped onto a UUIDv5 under a
fixed namespace. The mapping is pure: resubmitting the same client id always
lands on the same row.
"""
import re
import uuid
from typing import Any

CANONICAL_ID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}",
    re.IGNORECASE,
)

# Never change: every stored message id derived from a client id depends on it.
MESSAGE_NAMESPACE = uuid.UUID("6ba7b810-9dad-11d1-80b4-00c04fd430c8")


def is_canonical_id(value: Any) -> bool:
    """True if value is a string in canonical UUID form"""
    return isinstance(value, str) and CANONICAL_ID_PATTERN.fullmatch(value) is not None


def normalize_message_id(candidate: str) -> str:
    """Return candidate unchanged if canonical, else its deterministic UUIDv5"""
    if is_canonical_id(candidate):
        return candidate
    return str(uuid.uuid5(MESSAGE_NAMESPACE, candidate))


def new_canonical_id() -> str:
    return str(uuid.uuid4())
