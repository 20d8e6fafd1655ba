"""
Client-side conversation persistence.

Pushes the local state of a conversation to ``PATCH /api/chat/update``. Per
conversation at most one request is in flight: a new ``persist`` call cancels
the previous request and its timer, so a slow older write can never land
after a newer one. Cancellation (superseded, timed out, torn down) is a normal
outcome, not an error; the next state change simply persists again.

Each conversation gets a ``PersistSession`` with the states::

    idle -> pending -> completed
                    -> aborted

``teardown`` must be called when the owning UI context goes away.
"""
import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import httpx

from app.core.logging import persistence_logger as logger

PERSIST_TIMEOUT_SECONDS = 10.0
UPDATE_ENDPOINT = "/api/chat/update"


class PersistState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    COMPLETED = "completed"
    ABORTED = "aborted"


class PersistOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    REJECTED = "rejected"  # server answered with a non-success status
    ABORTED = "aborted"  # superseded, timed out or torn down
    FAILED = "failed"  # transport error


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _extract_timestamp(message: Mapping[str, Any]) -> str:
    for key in ("createdAt", "created_at"):
        value = message.get(key)
        if isinstance(value, datetime):
            return _format_timestamp(value)
        if isinstance(value, str) and value:
            try:
                return _format_timestamp(datetime.fromisoformat(value.replace("Z", "+00:00")))
            except ValueError:
                continue
    return _format_timestamp(datetime.now(timezone.utc))


def _extract_text(message: Mapping[str, Any]) -> str:
    parts = message.get("parts")
    if isinstance(parts, list):
        return "\n".join(
            part["text"]
            for part in parts
            if isinstance(part, Mapping) and part.get("type") == "text" and isinstance(part.get("text"), str)
        ).strip()
    content = message.get("content")
    return content if isinstance(content, str) else ""


def ui_message_to_chat_message(message: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert a UI chat message into the update endpoint's message shape"""
    return {
        "id": message["id"],
        "role": message["role"],
        "content": _extract_text(message),
        "createdAt": _extract_timestamp(message),
    }


class PersistSession:
    """Persistence bookkeeping for a single conversation"""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self.state = PersistState.IDLE
        self.generation = 0
        self.task: Optional[asyncio.Task] = None
        self.timer: Optional[asyncio.TimerHandle] = None
        self.last_outcome: Optional[PersistOutcome] = None
        self.last_chat: Optional[Dict[str, Any]] = None

    def is_current(self, generation: int) -> bool:
        return generation == self.generation

    def cancel(self) -> bool:
        """Clear the timer and cancel the in-flight request.

        Returns True if a request was still pending.
        """
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        if self.task is not None and not self.task.done():
            self.task.cancel()
            return True
        return False

    def invalidate(self) -> bool:
        """Cancel pending work so that nothing it does later changes this session"""
        self.generation += 1
        pending = self.cancel()
        if pending:
            self.state = PersistState.ABORTED
            self.last_outcome = PersistOutcome.ABORTED
        return pending


class ConversationPersistence:
    """Serializes update calls per conversation, newest call wins.

    ``on_synced(conversation_id, chat)`` is called with the server's canonical
    chat summary (id, title, pinned, updatedAt) after a successful persist.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str = UPDATE_ENDPOINT,
        timeout: float = PERSIST_TIMEOUT_SECONDS,
        to_wire_message: Callable[[Mapping[str, Any]], Dict[str, Any]] = ui_message_to_chat_message,
        on_synced: Optional[Callable[[str, Dict[str, Any]], None]] = None,
        owns_client: bool = False,
    ):
        self.client = client
        self.endpoint = endpoint
        self.timeout = timeout
        self.to_wire_message = to_wire_message
        self.on_synced = on_synced
        self.owns_client = owns_client
        self._sessions: Dict[str, PersistSession] = {}

    async def __aenter__(self) -> "ConversationPersistence":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def session(self, conversation_id: str) -> PersistSession:
        if conversation_id not in self._sessions:
            self._sessions[conversation_id] = PersistSession(conversation_id)
        return self._sessions[conversation_id]

    def build_payload(
        self, conversation_id: str, conversation: Mapping[str, Any], messages: Sequence[Mapping[str, Any]]
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": conversation_id,
            "messages": [self.to_wire_message(message) for message in messages],
        }
        title = conversation.get("title")
        if isinstance(title, str) and title.strip():
            payload["title"] = title
        return payload

    def persist(
        self, conversation_id: str, conversation: Mapping[str, Any], messages: Sequence[Mapping[str, Any]]
    ) -> "asyncio.Task[PersistOutcome]":
        """Start pushing the conversation, superseding any earlier push for it.

        Must be called from a running event loop. The returned task resolves
        to a PersistOutcome and never raises for network problems; a task
        superseded before it got to run ends cancelled instead.
        """
        session = self.session(conversation_id)
        if session.invalidate():
            logger.debug("Persist superseded", conversation_id=conversation_id)

        generation = session.generation
        payload = self.build_payload(conversation_id, conversation, messages)

        loop = asyncio.get_running_loop()
        session.state = PersistState.PENDING
        session.task = loop.create_task(self._send(session, generation, payload))
        session.timer = loop.call_later(self.timeout, self._expire, session, generation)
        return session.task

    def _expire(self, session: PersistSession, generation: int) -> None:
        if not session.is_current(generation):
            return
        session.timer = None
        if session.task is not None and not session.task.done():
            logger.debug("Persist timed out", conversation_id=session.conversation_id, timeout=self.timeout)
            session.task.cancel()

    def _finish(
        self,
        session: PersistSession,
        generation: int,
        state: PersistState,
        outcome: PersistOutcome,
        chat: Optional[Dict[str, Any]] = None,
    ) -> PersistOutcome:
        if not session.is_current(generation):
            # Superseded or torn down meanwhile: no transitions from this call
            return PersistOutcome.ABORTED
        if session.timer is not None:
            session.timer.cancel()
            session.timer = None
        session.state = state
        session.last_outcome = outcome
        if chat is not None:
            session.last_chat = chat
            if self.on_synced is not None:
                self.on_synced(session.conversation_id, chat)
        return outcome

    async def _send(self, session: PersistSession, generation: int, payload: Dict[str, Any]) -> PersistOutcome:
        conversation_id = session.conversation_id
        try:
            response = await self.client.request("PATCH", self.endpoint, json=payload)
        except asyncio.CancelledError:
            logger.debug("Persist aborted", conversation_id=conversation_id)
            return self._finish(session, generation, PersistState.ABORTED, PersistOutcome.ABORTED)
        except httpx.HTTPError as e:
            if session.is_current(generation):
                logger.error(
                    "Persist error",
                    conversation_id=conversation_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            return self._finish(session, generation, PersistState.COMPLETED, PersistOutcome.FAILED)

        if not session.is_current(generation):
            return PersistOutcome.ABORTED

        if not response.is_success:
            logger.warning(
                "Persist failed",
                conversation_id=conversation_id,
                status=response.status_code,
                detail=response.text,
            )
            return self._finish(session, generation, PersistState.COMPLETED, PersistOutcome.REJECTED)

        try:
            body = response.json()
        except ValueError:
            body = None
        chat = body.get("chat") if isinstance(body, dict) else None
        if not isinstance(chat, dict):
            chat = None
        return self._finish(session, generation, PersistState.COMPLETED, PersistOutcome.SUCCEEDED, chat)

    def pending_tasks(self) -> List[asyncio.Task]:
        return [
            session.task
            for session in self._sessions.values()
            if session.task is not None and not session.task.done()
        ]

    def teardown(self, conversation_id: Optional[str] = None) -> None:
        """Cancel in-flight requests and timers for one conversation, or for all"""
        conversation_ids = [conversation_id] if conversation_id is not None else list(self._sessions)
        for cid in conversation_ids:
            session = self._sessions.pop(cid, None)
            if session is not None and session.invalidate():
                logger.debug("Persist cancelled on teardown", conversation_id=cid)

    async def aclose(self) -> None:
        tasks = self.pending_tasks()
        self.teardown()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self.owns_client:
            await self.client.aclose()
