from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.models import Conversation, Message

logger = logging.getLogger(__name__)

MESSAGE_ROLES = {"user", "assistant", "tool_call", "tool_result"}
MESSAGE_STATUSES = {"pending", "confirmed", "edited", "cancelled", "applied"}

# pending -> confirmed|edited|cancelled|applied; a confirmed or edited
# proposal can still be applied or cancelled. applied/cancelled are final.
STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"confirmed", "edited", "cancelled", "applied"}),
    "confirmed": frozenset({"applied", "cancelled"}),
    "edited": frozenset({"applied", "cancelled"}),
    "applied": frozenset(),
    "cancelled": frozenset(),
}

_APPEND_ATTEMPTS = 3


class InvalidStatusTransition(ValueError):
    def __init__(self, current: str | None, requested: str):
        super().__init__(f"Cannot move message status from `{current}` to `{requested}`")
        self.current = current
        self.requested = requested


def new_message(
    conversation_id: int,
    role: str,
    content: str = "",
    *,
    kind: str = "text",
    payload: dict[str, Any] | None = None,
    status: str | None = None,
    call_id: str | None = None,
) -> Message:
    if role not in MESSAGE_ROLES:
        raise ValueError(f"Unknown message role: {role}")
    if status is not None and status not in MESSAGE_STATUSES:
        raise ValueError(f"Unknown message status: {status}")
    return Message(
        conversation_id=conversation_id,
        role=role,
        kind=kind,
        content=content or "",
        payload_json=json.dumps(payload, ensure_ascii=False) if payload is not None else None,
        status=status,
        call_id=call_id,
    )


def message_payload(message: Message) -> dict[str, Any]:
    if not message.payload_json:
        return {}
    try:
        data = json.loads(message.payload_json)
    except json.JSONDecodeError:
        logger.warning("Message %s carries unreadable payload", message.id)
        return {}
    return data if isinstance(data, dict) else {}


def serialize_message(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "seq": message.seq,
        "role": message.role,
        "kind": message.kind,
        "call_id": message.call_id,
        "content": message.content,
        "payload": message_payload(message) or None,
        "status": message.status,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


class TranscriptStore:
    """Durable, append-mostly access to conversations and their messages.

    Every ``append`` commits on its own so a message is durable the moment it
    is written; a later failure in the same turn never rolls it back.
    """

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # conversations
    # ------------------------------------------------------------------
    def create_conversation(self, owner_id: int, title: str | None = None) -> Conversation:
        conversation = Conversation(owner_id=owner_id, title=title)
        self.db.add(conversation)
        self.db.commit()
        self.db.refresh(conversation)
        return conversation

    def get_conversation(self, conversation_id: int, owner_id: int | None = None) -> Conversation | None:
        query = self.db.query(Conversation).filter(
            Conversation.id == conversation_id,
            Conversation.deleted_at.is_(None),
        )
        if owner_id is not None:
            query = query.filter(Conversation.owner_id == owner_id)
        return query.first()

    def list_conversations(self, owner_id: int, limit: int = 50) -> list[Conversation]:
        return (
            self.db.query(Conversation)
            .filter(Conversation.owner_id == owner_id, Conversation.deleted_at.is_(None))
            .order_by(Conversation.updated_at.desc())
            .limit(limit)
            .all()
        )

    def touch(self, conversation: Conversation) -> None:
        conversation.updated_at = datetime.utcnow()
        self.db.commit()

    def soft_delete_conversation(self, conversation: Conversation) -> None:
        conversation.deleted_at = datetime.utcnow()
        self.db.commit()

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------
    def _next_seq(self, conversation_id: int) -> int:
        current = (
            self.db.query(func.max(Message.seq))
            .filter(Message.conversation_id == conversation_id)
            .scalar()
        )
        return int(current or 0) + 1

    def append(self, message: Message) -> int:
        """Insert ``message`` at the end of its conversation and return its id."""
        for attempt in range(1, _APPEND_ATTEMPTS + 1):
            message.seq = self._next_seq(message.conversation_id)
            self.db.add(message)
            try:
                self.db.commit()
            except IntegrityError:
                # Another writer took the same seq; retry with a fresh one.
                self.db.rollback()
                if attempt == _APPEND_ATTEMPTS:
                    raise
                logger.info(
                    "Seq collision in conversation %s (attempt %s)",
                    message.conversation_id,
                    attempt,
                )
                continue
            self.db.refresh(message)
            return message.id
        raise RuntimeError("unreachable")

    def list_since(
        self,
        conversation_id: int,
        cursor: int | None,
        until: int | None = None,
    ) -> list[Message]:
        """Messages with ``cursor < seq < until`` in causal order."""
        query = self.db.query(Message).filter(
            Message.conversation_id == conversation_id,
            Message.deleted_at.is_(None),
        )
        if cursor is not None:
            query = query.filter(Message.seq > cursor)
        if until is not None:
            query = query.filter(Message.seq < until)
        return query.order_by(Message.seq.asc()).all()

    def list_messages(self, conversation_id: int, limit: int = 50, offset: int = 0) -> list[Message]:
        rows = (
            self.db.query(Message)
            .filter(Message.conversation_id == conversation_id, Message.deleted_at.is_(None))
            .order_by(Message.seq.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return list(reversed(rows))

    def get_message(self, message_id: int, conversation_id: int | None = None) -> Message | None:
        query = self.db.query(Message).filter(Message.id == message_id, Message.deleted_at.is_(None))
        if conversation_id is not None:
            query = query.filter(Message.conversation_id == conversation_id)
        return query.first()

    def find_by_call_id(self, conversation_id: int, call_id: str, role: str = "tool_result") -> Message | None:
        return (
            self.db.query(Message)
            .filter(
                Message.conversation_id == conversation_id,
                Message.call_id == call_id,
                Message.role == role,
                Message.deleted_at.is_(None),
            )
            .order_by(Message.seq.desc())
            .first()
        )

    def update_status(self, message_id: int, status: str) -> Message:
        if status not in MESSAGE_STATUSES:
            raise ValueError(f"Unknown message status: {status}")
        message = self.get_message(message_id)
        if message is None:
            raise LookupError(f"Message {message_id} not found")
        current = message.status
        if current is None or status not in STATUS_TRANSITIONS.get(current, frozenset()):
            raise InvalidStatusTransition(current, status)
        message.status = status
        self.db.commit()
        return message
