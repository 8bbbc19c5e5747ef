from __future__ import annotations

import json
import logging
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, ValidationError

from db.models import Conversation

logger = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = 1


class PendingPlanConfirmation(BaseModel):
    kind: Literal["plan_confirmation"] = "plan_confirmation"
    call_id: str
    message_id: int | None = None
    plan_type: Literal["workout", "meal"]


class PendingInputRequest(BaseModel):
    kind: Literal["input_request"] = "input_request"
    call_id: str
    message_id: int | None = None
    input_type: Literal["radio", "checkbox", "slider", "text"]
    prompt: str = ""


PendingAction = Annotated[
    Union[PendingPlanConfirmation, PendingInputRequest],
    Field(discriminator="kind"),
]


class ConversationState(BaseModel):
    schema_version: int = STATE_SCHEMA_VERSION
    active_purpose: Literal["routine_generation", "meal_planning"] | None = None
    pending: PendingAction | None = None


def load_state(conversation: Conversation) -> ConversationState:
    raw = conversation.state_json
    if not raw:
        return ConversationState()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Conversation %s has unreadable state; resetting", conversation.id)
        return ConversationState()
    if not isinstance(data, dict) or data.get("schema_version") != STATE_SCHEMA_VERSION:
        logger.warning(
            "Conversation %s state schema %r not supported; resetting",
            conversation.id,
            data.get("schema_version") if isinstance(data, dict) else None,
        )
        return ConversationState()
    try:
        return ConversationState.model_validate(data)
    except ValidationError as exc:
        logger.warning("Conversation %s state failed validation: %s", conversation.id, exc)
        return ConversationState()


def save_state(conversation: Conversation, state: ConversationState) -> None:
    """Write ``state`` onto the row. The caller commits."""
    conversation.state_json = state.model_dump_json()


def clear_pending(
    conversation: Conversation,
    kinds: set[str] | None = None,
    call_id: str | None = None,
) -> ConversationState:
    """Drop the pending action if it matches ``kinds`` (any kind when None).

    With ``call_id`` only the action raised by that tool call is dropped, so
    settling an older preview leaves a newer one waiting.
    """
    state = load_state(conversation)
    pending = state.pending
    if pending is None or (kinds is not None and pending.kind not in kinds):
        return state
    if call_id is None or pending.call_id == call_id:
        state.pending = None
        save_state(conversation, state)
    return state


def attach_message_id(conversation: Conversation, call_id: str, message_id: int) -> bool:
    """Link the pending action created by ``call_id`` to its recorded message."""
    state = load_state(conversation)
    if state.pending is None or state.pending.call_id != call_id:
        return False
    state.pending.message_id = message_id
    save_state(conversation, state)
    return True
