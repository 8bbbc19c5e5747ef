"""Rebuild provider input from the stored transcript.

Only messages after the conversation's summarization checkpoint
(``Conversation.summary_cursor_seq``) are replayed verbatim; everything
before it lives in ``Conversation.context_summary`` and reaches the model
through the system instructions instead.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from ai.errors import AssemblyError
from db.models import Message
from services.transcript_store import TranscriptStore, message_payload

logger = logging.getLogger(__name__)

INTERRUPTED_OUTPUT = json.dumps({"success": False, "error": "interrupted before a result was recorded"})


def user_item(text: str) -> dict[str, Any]:
    return {"type": "message", "role": "user", "content": text}


def assistant_item(text: str) -> dict[str, Any]:
    return {"type": "message", "role": "assistant", "content": text}


def tool_call_item(call_id: str, name: str, arguments: str) -> dict[str, Any]:
    return {"type": "function_call", "call_id": call_id, "name": name, "arguments": arguments or "{}"}


def tool_result_item(call_id: str, output: str) -> dict[str, Any]:
    return {"type": "function_call_output", "call_id": call_id, "output": output}


def _result_output(message: Message) -> str:
    # UI actions change state after the fact; the model needs the current one.
    if message.status and message.kind != "result":
        return f"{message.content}\n[{message.kind} status: {message.status}]"
    return message.content


class InputAssembler:
    def __init__(self, store: TranscriptStore):
        self.store = store

    def build_input(
        self,
        conversation_id: int,
        new_user_turn: str,
        until: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return the ordered provider turns for this conversation plus ``new_user_turn``.

        ``until`` excludes messages at or after that ``seq`` (the caller
        passes the seq of the user message it just persisted).

        Raises AssemblyError when a ``tool_result`` has no earlier
        ``tool_call`` in the window.
        """
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise LookupError(f"Conversation {conversation_id} not found")

        window = self.store.list_since(conversation_id, conversation.summary_cursor_seq, until=until)
        turns = self.map_messages(window)
        turns.append(user_item(new_user_turn))
        return turns

    def map_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        turns: list[dict[str, Any]] = []
        open_calls: dict[str, int] = {}
        answered: set[str] = set()

        for message in messages:
            if message.role == "user":
                turns.append(user_item(message.content))
            elif message.role == "assistant":
                if message.content:
                    turns.append(assistant_item(message.content))
            elif message.role == "tool_call":
                call_id = message.call_id or ""
                if not call_id:
                    raise AssemblyError(f"tool_call message {message.id} has no call id")
                payload = message_payload(message)
                turns.append(tool_call_item(call_id, str(payload.get("name") or ""), payload.get("arguments") or "{}"))
                open_calls[call_id] = len(turns) - 1
            elif message.role == "tool_result":
                call_id = message.call_id or ""
                if call_id not in open_calls or call_id in answered:
                    raise AssemblyError(
                        f"tool_result message {message.id} (call {call_id or '?'}) has no matching tool_call"
                    )
                answered.add(call_id)
                turns.append(tool_result_item(call_id, _result_output(message)))
            else:
                logger.warning("Skipping message %s with unknown role %r", message.id, message.role)

        # A call recorded without a result (turn interrupted between the two
        # writes) still needs an output or the provider rejects the input.
        dangling = [cid for cid in open_calls if cid not in answered]
        for call_id in sorted(dangling, key=lambda cid: open_calls[cid], reverse=True):
            logger.warning("tool_call %s has no recorded result; marking interrupted", call_id)
            turns.insert(open_calls[call_id] + 1, tool_result_item(call_id, INTERRUPTED_OUTPUT))
        return turns
