from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

from pydantic import BaseModel
from sqlalchemy.orm import Session

if TYPE_CHECKING:
    from services.transcript_store import TranscriptStore


class ToolExecutionError(Exception):
    """Raised by a handler for an expected domain failure (bad reference, missing record)."""


@dataclass
class ToolContext:
    """Everything a handler may touch. Handlers must not reach outside it."""

    db: Session
    user_id: int
    conversation_id: int
    store: "TranscriptStore"
    call_id: str = ""


@dataclass
class ToolOutcome:
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = True
    ends_turn: bool = False
    # How the tool_result message is recorded. A UI action (plan preview,
    # input request) gets its own kind and a ``pending`` status; ``record``
    # is stored on the message payload but never sent back to the model.
    record_kind: str = "result"
    record_status: str | None = None
    record: dict[str, Any] | None = None

    @classmethod
    def ok(cls, data: dict[str, Any] | None = None, ends_turn: bool = False) -> "ToolOutcome":
        return cls(success=True, data=data or {}, ends_turn=ends_turn)

    @classmethod
    def ui_action(cls, kind: str, data: dict[str, Any], record: dict[str, Any], ends_turn: bool = False) -> "ToolOutcome":
        return cls(
            success=True,
            data=data,
            ends_turn=ends_turn,
            record_kind=kind,
            record_status="pending",
            record=record,
        )

    @classmethod
    def fail(cls, error: str, retryable: bool = True) -> "ToolOutcome":
        return cls(success=False, error=error, retryable=retryable)

    def to_payload(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data or {}}
        payload: dict[str, Any] = {"success": False, "error": self.error or "internal"}
        if not self.retryable:
            payload["retryable"] = False
        return payload


ToolResult = Union[ToolOutcome, dict[str, Any], None]
ToolHandler = Callable[[Any, ToolContext], Union[ToolResult, Awaitable[ToolResult]]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: type[BaseModel] | None = None
    read_only: bool = True
    # False for destructive actions the model must not retry on its own.
    retryable: bool = True
    # The turn stops after this tool's result is recorded (waiting on the user).
    ends_turn: bool = False
    progress_fields: tuple[str, ...] = ()
    tags: tuple[str, ...] = field(default_factory=tuple)

    def provider_schema(self) -> dict[str, Any]:
        parameters: dict[str, Any] = {"type": "object", "properties": {}}
        if self.args_model is not None:
            parameters = self.args_model.model_json_schema()
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": parameters,
        }
