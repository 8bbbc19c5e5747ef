"""Drive one conversation turn against the model provider.

A turn is a loop of provider round trips. Each round trip streams text and
tool calls; tool calls are validated as soon as their arguments finish
streaming and executed, in the order the model sent them, once the response
completes. Every message is committed on its own, so whatever was persisted
before an abort stays valid.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from sqlalchemy.orm import Session

from config import settings
from ai.context_builder import build_instructions
from ai.errors import ArgumentParseError, AssemblyError, ProviderError, TransportClosed, UnknownToolError
from ai.input_assembler import InputAssembler, assistant_item, tool_call_item, tool_result_item
from ai.progress_tracker import ArgumentProgressTracker
from ai.providers.base import (
    AIProvider,
    ResponseCompleted,
    TextDelta,
    TextDone,
    ToolCallArgumentsDelta,
    ToolCallDone,
    ToolCallStarted,
)
from ai.transport import TransportWriter
from db.models import User
from services.conversation_state import attach_message_id, clear_pending, load_state
from services.transcript_store import InvalidStatusTransition, TranscriptStore, new_message
from tools import tool_registry
from tools.base import ToolContext, ToolOutcome
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

GREETING_SENTINEL = "__START__"
MAX_TOOL_CALLS_PER_TURN = 15


@dataclass
class TurnOutcome:
    status: str  # completed | awaiting_user | error | aborted
    messages_persisted: int = 0
    round_trips: int = 0
    message_ids: list[int] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None

    def summary(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "messages_persisted": self.messages_persisted,
            "round_trips": self.round_trips,
            "message_ids": list(self.message_ids),
        }


@dataclass
class _ToolCall:
    call_id: str
    name: str
    raw_arguments: str = ""
    arguments: dict[str, Any] | None = None
    error: Exception | None = None
    done: bool = False


class StreamingOrchestrator:
    def __init__(
        self,
        db: Session,
        provider: AIProvider,
        registry: ToolRegistry | None = None,
        max_round_trips: int | None = None,
        snap_percent: int | None = None,
    ):
        self.db = db
        self.provider = provider
        self.registry = registry or tool_registry
        self.max_round_trips = max(int(max_round_trips or settings.AI_MAX_ROUND_TRIPS), 1)
        self.snap_percent = snap_percent or settings.PROGRESS_SNAP_PERCENT
        self.store = TranscriptStore(db)
        self.assembler = InputAssembler(self.store)

    async def run(
        self,
        conversation_id: int,
        user_id: int,
        new_user_turn: str,
        transport: TransportWriter,
    ) -> TurnOutcome:
        outcome = TurnOutcome(status="completed")
        conversation = self.store.get_conversation(conversation_id, owner_id=user_id)
        if conversation is None:
            raise LookupError(f"Conversation {conversation_id} not found")

        try:
            await self._run_turn(conversation, user_id, new_user_turn, transport, outcome)
        except TransportClosed:
            outcome.status = "aborted"
            logger.info(
                "Turn aborted by client disconnect (conversation=%s, round_trips=%s, persisted=%s)",
                conversation_id,
                outcome.round_trips,
                outcome.messages_persisted,
            )
            await transport.send("error", {"code": TransportClosed.code, **outcome.summary()})
        except (AssemblyError, ProviderError) as exc:
            logger.error("Turn failed in conversation %s: %s", conversation_id, exc)
            await self._fail(transport, outcome, exc.code, str(exc))
        except Exception:
            logger.exception("Unexpected failure in conversation %s", conversation_id)
            self.db.rollback()
            await self._fail(transport, outcome, "internal", "Something went wrong while generating a reply.")
        finally:
            try:
                self.store.touch(conversation)
            except Exception:
                logger.exception("Could not touch conversation %s", conversation_id)
                self.db.rollback()
            transport.close()
        return outcome

    async def _run_turn(
        self,
        conversation,
        user_id: int,
        new_user_turn: str,
        transport: TransportWriter,
        outcome: TurnOutcome,
    ) -> None:
        greeting = new_user_turn.strip() == GREETING_SENTINEL
        until = None
        if not greeting:
            self._close_input_request(conversation)
            user_msg = new_message(conversation.id, "user", new_user_turn)
            self._persist(user_msg, outcome)
            until = user_msg.seq

        turns = self.assembler.build_input(conversation.id, new_user_turn, until=until)
        user = self.db.get(User, user_id)
        instructions = build_instructions(self.db, conversation, user, greeting=greeting)
        schemas = self.registry.tool_schemas()
        tracker = ArgumentProgressTracker(self.registry.get_spec, snap_percent=self.snap_percent)
        blocked: set[str] = set()
        # Call ids must stay unique across the assembled input or the next turn cannot be rebuilt.
        seen_call_ids = {item["call_id"] for item in turns if item.get("type") == "function_call"}
        tool_calls_run = 0
        greeted = False

        logger.info(
            "Turn started (conversation=%s, greeting=%s, input_items=%s)",
            conversation.id,
            greeting,
            len(turns),
        )

        while True:
            self._check_transport(transport)
            if outcome.round_trips >= self.max_round_trips:
                logger.warning(
                    "Round-trip budget (%s) exhausted in conversation %s", self.max_round_trips, conversation.id
                )
                await self._fail(
                    transport,
                    outcome,
                    "round_trip_budget_exhausted",
                    f"Stopped after {self.max_round_trips} model round trips.",
                )
                return
            outcome.round_trips += 1
            logger.info("Round trip %s (conversation=%s)", outcome.round_trips, conversation.id)

            text_parts: list[str] = []
            calls: dict[str, _ToolCall] = {}
            call_ids: dict[str, str] = {}  # provider id -> id used for this call
            completed = False

            stream = self.provider.stream_completion(turns, schemas, instructions)
            try:
                async for event in stream:
                    if isinstance(event, TextDelta):
                        text_parts.append(event.text)
                        await self._emit(transport, "text_delta", {"text": event.text})

                    elif isinstance(event, TextDone):
                        text = event.text or "".join(text_parts)
                        text_parts = []
                        kind = "text"
                        if greeting and not greeted:
                            kind, greeted = "greeting", True
                        await self._persist_text(conversation.id, text, kind, turns, transport, outcome)

                    elif isinstance(event, ToolCallStarted):
                        call_id = self._claim_call_id(event.call_id, seen_call_ids)
                        call_ids[event.call_id] = call_id
                        calls[call_id] = _ToolCall(call_id=call_id, name=event.name)
                        tracker.start(call_id, event.name)
                        milestone = tracker.feed(call_id, "")
                        if milestone.changed:
                            await self._emit(transport, "tool_progress", milestone.to_event())

                    elif isinstance(event, ToolCallArgumentsDelta):
                        call_id = call_ids.get(event.call_id)
                        if call_id is None:
                            logger.warning("Arguments delta for unannounced call %r ignored", event.call_id)
                            continue
                        milestone = tracker.feed(call_id, event.delta)
                        if milestone.changed:
                            await self._emit(transport, "tool_progress", milestone.to_event())

                    elif isinstance(event, ToolCallDone):
                        call_id = call_ids.pop(event.call_id, None)
                        if call_id is None or calls[call_id].done:
                            call_id = self._claim_call_id(event.call_id, seen_call_ids)
                        call = calls.setdefault(call_id, _ToolCall(call_id=call_id, name=""))
                        if event.arguments:
                            tracker.replace(call_id, event.arguments)
                        self._finish_call(call, tracker)

                    elif isinstance(event, ResponseCompleted):
                        completed = True
                        logger.info(
                            "Response completed (tokens_in=%s, tokens_out=%s)", event.tokens_in, event.tokens_out
                        )
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

            if not completed:
                raise ProviderError("Provider stream ended without completing the response")

            if text_parts:
                kind = "text"
                if greeting and not greeted:
                    kind, greeted = "greeting", True
                await self._persist_text(conversation.id, "".join(text_parts), kind, turns, transport, outcome)

            if not calls:
                await transport.send("done", outcome.summary())
                return

            ends_turn = False
            for call in calls.values():
                self._check_transport(transport)
                if not call.done:
                    self._finish_call(call, tracker)
                tool_calls_run += 1
                result = await self._run_tool(
                    conversation,
                    user_id,
                    call,
                    blocked,
                    over_limit=tool_calls_run > MAX_TOOL_CALLS_PER_TURN,
                    turns=turns,
                    transport=transport,
                    outcome=outcome,
                )
                ends_turn = ends_turn or (result.success and result.ends_turn)
            tracker.clear()

            if ends_turn:
                outcome.status = "awaiting_user"
                await transport.send("done", outcome.summary())
                return

    # ------------------------------------------------------------------
    # tools
    # ------------------------------------------------------------------
    @staticmethod
    def _claim_call_id(provider_call_id: str, seen: set[str]) -> str:
        call_id = provider_call_id
        if not call_id or call_id in seen:
            call_id = f"call_{uuid4().hex}"
            logger.warning("Provider call id %r is empty or reused; recording it as %s", provider_call_id, call_id)
        seen.add(call_id)
        return call_id

    def _finish_call(self, call: _ToolCall, tracker: ArgumentProgressTracker) -> None:
        call.done = True
        call.raw_arguments = tracker.buffer(call.call_id)
        if self.registry.get_spec(call.name) is None:
            tracker.discard(call.call_id)
            call.error = UnknownToolError(call.name or "<missing>")
            logger.warning("Model requested unknown tool %r", call.name)
            return
        try:
            call.arguments = tracker.finalize(call.call_id)
        except ArgumentParseError as exc:
            call.error = exc
            logger.warning("Arguments for %s (%s) rejected: %s", call.name, call.call_id, exc)

    async def _run_tool(
        self,
        conversation,
        user_id: int,
        call: _ToolCall,
        blocked: set[str],
        over_limit: bool,
        turns: list[dict],
        transport: TransportWriter,
        outcome: TurnOutcome,
    ) -> ToolOutcome:
        raw_arguments = call.raw_arguments or "{}"
        call_msg = new_message(
            conversation.id,
            "tool_call",
            kind="call",
            call_id=call.call_id,
            payload={"name": call.name, "arguments": raw_arguments},
        )
        self._persist(call_msg, outcome)

        details: list = []
        if call.error is not None:
            result = ToolOutcome.fail(str(call.error))
            details = getattr(call.error, "details", [])
        elif over_limit:
            result = ToolOutcome.fail(f"Tool call limit ({MAX_TOOL_CALLS_PER_TURN}) reached for this turn")
        elif call.name in blocked:
            result = ToolOutcome.fail(
                f"{call.name} already failed in this turn. Ask the user to confirm before trying again.",
                retryable=False,
            )
        else:
            ctx = ToolContext(
                db=self.db,
                user_id=user_id,
                conversation_id=conversation.id,
                store=self.store,
                call_id=call.call_id,
            )
            try:
                result = await self.registry.execute(call.name, call.arguments, ctx)
            except (UnknownToolError, ArgumentParseError) as exc:
                result = ToolOutcome.fail(str(exc))
                details = getattr(exc, "details", [])

        if not result.success and not result.retryable:
            blocked.add(call.name)

        model_payload = result.to_payload()
        if details:
            model_payload["details"] = details
        content = json.dumps(model_payload, ensure_ascii=False, default=str)

        result_msg = new_message(
            conversation.id,
            "tool_result",
            content,
            kind=result.record_kind,
            status=result.record_status,
            call_id=call.call_id,
            payload={
                "tool_name": call.name,
                "success": result.success,
                "retryable": result.retryable,
                "record": result.record,
            },
        )
        self._persist(result_msg, outcome)
        if result.record_kind != "result":
            if attach_message_id(conversation, call.call_id, result_msg.id):
                self.db.commit()

        turns.append(tool_call_item(call.call_id, call.name, raw_arguments))
        turns.append(tool_result_item(call.call_id, content))

        event: dict[str, Any] = {
            "call_id": call.call_id,
            "tool_name": call.name,
            "success": result.success,
            "message_id": result_msg.id,
        }
        if result.success:
            event["data"] = result.data or {}
        else:
            event["error"] = result.error
        if result.record_kind != "result":
            event.update(kind=result.record_kind, status=result.record_status, record=result.record)
        await self._emit(transport, "tool_result", event)
        return result

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _persist(self, message, outcome: TurnOutcome) -> int:
        message_id = self.store.append(message)
        outcome.messages_persisted += 1
        outcome.message_ids.append(message_id)
        return message_id

    async def _persist_text(
        self,
        conversation_id: int,
        text: str,
        kind: str,
        turns: list[dict],
        transport: TransportWriter,
        outcome: TurnOutcome,
    ) -> None:
        if not text:
            return
        message_id = self._persist(new_message(conversation_id, "assistant", text, kind=kind), outcome)
        turns.append(assistant_item(text))
        await self._emit(transport, "text_done", {"message_id": message_id, "text": text, "kind": kind})

    def _close_input_request(self, conversation) -> None:
        """A reply answers any open input form."""
        state = load_state(conversation)
        pending = state.pending
        if pending is None or pending.kind != "input_request":
            return
        clear_pending(conversation, {"input_request"}, call_id=pending.call_id)
        self.db.commit()
        if pending.message_id is None:
            return
        try:
            self.store.update_status(pending.message_id, "confirmed")
        except (LookupError, InvalidStatusTransition) as exc:
            logger.warning("Could not close input request %s: %s", pending.message_id, exc)

    @staticmethod
    def _check_transport(transport: TransportWriter) -> None:
        if transport.client_disconnected:
            raise TransportClosed("client disconnected")

    async def _emit(self, transport: TransportWriter, event: str, payload: dict[str, Any]) -> None:
        await transport.send(event, payload)
        self._check_transport(transport)

    @staticmethod
    async def _fail(transport: TransportWriter, outcome: TurnOutcome, code: str, message: str) -> None:
        outcome.status = "error"
        outcome.error = message
        outcome.error_code = code
        await transport.send("error", {"code": code, "message": message, **outcome.summary()})
