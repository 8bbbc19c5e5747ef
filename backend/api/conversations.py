import asyncio
import logging
from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from ai.errors import ProviderError
from ai.orchestrator import GREETING_SENTINEL, StreamingOrchestrator
from ai.providers import provider_from_settings
from ai.providers.base import AIProvider
from ai.transport import TransportWriter
from auth.utils import get_current_user
from config import settings
from db.database import SessionLocal, get_db
from db.models import Conversation, User
from services.conversation_state import clear_pending, load_state
from services.rate_limit_service import ai_message_rule
from services.summary_service import summarize_conversation, summary_status
from services.transcript_store import InvalidStatusTransition, TranscriptStore, serialize_message
from tools.base import ToolExecutionError
from tools.plan_tools import schedule_preview

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


class ConversationCreate(BaseModel):
    title: Optional[str] = Field(default=None, max_length=200)


class TurnRequest(BaseModel):
    message: str


class StatusUpdate(BaseModel):
    status: Literal["confirmed", "edited", "cancelled", "applied"]
    start_date: Optional[date] = None  # used when applying a plan preview


def get_turn_provider() -> AIProvider:
    if not (settings.OPENAI_API_KEY or "").strip():
        raise HTTPException(status_code=503, detail="AI provider is not configured")
    return provider_from_settings(settings)


def get_session_factory() -> sessionmaker:
    return SessionLocal


def _serialize_conversation(conv: Conversation) -> dict:
    state = load_state(conv)
    return {
        "id": conv.id,
        "title": conv.title,
        "active_purpose": state.active_purpose,
        "pending": state.pending.model_dump() if state.pending else None,
        "has_summary": bool(conv.context_summary),
        "summary_version": conv.summary_version or 0,
        "created_at": conv.created_at.isoformat() if conv.created_at else None,
        "updated_at": conv.updated_at.isoformat() if conv.updated_at else None,
    }


def _owned_conversation(db: Session, conversation_id: int, user: User) -> Conversation:
    conv = TranscriptStore(db).get_conversation(conversation_id, owner_id=user.id)
    if not conv:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conv


@router.post("", status_code=201)
def create_conversation(
    body: ConversationCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    conv = TranscriptStore(db).create_conversation(user.id, title=body.title)
    return _serialize_conversation(conv)


@router.get("")
def list_conversations(
    limit: int = 50,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    limit = max(1, min(limit, 200))
    return [_serialize_conversation(c) for c in TranscriptStore(db).list_conversations(user.id, limit=limit)]


@router.get("/{conversation_id}")
def get_conversation(
    conversation_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _serialize_conversation(_owned_conversation(db, conversation_id, user))


@router.delete("/{conversation_id}")
def delete_conversation(
    conversation_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    conv = _owned_conversation(db, conversation_id, user)
    TranscriptStore(db).soft_delete_conversation(conv)
    return {"status": "deleted", "id": conversation_id}


@router.get("/{conversation_id}/messages")
def list_messages(
    conversation_id: int,
    limit: int = 50,
    offset: int = 0,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _owned_conversation(db, conversation_id, user)
    limit = max(1, min(limit, 200))
    messages = TranscriptStore(db).list_messages(conversation_id, limit=limit, offset=max(offset, 0))
    return [serialize_message(m) for m in messages]


@router.post("/{conversation_id}/messages/ai")
async def start_turn(
    conversation_id: int,
    body: TurnRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    provider: AIProvider = Depends(get_turn_provider),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Run one conversation turn and stream its events as SSE."""
    _owned_conversation(db, conversation_id, user)

    text = (body.message or "").strip()
    if text != GREETING_SENTINEL:
        if len(text) < settings.AI_MIN_MESSAGE_LENGTH:
            raise HTTPException(status_code=400, detail="Message is empty")
        if len(text) > settings.AI_MAX_MESSAGE_LENGTH:
            raise HTTPException(
                status_code=400,
                detail=f"Message is longer than {settings.AI_MAX_MESSAGE_LENGTH} characters",
            )

    limiter = request.app.state.rate_limiter
    allowed, retry_after = limiter.enforce(ai_message_rule(), f"user:{user.id}")
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many messages. Please wait a moment.",
            headers={"Retry-After": str(retry_after)},
        )

    # The turn outlives this request's session, so it opens its own.
    user_id = user.id
    transport = TransportWriter(max_queue=settings.TRANSPORT_QUEUE_SIZE)
    turn_tasks: set = request.app.state.turn_tasks

    async def run_turn():
        turn_db = session_factory()
        try:
            await StreamingOrchestrator(turn_db, provider).run(conversation_id, user_id, text, transport)
        finally:
            turn_db.close()
            transport.close()

    async def event_stream():
        task = asyncio.create_task(run_turn())
        turn_tasks.add(task)
        task.add_done_callback(turn_tasks.discard)
        async for frame in transport.frames():
            yield frame
        await task

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.patch("/{conversation_id}/messages/{message_id}/status")
def update_message_status(
    conversation_id: int,
    message_id: int,
    body: StatusUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    conv = _owned_conversation(db, conversation_id, user)
    store = TranscriptStore(db)
    message = store.get_message(message_id, conversation_id=conversation_id)
    if not message or message.kind not in {"plan_preview", "input_request"}:
        raise HTTPException(status_code=404, detail="Message not found")

    try:
        if message.kind == "plan_preview" and body.status == "applied":
            created = schedule_preview(
                db, store, user.id, conv, message, body.start_date or date.today()
            )
            return {**serialize_message(message), "events_created": created}

        if body.status == "cancelled" or message.kind == "input_request":
            kinds = {"plan_confirmation"} if message.kind == "plan_preview" else {"input_request"}
            clear_pending(conv, kinds, call_id=message.call_id)
        updated = store.update_status(message_id, body.status)
    except InvalidStatusTransition as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(exc))
    except ToolExecutionError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(exc))
    return serialize_message(updated)


@router.get("/{conversation_id}/summarize/status")
def get_summary_status(
    conversation_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return summary_status(db, _owned_conversation(db, conversation_id, user))


@router.post("/{conversation_id}/summarize")
async def summarize(
    conversation_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    provider: AIProvider = Depends(get_turn_provider),
):
    conv = _owned_conversation(db, conversation_id, user)
    try:
        result = await summarize_conversation(db, conv, provider)
    except ProviderError as exc:
        logger.error("Summarization failed for conversation %s: %s", conversation_id, exc)
        raise HTTPException(status_code=502, detail="Summary generation failed")
    return {
        "success": result.success,
        "summary": result.summary,
        "message_count": result.message_count,
        "summary_cursor_seq": result.cursor_seq,
        "summary_version": result.version,
        "message": result.message,
    }
