import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from ai.errors import ProviderError
from ai.providers.base import AIProvider
from config import settings
from db.models import Conversation, Message
from services.transcript_store import TranscriptStore

logger = logging.getLogger(__name__)

SUMMARY_INSTRUCTIONS = """You summarize conversations between a fitness coach and a user.
Rules:
1. Keep only durable facts: goals, experience, constraints, injuries, preferences.
2. State every decision the user made.
3. Include where any in-progress plan or question stands.
4. Stay under 500 characters."""

SUMMARY_PROMPT = """{previous}{transcript}

Summarize the conversation above."""

TEXT_ROLES = {"user", "assistant"}


@dataclass
class SummaryResult:
    success: bool
    message_count: int
    summary: str | None = None
    cursor_seq: int | None = None
    version: int | None = None
    message: str = ""


def _text_messages(messages: list[Message]) -> list[Message]:
    return [m for m in messages if m.role in TEXT_ROLES and m.content]


def safe_cursor(messages: list[Message]) -> int | None:
    """Latest seq at or before the last text message with no tool call left open.

    Folding past that point would separate a tool_call from its tool_result
    and make the remaining window unassemblable.
    """
    last_text_seq = None
    for m in messages:
        if m.role in TEXT_ROLES:
            last_text_seq = m.seq
    if last_text_seq is None:
        return None

    open_calls: set[str] = set()
    cursor = None
    for m in messages:
        if m.seq > last_text_seq:
            break
        if m.role == "tool_call" and m.call_id:
            open_calls.add(m.call_id)
        elif m.role == "tool_result" and m.call_id:
            open_calls.discard(m.call_id)
        if not open_calls:
            cursor = m.seq
    return cursor


def summary_status(db: Session, conversation: Conversation) -> dict:
    store = TranscriptStore(db)
    window = store.list_since(conversation.id, conversation.summary_cursor_seq)
    pending = len(_text_messages(window))
    threshold = settings.SUMMARIZATION_THRESHOLD
    return {
        "has_summary": bool(conversation.context_summary),
        "summary_version": conversation.summary_version or 0,
        "summary_cursor_seq": conversation.summary_cursor_seq,
        "messages_since_summary": pending,
        "threshold": threshold,
        "should_summarize": pending >= threshold,
    }


def format_transcript(messages: list[Message]) -> str:
    lines = []
    for m in _text_messages(messages):
        speaker = "User" if m.role == "user" else "Coach"
        lines.append(f"{speaker}: {m.content}")
    return "\n".join(lines)


async def summarize_conversation(
    db: Session,
    conversation: Conversation,
    provider: AIProvider,
    threshold: int | None = None,
) -> SummaryResult:
    """Fold the messages after the current cursor into ``context_summary``.

    Raises ProviderError when the model call fails; the conversation is left
    untouched in that case.
    """
    store = TranscriptStore(db)
    window = store.list_since(conversation.id, conversation.summary_cursor_seq)
    texts = _text_messages(window)
    minimum = threshold if threshold is not None else settings.SUMMARIZATION_THRESHOLD
    if len(texts) < minimum:
        return SummaryResult(
            success=False,
            message_count=len(texts),
            message=f"Need at least {minimum} messages to summarize",
        )

    cursor = safe_cursor(window)
    if cursor is None:
        return SummaryResult(success=False, message_count=len(texts), message="No safe summary boundary yet")
    folded = [m for m in window if m.seq <= cursor]

    previous = ""
    if conversation.context_summary:
        previous = f"[Earlier summary]\n{conversation.context_summary}\n\n[New conversation]\n"
    prompt = SUMMARY_PROMPT.format(previous=previous, transcript=format_transcript(folded))

    summary = (await provider.complete(prompt, instructions=SUMMARY_INSTRUCTIONS)).strip()
    if not summary:
        raise ProviderError("Summary model returned no text")

    conversation.context_summary = summary
    conversation.summary_cursor_seq = cursor
    conversation.summary_version = (conversation.summary_version or 0) + 1
    db.commit()
    logger.info(
        "Summarized conversation %s through seq %s (version %s, %s messages)",
        conversation.id,
        cursor,
        conversation.summary_version,
        len(_text_messages(folded)),
    )
    return SummaryResult(
        success=True,
        message_count=len(_text_messages(folded)),
        summary=summary,
        cursor_seq=cursor,
        version=conversation.summary_version,
    )
