from sqlalchemy.orm import Session

from db.models import Conversation, FitnessProfile, User
from services.conversation_state import ConversationState, load_state

_DEFAULT_CONTEXT_MAX_CHARS = 9000
_MAX_SUMMARY_CHARS = 2500
_MAX_PROFILE_CHARS = 800

COACH_SYSTEM_PROMPT = """You are the in-app fitness coach. You build weekly workout and meal plans.

## Rules
1. Ask one question per reply. Keep explanations to one or two sentences.
2. Look up what is already known before asking: get_user_basic_info, get_fitness_profile,
   get_latest_body_composition.
3. Multiple-choice questions always go through request_user_input. Never list options as text.
4. Save every answer the user gives with update_fitness_profile.
5. When the profile is complete, draft the plan with generate_plan (one week; duration_weeks
   repeats it). Revisions call generate_plan again.
6. Call apply_plan only after the user has confirmed a preview. If apply_plan fails, explain
   and ask the user before trying again.
7. At most six exercises per workout day. Meal plans use calculate_daily_needs for targets."""

GREETING_INSTRUCTION = (
    "The user just opened the conversation. Greet them by name in one sentence, "
    "check what is already known, and ask the first missing question."
)

PURPOSE_LABELS = {
    "routine_generation": "building a workout routine",
    "meal_planning": "building a meal plan",
}


def _clip_block(text: str, max_chars: int) -> str:
    raw = (text or "").strip()
    if len(raw) <= max_chars:
        return raw
    keep = max(80, max_chars - 24)
    return f"{raw[:keep].rstrip()}\n...[truncated]"


def format_profile(profile: FitnessProfile | None) -> str:
    if profile is None:
        return "No fitness profile saved yet."
    fields = [
        ("Goal", profile.fitness_goal),
        ("Experience", profile.experience_level),
        ("Days per week", profile.days_per_week),
        ("Session minutes", profile.session_minutes),
        ("Activity level", profile.activity_level),
        ("Equipment", profile.equipment),
        ("Injuries", profile.injuries),
    ]
    lines = [f"- {label}: {value}" for label, value in fields if value not in (None, "", "[]")]
    return "\n".join(lines) if lines else "Fitness profile exists but is empty."


def format_pending(state: ConversationState) -> str:
    lines: list[str] = []
    if state.active_purpose:
        lines.append(f"Current task: {PURPOSE_LABELS.get(state.active_purpose, state.active_purpose)}.")
    pending = state.pending
    if pending is not None and pending.kind == "plan_confirmation":
        lines.append(
            f"A {pending.plan_type} plan preview (preview_id {pending.call_id}) is waiting for the user's confirmation."
        )
    elif pending is not None and pending.kind == "input_request":
        lines.append(f"The user was asked via a {pending.input_type} form: {pending.prompt}")
    return "\n".join(lines)


def build_instructions(
    db: Session,
    conversation: Conversation,
    user: User,
    greeting: bool = False,
    max_chars: int = _DEFAULT_CONTEXT_MAX_CHARS,
) -> str:
    """System instructions for one turn: coach prompt, profile, summary, pending state."""
    sections: list[str] = [COACH_SYSTEM_PROMPT]

    if user.display_name:
        sections.append(f"## User\nName: {user.display_name}")

    profile = db.query(FitnessProfile).filter(FitnessProfile.user_id == user.id).first()
    sections.append(f"## Known Profile\n{_clip_block(format_profile(profile), _MAX_PROFILE_CHARS)}")

    if conversation.context_summary:
        sections.append(
            f"## Earlier In This Conversation\n{_clip_block(conversation.context_summary, _MAX_SUMMARY_CHARS)}"
        )

    pending = format_pending(load_state(conversation))
    if pending:
        sections.append(f"## Pending\n{pending}")

    if greeting:
        sections.append(GREETING_INSTRUCTION)

    return _clip_block("\n\n".join(sections), max_chars)
