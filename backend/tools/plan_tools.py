from __future__ import annotations

import json
from datetime import date, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import Session

from db.models import Conversation, Message, PlannedEvent
from services.conversation_state import (
    PendingInputRequest,
    PendingPlanConfirmation,
    clear_pending,
    load_state,
    save_state,
)
from services.transcript_store import TranscriptStore, message_payload
from tools.base import ToolContext, ToolExecutionError, ToolOutcome, ToolSpec
from tools.registry import ToolRegistry

APPLICABLE_STATUSES = {"pending", "confirmed", "edited"}

PURPOSE_BY_PLAN_TYPE = {
    "workout": "routine_generation",
    "meal": "meal_planning",
}


class PlanItem(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    detail: str = Field(default="", max_length=400)


class PlanDay(BaseModel):
    day_of_week: int = Field(ge=1, le=7, description="ISO weekday, 1 = Monday")
    title: str = Field(min_length=1, max_length=120)
    items: list[PlanItem] = Field(min_length=1, max_length=20)


class GeneratePlanArgs(BaseModel):
    plan_type: Literal["workout", "meal"]
    title: str = Field(min_length=1, max_length=120)
    description: str = Field(default="", max_length=1000)
    duration_weeks: int = Field(default=1, ge=1, le=4)
    days: list[PlanDay] = Field(min_length=1, max_length=7)

    @model_validator(mode="after")
    def _unique_days(self):
        seen = [d.day_of_week for d in self.days]
        if len(seen) != len(set(seen)):
            raise ValueError("Each day_of_week may appear only once")
        return self


class ApplyPlanArgs(BaseModel):
    preview_id: str = Field(min_length=1, description="preview_id returned by generate_plan")
    start_date: date


class SliderConfig(BaseModel):
    min: float
    max: float
    step: float = Field(default=1, gt=0)
    unit: str = ""

    @model_validator(mode="after")
    def _ordered(self):
        if self.max <= self.min:
            raise ValueError("max must be greater than min")
        return self


class RequestUserInputArgs(BaseModel):
    input_type: Literal["radio", "checkbox", "slider", "text"]
    prompt: str = Field(min_length=1, max_length=300)
    options: list[str] | None = Field(default=None, max_length=12)
    slider_config: SliderConfig | None = None

    @model_validator(mode="after")
    def _shape_matches_type(self):
        if self.input_type in {"radio", "checkbox"} and not self.options:
            raise ValueError(f"options are required for {self.input_type} input")
        if self.input_type == "slider" and self.slider_config is None:
            raise ValueError("slider_config is required for slider input")
        return self


def _conversation(ctx: ToolContext):
    conversation = ctx.store.get_conversation(ctx.conversation_id)
    if conversation is None:
        raise ToolExecutionError("Conversation not found")
    return conversation


def _plan_summary(plan: GeneratePlanArgs) -> list[dict[str, Any]]:
    return [
        {"day_of_week": d.day_of_week, "title": d.title, "items": len(d.items)}
        for d in sorted(plan.days, key=lambda d: d.day_of_week)
    ]


def _tool_generate_plan(args: GeneratePlanArgs, ctx: ToolContext) -> ToolOutcome:
    conversation = _conversation(ctx)
    state = load_state(conversation)
    state.pending = PendingPlanConfirmation(call_id=ctx.call_id, plan_type=args.plan_type)
    state.active_purpose = PURPOSE_BY_PLAN_TYPE[args.plan_type]
    save_state(conversation, state)
    ctx.db.commit()

    return ToolOutcome.ui_action(
        "plan_preview",
        data={
            "preview_id": ctx.call_id,
            "status": "pending",
            "title": args.title,
            "duration_weeks": args.duration_weeks,
            "days": _plan_summary(args),
            "message": "Preview shown to the user. Wait for them to confirm before calling apply_plan.",
        },
        record={"plan": args.model_dump(mode="json")},
    )


def _event_dates(start: date, day_of_week: int, weeks: int) -> list[date]:
    offset = (day_of_week - start.isoweekday()) % 7
    first = start + timedelta(days=offset)
    return [first + timedelta(weeks=w) for w in range(weeks)]


def schedule_preview(
    db: Session,
    store: TranscriptStore,
    user_id: int,
    conversation: Conversation,
    preview: Message | None,
    start_date: date,
) -> int:
    """Turn a plan preview into PlannedEvent rows and mark it applied.

    Shared by the apply_plan tool and the UI apply button. Raises
    ToolExecutionError when the preview is missing or already settled.
    """
    if preview is None or preview.kind != "plan_preview" or preview.conversation_id != conversation.id:
        raise ToolExecutionError("No such plan preview in this conversation")
    if preview.status not in APPLICABLE_STATUSES:
        raise ToolExecutionError(f"Plan preview is {preview.status}; it can no longer be applied")

    record = message_payload(preview).get("record") or {}
    try:
        plan = GeneratePlanArgs.model_validate(record.get("plan") or {})
    except ValueError:
        raise ToolExecutionError("Stored plan preview is unreadable")

    created = 0
    for day in plan.days:
        details = json.dumps([item.model_dump() for item in day.items], ensure_ascii=False)
        for scheduled in _event_dates(start_date, day.day_of_week, plan.duration_weeks):
            db.add(PlannedEvent(
                user_id=user_id,
                plan_message_id=preview.id,
                event_type=plan.plan_type,
                scheduled_date=scheduled,
                title=day.title,
                details_json=details,
            ))
            created += 1

    state = clear_pending(conversation, {"plan_confirmation"}, call_id=preview.call_id)
    if state.pending is None and state.active_purpose == PURPOSE_BY_PLAN_TYPE[plan.plan_type]:
        state.active_purpose = None
        save_state(conversation, state)
    # update_status commits the events, state and status together.
    store.update_status(preview.id, "applied")
    return created


def _tool_apply_plan(args: ApplyPlanArgs, ctx: ToolContext) -> dict[str, Any]:
    preview = ctx.store.find_by_call_id(ctx.conversation_id, args.preview_id)
    if preview is None:
        raise ToolExecutionError(f"No plan preview with id {args.preview_id}")
    created = schedule_preview(ctx.db, ctx.store, ctx.user_id, _conversation(ctx), preview, args.start_date)

    return {
        "preview_id": args.preview_id,
        "status": "applied",
        "events_created": created,
        "start_date": args.start_date.isoformat(),
    }


def _tool_request_user_input(args: RequestUserInputArgs, ctx: ToolContext) -> ToolOutcome:
    conversation = _conversation(ctx)
    state = load_state(conversation)
    state.pending = PendingInputRequest(call_id=ctx.call_id, input_type=args.input_type, prompt=args.prompt)
    save_state(conversation, state)
    ctx.db.commit()

    return ToolOutcome.ui_action(
        "input_request",
        data={"request_id": ctx.call_id, "status": "pending", "message": "Input form shown; waiting for the user."},
        record=args.model_dump(mode="json", exclude_none=True),
        ends_turn=True,
    )


def register_plan_tools(registry: ToolRegistry) -> None:
    registry.register(
        ToolSpec(
            name="generate_plan",
            description=(
                "Draft a weekly workout or meal plan and show it to the user as a preview. "
                "Nothing is scheduled until the user confirms and apply_plan is called."
            ),
            args_model=GeneratePlanArgs,
            read_only=False,
            progress_fields=("plan_type", "title", "description", "duration_weeks", "days"),
            tags=("plan", "write"),
        ),
        _tool_generate_plan,
    )
    registry.register(
        ToolSpec(
            name="apply_plan",
            description=(
                "Schedule a previewed plan the user has confirmed. Never call this again after a "
                "failure without asking the user first."
            ),
            args_model=ApplyPlanArgs,
            read_only=False,
            retryable=False,
            tags=("plan", "write"),
        ),
        _tool_apply_plan,
    )
    registry.register(
        ToolSpec(
            name="request_user_input",
            description=(
                "Show the user a small form (choice, multi-choice, slider or free text) and end the turn "
                "until they answer."
            ),
            args_model=RequestUserInputArgs,
            ends_turn=True,
            tags=("ui",),
        ),
        _tool_request_user_input,
    )
