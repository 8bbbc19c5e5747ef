from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from db.models import BodyCompositionRecord, FitnessProfile, User
from tools.base import ToolContext, ToolExecutionError, ToolOutcome, ToolSpec
from tools.registry import ToolRegistry


FitnessGoal = Literal["muscle_gain", "fat_loss", "endurance", "general_fitness"]
ExperienceLevel = Literal["beginner", "intermediate", "advanced"]
ActivityLevel = Literal["sedentary", "light", "moderate", "active", "very_active"]

ACTIVITY_MULTIPLIERS = {
    "sedentary": 1.2,
    "light": 1.375,
    "moderate": 1.55,
    "active": 1.725,
    "very_active": 1.9,
}

GOAL_CALORIE_ADJUSTMENT = {
    "fat_loss": -500,
    "muscle_gain": 300,
    "endurance": 0,
    "general_fitness": 0,
}

# grams of protein per kg of body weight
GOAL_PROTEIN_PER_KG = {
    "fat_loss": 2.0,
    "muscle_gain": 1.8,
    "endurance": 1.4,
    "general_fitness": 1.2,
}


class NoArgs(BaseModel):
    pass


class UpdateFitnessProfileArgs(BaseModel):
    fitness_goal: FitnessGoal | None = None
    experience_level: ExperienceLevel | None = None
    days_per_week: int | None = Field(default=None, ge=1, le=7)
    session_minutes: int | None = Field(default=None, ge=10, le=240)
    equipment: list[str] | None = None
    injuries: list[str] | None = None
    activity_level: ActivityLevel | None = None


class CalculateDailyNeedsArgs(BaseModel):
    fitness_goal: FitnessGoal | None = Field(
        default=None,
        description="Overrides the stored fitness goal for this calculation.",
    )


def _json_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return [x.strip() for x in raw.split(",") if x.strip()]
    return [str(x) for x in value] if isinstance(value, list) else []


def _user(ctx: ToolContext) -> User:
    user = ctx.db.get(User, ctx.user_id)
    if user is None:
        raise ToolExecutionError("User not found")
    return user


def _serialize_profile(profile: FitnessProfile) -> dict[str, Any]:
    return {
        "fitness_goal": profile.fitness_goal,
        "experience_level": profile.experience_level,
        "days_per_week": profile.days_per_week,
        "session_minutes": profile.session_minutes,
        "equipment": _json_list(profile.equipment),
        "injuries": _json_list(profile.injuries),
        "activity_level": profile.activity_level,
        "updated_at": profile.updated_at.isoformat() if profile.updated_at else None,
    }


def _latest_body_composition(ctx: ToolContext) -> BodyCompositionRecord | None:
    return (
        ctx.db.query(BodyCompositionRecord)
        .filter(BodyCompositionRecord.user_id == ctx.user_id)
        .order_by(BodyCompositionRecord.measured_at.desc())
        .first()
    )


def _tool_get_user_basic_info(args: NoArgs, ctx: ToolContext) -> dict[str, Any]:
    user = _user(ctx)
    age = None
    if user.birth_year:
        age = datetime.utcnow().year - int(user.birth_year)
    return {"display_name": user.display_name, "age": age, "sex": user.sex}


def _tool_get_fitness_profile(args: NoArgs, ctx: ToolContext) -> ToolOutcome:
    profile = ctx.db.query(FitnessProfile).filter(FitnessProfile.user_id == ctx.user_id).first()
    if profile is None:
        return ToolOutcome.ok({"profile": None, "message": "No fitness profile yet; ask the user."})
    return ToolOutcome.ok({"profile": _serialize_profile(profile)})


def _tool_update_fitness_profile(args: UpdateFitnessProfileArgs, ctx: ToolContext) -> dict[str, Any]:
    changes = args.model_dump(exclude_none=True)
    if not changes:
        raise ToolExecutionError("Provide at least one field to update")

    profile = ctx.db.query(FitnessProfile).filter(FitnessProfile.user_id == ctx.user_id).first()
    if profile is None:
        profile = FitnessProfile(user_id=ctx.user_id)
        ctx.db.add(profile)

    for key, value in changes.items():
        if key in {"equipment", "injuries"}:
            value = json.dumps(value, ensure_ascii=False)
        setattr(profile, key, value)
    ctx.db.commit()
    ctx.db.refresh(profile)
    return {"updated_fields": sorted(changes), "profile": _serialize_profile(profile)}


def _tool_get_latest_body_composition(args: NoArgs, ctx: ToolContext) -> ToolOutcome:
    record = _latest_body_composition(ctx)
    if record is None:
        return ToolOutcome.ok({"record": None, "message": "No body composition record found."})
    return ToolOutcome.ok({
        "record": {
            "measured_at": record.measured_at.isoformat() if record.measured_at else None,
            "height_cm": record.height_cm,
            "weight_kg": record.weight_kg,
            "skeletal_muscle_kg": record.skeletal_muscle_kg,
            "body_fat_pct": record.body_fat_pct,
        }
    })


def _tool_calculate_daily_needs(args: CalculateDailyNeedsArgs, ctx: ToolContext) -> ToolOutcome:
    user = _user(ctx)
    record = _latest_body_composition(ctx)
    if record is None or not record.height_cm:
        return ToolOutcome.fail("Need a body composition record with height and weight first")
    if not user.birth_year or user.sex not in {"male", "female"}:
        return ToolOutcome.fail("Need the user's birth year and sex first")

    profile = ctx.db.query(FitnessProfile).filter(FitnessProfile.user_id == ctx.user_id).first()
    goal = args.fitness_goal or (profile.fitness_goal if profile else None) or "general_fitness"
    activity = (profile.activity_level if profile else None) or "light"

    age = datetime.utcnow().year - int(user.birth_year)
    bmr = 10 * record.weight_kg + 6.25 * record.height_cm - 5 * age
    bmr += 5 if user.sex == "male" else -161
    tdee = bmr * ACTIVITY_MULTIPLIERS.get(activity, 1.375)
    calories = round(tdee + GOAL_CALORIE_ADJUSTMENT.get(goal, 0))
    protein_g = round(record.weight_kg * GOAL_PROTEIN_PER_KG.get(goal, 1.2))
    fat_g = round(calories * 0.25 / 9)
    carbs_g = max(round((calories - protein_g * 4 - fat_g * 9) / 4), 0)

    return ToolOutcome.ok({
        "fitness_goal": goal,
        "activity_level": activity,
        "bmr": round(bmr),
        "tdee": round(tdee),
        "calories": calories,
        "protein_g": protein_g,
        "fat_g": fat_g,
        "carbs_g": carbs_g,
    })


def register_profile_tools(registry: ToolRegistry) -> None:
    registry.register(
        ToolSpec(
            name="get_user_basic_info",
            description="Read the user's display name, age and sex.",
            args_model=NoArgs,
            tags=("profile", "read"),
        ),
        _tool_get_user_basic_info,
    )
    registry.register(
        ToolSpec(
            name="get_fitness_profile",
            description="Read the user's saved fitness goal, experience, schedule, equipment and injuries.",
            args_model=NoArgs,
            tags=("profile", "read"),
        ),
        _tool_get_fitness_profile,
    )
    registry.register(
        ToolSpec(
            name="update_fitness_profile",
            description="Save fitness profile fields the user has confirmed. Only send fields that changed.",
            args_model=UpdateFitnessProfileArgs,
            read_only=False,
            tags=("profile", "write"),
        ),
        _tool_update_fitness_profile,
    )
    registry.register(
        ToolSpec(
            name="get_latest_body_composition",
            description="Read the most recent body composition (InBody-style) measurement.",
            args_model=NoArgs,
            tags=("body_composition", "read"),
        ),
        _tool_get_latest_body_composition,
    )
    registry.register(
        ToolSpec(
            name="calculate_daily_needs",
            description="Estimate daily calories and macronutrients from the latest measurement and profile.",
            args_model=CalculateDailyNeedsArgs,
            tags=("nutrition", "read"),
        ),
        _tool_calculate_daily_needs,
    )
