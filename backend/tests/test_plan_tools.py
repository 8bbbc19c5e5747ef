from __future__ import annotations

import asyncio
import sys
from datetime import date
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai.errors import ArgumentParseError  # noqa: E402
from db.models import PlannedEvent  # noqa: E402
from services.conversation_state import load_state  # noqa: E402
from services.transcript_store import TranscriptStore, new_message  # noqa: E402
from tools import build_registry  # noqa: E402
from tools.base import ToolContext  # noqa: E402
from fakes import new_conversation, new_db, new_user  # noqa: E402


PLAN = {
    "plan_type": "workout",
    "title": "Two day split",
    "duration_weeks": 2,
    "days": [
        {"day_of_week": 1, "title": "Upper", "items": [{"name": "Bench", "detail": "3x8"}]},
        {"day_of_week": 3, "title": "Lower", "items": [{"name": "Squat", "detail": "3x8"}]},
    ],
}


def _preview(db, user, conv, call_id="call_plan"):
    """Record a generate_plan call/result pair the way a turn would."""
    store = TranscriptStore(db)
    registry = build_registry()
    ctx = ToolContext(db=db, user_id=user.id, conversation_id=conv.id, store=store, call_id=call_id)
    store.append(new_message(conv.id, "tool_call", kind="call", call_id=call_id, payload={"name": "generate_plan"}))
    outcome = asyncio.run(registry.execute("generate_plan", PLAN, ctx))
    store.append(
        new_message(
            conv.id,
            "tool_result",
            "{}",
            kind=outcome.record_kind,
            status=outcome.record_status,
            call_id=call_id,
            payload={"record": outcome.record},
        )
    )
    return registry, store, outcome


def test_generate_plan_sets_pending_confirmation():
    db = new_db()
    user = new_user(db)
    conv = new_conversation(db, user)
    _, _, outcome = _preview(db, user, conv)

    assert outcome.record_kind == "plan_preview"
    assert outcome.record_status == "pending"
    assert outcome.data["days"] == [
        {"day_of_week": 1, "title": "Upper", "items": 1},
        {"day_of_week": 3, "title": "Lower", "items": 1},
    ]
    state = load_state(conv)
    assert state.pending.call_id == "call_plan"
    assert state.active_purpose == "routine_generation"


def test_apply_plan_schedules_each_week_from_start_date():
    db = new_db()
    user = new_user(db)
    conv = new_conversation(db, user)
    registry, store, _ = _preview(db, user, conv)
    ctx = ToolContext(db=db, user_id=user.id, conversation_id=conv.id, store=store, call_id="call_apply")

    # 2026-10-21 is a Wednesday: Monday sessions start the following week.
    outcome = asyncio.run(
        registry.execute("apply_plan", {"preview_id": "call_plan", "start_date": "2026-10-21"}, ctx)
    )

    assert outcome.success is True
    assert outcome.data["events_created"] == 4
    dates = sorted((e.scheduled_date, e.title) for e in db.query(PlannedEvent).all())
    assert dates == [
        (date(2026, 10, 21), "Lower"),
        (date(2026, 10, 26), "Upper"),
        (date(2026, 10, 28), "Lower"),
        (date(2026, 11, 2), "Upper"),
    ]
    assert store.find_by_call_id(conv.id, "call_plan").status == "applied"
    assert load_state(conv).pending is None
    assert load_state(conv).active_purpose is None

    again = asyncio.run(
        registry.execute("apply_plan", {"preview_id": "call_plan", "start_date": "2026-10-21"}, ctx)
    )
    assert again.success is False
    assert again.retryable is False
    assert db.query(PlannedEvent).count() == 4


def test_request_user_input_validates_shape():
    db = new_db()
    user = new_user(db)
    conv = new_conversation(db, user)
    registry = build_registry()
    ctx = ToolContext(db=db, user_id=user.id, conversation_id=conv.id, store=TranscriptStore(db), call_id="call_ask")

    slider = asyncio.run(registry.execute(
        "request_user_input",
        {"input_type": "slider", "prompt": "Days per week?", "slider_config": {"min": 1, "max": 7}},
        ctx,
    ))
    assert slider.ends_turn is True
    assert slider.record_kind == "input_request"
    assert load_state(conv).pending.input_type == "slider"

    with pytest.raises(ArgumentParseError) as excinfo:
        registry.validate("request_user_input", {"input_type": "radio", "prompt": "Goal?"})
    assert "options" in str(excinfo.value.details)
