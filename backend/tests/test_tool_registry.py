from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest
from pydantic import BaseModel, Field

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai.errors import ArgumentParseError, ToolExecutionFault, UnknownToolError  # noqa: E402
from db.models import FitnessProfile  # noqa: E402
from services.transcript_store import TranscriptStore  # noqa: E402
from tools import build_registry  # noqa: E402
from tools.base import ToolContext, ToolExecutionError, ToolOutcome, ToolSpec  # noqa: E402
from tools.registry import ToolRegistry  # noqa: E402
from fakes import new_conversation, new_db, new_user  # noqa: E402


class EchoArgs(BaseModel):
    value: int = Field(ge=0)


def _ctx(db, user, conv, call_id="call_1") -> ToolContext:
    return ToolContext(db=db, user_id=user.id, conversation_id=conv.id, store=TranscriptStore(db), call_id=call_id)


def _setup():
    db = new_db()
    user = new_user(db)
    conv = new_conversation(db, user)
    return db, user, conv


def test_duplicate_registration_is_rejected():
    registry = ToolRegistry()
    spec = ToolSpec(name="echo", description="Echo", args_model=EchoArgs)
    registry.register(spec, lambda args, ctx: {"value": args.value})
    with pytest.raises(ValueError):
        registry.register(spec, lambda args, ctx: None)


def test_provider_schema_uses_pydantic_json_schema():
    schema = ToolSpec(name="echo", description="Echo", args_model=EchoArgs).provider_schema()
    assert schema["type"] == "function"
    assert schema["name"] == "echo"
    assert schema["parameters"]["properties"]["value"]["minimum"] == 0


def test_default_registry_lists_coach_tools():
    names = {spec.name for spec in build_registry().list_specs()}
    assert names == {
        "get_user_basic_info",
        "get_fitness_profile",
        "update_fitness_profile",
        "get_latest_body_composition",
        "calculate_daily_needs",
        "generate_plan",
        "apply_plan",
        "request_user_input",
    }


def test_unknown_tool_raises_unknown_tool_error():
    db, user, conv = _setup()
    registry = build_registry()
    with pytest.raises(UnknownToolError):
        asyncio.run(registry.execute("teleport", {}, _ctx(db, user, conv)))


def test_invalid_arguments_raise_parse_error_with_details():
    db, user, conv = _setup()
    registry = ToolRegistry()
    registry.register(ToolSpec(name="echo", description="Echo", args_model=EchoArgs), lambda a, c: {"v": a.value})
    with pytest.raises(ArgumentParseError) as exc:
        asyncio.run(registry.execute("echo", {"value": -1}, _ctx(db, user, conv)))
    assert exc.value.details[0]["field"] == "value"


def test_sync_and_async_handlers_are_normalized():
    db, user, conv = _setup()
    registry = ToolRegistry()

    async def async_handler(args, ctx):
        return ToolOutcome.ok({"doubled": args.value * 2})

    registry.register(ToolSpec(name="sync", description="", args_model=EchoArgs), lambda a, c: {"v": a.value})
    registry.register(ToolSpec(name="async", description="", args_model=EchoArgs, ends_turn=True), async_handler)
    registry.register(ToolSpec(name="none", description="", args_model=EchoArgs), lambda a, c: None)

    sync_out = asyncio.run(registry.execute("sync", {"value": 2}, _ctx(db, user, conv)))
    async_out = asyncio.run(registry.execute("async", {"value": 2}, _ctx(db, user, conv)))
    none_out = asyncio.run(registry.execute("none", {"value": 2}, _ctx(db, user, conv)))

    assert sync_out.to_payload() == {"success": True, "data": {"v": 2}}
    assert async_out.data == {"doubled": 4}
    assert async_out.ends_turn is True
    assert none_out.to_payload() == {"success": True, "data": {}}


def test_expected_failure_becomes_error_result():
    db, user, conv = _setup()
    registry = ToolRegistry()

    def handler(args, ctx):
        raise ToolExecutionError("No matching record")

    registry.register(ToolSpec(name="lookup", description="", args_model=EchoArgs), handler)
    outcome = asyncio.run(registry.execute("lookup", {"value": 1}, _ctx(db, user, conv)))
    assert outcome.to_payload() == {"success": False, "error": "No matching record"}


def test_unexpected_fault_is_contained_and_rolled_back(caplog):
    db, user, conv = _setup()
    registry = ToolRegistry()

    def handler(args, ctx):
        ctx.db.add(FitnessProfile(user_id=ctx.user_id, fitness_goal="fat_loss"))
        ctx.db.flush()
        raise RuntimeError("bug in handler")

    registry.register(ToolSpec(name="buggy", description="", args_model=EchoArgs, read_only=False), handler)
    with caplog.at_level("ERROR", logger="tools.registry"):
        outcome = asyncio.run(registry.execute("buggy", {"value": 1}, _ctx(db, user, conv)))

    assert outcome.success is False
    assert outcome.error == ToolExecutionFault.code
    assert db.query(FitnessProfile).count() == 0
    fault_logs = [r for r in caplog.records if r.name == "tools.registry"]
    assert "buggy raised RuntimeError: bug in handler" in fault_logs[-1].getMessage()
    assert isinstance(fault_logs[-1].exc_info[1], RuntimeError)


def test_non_retryable_failure_is_flagged_for_the_model():
    db, user, conv = _setup()
    registry = build_registry()
    outcome = asyncio.run(
        registry.execute("apply_plan", {"preview_id": "missing", "start_date": "2026-10-19"}, _ctx(db, user, conv))
    )
    assert outcome.success is False
    assert outcome.retryable is False
    assert outcome.to_payload()["retryable"] is False


def test_profile_tools_round_trip_through_registry():
    db, user, conv = _setup()
    registry = build_registry()
    ctx = _ctx(db, user, conv)

    empty = asyncio.run(registry.execute("get_fitness_profile", {}, ctx))
    assert empty.data["profile"] is None

    updated = asyncio.run(
        registry.execute("update_fitness_profile", {"fitness_goal": "muscle_gain", "equipment": ["dumbbells"]}, ctx)
    )
    assert updated.data["updated_fields"] == ["equipment", "fitness_goal"]

    profile = asyncio.run(registry.execute("get_fitness_profile", {}, ctx))
    assert profile.data["profile"]["equipment"] == ["dumbbells"]


def test_calculate_daily_needs_requires_measurement():
    db, user, conv = _setup()
    outcome = asyncio.run(build_registry().execute("calculate_daily_needs", {}, _ctx(db, user, conv)))
    assert outcome.success is False
    assert "body composition" in outcome.error
