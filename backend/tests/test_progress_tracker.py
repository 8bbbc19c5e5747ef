from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai.errors import ArgumentParseError  # noqa: E402
from ai.progress_tracker import ArgumentProgressTracker  # noqa: E402
from tools import build_registry  # noqa: E402


PLAN_ARGS = {
    "plan_type": "workout",
    "title": "Push / Pull",
    "description": "Two upper-body days with a \"quoted\" note, and a comma",
    "duration_weeks": 2,
    "days": [
        {"day_of_week": 1, "title": "Push", "items": [{"name": "Bench press", "detail": "4x8"}]},
        {"day_of_week": 4, "title": "Pull", "items": [{"name": "Rows", "detail": "4x10"}]},
    ],
}


def _tracker(snap: int = 5) -> ArgumentProgressTracker:
    return ArgumentProgressTracker(build_registry().get_spec, snap_percent=snap)


def test_arbitrary_prefixes_never_raise():
    raw = json.dumps(PLAN_ARGS)
    samples = [raw[:i] for i in range(len(raw) + 1)]
    samples += ['{"days": [1, 2, {"x": "\\', "}}]]]\"", "not json at all", '{"a":', "[[[{", '"\\u12']
    for sample in samples:
        tracker = _tracker()
        tracker.start("call_1", "generate_plan")
        tracker.feed("call_1", sample)


def test_char_by_char_feed_reports_fields_and_items():
    tracker = _tracker()
    tracker.start("call_1", "generate_plan")
    raw = json.dumps(PLAN_ARGS)
    seen_days = []
    milestone = None
    for ch in raw:
        milestone = tracker.feed("call_1", ch)
        if milestone.current_field == "days":
            seen_days.append(milestone.items_in_current_field)

    assert milestone.fields_total == 5
    assert milestone.fields_parsed == 5
    assert milestone.percent == 100
    assert milestone.closed_fields == ["plan_type", "title", "description", "duration_weeks", "days"]
    assert seen_days[0] == 0
    assert max(seen_days) == 2
    assert milestone.stage == "5 of 5 fields parsed"


def test_only_changed_milestones_are_flagged():
    tracker = _tracker()
    tracker.start("call_1", "generate_plan")
    first = tracker.feed("call_1", "")
    assert first.changed is True
    assert first.stage == "0 of 5 fields parsed"

    again = tracker.feed("call_1", '{"plan_type": "wor')
    assert again.changed is False

    closed = tracker.feed("call_1", 'kout", ')
    assert closed.changed is True
    assert closed.fields_parsed == 1
    assert closed.percent == 20


def test_percent_snaps_down_to_step():
    tracker = _tracker(snap=25)
    tracker.start("call_1", "generate_plan")
    milestone = tracker.feed("call_1", '{"plan_type": "meal", "title": "Cut", ')
    assert milestone.fields_parsed == 2
    assert milestone.percent == 25


def test_untracked_tool_never_reports_changes():
    tracker = _tracker()
    tracker.start("call_1", "get_fitness_profile")
    milestone = tracker.feed("call_1", "{}")
    assert milestone.tracked is False
    assert milestone.changed is False


def test_finalize_returns_validated_arguments_and_drops_state():
    tracker = _tracker()
    tracker.start("call_1", "generate_plan")
    tracker.feed("call_1", json.dumps(PLAN_ARGS))
    args = tracker.finalize("call_1")
    assert args["duration_weeks"] == 2
    assert args["days"][1]["title"] == "Pull"
    assert tracker.has_call("call_1") is False


def test_finalize_rejects_truncated_json():
    tracker = _tracker()
    tracker.start("call_1", "generate_plan")
    tracker.feed("call_1", json.dumps(PLAN_ARGS)[:-5])
    with pytest.raises(ArgumentParseError) as exc:
        tracker.finalize("call_1")
    assert exc.value.call_id == "call_1"


def test_finalize_reports_schema_violations_with_details():
    tracker = _tracker()
    tracker.start("call_1", "generate_plan")
    bad = dict(PLAN_ARGS, duration_weeks=9)
    tracker.feed("call_1", json.dumps(bad))
    with pytest.raises(ArgumentParseError) as exc:
        tracker.finalize("call_1")
    assert any(d["field"] == "duration_weeks" for d in exc.value.details)


def test_replace_uses_authoritative_arguments():
    tracker = _tracker()
    tracker.start("call_1", "get_fitness_profile")
    tracker.feed("call_1", '{"garbage')
    tracker.replace("call_1", "{}")
    assert tracker.finalize("call_1") == {}


def test_trackers_do_not_share_state():
    first = _tracker()
    second = _tracker()
    first.start("call_1", "generate_plan")
    first.feed("call_1", '{"plan_type": "meal",')
    assert second.has_call("call_1") is False
    assert second.buffer("call_1") == ""
