from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.conversation_state import (  # noqa: E402
    ConversationState,
    PendingPlanConfirmation,
    attach_message_id,
    clear_pending,
    load_state,
    save_state,
)
from services.transcript_store import (  # noqa: E402
    InvalidStatusTransition,
    TranscriptStore,
    new_message,
    serialize_message,
)
from fakes import new_conversation, new_db, new_user  # noqa: E402


def _setup():
    db = new_db()
    user = new_user(db)
    conv = new_conversation(db, user)
    return db, TranscriptStore(db), conv


def test_append_assigns_increasing_seq_per_conversation():
    db, store, conv = _setup()
    other = new_conversation(db, conv.owner)
    ids = [store.append(new_message(conv.id, "user", f"m{i}")) for i in range(3)]
    store.append(new_message(other.id, "user", "elsewhere"))

    seqs = [store.get_message(i).seq for i in ids]
    assert seqs == [1, 2, 3]
    assert store.list_since(other.id, None)[0].seq == 1


def test_list_since_respects_cursor_until_and_soft_delete():
    db, store, conv = _setup()
    ids = [store.append(new_message(conv.id, "user", f"m{i}")) for i in range(5)]
    hidden = store.get_message(ids[3])
    hidden.deleted_at = datetime.utcnow()
    db.commit()

    window = store.list_since(conv.id, 1, until=5)
    assert [m.content for m in window] == ["m1", "m2"]


def test_unknown_role_and_status_are_rejected():
    _, _, conv = _setup()
    with pytest.raises(ValueError):
        new_message(conv.id, "system", "nope")
    with pytest.raises(ValueError):
        new_message(conv.id, "tool_result", "{}", status="maybe")


def test_status_transitions_follow_table():
    _, store, conv = _setup()
    msg_id = store.append(
        new_message(conv.id, "tool_result", "{}", kind="plan_preview", status="pending", call_id="call_1")
    )

    assert store.update_status(msg_id, "edited").status == "edited"
    assert store.update_status(msg_id, "applied").status == "applied"
    with pytest.raises(InvalidStatusTransition):
        store.update_status(msg_id, "cancelled")


def test_status_update_requires_status_bearing_message():
    _, store, conv = _setup()
    msg_id = store.append(new_message(conv.id, "user", "hello"))
    with pytest.raises(InvalidStatusTransition):
        store.update_status(msg_id, "confirmed")
    with pytest.raises(LookupError):
        store.update_status(9999, "confirmed")


def test_find_by_call_id_and_serialization():
    _, store, conv = _setup()
    store.append(new_message(conv.id, "tool_call", kind="call", call_id="call_9", payload={"name": "x"}))
    result_id = store.append(
        new_message(conv.id, "tool_result", '{"success": true}', kind="result", call_id="call_9", payload={"a": 1})
    )
    found = store.find_by_call_id(conv.id, "call_9")
    assert found.id == result_id
    data = serialize_message(found)
    assert data["call_id"] == "call_9"
    assert data["payload"] == {"a": 1}
    assert data["seq"] == 2


def test_soft_deleted_conversation_is_hidden():
    _, store, conv = _setup()
    store.soft_delete_conversation(conv)
    assert store.get_conversation(conv.id) is None
    assert store.list_conversations(conv.owner_id) == []


def test_conversation_state_round_trip_and_reset():
    db, store, conv = _setup()
    state = ConversationState(
        active_purpose="routine_generation",
        pending=PendingPlanConfirmation(call_id="call_1", plan_type="workout"),
    )
    save_state(conv, state)
    db.commit()

    assert attach_message_id(conv, "call_1", 42) is True
    assert attach_message_id(conv, "call_other", 43) is False
    loaded = load_state(conv)
    assert loaded.pending.kind == "plan_confirmation"
    assert loaded.pending.message_id == 42

    assert clear_pending(conv, {"input_request"}).pending is not None
    assert clear_pending(conv, {"plan_confirmation"}).pending is None

    conv.state_json = '{"schema_version": 99, "pending": {"kind": "mystery"}}'
    assert load_state(conv) == ConversationState()
    conv.state_json = "not json"
    assert load_state(conv) == ConversationState()


def test_clear_pending_with_call_id_leaves_a_newer_action_alone():
    db, store, conv = _setup()
    save_state(conv, ConversationState(pending=PendingPlanConfirmation(call_id="call_new", plan_type="meal")))

    assert clear_pending(conv, {"plan_confirmation"}, call_id="call_old").pending.call_id == "call_new"
    assert load_state(conv).pending.call_id == "call_new"
    assert clear_pending(conv, {"plan_confirmation"}, call_id="call_new").pending is None
