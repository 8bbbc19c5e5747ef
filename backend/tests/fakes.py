"""Scripted provider and small builders shared by the test modules."""
from __future__ import annotations

import copy
import json
import sys
from pathlib import Path

from sqlalchemy import create_engine

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai.providers.base import (  # noqa: E402
    AIProvider,
    ResponseCompleted,
    TextDelta,
    TextDone,
    ToolCallArgumentsDelta,
    ToolCallDone,
    ToolCallStarted,
)
from ai.transport import TransportWriter  # noqa: E402
from db.database import Base, make_session_factory  # noqa: E402
from db.models import Conversation, User  # noqa: E402


def new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return make_session_factory(engine)()


def new_user(db, display_name="Sam", birth_year=1995, sex="male") -> User:
    user = User(display_name=display_name, birth_year=birth_year, sex=sex)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def new_conversation(db, user: User, title="Coach") -> Conversation:
    conv = Conversation(owner_id=user.id, title=title)
    db.add(conv)
    db.commit()
    db.refresh(conv)
    return conv


def text_events(text: str, chunk: int = 4) -> list:
    events = [TextDelta(text[i:i + chunk]) for i in range(0, len(text), chunk)]
    events.append(TextDone(text))
    return events


def tool_call_events(call_id: str, name: str, args, chunk: int = 9) -> list:
    raw = args if isinstance(args, str) else json.dumps(args)
    events = [ToolCallStarted(call_id=call_id, name=name)]
    events.extend(ToolCallArgumentsDelta(call_id=call_id, delta=raw[i:i + chunk]) for i in range(0, len(raw), chunk))
    events.append(ToolCallDone(call_id=call_id, arguments=raw))
    return events


def completed() -> ResponseCompleted:
    return ResponseCompleted(tokens_in=10, tokens_out=5, model="fake")


class ScriptedProvider(AIProvider):
    """Replays one scripted list of events per provider call.

    Script items may be events, an exception instance (raised at that point),
    or a zero-argument callable (run at that point, nothing yielded).
    """

    def __init__(self, rounds=None, summary_text="Goal: muscle gain. Trains 3 days a week."):
        super().__init__(api_key="test-key", model="fake-model", summary_model="fake-mini")
        self.rounds = list(rounds or [])
        self.calls: list[dict] = []
        self.summary_text = summary_text
        self.prompts: list[str] = []

    async def stream_completion(self, turns, tool_schemas, instructions=""):
        self.calls.append({
            "turns": copy.deepcopy(turns),
            "tools": [t["name"] for t in tool_schemas],
            "instructions": instructions,
        })
        script = self.next_round(len(self.calls))
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if callable(item):
                item()
                continue
            yield item

    def next_round(self, call_number: int) -> list:
        if not self.rounds:
            raise AssertionError(f"Provider called more times than scripted ({call_number})")
        return self.rounds.pop(0)

    async def complete(self, prompt, instructions="", model=None):
        self.prompts.append(prompt)
        return self.summary_text


class LoopingProvider(ScriptedProvider):
    """Always asks for one more read-only tool call."""

    def next_round(self, call_number: int) -> list:
        return tool_call_events(f"call_loop_{call_number}", "get_fitness_profile", {}) + [completed()]


def parse_frames(raw: str) -> list[tuple[str, dict]]:
    events = []
    for block in raw.split("\n\n"):
        if not block.strip():
            continue
        name = None
        data = None
        for line in block.splitlines():
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        events.append((name, data))
    return events


async def run_turn(orchestrator, conversation_id: int, user_id: int, text: str, transport=None):
    transport = transport or TransportWriter(max_queue=10_000)
    outcome = await orchestrator.run(conversation_id, user_id, text, transport)
    frames = [frame async for frame in transport.frames()]
    return outcome, parse_frames("".join(frames))
