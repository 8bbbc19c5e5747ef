"""Live progress for tool-call arguments while they stream in.

Long structured arguments (a multi-week plan, for example) can take many
seconds to arrive. ``ArgumentProgressTracker`` scans each fragment as it is
fed, without waiting for valid JSON, and reports which declared top-level
fields have closed so the UI can show "3 of 5 fields parsed".

A tracker lives for exactly one orchestration call; it is never shared.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import ValidationError

from ai.errors import ArgumentParseError
from tools.base import ToolSpec

logger = logging.getLogger(__name__)

SpecLookup = Callable[[str], ToolSpec | None]


@dataclass
class ProgressMilestone:
    call_id: str
    tool_name: str | None
    fields_parsed: int
    fields_total: int
    closed_fields: list[str]
    current_field: str | None = None
    items_in_current_field: int = 0
    percent: int = 0
    stage: str = ""
    tracked: bool = False
    changed: bool = False

    def to_event(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "milestone": self.stage,
            "fields_parsed": self.fields_parsed,
            "fields_total": self.fields_total,
            "current_field": self.current_field,
            "items": self.items_in_current_field,
            "progress": self.percent,
        }


class _StructureScanner:
    """Incremental, forgiving scanner over a JSON object's top level.

    Only remembers what it needs: nesting depth, string/escape state, the key
    being read, and which top-level values have closed. Garbage never raises;
    it just stops making progress.
    """

    def __init__(self) -> None:
        self.depth = 0
        self.in_string = False
        self.escape = False
        self.expect = "start"  # key | colon | value | after_value | done
        self.key_buf: list[str] | None = None
        self.current_key: str | None = None
        self.value_kind: str | None = None  # string | container | scalar
        self.value_is_array = False
        self.element_pending = False
        self.closed: list[str] = []
        self.array_items: dict[str, int] = {}

    def _close_field(self) -> None:
        if self.current_key is not None and self.current_key not in self.closed:
            self.closed.append(self.current_key)
        self.value_kind = None
        self.value_is_array = False
        self.element_pending = False

    def _count_item(self) -> None:
        if self.current_key is not None:
            self.array_items[self.current_key] = self.array_items.get(self.current_key, 0) + 1

    def feed(self, text: str) -> None:
        for ch in text:
            self._step(ch)

    def _step(self, ch: str) -> None:
        if self.in_string:
            if self.escape:
                self.escape = False
                if self.key_buf is not None:
                    self.key_buf.append(ch)
                return
            if ch == "\\":
                self.escape = True
                return
            if ch == '"':
                self.in_string = False
                if self.key_buf is not None:
                    self.current_key = "".join(self.key_buf)
                    self.key_buf = None
                    self.expect = "colon"
                elif self.depth == 1 and self.value_kind == "string":
                    self._close_field()
                    self.expect = "after_value"
                elif self.depth == 2 and self.value_is_array:
                    self.element_pending = True
                return
            if self.key_buf is not None:
                self.key_buf.append(ch)
            return

        if ch in " \t\r\n":
            return

        if self.depth == 0:
            if ch == "{" and self.expect == "start":
                self.depth = 1
                self.expect = "key"
            return

        if self.depth == 1:
            self._step_top_level(ch)
            return

        if ch in "{[":
            if self.depth == 2 and self.value_is_array:
                self.element_pending = False
            self.depth += 1
        elif ch in "}]":
            self.depth -= 1
            if self.depth == 1:
                if self.value_is_array and self.element_pending:
                    self._count_item()
                self._close_field()
                self.expect = "after_value"
            elif self.depth == 2 and self.value_is_array:
                self._count_item()
        elif ch == '"':
            self.in_string = True
        elif self.depth == 2 and self.value_is_array:
            if ch == ",":
                if self.element_pending:
                    self._count_item()
                    self.element_pending = False
            elif ch != ":":
                self.element_pending = True

    def _step_top_level(self, ch: str) -> None:
        if self.expect == "key":
            if ch == '"':
                self.in_string = True
                self.key_buf = []
            elif ch == "}":
                self.depth = 0
                self.expect = "done"
        elif self.expect == "colon":
            if ch == ":":
                self.expect = "value"
                self.value_kind = None
        elif self.expect == "value":
            if self.value_kind is None:
                if ch == '"':
                    self.in_string = True
                    self.value_kind = "string"
                elif ch in "{[":
                    self.value_kind = "container"
                    self.value_is_array = ch == "["
                    self.depth = 2
                    if self.value_is_array and self.current_key is not None:
                        self.array_items.setdefault(self.current_key, 0)
                else:
                    self.value_kind = "scalar"
            elif self.value_kind == "scalar":
                if ch == ",":
                    self._close_field()
                    self.expect = "key"
                elif ch == "}":
                    self._close_field()
                    self.depth = 0
                    self.expect = "done"
        elif self.expect == "after_value":
            if ch == ",":
                self.expect = "key"
            elif ch == "}":
                self.depth = 0
                self.expect = "done"

    @property
    def field_in_progress(self) -> str | None:
        if self.expect == "value" and self.value_kind is not None:
            return self.current_key
        return None


@dataclass
class _CallState:
    tool_name: str | None
    buffer: list[str] = field(default_factory=list)
    scanner: _StructureScanner = field(default_factory=_StructureScanner)
    last_reported: tuple[int, int, int] | None = None
    terminal: bool = False

    @property
    def text(self) -> str:
        return "".join(self.buffer)


class ArgumentProgressTracker:
    def __init__(self, spec_lookup: SpecLookup, snap_percent: int = 5):
        self._spec_lookup = spec_lookup
        self._snap = max(int(snap_percent), 1)
        self._calls: dict[str, _CallState] = {}

    def start(self, call_id: str, tool_name: str | None) -> None:
        self._calls[call_id] = _CallState(tool_name=tool_name)

    def has_call(self, call_id: str) -> bool:
        return call_id in self._calls

    def buffer(self, call_id: str) -> str:
        state = self._calls.get(call_id)
        return state.text if state else ""

    def feed(self, call_id: str, fragment: str) -> ProgressMilestone:
        """Append ``fragment`` and report coarse progress. Never raises on bad JSON."""
        state = self._calls.get(call_id)
        if state is None:
            state = _CallState(tool_name=None)
            self._calls[call_id] = state
        if fragment:
            state.buffer.append(fragment)
            try:
                state.scanner.feed(fragment)
            except Exception:  # scanner bugs must not break streaming
                logger.exception("Progress scan failed for call %s", call_id)
        return self._milestone(call_id, state)

    def replace(self, call_id: str, full_text: str) -> None:
        """Swap the buffer for the provider's authoritative final arguments."""
        state = self._calls.get(call_id)
        if state is None:
            state = _CallState(tool_name=None)
            self._calls[call_id] = state
        if state.text == full_text:
            return
        state.buffer = [full_text]
        state.scanner = _StructureScanner()
        state.scanner.feed(full_text)

    def finalize(self, call_id: str) -> dict[str, Any]:
        """Strictly parse and validate the arguments, then drop the call state."""
        state = self._calls.pop(call_id, None)
        raw = state.text if state else ""
        tool_name = state.tool_name if state else None
        if state is not None:
            state.terminal = True

        try:
            parsed = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            raise ArgumentParseError(f"Arguments are not valid JSON: {exc.msg} at position {exc.pos}", call_id=call_id)
        if not isinstance(parsed, dict):
            raise ArgumentParseError("Arguments must be a JSON object", call_id=call_id)

        spec = self._spec_lookup(tool_name) if tool_name else None
        if spec is None or spec.args_model is None:
            return parsed
        try:
            model = spec.args_model.model_validate(parsed)
        except ValidationError as exc:
            details = [
                {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
                for err in exc.errors()
            ]
            summary = "; ".join(f"{d['field'] or '<root>'}: {d['message']}" for d in details)
            raise ArgumentParseError(f"Arguments failed validation: {summary}", call_id=call_id, details=details)
        return model.model_dump(mode="json")

    def discard(self, call_id: str) -> None:
        self._calls.pop(call_id, None)

    def clear(self) -> None:
        self._calls.clear()

    def _milestone(self, call_id: str, state: _CallState) -> ProgressMilestone:
        spec = self._spec_lookup(state.tool_name) if state.tool_name else None
        declared = tuple(spec.progress_fields) if spec else ()
        scanner = state.scanner

        if declared:
            closed = [name for name in scanner.closed if name in declared]
            total = len(declared)
        else:
            closed = list(scanner.closed)
            total = 0

        current = scanner.field_in_progress
        items = scanner.array_items.get(current, 0) if current else 0
        percent = 0
        if total:
            raw_percent = int(len(closed) * 100 / total)
            percent = min(100, (raw_percent // self._snap) * self._snap)

        if total:
            stage = f"{len(closed)} of {total} fields parsed"
            if current in declared and items:
                stage += f" ({items} {current} so far)"
        else:
            stage = f"{len(closed)} fields parsed"

        key = (len(closed), items, percent)
        changed = bool(declared) and key != state.last_reported
        if changed:
            state.last_reported = key

        return ProgressMilestone(
            call_id=call_id,
            tool_name=state.tool_name,
            fields_parsed=len(closed),
            fields_total=total,
            closed_fields=closed,
            current_field=current,
            items_in_current_field=items,
            percent=percent,
            stage=stage,
            tracked=bool(declared),
            changed=changed,
        )
