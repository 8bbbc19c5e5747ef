from __future__ import annotations

import inspect
import logging
from typing import Any

from pydantic import BaseModel, ValidationError

from ai.errors import ArgumentParseError, ToolExecutionFault, UnknownToolError
from tools.base import ToolContext, ToolExecutionError, ToolHandler, ToolOutcome, ToolSpec

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Static name -> (spec, handler) table and the single dispatch point for tools."""

    def __init__(self):
        self._specs: dict[str, ToolSpec] = {}
        self._handlers: dict[str, ToolHandler] = {}

    def register(self, spec: ToolSpec, handler: ToolHandler) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._specs[spec.name] = spec
        self._handlers[spec.name] = handler

    def list_specs(self) -> list[ToolSpec]:
        return sorted(self._specs.values(), key=lambda s: s.name)

    def get_spec(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def tool_schemas(self) -> list[dict[str, Any]]:
        return [spec.provider_schema() for spec in self.list_specs()]

    def validate(self, name: str, args: dict[str, Any] | None) -> BaseModel | dict[str, Any]:
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownToolError(name)
        payload = args or {}
        if not isinstance(payload, dict):
            raise ArgumentParseError("Tool arguments must be a JSON object")
        if spec.args_model is None:
            return payload
        try:
            return spec.args_model.model_validate(payload)
        except ValidationError as exc:
            details = [
                {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
                for err in exc.errors()
            ]
            raise ArgumentParseError(f"Arguments failed validation for `{name}`", details=details)

    async def execute(self, name: str, args: dict[str, Any] | None, ctx: ToolContext) -> ToolOutcome:
        """Run a tool and normalize whatever it returns into a ToolOutcome.

        Raises UnknownToolError and ArgumentParseError; both are recoverable
        and the caller records them as failed results. Handler faults never
        propagate.
        """
        spec = self._specs.get(name)
        handler = self._handlers.get(name)
        if not spec or not handler:
            raise UnknownToolError(name)

        validated = self.validate(name, args)

        try:
            result = handler(validated, ctx)
            if inspect.isawaitable(result):
                result = await result
        except ToolExecutionError as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return ToolOutcome.fail(str(exc), retryable=spec.retryable)
        except Exception as exc:
            fault = ToolExecutionFault(name, exc)
            logger.error("Tool fault: %s", fault, exc_info=exc)
            ctx.db.rollback()
            return ToolOutcome.fail(fault.code, retryable=spec.retryable)

        return self._normalize(spec, result)

    @staticmethod
    def _normalize(spec: ToolSpec, result: Any) -> ToolOutcome:
        if isinstance(result, ToolOutcome):
            outcome = result
        elif result is None:
            outcome = ToolOutcome.ok()
        elif isinstance(result, dict):
            outcome = ToolOutcome.ok(result)
        else:
            logger.warning("Tool %s returned %s; wrapping as value", spec.name, type(result).__name__)
            outcome = ToolOutcome.ok({"value": result})

        if outcome.success:
            outcome.ends_turn = outcome.ends_turn or spec.ends_turn
        else:
            outcome.retryable = outcome.retryable and spec.retryable
        return outcome
