import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from ai.errors import ProviderError
from ai.providers.base import (
    AIProvider,
    ProviderEvent,
    ResponseCompleted,
    TextDelta,
    TextDone,
    ToolCallArgumentsDelta,
    ToolCallDone,
    ToolCallStarted,
)

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    """OpenAI Responses API provider."""

    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    DEFAULT_MODEL = "gpt-4.1"
    DEFAULT_SUMMARY_MODEL = "gpt-4o-mini"
    DEFAULT_MAX_OUTPUT_TOKENS = 4096

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        summary_model: str | None = None,
        base_url: str | None = None,
        timeout: float = 120,
        max_output_tokens: int | None = None,
    ):
        super().__init__(api_key, model, summary_model)
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.max_output_tokens = max_output_tokens or self.DEFAULT_MAX_OUTPUT_TOKENS
        self._headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    @property
    def responses_url(self) -> str:
        return f"{self.base_url}/responses"

    # ------------------------------------------------------------------
    # streaming
    # ------------------------------------------------------------------
    async def stream_completion(
        self,
        turns: list[dict],
        tool_schemas: list[dict],
        instructions: str = "",
    ) -> AsyncIterator[ProviderEvent]:
        payload: dict[str, Any] = {
            "model": self.get_model(),
            "input": turns,
            "stream": True,
            "max_output_tokens": self.max_output_tokens,
        }
        if instructions:
            payload["instructions"] = instructions
        if tool_schemas:
            payload["tools"] = tool_schemas

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream("POST", self.responses_url, headers=self._headers, json=payload) as resp:
                    if resp.status_code != 200:
                        body = await resp.aread()
                        raise ProviderError(
                            f"OpenAI streaming error: {body.decode(errors='replace')}",
                            status_code=resp.status_code,
                        )
                    parser = ResponseStreamParser()
                    async for line in resp.aiter_lines():
                        for event in parser.feed_line(line):
                            yield event
                    if not parser.completed:
                        raise ProviderError("OpenAI stream ended before the response completed")
        except httpx.HTTPError as exc:
            raise ProviderError(f"OpenAI transport error: {exc}") from exc

    # ------------------------------------------------------------------
    # non-streaming
    # ------------------------------------------------------------------
    async def complete(self, prompt: str, instructions: str = "", model: str | None = None) -> str:
        payload: dict[str, Any] = {
            "model": model or self.get_summary_model(),
            "input": [{"type": "message", "role": "user", "content": prompt}],
            "max_output_tokens": self.max_output_tokens,
        }
        if instructions:
            payload["instructions"] = instructions
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.responses_url, headers=self._headers, json=payload)
        except httpx.HTTPError as exc:
            raise ProviderError(f"OpenAI transport error: {exc}") from exc
        if resp.status_code != 200:
            raise ProviderError(f"OpenAI API error: {resp.text}", status_code=resp.status_code)
        return extract_output_text(resp.json())


def extract_output_text(data: dict) -> str:
    if isinstance(data.get("output_text"), str):
        return data["output_text"]
    parts: list[str] = []
    for item in data.get("output") or []:
        if item.get("type") != "message":
            continue
        for content in item.get("content") or []:
            if content.get("type") == "output_text":
                parts.append(content.get("text", ""))
    return "".join(parts)


class ResponseStreamParser:
    """Turns Responses API SSE lines into provider events.

    Argument deltas are keyed by output item id on the wire; the parser maps
    them back to the function call's ``call_id``.
    """

    def __init__(self):
        self._item_calls: dict[str, str] = {}
        self.completed = False

    def feed_line(self, line: str) -> list[ProviderEvent]:
        if not line.startswith("data:"):
            return []
        raw = line[len("data:"):].strip()
        if not raw or raw == "[DONE]":
            return []
        try:
            event = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Skipping unreadable stream line")
            return []
        return self.handle(event)

    def handle(self, event: dict) -> list[ProviderEvent]:
        kind = event.get("type", "")

        if kind == "response.output_text.delta":
            delta = event.get("delta") or ""
            return [TextDelta(delta)] if delta else []

        if kind == "response.output_text.done":
            return [TextDone(event.get("text") or "")]

        if kind == "response.output_item.added":
            item = event.get("item") or {}
            if item.get("type") != "function_call":
                return []
            call_id = item.get("call_id") or item.get("id") or ""
            if item.get("id"):
                self._item_calls[item["id"]] = call_id
            return [ToolCallStarted(call_id=call_id, name=item.get("name") or "")]

        if kind == "response.function_call_arguments.delta":
            call_id = self._item_calls.get(event.get("item_id") or "", event.get("item_id") or "")
            return [ToolCallArgumentsDelta(call_id=call_id, delta=event.get("delta") or "")]

        if kind == "response.function_call_arguments.done":
            call_id = self._item_calls.get(event.get("item_id") or "", event.get("item_id") or "")
            return [ToolCallDone(call_id=call_id, arguments=event.get("arguments") or "")]

        if kind == "response.completed":
            self.completed = True
            response = event.get("response") or {}
            usage = response.get("usage") or {}
            return [ResponseCompleted(
                tokens_in=usage.get("input_tokens", 0),
                tokens_out=usage.get("output_tokens", 0),
                model=response.get("model", ""),
            )]

        if kind in {"response.failed", "response.incomplete"}:
            response = event.get("response") or {}
            detail = (response.get("error") or {}).get("message") or (response.get("incomplete_details") or {})
            raise ProviderError(f"OpenAI response {kind.split('.')[-1]}: {detail}")

        if kind == "error":
            raise ProviderError(f"OpenAI stream error: {event.get('message') or event.get('code') or 'unknown'}")

        return []
