from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Union


@dataclass
class TextDelta:
    text: str


@dataclass
class TextDone:
    text: str


@dataclass
class ToolCallStarted:
    call_id: str
    name: str


@dataclass
class ToolCallArgumentsDelta:
    call_id: str
    delta: str


@dataclass
class ToolCallDone:
    call_id: str
    arguments: str


@dataclass
class ResponseCompleted:
    tokens_in: int = 0
    tokens_out: int = 0
    model: str = ""


ProviderEvent = Union[
    TextDelta,
    TextDone,
    ToolCallStarted,
    ToolCallArgumentsDelta,
    ToolCallDone,
    ResponseCompleted,
]


class AIProvider(ABC):
    """Abstract base class for model providers."""

    DEFAULT_MODEL = ""
    DEFAULT_SUMMARY_MODEL = ""

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        summary_model: str | None = None,
    ):
        self.api_key = api_key
        self._model = model
        self._summary_model = summary_model

    @abstractmethod
    def stream_completion(
        self,
        turns: list[dict],
        tool_schemas: list[dict],
        instructions: str = "",
    ) -> AsyncIterator[ProviderEvent]:
        """Open one streamed model response.

        Args:
            turns: Ordered input items (messages, function calls, function outputs).
            tool_schemas: Function tool definitions the model may call.
            instructions: System instructions for this response.

        Yields:
            ProviderEvent instances, ending with ResponseCompleted.

        Raises:
            ProviderError if the request fails or the stream reports a failure.
        """
        ...

    @abstractmethod
    async def complete(self, prompt: str, instructions: str = "", model: str | None = None) -> str:
        """Single non-streamed response, used for summaries."""
        ...

    def get_model(self) -> str:
        return self._model or self.DEFAULT_MODEL

    def get_summary_model(self) -> str:
        return self._summary_model or self.DEFAULT_SUMMARY_MODEL
