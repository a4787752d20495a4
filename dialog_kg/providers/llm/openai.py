"""
OpenAI chat provider over LangChain's ChatOpenAI.

The pipeline only needs structured output: extraction, resolution
verification/bakeoff and revision all request a pydantic schema. The chat
client is built once per provider and the structured runnable once per
schema.

Models:
    - gpt-4.1: extraction and revision
    - gpt-4.1-mini: verification and bakeoff

Example:
    >>> provider = OpenAILLMProvider(model="gpt-4.1")
    >>> result = await provider.generate_structured(prompt, ExtractionResult, system=EXTRACTION_SYSTEM)
    >>> [p.text for p in result.propositions]
    ["The user loves Brahms' violin concerto"]
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, TypeVar

from dialog_kg.providers.base import LLMProvider
from dialog_kg.types.results import LLMCallRecord
from dialog_kg.utils.telemetry import current_stage, record_call

if TYPE_CHECKING:
    from langchain_core.messages import BaseMessage
    from langchain_core.runnables import Runnable
    from langchain_openai import ChatOpenAI
    from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="BaseModel")


def _get_chat_openai(**kwargs: Any) -> "ChatOpenAI":
    """
    Build a ChatOpenAI client.

    Lazy import so the core package works without the openai extra.

    Raises:
        ImportError: If langchain-openai package is not installed
    """
    try:
        from langchain_openai import ChatOpenAI
    except ImportError:
        raise ImportError(
            "OpenAI LLM provider requires the 'langchain-openai' package. "
            "Install with: pip install dialog-kg[openai]"
        )
    return ChatOpenAI(**kwargs)


def _build_messages(prompt: str, system: str | None) -> list["BaseMessage"]:
    from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

    messages: list[BaseMessage] = []
    if system:
        messages.append(SystemMessage(content=system))
    messages.append(HumanMessage(content=prompt))
    return messages


class OpenAILLMProvider(LLMProvider):
    """
    Structured-output calls against an OpenAI chat model.

    Temperature is pinned to 0 so that replaying a window yields the same
    classification. Every call, failed or not, emits an LLMCallRecord tagged
    with the active telemetry stage.

    Args:
        api_key: OpenAI API key. If None, uses OPENAI_API_KEY environment variable.
        model: Chat model name
        timeout: Client-side request timeout in seconds
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4.1",
        timeout: float | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._chat: ChatOpenAI | None = None
        self._structured: dict[type, Runnable] = {}

    @property
    def model_name(self) -> str:
        return self._model

    def _structured_client(self, schema: type) -> "Runnable":
        if self._chat is None:
            kwargs: dict[str, Any] = {"model": self._model, "temperature": 0.0}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self._timeout is not None:
                kwargs["timeout"] = self._timeout
            self._chat = _get_chat_openai(**kwargs)
        if schema not in self._structured:
            self._structured[schema] = self._chat.with_structured_output(schema)
        return self._structured[schema]

    def _record(self, start_ns: int, succeeded: bool, schema_name: str) -> None:
        record_call(
            LLMCallRecord(
                provider="openai",
                model=self._model,
                operation="generate_structured",
                stage=current_stage(),
                latency_ms=int((time.perf_counter_ns() - start_ns) // 1_000_000),
                succeeded=succeeded,
                metadata={"schema": schema_name},
            )
        )

    async def generate_structured(
        self,
        prompt: str,
        schema: type[T],
        *,
        system: str | None = None,
    ) -> T:
        """
        Ask the model for an instance of `schema`.

        Raises:
            ValueError: If the model output does not parse into `schema`
            Exception: Client errors (rate limits, timeouts) propagate unchanged
        """
        schema_name = getattr(schema, "__name__", str(schema))
        start = time.perf_counter_ns()

        try:
            result = await self._structured_client(schema).ainvoke(_build_messages(prompt, system))
        except Exception:
            self._record(start, False, schema_name)
            raise

        if not isinstance(result, schema):
            self._record(start, False, schema_name)
            raise ValueError(f"Model returned {type(result).__name__}, expected {schema_name}")

        self._record(start, True, schema_name)
        logger.debug(f"{self._model} returned {schema_name} in stage {current_stage()}")
        return result
