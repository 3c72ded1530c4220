"""Abstract base class for LLM provider adapters.

Defines the async interface all adapters implement: a streaming chat turn
whose chunks are tagged as thinking or content, and structured generation
validated against a caller-supplied Pydantic schema.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Literal, Optional, Sequence, Type, TypedDict

from pydantic import BaseModel
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


class ChatMessage(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


class StreamChunk(BaseModel):
    """One piece of a streamed model turn."""

    kind: Literal["thinking", "content"]
    text: str

    @property
    def is_thinking(self) -> bool:
        return self.kind == "thinking"


class LLMAdapter(ABC):
    """Abstract base class for LLM provider adapters."""

    @abstractmethod
    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        *,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream one assistant turn.

        Implementations are async generators; consumers may stop iterating
        at any chunk (e.g. on cancellation).

        Args:
            messages: Conversation so far, oldest first.
            system_prompt: Optional system/instruction prompt.
            temperature: Sampling temperature override.

        Yields:
            StreamChunk tagged "thinking" (reasoning) or "content" (answer).
        """
        ...

    @abstractmethod
    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
        max_retries: int = 3,
    ) -> BaseModel:
        """Generate structured text output from a prompt.

        Args:
            prompt: The user prompt to send to the model.
            schema: Pydantic model class defining the expected output structure.
            temperature: Sampling temperature (0.0-1.0). Lower = more deterministic.
            system_prompt: Optional system/instruction prompt.
            max_retries: Maximum number of retry attempts on failure.

        Returns:
            Validated instance of the supplied schema class.
        """
        ...

    async def aclose(self) -> None:
        return None


def schema_instruction(schema: Type[BaseModel]) -> str:
    """Build a concise JSON schema instruction to append to the system prompt.

    Used by providers without native response-schema support.
    """
    schema_json = json.dumps(schema.model_json_schema(), indent=2)
    return (
        "\n\nIMPORTANT: You MUST respond with a single JSON object (no markdown, "
        "no commentary, no code fences). The JSON must conform to this schema:\n"
        f"```json\n{schema_json}\n```\n"
        "All string fields must be strings (not arrays). Return ONLY the JSON object."
    )


def structured_output_retry(max_retries: int):
    """Retry decorator for one structured-generation request.

    Covers transport errors and replies that fail schema validation.
    """
    return retry(
        stop=stop_after_attempt(max_retries),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(Exception),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
