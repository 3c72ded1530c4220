"""Ollama backend for planner and command-loop turns.

Chat turns stream through ollama.AsyncClient with `think` enabled, so
reasoning models report their thinking separately from the answer.
Structured output asks for format='json' and appends the schema to the
system prompt.
"""

import logging
from typing import AsyncIterator, Optional, Sequence, Type

from ollama import AsyncClient
from pydantic import BaseModel

from scenepipe.services.command_extractor import strip_code_fence
from scenepipe.services.llm.base import (
    ChatMessage,
    LLMAdapter,
    StreamChunk,
    schema_instruction,
    structured_output_retry,
)

logger = logging.getLogger(__name__)


def _ollama_messages(messages: Sequence[ChatMessage], system_prompt: Optional[str]) -> list[dict]:
    result = [{"role": "system", "content": system_prompt}] if system_prompt else []
    result.extend({"role": m["role"], "content": m["content"]} for m in messages)
    return result


class OllamaAdapter(LLMAdapter):
    """Adapter for a local or hosted Ollama server.

    Args:
        model_id: "ollama/<name>" or a bare Ollama model name
        base_url: Server address
        api_key: Bearer token for hosted deployments
        think: Ask the model for separate reasoning output
    """

    def __init__(
        self,
        model_id: str,
        base_url: str = "http://localhost:11434",
        api_key: Optional[str] = None,
        think: bool = True,
    ) -> None:
        self.model = model_id.removeprefix("ollama/")
        self.think = think
        auth = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = AsyncClient(host=base_url, headers=auth)

    async def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        *,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[StreamChunk]:
        logger.info(f"Ollama chat turn: model={self.model} messages={len(messages)}")
        stream = await self._client.chat(
            model=self.model,
            messages=_ollama_messages(messages, system_prompt),
            options=None if temperature is None else {"temperature": temperature},
            think=self.think,
            stream=True,
        )
        async for part in stream:
            if getattr(part.message, "thinking", None):
                yield StreamChunk(kind="thinking", text=part.message.thinking)
            if part.message.content:
                yield StreamChunk(kind="content", text=part.message.content)

    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
        max_retries: int = 3,
    ) -> BaseModel:
        system = ((system_prompt or "") + schema_instruction(schema)).strip()

        @structured_output_retry(max_retries)
        async def _request() -> BaseModel:
            response = await self._client.chat(
                model=self.model,
                messages=_ollama_messages([{"role": "user", "content": prompt}], system),
                format="json",
                options={"temperature": temperature},
                stream=False,
            )
            return schema.model_validate_json(strip_code_fence(response.message.content))

        return await _request()
