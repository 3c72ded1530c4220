"""OpenAI-compatible chat adapter (GLM and similar gateways).

Built on openai.AsyncOpenAI pointed at the gateway's base URL. Streamed
deltas may carry `reasoning_content` (thinking) beside `content`; the
gateway-specific `thinking` switch goes through extra_body.
"""

import logging
from typing import AsyncIterator, Optional, Sequence, Type

import httpx
from openai import AsyncOpenAI
from pydantic import BaseModel

from scenepipe.config import LLMConfig
from scenepipe.services.command_extractor import strip_code_fence
from scenepipe.services.llm.base import (
    ChatMessage,
    LLMAdapter,
    StreamChunk,
    schema_instruction,
    structured_output_retry,
)

logger = logging.getLogger(__name__)


class OpenAICompatAdapter(LLMAdapter):
    """LLM adapter for OpenAI-style /chat/completions endpoints.

    Args:
        model_id: Model name, optionally prefixed with "openai/"
        config: Endpoint, key and sampling defaults
        http_client: Custom httpx client for the SDK (tests pass a mock transport)
    """

    def __init__(
        self,
        model_id: str,
        config: LLMConfig,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._model_id = model_id.removeprefix("openai/")
        self.config = config
        self._http_client = http_client
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url.rstrip("/"),
                timeout=httpx.Timeout(300.0, connect=30.0),
                http_client=self._http_client,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None

    def _messages(self, messages: Sequence[ChatMessage], system_prompt: Optional[str]) -> list[dict]:
        result = [{"role": "system", "content": system_prompt}] if system_prompt else []
        result.extend({"role": m["role"], "content": m["content"]} for m in messages)
        return result

    async def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        *,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[StreamChunk]:
        chat_messages = self._messages(messages, system_prompt)
        extra_body = {"thinking": {"type": "enabled"}} if self.config.thinking else None
        logger.info(f"Chat turn (stream): model={self._model_id} messages={len(chat_messages)}")

        stream = await self.client.chat.completions.create(
            model=self._model_id,
            messages=chat_messages,
            stream=True,
            temperature=self.config.temperature if temperature is None else temperature,
            max_tokens=self.config.max_tokens,
            extra_body=extra_body,
        )
        async for chunk in stream:
            for choice in chunk.choices:
                delta = choice.delta
                if delta is None:
                    continue
                # Gateway extension field, kept by the SDK as an extra attribute
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield StreamChunk(kind="thinking", text=reasoning)
                if delta.content:
                    yield StreamChunk(kind="content", text=delta.content)

    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
        max_retries: int = 3,
    ) -> BaseModel:
        """Generate structured text with JSON mode plus a schema instruction."""
        system = ((system_prompt or "") + schema_instruction(schema)).strip()

        @structured_output_retry(max_retries)
        async def _request() -> BaseModel:
            response = await self.client.chat.completions.create(
                model=self._model_id,
                messages=self._messages([{"role": "user", "content": prompt}], system),
                temperature=temperature,
                response_format={"type": "json_object"},
            )
            if not response.choices:
                raise ValueError("response has no choices")
            raw = response.choices[0].message.content or ""
            return schema.model_validate_json(strip_code_fence(raw))

        return await _request()
