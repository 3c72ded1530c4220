"""Gemini on Vertex AI for planner and command-loop turns.

Chat turns stream with thought summaries enabled; parts flagged as
thoughts become thinking chunks. Structured output uses the native
response schema instead of a prompt instruction.
"""

import logging
from typing import AsyncIterator, Optional, Sequence, Type

from google.genai import types as genai_types
from pydantic import BaseModel

from scenepipe.config import GoogleCloudConfig
from scenepipe.services.llm.base import ChatMessage, LLMAdapter, StreamChunk, structured_output_retry
from scenepipe.services.vertex_client import client_for_model

logger = logging.getLogger(__name__)


def _to_contents(messages: Sequence[ChatMessage]) -> list[genai_types.Content]:
    # Gemini names the assistant role "model"; system text goes in the config
    return [
        genai_types.Content(
            role="model" if m["role"] == "assistant" else "user",
            parts=[genai_types.Part.from_text(text=m["content"])],
        )
        for m in messages
        if m["role"] != "system"
    ]


class VertexAIAdapter(LLMAdapter):
    """Adapter for gemini- models through the google-genai SDK."""

    def __init__(self, model_id: str, config: GoogleCloudConfig, include_thoughts: bool = True) -> None:
        self.model = model_id
        self.config = config
        self.include_thoughts = include_thoughts

    async def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        *,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[StreamChunk]:
        logger.info(f"Vertex chat turn: model={self.model} messages={len(messages)}")
        client = client_for_model(self.config, self.model)
        stream = await client.aio.models.generate_content_stream(
            model=self.model,
            contents=_to_contents(messages),
            config=genai_types.GenerateContentConfig(
                temperature=temperature,
                system_instruction=system_prompt,
                thinking_config=genai_types.ThinkingConfig(include_thoughts=self.include_thoughts),
            ),
        )
        async for response in stream:
            for candidate in response.candidates or []:
                parts = candidate.content.parts if candidate.content else None
                for part in parts or []:
                    if part.text:
                        yield StreamChunk(kind="thinking" if part.thought else "content", text=part.text)

    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
        max_retries: int = 3,
    ) -> BaseModel:
        client = client_for_model(self.config, self.model)

        @structured_output_retry(max_retries)
        async def _request() -> BaseModel:
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=prompt,
                config=genai_types.GenerateContentConfig(
                    temperature=temperature,
                    system_instruction=system_prompt,
                    response_mime_type="application/json",
                    response_schema=schema,
                ),
            )
            return schema.model_validate_json(response.text)

        return await _request()
