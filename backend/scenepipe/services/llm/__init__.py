"""LLM provider abstraction layer.

Provides a unified async interface for streaming chat turns and structured
text generation across multiple providers (OpenAI-compatible gateways,
Vertex AI, Ollama).

Usage:
    from scenepipe.services.llm import get_adapter, LLMAdapter

    adapter = get_adapter(settings.llm, settings.google_cloud)
    async for chunk in adapter.stream_chat(messages, system_prompt=prompt):
        ...

    adapter = get_adapter(settings.llm, model_id="ollama/llama3.1")
    result = await adapter.generate_text(prompt, MySchema)
"""

from scenepipe.services.llm.base import ChatMessage, LLMAdapter, StreamChunk
from scenepipe.services.llm.registry import get_adapter

__all__ = ["ChatMessage", "LLMAdapter", "StreamChunk", "get_adapter"]
