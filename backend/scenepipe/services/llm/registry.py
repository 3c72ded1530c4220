"""Provider registry for LLM adapters.

Routes model IDs to the correct adapter implementation based on the model
ID prefix.
"""

import logging
from typing import Optional

from scenepipe.config import GoogleCloudConfig, LLMConfig
from scenepipe.services.llm.base import LLMAdapter

logger = logging.getLogger(__name__)


def _is_ollama_model(model_id: str) -> bool:
    """Return True if the model ID uses the ollama/ prefix."""
    return model_id.startswith("ollama/")


def _is_gemini_model(model_id: str) -> bool:
    """Return True if the model ID uses the gemini- prefix."""
    return model_id.startswith("gemini-")


def get_adapter(
    config: LLMConfig,
    google_cloud: Optional[GoogleCloudConfig] = None,
    model_id: Optional[str] = None,
) -> LLMAdapter:
    """Return the appropriate LLM adapter for the given model ID.

    Routing logic:
    - "ollama/*"  → OllamaAdapter at config.ollama_base_url
    - "gemini-*"  → VertexAIAdapter
    - anything else → OpenAICompatAdapter at config.base_url

    Args:
        config: LLM settings (endpoint, key, sampling defaults).
        google_cloud: Project/location for Vertex AI models.
        model_id: Override for config.model (e.g. the rewrite model).

    Returns:
        Configured LLMAdapter instance ready for use.
    """
    model_id = model_id or config.model

    if _is_ollama_model(model_id):
        from scenepipe.services.llm.ollama_adapter import OllamaAdapter

        logger.debug("Routing %s to OllamaAdapter (base_url=%s)", model_id, config.ollama_base_url)
        return OllamaAdapter(
            model_id=model_id,
            base_url=config.ollama_base_url,
            api_key=config.ollama_api_key or None,
            think=config.thinking,
        )

    if _is_gemini_model(model_id):
        from scenepipe.services.llm.vertex_adapter import VertexAIAdapter

        logger.debug("Routing %s to VertexAIAdapter", model_id)
        return VertexAIAdapter(model_id=model_id, config=google_cloud or GoogleCloudConfig())

    from scenepipe.services.llm.openai_compat_adapter import OpenAICompatAdapter

    logger.debug("Routing %s to OpenAICompatAdapter (base_url=%s)", model_id, config.base_url)
    return OpenAICompatAdapter(model_id=model_id, config=config)
