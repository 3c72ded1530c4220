"""Backend selection for the generation service."""

import logging

from scenepipe.config import GenerationConfig
from scenepipe.services.generation.base import GenerationService

logger = logging.getLogger(__name__)


def get_generation_service(config: GenerationConfig) -> GenerationService:
    """Return the mock backend when use_mock is set, else the HTTP gateway."""
    if config.use_mock:
        from scenepipe.services.generation.mock_service import MockGenerationService

        logger.info("Using mock generation service")
        return MockGenerationService(latency_seconds=0.2)

    from scenepipe.services.generation.http_service import HttpGenerationService

    logger.debug("Using HTTP generation service at %s", config.base_url)
    return HttpGenerationService(config)
