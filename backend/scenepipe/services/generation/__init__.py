"""Generation service boundary (image, video, vision).

Usage:
    from scenepipe.services.generation import get_generation_service

    service = get_generation_service(settings.generation)
    image_uri = await service.generate_image(prompt)
"""

from scenepipe.services.generation.base import GenerationService, GenerationServiceError
from scenepipe.services.generation.registry import get_generation_service

__all__ = ["GenerationService", "GenerationServiceError", "get_generation_service"]
