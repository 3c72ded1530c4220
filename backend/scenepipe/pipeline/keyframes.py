"""Image stage: one scene image per unit.

The reference composer picks the mode; this module turns the plan into a
generation call. Text-only generation is a degradation path: the result
is flagged so callers know cross-unit consistency is not guaranteed.

Usage:
    from scenepipe.pipeline.keyframes import generate_unit_image

    result = await generate_unit_image(service, unit, position, run.character_references)
"""

import logging
from typing import NamedTuple, Sequence

from scenepipe.pipeline.references import ImageMode, compose_image_request
from scenepipe.schemas.screenplay import Unit
from scenepipe.services.generation.base import GenerationService, GenerationServiceError

logger = logging.getLogger(__name__)


class ImageResult(NamedTuple):
    uri: str
    mode: ImageMode
    degraded: bool


def text_only_prompt(unit: Unit) -> str:
    """Fold the character description into the prompt when no references exist."""
    if unit.character_description:
        return f"{unit.character_description}. {unit.image_prompt}"
    return unit.image_prompt


async def generate_unit_image(
    service: GenerationService,
    unit: Unit,
    position: int,
    character_references: Sequence[str],
    user_reference_images: Sequence[str] = (),
    fallback_to_text: bool = False,
) -> ImageResult:
    """Generate the scene image for one unit.

    Args:
        service: Generation backend
        unit: Unit being processed
        position: Zero-based position of the unit in its run
        character_references: Identity reference URIs for the run
        user_reference_images: Caller's original images (first unit only)
        fallback_to_text: Fall back to text-to-image if the identity call fails

    Returns:
        ImageResult with the image URI and whether consistency degraded
    """
    plan = compose_image_request(position, character_references, user_reference_images)
    logger.info(f"Unit {unit.id}: image mode {plan.mode.value} ({len(plan.references)} refs)")

    if plan.mode == ImageMode.USER_REFERENCE:
        uri = await service.generate_image(unit.image_prompt, plan.references)
        return ImageResult(uri, plan.mode, degraded=False)

    if plan.mode == ImageMode.IDENTITY_REFERENCE:
        try:
            uri = await service.generate_image_with_identity_references(
                unit.image_prompt, plan.references
            )
            return ImageResult(uri, plan.mode, degraded=False)
        except GenerationServiceError as e:
            if not fallback_to_text:
                raise
            logger.warning(
                f"Unit {unit.id}: identity-reference generation failed ({e}), "
                "falling back to text-to-image; character consistency not guaranteed"
            )
            uri = await service.generate_image(text_only_prompt(unit))
            return ImageResult(uri, ImageMode.TEXT_ONLY, degraded=True)

    logger.warning(
        f"Unit {unit.id}: no reference images, using text-to-image; "
        "character consistency not guaranteed"
    )
    uri = await service.generate_image(text_only_prompt(unit))
    return ImageResult(uri, plan.mode, degraded=True)
