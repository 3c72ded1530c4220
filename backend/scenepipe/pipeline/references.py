"""Reference composition for image and video generation requests.

Decides, per unit, which prior artifacts accompany a generation request:
the caller's own images (first unit only), character identity references,
or nothing. Video requests always carry identity references first and the
unit's own image last; the downstream video model accepts at most three.
"""

import logging
from enum import Enum
from typing import NamedTuple, Sequence

from scenepipe.orchestrator.state import MAX_IDENTITY_REFERENCES

logger = logging.getLogger(__name__)

# Hard limit of the video service, not a tunable
MAX_VIDEO_REFERENCES = 3


class ImageMode(str, Enum):
    USER_REFERENCE = "user_reference"
    IDENTITY_REFERENCE = "identity_reference"
    TEXT_ONLY = "text_only"


class ImageRequestPlan(NamedTuple):
    mode: ImageMode
    references: list[str]

    @property
    def guarantees_consistency(self) -> bool:
        return self.mode != ImageMode.TEXT_ONLY


def compose_image_request(
    unit_position: int,
    character_references: Sequence[str],
    user_reference_images: Sequence[str] = (),
) -> ImageRequestPlan:
    """Choose the image generation mode and its ordered reference list.

    Args:
        unit_position: Zero-based position of the unit within its run
        character_references: Identity reference URIs (only the first 2 are used)
        user_reference_images: Caller's original images, used for the first unit only

    Returns:
        ImageRequestPlan with the mode and references to send
    """
    if user_reference_images and unit_position == 0:
        return ImageRequestPlan(ImageMode.USER_REFERENCE, list(user_reference_images))

    identity = [ref for ref in character_references if ref][:MAX_IDENTITY_REFERENCES]
    if identity:
        return ImageRequestPlan(ImageMode.IDENTITY_REFERENCE, identity)

    return ImageRequestPlan(ImageMode.TEXT_ONLY, [])


def compose_video_references(
    character_references: Sequence[str],
    scene_image: str,
) -> list[str]:
    """Build the ordered reference list for a video job.

    Identity references come first, the unit's own image last. The order
    is part of the contract with the video model.
    """
    if not scene_image:
        raise ValueError("video references require the unit's image")

    identity = [ref for ref in character_references if ref][:MAX_IDENTITY_REFERENCES]
    references = identity + [scene_image]
    return references
