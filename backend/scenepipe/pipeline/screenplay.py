"""Screenplay planning: turn a creative idea into a multi-scene screenplay.

The planner model streams its answer; only content chunks are kept, the
reasoning stream is dropped. The collected text goes through the
structured-output extractor and is validated into a Screenplay.

Usage:
    from scenepipe.pipeline.screenplay import draft_screenplay

    screenplay = await draft_screenplay(llm, service, "a cat learns to fly")
"""

import logging
from contextlib import aclosing
from typing import Optional, Sequence

from pydantic import ValidationError

from scenepipe.schemas.screenplay import Screenplay
from scenepipe.services.command_extractor import ExtractionError, extract_json_object
from scenepipe.services.generation.base import GenerationService
from scenepipe.services.job_poller import CancelCheck, JobCancelled
from scenepipe.services.llm.base import LLMAdapter

logger = logging.getLogger(__name__)

SCREENPLAY_MARKERS = ("task_id", "scenes", "script_title")

SCREENPLAY_SYSTEM_PROMPT = """You are DirectorAI, a screenplay creation agent for short video production.

Convert the user's idea into a screenplay with exactly 3 scenes. Each scene is
turned into narration, then an image, then a short video.

Respond with ONLY a valid JSON object. No markdown and no explanations.

{
  "task_id": "unique_task_id",
  "script_title": "Screenplay title",
  "scenes": [
    {
      "scene_id": 1,
      "narration": "One or two sentences of narration, in the user's language",
      "image_prompt": "Detailed English visual description for image generation",
      "video_prompt": "English description of the motion in the scene",
      "character_description": "Detailed English description of the main character",
      "image_url": null,
      "video_url": null,
      "status": "pending"
    }
  ]
}

Guidelines:
1. Scene 1 sets up the character and setting, scene 2 develops the action,
   scene 3 resolves it. Each scene focuses on one key moment.
2. Character consistency is critical. The first image_prompt describes the
   main character in detail (hair, clothing, face, build, colors); later
   image_prompts repeat the same traits.
3. image_prompt always starts with "anime style, manga art, 2D animation, cel shaded"
   and avoids "realistic", "photorealistic", "cinematic" and "3D render".
4. video_prompt describes what moves and how, consistent with the image.
5. character_description covers species, colors, distinctive features,
   clothing and accessories. It is reused verbatim across all scenes."""


class ScreenplayParseError(Exception):
    """The planner's answer could not be turned into a valid screenplay."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


def parse_screenplay(text: str) -> Screenplay:
    """Recover and validate a screenplay from free-form model output.

    Raises:
        ScreenplayParseError: no screenplay object found, or it is invalid
    """
    normalized = text.replace("：", ":")
    try:
        data = extract_json_object(normalized, required_keys=SCREENPLAY_MARKERS)
    except ExtractionError as e:
        raise ScreenplayParseError(f"no screenplay found in model output: {e}", text) from e

    try:
        return Screenplay.model_validate(data)
    except ValidationError as e:
        raise ScreenplayParseError(f"invalid screenplay: {e}", text) from e


def build_planning_prompt(prompt: str, character_analysis: str = "") -> str:
    """Embed a character analysis of the user's image into the request."""
    if not character_analysis:
        return prompt
    return (
        f"User request: {prompt}\n\n"
        f"Character analysis of the user's reference image:\n{character_analysis}\n\n"
        "Base the screenplay's character_description on this analysis so the "
        "generated character matches the user's image."
    )


async def analyze_reference_image(service: GenerationService, image_base64: str) -> str:
    """Best-effort character analysis; failures yield an empty description."""
    try:
        analysis = await service.analyze_image_for_character_description(image_base64)
    except Exception as e:
        logger.warning(f"Character analysis failed, continuing without it: {e}")
        return ""
    logger.info(f"Character analysis: {len(analysis)} chars")
    return analysis


async def draft_screenplay(
    llm: LLMAdapter,
    service: GenerationService,
    prompt: str,
    user_images_base64: Sequence[str] = (),
    is_cancelled: Optional[CancelCheck] = None,
) -> Screenplay:
    """Plan a screenplay for a prompt, optionally guided by a user image.

    Args:
        llm: Planner model
        service: Generation backend used for the image analysis
        prompt: The user's creative idea
        user_images_base64: Base64 user images; only the first is analysed
        is_cancelled: Checked before the call and on every streamed chunk

    Returns:
        Validated Screenplay with every scene pending

    Raises:
        JobCancelled: cancellation observed while drafting
        ScreenplayParseError: the answer held no valid screenplay
    """
    cancelled = is_cancelled or (lambda: False)

    analysis = ""
    if user_images_base64:
        analysis = await analyze_reference_image(service, user_images_base64[0])
    if cancelled():
        raise JobCancelled("screenplay draft")

    messages = [{"role": "user", "content": build_planning_prompt(prompt, analysis)}]
    logger.info(f"Requesting screenplay for prompt ({len(prompt)} chars)")

    parts: list[str] = []
    async with aclosing(llm.stream_chat(messages, system_prompt=SCREENPLAY_SYSTEM_PROMPT)) as stream:
        async for chunk in stream:
            if cancelled():
                raise JobCancelled("screenplay draft")
            if chunk.kind == "content":
                parts.append(chunk.text)

    text = "".join(parts)
    logger.info(f"Planner answered with {len(text)} chars")
    screenplay = parse_screenplay(text)
    logger.info(f"Screenplay '{screenplay.script_title}': {len(screenplay.scenes)} scenes")
    return screenplay
