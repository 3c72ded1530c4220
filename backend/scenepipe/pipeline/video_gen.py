"""Video stage: one clip per unit from its scene image.

Builds the video prompt (custom prompt, character prefix, safety policy),
composes the ordered references and runs the job through the poller.

Usage:
    from scenepipe.pipeline.video_gen import build_video_prompt, generate_unit_video

    prompt = await build_video_prompt(unit, "sanitize")
    handle = await generate_unit_video(poller, unit, prompt, refs, settings.generation)
"""

import logging
from typing import Literal, Optional, Sequence

from scenepipe.config import GenerationConfig
from scenepipe.pipeline.references import compose_video_references
from scenepipe.schemas.job import JobHandle
from scenepipe.schemas.screenplay import Unit
from scenepipe.services.job_poller import AsyncJobPoller, CancelCheck, ProgressCallback, raise_for_failure
from scenepipe.services.llm.base import LLMAdapter
from scenepipe.services.prompt_safety import rewrite_video_prompt_for_safety, sanitize_video_prompt

logger = logging.getLogger(__name__)

SafetyPolicy = Literal["sanitize", "rewrite", "off"]


async def build_video_prompt(
    unit: Unit,
    safety_policy: SafetyPolicy = "sanitize",
    rewrite_adapter: Optional[LLMAdapter] = None,
) -> str:
    """Build the prompt sent with a unit's video job.

    A custom prompt set by the user is sent as written (with the character
    prefix); otherwise the scene's video prompt goes through the safety
    policy.
    """
    description = unit.character_description.strip()

    if unit.custom_video_prompt:
        custom = unit.custom_video_prompt.strip()
        return f"Character reference: {description}. {custom}" if description else custom

    base = unit.video_prompt
    if description:
        base = f"Character reference: {description}. Scene: {unit.video_prompt}"

    if safety_policy == "off":
        return base
    if safety_policy == "rewrite" and rewrite_adapter is not None:
        return await rewrite_video_prompt_for_safety(rewrite_adapter, base, unit.narration)
    return sanitize_video_prompt(base)


async def generate_unit_video(
    poller: AsyncJobPoller,
    unit: Unit,
    prompt: str,
    character_references: Sequence[str],
    config: GenerationConfig,
    on_progress: Optional[ProgressCallback] = None,
    is_cancelled: Optional[CancelCheck] = None,
) -> JobHandle:
    """Submit and poll the video job for a unit that has an image.

    Returns:
        Completed JobHandle

    Raises:
        JobFailedError: the service reported the job as failed
        JobCancelled, JobTimeoutError: from the poller
    """
    references = compose_video_references(character_references, unit.image_artifact or "")
    logger.info(f"Unit {unit.id}: video job with {len(references)} references")
    handle = await poller.run(
        prompt,
        references,
        config.video_duration_seconds,
        config.video_model,
        on_progress=on_progress,
        is_cancelled=is_cancelled,
    )
    return raise_for_failure(handle)
