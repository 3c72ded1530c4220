"""Prompt safety helpers for content-filtered generation backends.

Two deterministic sanitizers (image and video) and an LLM-based rewrite of
video prompts that falls back to the video sanitizer on any failure.
"""

import logging
import re
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from scenepipe.services.llm.base import LLMAdapter

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Image prompts
# ---------------------------------------------------------------------------
_IMAGE_REPLACEMENTS = [
    (r"\b(sexy|nude|naked|breast|underwear|lingerie|intimate|suggestive)\b", "beautiful"),
    (r"\b(violence|blood|kill|death|weapon|gore)\b", "dramatic"),
    (r"\b(disturbing|shocking|offensive)\b", "artistic"),
    (r"\b(highly detailed|extreme|intense|realistic skin|anatomically correct)\b", "detailed"),
]

IMAGE_SAFE_SUFFIX = "professional photography, high quality, cinematic lighting"


def sanitize_image_prompt(prompt: str) -> str:
    """Replace words likely to trip an image content filter."""
    sanitized = prompt
    for pattern, replacement in _IMAGE_REPLACEMENTS:
        sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)
    sanitized = sanitized.strip()

    if not sanitized:
        result = f"Beautiful artistic scene, {IMAGE_SAFE_SUFFIX}"
    else:
        result = f"{sanitized}, {IMAGE_SAFE_SUFFIX}"
    logger.info(f"Sanitized image prompt: {prompt!r} -> {result!r}")
    return result


# ---------------------------------------------------------------------------
# Video prompts
# ---------------------------------------------------------------------------
_VIDEO_SOFTENED_PATTERNS = [
    r"lightning\s+effects?",
    r"glowing\s+(eyes|hands|body)",
    r"electric\s+\w+",
    r"energy\s+swirl",
    r"powerful?\s+\w+",
    r"explosion",
    r"fire\s+\w+",
    r"violent?\s+\w+",
    r"attack\s+\w+",
    r"battle\s+\w+",
    r"fight\s+\w+",
    r"weapon",
    r"danger",
    r"threaten",
    r"aggressive",
    r"intense",
    r"dramatic\s+lightning",
    r"fierce",
    r"determination\s*\([^)]*\)",
    r"sweating",
    r"trembling\s+spoon",
    r"gripping\s+spoon",
]

_VIDEO_REPLACEMENTS = {
    "lightning": "soft light",
    "glowing": "bright",
    "energy": "atmosphere",
    "swirl": "flow",
    "powerful": "beautiful",
    "strong": "elegant",
    "fierce": "calm",
    "intense": "warm",
    "dramatic": "peaceful",
    "action": "scene",
    "dynamic": "smooth",
    "gripping": "holding",
    "trembling": "gentle",
}


def sanitize_video_prompt(prompt: str) -> str:
    """Soften a video prompt and wrap it in a calm-style frame."""
    sanitized = prompt
    for pattern in _VIDEO_SOFTENED_PATTERNS:
        sanitized = re.sub(pattern, "gentle", sanitized, flags=re.IGNORECASE)
    for word, replacement in _VIDEO_REPLACEMENTS.items():
        sanitized = re.sub(rf"\b{word}\b", replacement, sanitized, flags=re.IGNORECASE)

    result = f"Peaceful anime style scene. {sanitized.strip()}. Calm and positive atmosphere."
    logger.info(f"Sanitized video prompt: {prompt!r} -> {result!r}")
    return result


# ---------------------------------------------------------------------------
# LLM rewrite
# ---------------------------------------------------------------------------
REWRITE_SYSTEM_PROMPT = """You rewrite video generation prompts so they pass a strict content filter while keeping the scene's meaning.

Never use these words or close variants:
- effects: lightning, electric, thunderbolt, energy, power surge, spark, voltage
- conflict: attack, battle, fight, punch, kick, hit, strike, slam, crash, smash, combat, clash
- danger: fire, flame, burn, explosion, blast, bomb, smoke, weapon, sword, knife, gun
- negative emotion: fierce, intense, aggressive, violent, rage, angry, furious, terrified, scream
- body horror: glowing eyes, red eyes, blood, wound, injury, transform, mutate, distort
- risky motion: fall, trip, stumble, chase, flee, escape, running, quick, fast, sudden, rapid

Use calm substitutes (soft light, approach, warm, bloom, surprised) and include at least two of:
gentle, soft, calm, peaceful, warm, bright, smooth, quiet, serene, slowly, gracefully.
Camera moves must be slow and gentle. Keep the prompt in English and under 50 words."""


class RewrittenVideoPrompt(BaseModel):
    """Structured output of the safety rewrite."""

    rewritten_prompt: str = Field(description="Rewritten English video prompt, under 50 words")


async def rewrite_video_prompt_for_safety(
    adapter: "LLMAdapter",
    original_prompt: str,
    narration: str = "",
) -> str:
    """Rewrite a video prompt with an LLM, falling back to the sanitizer.

    Args:
        adapter: Text model used for the rewrite
        original_prompt: Prompt that may trip the content filter
        narration: Scene narration, gives the model context

    Returns:
        Rewritten prompt (never raises)
    """
    prompt = (
        f"Scene narration:\n{narration or '(none)'}\n\n"
        f"Original video prompt:\n{original_prompt}"
    )
    try:
        result = await adapter.generate_text(
            prompt,
            RewrittenVideoPrompt,
            temperature=0.7,
            system_prompt=REWRITE_SYSTEM_PROMPT,
        )
        rewritten = result.rewritten_prompt.strip()
        if not rewritten:
            raise ValueError("empty rewrite")
        logger.info(f"Rewrote video prompt: {rewritten!r}")
        return rewritten
    except Exception as e:
        logger.warning(f"Video prompt rewrite failed, using sanitizer: {e}")
        return sanitize_video_prompt(original_prompt)
