"""OpenAI-compatible generation gateway client.

Provides:
- Text/reference image generation via /v1/images/generations
- Identity-preserving image generation via chat-format /v1/chat/completions
- Multipart video job submission (/v1/videos) and status lookup
- Character analysis through a separate vision chat endpoint

Usage:
    service = HttpGenerationService(settings.generation)
    url = await service.generate_image("a lighthouse at dusk")
    handle = await service.submit_video_job(prompt, [url], 5, "veo3.1-components")
"""

import logging
import re
from typing import Any, Optional, Sequence

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from scenepipe.config import GenerationConfig
from scenepipe.pipeline.references import MAX_VIDEO_REFERENCES
from scenepipe.schemas.job import JobHandle
from scenepipe.services.generation.base import (
    GenerationService,
    GenerationServiceError,
    is_transient_error,
)
from scenepipe.services.prompt_safety import sanitize_image_prompt

logger = logging.getLogger(__name__)

CHARACTER_ANALYSIS_PROMPT = """Look closely at this image and describe its main character in detail.

Answer in this format and nothing else:

**Appearance**: hairstyle, hair color, facial features, eye color, skin, build
**Clothing**: style, colors, accessories
**Pose and expression**: posture, expression, demeanor
**Overall style**: one sentence summarizing the character's visual style

Be detailed enough that the character can be redrawn consistently."""

# Error markers returned when the image backend rejects a prompt
_UNSAFE_GENERATION_MARKERS = ("PUBLIC_ERROR_UNSAFE_GENERATION", "generation_failed")

# Links to hosted preview pages, not images
_PREVIEW_URL_MARKERS = ("pro.asyncdata.net/web",)

_MARKDOWN_IMAGE_RE = re.compile(r"!\[[^\]]*\]\((https?://[^)\s]+)\)")
_URL_RE = re.compile(r"https?://[^\s\])\"]+")


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------
def extract_image_url(content: Any) -> Optional[str]:
    """Recover an image URL from a chat completion message content.

    Handles a bare URL string, markdown image syntax, free text with URLs
    (skipping preview-page links) and list-of-parts content.
    """
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict) and item.get("type") == "image_url":
                url = (item.get("image_url") or {}).get("url")
                if url:
                    return url
        return None

    if not isinstance(content, str):
        return None

    text = content.strip()
    if text.startswith("http") and not re.search(r"\s", text):
        return text

    match = _MARKDOWN_IMAGE_RE.search(text)
    if match:
        return match.group(1)

    for url in _URL_RE.findall(text):
        if not any(marker in url for marker in _PREVIEW_URL_MARKERS):
            return url
    return None


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if data.get("message"):
            return str(data["message"])
    return str(data)[:500]


def _chat_content(data: dict) -> Any:
    choices = data.get("choices") or []
    if not choices:
        raise GenerationServiceError("response has no choices")
    message = choices[0].get("message") or {}
    return message.get("content")


_transport_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=2, min=2, max=30) + wait_random(0, 2),
    retry=retry_if_exception(is_transient_error),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
class HttpGenerationService(GenerationService):
    """Async client for an OpenAI-compatible image/video gateway."""

    def __init__(self, config: GenerationConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.host = config.base_url.rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.host,
                follow_redirects=True,
                timeout=httpx.Timeout(self.config.request_timeout_seconds, connect=30.0),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _send(
        self,
        method: str,
        url: str,
        *,
        api_key: Optional[str] = None,
        **kwargs: Any,
    ) -> dict:
        """Send one request and return the decoded JSON body.

        Raises:
            GenerationServiceError: on transport errors and HTTP >= 400
        """
        key = self.config.api_key if api_key is None else api_key
        headers = {"Authorization": f"Bearer {key}"} if key else {}
        logger.info("%s %s", method, url)
        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise GenerationServiceError(f"{method} {url} failed: {e}", transient=True) from e

        logger.info("  response: HTTP %d", response.status_code)
        if response.status_code >= 400:
            status = response.status_code
            raise GenerationServiceError(
                _error_message(response),
                status_code=status,
                transient=status == 429 or status >= 500,
            )
        try:
            return response.json()
        except ValueError as e:
            raise GenerationServiceError(f"{method} {url}: response is not JSON") from e

    # -- images --------------------------------------------------------------

    @_transport_retry
    async def _images_generation(self, prompt: str, reference_images: Sequence[str]) -> str:
        body: dict[str, Any] = {
            "model": self.config.image_model,
            "prompt": prompt,
            "n": 1,
            "response_format": "url",
            "size": self.config.image_size,
        }
        if reference_images:
            body["image"] = list(reference_images)
        data = await self._send("POST", "/v1/images/generations", json=body)
        items = data.get("data") or []
        url = items[0].get("url") if items else None
        if not url:
            raise GenerationServiceError("image response has no URL")
        return url

    async def generate_image(
        self,
        prompt: str,
        reference_images: Optional[Sequence[str]] = None,
    ) -> str:
        """Generate an image; a content-filter rejection is retried once sanitized."""
        refs = list(reference_images or [])
        logger.info(f"Generating image ({len(refs)} references): {prompt[:120]}")
        try:
            return await self._images_generation(prompt, refs)
        except GenerationServiceError as e:
            if not any(marker in str(e) for marker in _UNSAFE_GENERATION_MARKERS):
                raise
            logger.warning("Image prompt rejected by content filter, retrying sanitized")
            return await self._images_generation(sanitize_image_prompt(prompt), refs)

    @_transport_retry
    async def generate_image_with_identity_references(
        self,
        prompt: str,
        reference_uris: Sequence[str],
    ) -> str:
        """Generate an image through the chat-format endpoint with character sheets."""
        content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        for uri in list(reference_uris)[:2]:
            if uri:
                content.append({"type": "image_url", "image_url": {"url": uri}})

        logger.info(f"Generating image with {len(content) - 1} identity references")
        data = await self._send(
            "POST",
            "/v1/chat/completions",
            json={
                "model": self.config.identity_image_model,
                "stream": False,
                "messages": [{"role": "user", "content": content}],
            },
        )
        url = extract_image_url(_chat_content(data))
        if not url:
            raise GenerationServiceError("no image URL in identity-reference response")
        return url

    # -- video ---------------------------------------------------------------

    @_transport_retry
    async def submit_video_job(
        self,
        prompt: str,
        reference_uris: Sequence[str],
        duration_seconds: int,
        model: str,
    ) -> JobHandle:
        """Submit a multipart video job; each reference is its own input_reference field."""
        refs = list(reference_uris)
        if len(refs) > MAX_VIDEO_REFERENCES:
            raise ValueError(f"at most {MAX_VIDEO_REFERENCES} video references, got {len(refs)}")

        fields = [
            ("model", model),
            ("prompt", prompt),
            ("seconds", str(duration_seconds)),
            ("size", self.config.video_size),
            ("watermark", "false"),
        ]
        fields.extend(("input_reference", uri) for uri in refs)

        logger.info(f"Submitting video job: model={model} seconds={duration_seconds} refs={len(refs)}")
        data = await self._send(
            "POST",
            "/v1/videos",
            files=[(name, (None, value)) for name, value in fields],
        )
        handle = JobHandle.from_response(data)
        logger.info(f"  job {handle.external_id}: {handle.status.value}")
        return handle

    async def poll_video_job(self, job_id: str) -> JobHandle:
        """Single status lookup; the poller owns retry and timeout."""
        data = await self._send("GET", f"/v1/videos/{job_id}")
        return JobHandle.from_response(data)

    # -- vision --------------------------------------------------------------

    async def analyze_image_for_character_description(
        self,
        image_base64: str,
        mime_type: str = "image/jpeg",
    ) -> str:
        if not self.config.vision_api_key:
            raise GenerationServiceError("vision API key is not configured")

        data = await self._send(
            "POST",
            f"{self.config.vision_base_url.rstrip('/')}/chat/completions",
            api_key=self.config.vision_api_key,
            json={
                "model": self.config.vision_model,
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "image_url",
                                "image_url": {"url": f"data:{mime_type};base64,{image_base64}"},
                            },
                            {"type": "text", "text": CHARACTER_ANALYSIS_PROMPT},
                        ],
                    }
                ],
            },
        )
        content = _chat_content(data)
        if not isinstance(content, str) or not content.strip():
            raise GenerationServiceError("empty character analysis")
        return content.strip()
