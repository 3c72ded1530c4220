"""Abstract base class for generation service backends."""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from scenepipe.schemas.job import JobHandle


class GenerationServiceError(Exception):
    """Error reported by (or while talking to) a generation backend.

    Attributes:
        status_code: HTTP status if the error came from a response
        transient: True for errors worth retrying (429, 5xx, transport)
    """

    def __init__(self, message: str, status_code: Optional[int] = None, transient: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class GenerationService(ABC):
    """Image, video and vision operations the orchestrator depends on.

    Image calls are synchronous from the caller's perspective. Video jobs
    are asynchronous: submit returns a JobHandle and the caller polls.
    """

    @abstractmethod
    async def generate_image(
        self,
        prompt: str,
        reference_images: Optional[Sequence[str]] = None,
    ) -> str:
        """Generate an image, optionally guided by reference images.

        Returns:
            URI of the generated image.
        """
        ...

    @abstractmethod
    async def generate_image_with_identity_references(
        self,
        prompt: str,
        reference_uris: Sequence[str],
    ) -> str:
        """Generate an image that keeps the characters in up to 2 references.

        Returns:
            URI of the generated image.
        """
        ...

    @abstractmethod
    async def submit_video_job(
        self,
        prompt: str,
        reference_uris: Sequence[str],
        duration_seconds: int,
        model: str,
    ) -> JobHandle:
        """Submit a video job with up to 3 ordered references."""
        ...

    @abstractmethod
    async def poll_video_job(self, job_id: str) -> JobHandle:
        """Fetch the current state of a video job."""
        ...

    @abstractmethod
    async def analyze_image_for_character_description(self, image_base64: str) -> str:
        """Describe the characters in an image for use in prompts."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        return None


def is_transient_error(exc: BaseException) -> bool:
    """Return True only for errors worth retrying (429, 5xx, transport)."""
    if isinstance(exc, GenerationServiceError):
        return exc.transient
    if isinstance(exc, (ConnectionError, TimeoutError, OSError)):
        return True
    return False
