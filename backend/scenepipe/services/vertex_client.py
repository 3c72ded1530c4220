"""google-genai clients in Vertex AI mode, one per (project, location).

Credentials come from Application Default Credentials; a .env in the
working directory may point GOOGLE_APPLICATION_CREDENTIALS at a key file.
"""

import logging
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from google import genai

from scenepipe.config import GoogleCloudConfig

logger = logging.getLogger(__name__)

load_dotenv(Path.cwd() / ".env")

# Preview models served only from the global endpoint
GLOBAL_ONLY_MODELS = frozenset({
    "gemini-3-flash-preview",
    "gemini-3-pro-preview",
})


@lru_cache(maxsize=None)
def _client(project_id: str, location: str) -> genai.Client:
    logger.info(f"Creating Vertex AI client for {project_id} in {location}")
    return genai.Client(vertexai=True, project=project_id, location=location)


def client_for_model(config: GoogleCloudConfig, model_id: str) -> genai.Client:
    """Return the client whose region serves `model_id`.

    Raises:
        ValueError: no Google Cloud project is configured
    """
    if not config.project_id:
        raise ValueError("google_cloud.project_id must be set to use gemini- models")
    location = "global" if model_id in GLOBAL_ONLY_MODELS else config.location
    return _client(config.project_id, location)
