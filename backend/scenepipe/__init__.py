"""Scene generation orchestrator: script → per-scene image → per-scene video."""

import logging

__version__ = "0.1.0"


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging for CLI and API entry points."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
