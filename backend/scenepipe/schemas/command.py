"""Tagged command variants decoded from model output.

Dispatch is on the concrete class; UnknownCommand carries the raw mapping
so new actions can be reported back to the model instead of crashing.
"""

import json
import logging
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

KNOWN_ACTIONS = ("generate_image", "generate_video", "complete")


class GenerateImageCommand(BaseModel):
    action: Literal["generate_image"] = "generate_image"
    prompt: str = ""


class GenerateVideoCommand(BaseModel):
    action: Literal["generate_video"] = "generate_video"
    image_url: str = ""
    prompt: str = ""
    seconds: Optional[int] = Field(default=None, gt=0)


class CompleteCommand(BaseModel):
    action: Literal["complete"] = "complete"
    message: str = "Task complete."


class UnknownCommand(BaseModel):
    action: str
    params: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""


Command = Union[GenerateImageCommand, GenerateVideoCommand, CompleteCommand, UnknownCommand]

_VARIANTS: dict[str, type[BaseModel]] = {
    "generate_image": GenerateImageCommand,
    "generate_video": GenerateVideoCommand,
    "complete": CompleteCommand,
}


def parse_command(data: dict[str, Any]) -> Command:
    """Convert a decoded JSON object into a command variant.

    Accepts {"action": ..., "params": {...}} and the shorthand
    {"message": ...}, which means complete.
    """
    action = data.get("action")
    params = data.get("params")
    if not isinstance(params, dict):
        params = {}
    # Models sometimes put parameters beside the action instead of under params
    params = {**{k: v for k, v in data.items() if k not in ("action", "params")}, **params}

    if action is None:
        if "message" in data:
            return CompleteCommand(message=str(data["message"]))
        return UnknownCommand(action="", params=dict(data), reason="missing action field")

    action = str(action).strip()
    variant = _VARIANTS.get(action)
    if variant is None:
        return UnknownCommand(action=action, params=params, reason=f"unknown action: {action}")

    try:
        return variant.model_validate({**params, "action": action})
    except ValidationError as e:
        logger.warning(f"Invalid parameters for {action}: {e}")
        return UnknownCommand(action=action, params=params, reason=f"invalid parameters for {action}: {e}")


def command_to_json(command: Command) -> str:
    """Render a command in the canonical {"action", "params"} shape."""
    if isinstance(command, UnknownCommand):
        payload = {"action": command.action, "params": command.params}
    else:
        params = command.model_dump(exclude={"action"}, exclude_none=True)
        payload = {"action": command.action, "params": params}
    return json.dumps(payload, ensure_ascii=False)
