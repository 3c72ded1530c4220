"""Pydantic schemas for screenplays and their scene units.

A screenplay is what the planning model returns; each of its scenes becomes
a Unit that the scheduler drives through image and video generation. Units
are immutable snapshots: every state change produces a new instance.
"""

from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, model_validator


def _coerce_to_str(v: Any) -> str:
    """Coerce list/None values to a plain string.

    Planning models occasionally return arrays or null for text fields.
    """
    if v is None:
        return ""
    if isinstance(v, list):
        return ", ".join(str(item) for item in v)
    return v


CoercedStr = Annotated[str, BeforeValidator(_coerce_to_str)]


class UnitStatus(str, Enum):
    """Lifecycle of one scene unit.

    Values match the status strings used in saved screenplay JSON.
    """

    PENDING = "pending"
    IMAGE_IN_FLIGHT = "image_generating"
    IMAGE_DONE = "image_completed"
    VIDEO_IN_FLIGHT = "video_generating"
    COMPLETED = "completed"
    FAILED = "failed"


IMAGE_BEARING_STATES = frozenset({
    UnitStatus.IMAGE_DONE,
    UnitStatus.VIDEO_IN_FLIGHT,
    UnitStatus.COMPLETED,
    UnitStatus.FAILED,
})


class Unit(BaseModel):
    """One scene: an independent image+video generation task.

    Accepts both snake_case and camelCase keys plus the legacy
    scene_id/image_url/video_url names when parsing model output.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int = Field(validation_alias=AliasChoices("id", "scene_id", "sceneId"))
    narration: CoercedStr = ""
    image_prompt: CoercedStr = Field(
        default="", validation_alias=AliasChoices("image_prompt", "imagePrompt")
    )
    video_prompt: CoercedStr = Field(
        default="", validation_alias=AliasChoices("video_prompt", "videoPrompt")
    )
    character_description: CoercedStr = Field(
        default="",
        validation_alias=AliasChoices("character_description", "characterDescription"),
    )
    image_artifact: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("image_artifact", "image_url", "imageUrl"),
    )
    video_artifact: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("video_artifact", "video_url", "videoUrl"),
    )
    status: UnitStatus = UnitStatus.PENDING
    custom_video_prompt: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("custom_video_prompt", "customVideoPrompt"),
    )
    error_message: Optional[str] = None

    @model_validator(mode="after")
    def check_artifact_invariants(self) -> "Unit":
        if self.video_artifact and self.status != UnitStatus.COMPLETED:
            raise ValueError(
                f"unit {self.id}: video artifact requires status completed, got {self.status.value}"
            )
        if self.image_artifact and self.status not in IMAGE_BEARING_STATES:
            raise ValueError(
                f"unit {self.id}: image artifact not allowed in status {self.status.value}"
            )
        return self

    def evolve(self, **changes: Any) -> "Unit":
        """Return a validated copy with the given fields replaced."""
        return Unit.model_validate({**self.model_dump(), **changes})


class Screenplay(BaseModel):
    """Planner output: a titled list of scenes."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: CoercedStr = Field(default="", validation_alias=AliasChoices("task_id", "taskId"))
    script_title: CoercedStr = Field(
        default="", validation_alias=AliasChoices("script_title", "scriptTitle", "title")
    )
    scenes: list[Unit]

    @model_validator(mode="after")
    def check_scenes(self) -> "Screenplay":
        if not self.scenes:
            raise ValueError("screenplay has no scenes")
        ids = [scene.id for scene in self.scenes]
        if len(ids) != len(set(ids)):
            raise ValueError(f"duplicate scene ids: {ids}")
        return self
