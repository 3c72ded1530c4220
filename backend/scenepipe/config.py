"""Configuration management with YAML and environment variable support."""

from functools import lru_cache
from pathlib import Path
from typing import ClassVar, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    yaml_path: ClassVar[Path] = Path("config.yaml")

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        if not self.yaml_path.exists():
            return {}

        with open(self.yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class GenerationConfig(BaseModel):
    """Image/video generation gateway settings."""

    base_url: str = "https://api.tu-zi.com"
    api_key: str = ""
    image_model: str = "gemini-2.5-flash-image-vip"
    identity_image_model: str = "gpt-4o-image-vip"
    image_size: str = "1024x1024"
    video_model: str = "veo3.1-components"
    video_size: str = "1280x720"
    video_duration_seconds: int = 5
    vision_base_url: str = "https://ark.cn-beijing.volces.com/api/v3"
    vision_api_key: str = ""
    vision_model: str = "doubao-seed-1-6-vision-250815"
    request_timeout_seconds: float = 120.0
    use_mock: bool = False


class PollingConfig(BaseModel):
    """Async job polling parameters."""

    interval_seconds: float = 2.0
    timeout_seconds: float = 600.0
    cancel_check_slices: int = 5

    @field_validator("interval_seconds", "timeout_seconds")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class SchedulerConfig(BaseModel):
    """Batch scheduler parameters."""

    concurrency_limit: int = Field(default=3, gt=0)
    prompt_safety: Literal["sanitize", "rewrite", "off"] = "sanitize"
    identity_fallback_to_text: bool = False
    max_finished_runs: int = Field(default=50, gt=0)


class LLMConfig(BaseModel):
    """Chat model used for script planning and the command loop."""

    model: str = "glm-4.7"
    base_url: str = "https://open.bigmodel.cn/api/paas/v4"
    api_key: str = ""
    temperature: float = 1.0
    max_tokens: int = 65536
    thinking: bool = True
    rewrite_model: str = "glm-4-flash"
    ollama_base_url: str = "http://localhost:11434"
    ollama_api_key: str = ""


class CommandLoopConfig(BaseModel):
    """Conversational command loop parameters."""

    max_iterations: int = Field(default=10, gt=0)
    default_video_seconds: int = 10
    poll_timeout_seconds: float = 300.0


class GoogleCloudConfig(BaseModel):
    """Google Cloud configuration (only needed for gemini- models)."""

    project_id: Optional[str] = None
    location: str = "us-central1"


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: SCENEPIPE_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="SCENEPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    command_loop: CommandLoopConfig = Field(default_factory=CommandLoopConfig)
    google_cloud: GoogleCloudConfig = Field(default_factory=GoogleCloudConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Init settings (explicit overrides, used by tests)
        2. Environment variables
        3. YAML file
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once for process entry points (CLI, API server)."""
    return Settings()
