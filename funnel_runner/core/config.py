"""Configuration loading and models."""

import json
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from funnel_runner.core.schema import Funnel, IntegrationSettings


class BridgeConfig(BaseModel):
    lookup_timeout_sec: float = 5.0
    text_timeout_sec: float = 15.0
    file_timeout_sec: float = 20.0
    video_timeout_sec: float = 30.0
    presence_timeout_sec: float = 5.0


class MediaConfig(BaseModel):
    channel_name: str = "zop-media"
    fetch_attempts: int = 2
    retry_backoff_sec: float = 0.4
    stream_timeout_sec: float = 20.0


class PresenceConfig(BaseModel):
    max_duration_ms: int = 20000


class StorageConfig(BaseModel):
    db_path: str = "data/funnels.db"


class Settings(BaseModel):
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    presence: PresenceConfig = Field(default_factory=PresenceConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    integration: IntegrationSettings = Field(default_factory=IntegrationSettings)


DEFAULT_CONFIG_PATH = Path("config")


def load_settings(config_path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from YAML file."""
    settings_file = config_path / "settings.yaml"

    if settings_file.exists():
        with open(settings_file) as f:
            data = yaml.safe_load(f) or {}
        settings = Settings(**data)
    else:
        settings = Settings()

    # Env vars win over YAML for webhook credentials
    env_url = os.environ.get("FUNNEL_WEBHOOK_URL", "")
    if env_url:
        settings.integration.webhook_url = env_url
    env_secret = os.environ.get("FUNNEL_WEBHOOK_SECRET", "")
    if env_secret:
        settings.integration.webhook_secret = env_secret

    return settings


def render_template(template: str, variables: dict) -> str:
    """Render a template with variable substitution."""
    result = template
    for key, value in variables.items():
        result = result.replace(f"{{{{{key}}}}}", str(value) if value is not None else "")
    return result


def load_funnel(funnel_path: Path) -> Funnel:
    """Load a funnel definition from a JSON or YAML file."""
    text = Path(funnel_path).read_text()

    if funnel_path.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)

    return Funnel.model_validate(data)
