"""Funnel, lead and integration models."""

import time
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class StepType(str, Enum):
    TEXT = "text"
    DELAY = "delay"
    TAG = "tag"
    WEBHOOK = "webhook"
    AUDIO = "audio"
    PTT = "ptt"
    PTV = "ptv"
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"


MEDIA_STEP_TYPES = frozenset({
    StepType.AUDIO,
    StepType.PTT,
    StepType.PTV,
    StepType.IMAGE,
    StepType.VIDEO,
    StepType.FILE,
})

SENDING_STEP_TYPES = MEDIA_STEP_TYPES | {StepType.TEXT}


class DurationMode(str, Enum):
    MANUAL = "manual"
    FILE = "file"


class Lane(str, Enum):
    NOVO = "novo"
    QUALIFICADO = "qualificado"
    PROPOSTA = "proposta"
    FECHADO = "fechado"


def now_ms() -> int:
    return int(time.time() * 1000)


class _Model(BaseModel):
    # Accept the camelCase keys used by exported funnels as well as snake_case.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """Dump with camelCase keys, as sent over the bridge and webhooks."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FunnelStep(_Model):
    id: str
    type: StepType
    text: Optional[str] = None
    delay_sec: Optional[float] = None
    delay_expr: Optional[str] = None
    add_tags: Optional[list[str]] = None
    webhook_event: Optional[str] = None
    payload_template: Optional[dict[str, Any]] = None
    media_id: Optional[str] = None
    media_caption: Optional[str] = None
    file_name: Optional[str] = None
    media_mime_type: Optional[str] = None
    media_duration_mode: Optional[DurationMode] = None
    media_duration_sec: Optional[float] = None

    @property
    def is_sending(self) -> bool:
        return self.type in SENDING_STEP_TYPES

    @property
    def is_media(self) -> bool:
        return self.type in MEDIA_STEP_TYPES


class Funnel(_Model):
    id: str
    name: str
    description: Optional[str] = None
    steps: list[FunnelStep] = Field(default_factory=list)


class LeadCard(_Model):
    id: str
    chat_id: str
    title: str = ""
    lane_id: Lane = Lane.NOVO
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = None
    last_update_at: int = Field(default_factory=now_ms)

    @property
    def store_key(self) -> str:
        return self.id or self.chat_id


class IntegrationSettings(_Model):
    # n8n* keys come from settings exported by the browser extension.
    webhook_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("webhook_url", "webhookUrl", "n8nWebhookUrl"),
    )
    webhook_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("webhook_secret", "webhookSecret", "n8nSecret"),
    )
    enable_webhook: bool = False
    default_delay_sec: Optional[float] = None


class FunnelRunInput(_Model):
    funnel: Funnel
    chat_id: str
    lead: LeadCard
    integration_settings: IntegrationSettings = Field(default_factory=IntegrationSettings)
