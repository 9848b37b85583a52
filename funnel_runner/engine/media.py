"""Resolving a step's media reference and building send-file options."""

import asyncio
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from funnel_runner.clients.media_stream import MediaStreamClient
from funnel_runner.core.config import MediaConfig
from funnel_runner.core.db import DEFAULT_DB_PATH, get_media, init_db
from funnel_runner.core.errors import MediaNotFoundError
from funnel_runner.core.schema import FunnelStep, StepType

log = structlog.get_logger()

REMOTE = "remote"
LOCAL = "local"


@dataclass
class MediaPayload:
    id: str
    data_url: str
    mime_type: Optional[str] = None
    file_name: Optional[str] = None
    source: str = REMOTE


class MediaResolver:
    """Remote lookup with bounded retry, then the local media store."""

    def __init__(
        self,
        stream: Optional[MediaStreamClient],
        db_path: Path = DEFAULT_DB_PATH,
        config: Optional[MediaConfig] = None,
    ):
        self.stream = stream
        self.db_path = db_path
        self.config = config or MediaConfig()
        init_db(db_path)

    async def _fetch_remote(self, media_id: str) -> Optional[MediaPayload]:
        if self.stream is None:
            return None

        attempts = max(self.config.fetch_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                record = await self.stream.fetch(media_id)
                return MediaPayload(
                    id=media_id,
                    data_url=record.data_url,
                    mime_type=record.mime_type,
                    file_name=record.file_name,
                    source=REMOTE,
                )
            except Exception as e:
                log.warning(
                    "media_remote_fetch_failed",
                    media_id=media_id,
                    attempt=attempt,
                    attempts=attempts,
                    error=str(e),
                )
                if attempt < attempts:
                    await asyncio.sleep(self.config.retry_backoff_sec)
        return None

    def _fetch_local(self, media_id: str) -> Optional[MediaPayload]:
        record = get_media(self.db_path, media_id)
        if not record or not record.get("data_url"):
            return None
        return MediaPayload(
            id=media_id,
            data_url=record["data_url"],
            mime_type=record.get("mime_type"),
            file_name=record.get("file_name"),
            source=LOCAL,
        )

    async def resolve(self, step: FunnelStep) -> MediaPayload:
        media_id = (step.media_id or "").strip()
        if not media_id:
            raise MediaNotFoundError(f"media-not-found: step {step.id} has no media reference")

        payload = await self._fetch_remote(media_id)
        if payload is None:
            payload = self._fetch_local(media_id)
            if payload is not None:
                log.info("media_local_fallback", media_id=media_id)

        if payload is None:
            raise MediaNotFoundError(f"media-not-found: {media_id}")

        if not payload.mime_type and step.media_mime_type:
            payload.mime_type = step.media_mime_type
        return payload


def guess_file_name(step: FunnelStep, media: MediaPayload) -> str:
    if step.file_name:
        return step.file_name
    if media.file_name:
        return media.file_name
    ext = mimetypes.guess_extension(media.mime_type or "") or ""
    return f"{step.id}{ext}"


def send_file_options(step_type: StepType, force_video: bool = False) -> dict:
    """Options the bridge passes to the host's sendFileMessage."""
    if step_type == StepType.PTT:
        return {"type": "audio", "isPtt": True}
    if step_type == StepType.PTV:
        return {"type": "video", "isPtv": True}
    if step_type == StepType.AUDIO:
        return {"type": "audio"}
    if step_type == StepType.IMAGE:
        return {"type": "image"}
    if step_type == StepType.VIDEO:
        # First attempt lets the host sniff the mime type
        return {"type": "video"} if force_video else {"type": "auto-detect"}
    return {"type": "document"}


def takes_caption(step_type: StepType) -> bool:
    return step_type in (StepType.IMAGE, StepType.VIDEO, StepType.FILE)
