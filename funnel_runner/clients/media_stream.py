"""Chunked media download over the bridge's named media channel.

The server answers a `media:get` request with one `meta` frame, then `chunk`
frames (any order), then `done`. An `error` frame may arrive at any point.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

import structlog

from funnel_runner.core.config import MediaConfig
from funnel_runner.core.errors import (
    BridgeTimeoutError,
    MediaChunkMissingError,
    MediaStreamError,
)

log = structlog.get_logger()


class MediaChannel(Protocol):
    async def send(self, message: dict) -> None: ...

    async def receive(self) -> dict: ...

    async def close(self) -> None: ...


MediaConnector = Callable[[str], Awaitable[MediaChannel]]


@dataclass
class MediaRecord:
    id: str
    data_url: str
    mime_type: Optional[str] = None
    file_name: Optional[str] = None


class ChunkAssembler:
    """Fixed-size slot array filled by chunk index."""

    def __init__(self, media_id: str, total_chunks: int):
        if total_chunks < 0:
            raise MediaStreamError(f"invalid chunk count {total_chunks} for {media_id}")
        self.media_id = media_id
        self.total_chunks = total_chunks
        self._slots: list[Optional[str]] = [None] * total_chunks

    def add(self, index: int, data: str) -> None:
        if not isinstance(index, int) or not 0 <= index < self.total_chunks:
            raise MediaStreamError(
                f"chunk index {index} out of range for {self.media_id} ({self.total_chunks} chunks)"
            )
        self._slots[index] = data or ""

    def missing(self) -> list[int]:
        return [idx for idx, slot in enumerate(self._slots) if slot is None]

    @property
    def complete(self) -> bool:
        return not self.missing()

    def assemble(self) -> str:
        missing = self.missing()
        if missing:
            raise MediaChunkMissingError(self.media_id, missing)
        return "".join(self._slots)


def to_data_url(payload: str, mime_type: Optional[str]) -> str:
    if payload.startswith("data:"):
        return payload
    return f"data:{mime_type or 'application/octet-stream'};base64,{payload}"


class MediaStreamClient:
    """Fetches media records from the bridge in chunks."""

    def __init__(self, connect: MediaConnector, config: Optional[MediaConfig] = None):
        self.connect = connect
        self.config = config or MediaConfig()

    async def fetch(self, media_id: str) -> MediaRecord:
        channel = await self.connect(self.config.channel_name)
        try:
            await channel.send({"type": "media:get", "id": media_id})
            return await asyncio.wait_for(
                self._receive(channel, media_id),
                self.config.stream_timeout_sec,
            )
        except asyncio.TimeoutError:
            raise BridgeTimeoutError(f"timeout: media stream {media_id}")
        finally:
            await channel.close()

    async def _receive(self, channel: MediaChannel, media_id: str) -> MediaRecord:
        assembler: Optional[ChunkAssembler] = None
        mime_type = None
        file_name = None

        while True:
            frame = await channel.receive()
            frame_type = frame.get("type")

            if frame_type == "error":
                raise MediaStreamError(frame.get("error") or "media-stream-error")

            if frame_type == "meta":
                if assembler is not None:
                    raise MediaStreamError(f"duplicate meta frame for {media_id}")
                mime_type = frame.get("mimeType")
                file_name = frame.get("fileName")
                assembler = ChunkAssembler(frame.get("id") or media_id, int(frame.get("totalChunks") or 0))
                log.debug("media_stream_meta", media_id=media_id, total_chunks=assembler.total_chunks)

            elif frame_type == "chunk":
                if assembler is None:
                    raise MediaStreamError(f"chunk before meta for {media_id}")
                assembler.add(frame.get("index"), frame.get("data", ""))

            elif frame_type == "done":
                if assembler is None:
                    raise MediaStreamError(f"stream ended without meta for {media_id}")
                payload = assembler.assemble()
                if not payload:
                    raise MediaStreamError(f"empty media payload for {media_id}")
                return MediaRecord(
                    id=media_id,
                    data_url=to_data_url(payload, mime_type),
                    mime_type=mime_type,
                    file_name=file_name,
                )

            else:
                log.debug("media_stream_frame_ignored", media_id=media_id, frame_type=frame_type)
