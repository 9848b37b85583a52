"""Error types raised by the funnel engine and its clients."""

from typing import Optional


class FunnelError(Exception):
    """Base error. `code` is the stable identifier reported to observers."""

    code = "funnel-error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)


# Validation

class InvalidPayloadError(FunnelError):
    code = "invalid-payload"


class MissingIdError(FunnelError):
    code = "missing-id"


# Transport

class BridgeTimeoutError(FunnelError):
    code = "timeout"


class BridgeNotReadyError(FunnelError):
    code = "bridge-not-ready"


# Remote failures

class SendMessageError(FunnelError):
    code = "send-message-failed"


class SendFileError(FunnelError):
    code = "send-file-failed"


class WebhookError(FunnelError):
    """Non-2xx response (`webhook-failed-<status>`) or no response at all (`webhook-failed`)."""

    code = "webhook-failed"

    def __init__(self, status_code: Optional[int] = None, message: Optional[str] = None):
        self.status_code = status_code
        if status_code is not None:
            self.code = f"webhook-failed-{status_code}"
        super().__init__(message or self.code)


# Data

class MediaNotFoundError(FunnelError):
    code = "media-not-found"


class MediaStreamError(FunnelError):
    code = "media-stream-failed"


class MediaChunkMissingError(MediaStreamError):
    code = "media-chunk-missing"

    def __init__(self, media_id: str, missing: list[int]):
        self.media_id = media_id
        self.missing = missing
        super().__init__(f"{self.code}: {media_id} missing chunks {missing}")
