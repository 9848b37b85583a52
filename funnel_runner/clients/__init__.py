"""External collaborators: chat bridge, media stream, webhooks."""

from funnel_runner.clients.bridge import BridgeTransport, DryRunTransport, PageBridge, SendResult
from funnel_runner.clients.media_stream import ChunkAssembler, MediaRecord, MediaStreamClient
from funnel_runner.clients.webhook import WebhookClient
