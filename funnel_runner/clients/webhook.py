"""Webhook delivery for funnel steps."""

from typing import Optional

import httpx
import structlog

from funnel_runner.core.errors import WebhookError

log = structlog.get_logger()

SECRET_HEADER = "X-Webhook-Secret"


class WebhookClient:
    """Posts step snapshots to an integration endpoint (n8n or similar)."""

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    async def post(self, url: str, body: dict, secret: Optional[str] = None) -> int:
        """POST `body` as JSON, following redirects.

        Returns the final HTTP status code. Raises WebhookError on a non-2xx
        status or when the endpoint can't be reached.
        """
        headers = {"Content-Type": "application/json"}
        if secret:
            headers[SECRET_HEADER] = secret

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                response = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            log.error("webhook_failed", url=url, error=f"{type(e).__name__}: {e}")
            raise WebhookError(message=f"webhook-failed: {type(e).__name__}") from e

        if not response.is_success:
            log.error("webhook_failed", url=url, status=response.status_code)
            raise WebhookError(response.status_code)

        log.info("webhook_sent", url=url, status=response.status_code, webhook_event=body.get("event"))
        return response.status_code
