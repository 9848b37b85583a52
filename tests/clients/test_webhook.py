"""Tests for webhook delivery."""

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from funnel_runner.clients.webhook import SECRET_HEADER, WebhookClient
from funnel_runner.core.errors import WebhookError


def mock_async_client(mock_client_class, status_code: int) -> AsyncMock:
    mock_client = AsyncMock()
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.is_success = 200 <= status_code < 300
    mock_client.post = AsyncMock(return_value=mock_response)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client_class.return_value = mock_client
    return mock_client


@pytest.mark.asyncio
async def test_post_sends_json_with_secret_header():
    """post should send the body as JSON with the shared secret header."""
    with patch("funnel_runner.clients.webhook.httpx.AsyncClient") as mock_client_class:
        mock_client = mock_async_client(mock_client_class, 200)

        status = await WebhookClient().post("https://n8n.test/hook", {"event": "step"}, secret="s3cret")

        assert status == 200
        mock_client.post.assert_called_once()
        call_args = mock_client.post.call_args
        assert call_args[0][0] == "https://n8n.test/hook"
        assert call_args[1]["json"] == {"event": "step"}
        assert call_args[1]["headers"][SECRET_HEADER] == "s3cret"
        assert call_args[1]["headers"]["Content-Type"] == "application/json"


@pytest.mark.asyncio
async def test_post_without_secret_omits_header():
    with patch("funnel_runner.clients.webhook.httpx.AsyncClient") as mock_client_class:
        mock_client = mock_async_client(mock_client_class, 204)

        await WebhookClient().post("https://n8n.test/hook", {})

        assert SECRET_HEADER not in mock_client.post.call_args[1]["headers"]


@pytest.mark.asyncio
async def test_post_raises_on_error_status():
    """A non-2xx response should raise WebhookError carrying the status."""
    with patch("funnel_runner.clients.webhook.httpx.AsyncClient") as mock_client_class:
        mock_async_client(mock_client_class, 500)

        with pytest.raises(WebhookError) as exc_info:
            await WebhookClient().post("https://n8n.test/hook", {"event": "step"})

        assert exc_info.value.status_code == 500
        assert exc_info.value.code == "webhook-failed-500"
        assert str(exc_info.value) == "webhook-failed-500"


@pytest.mark.asyncio
async def test_client_uses_configured_timeout():
    with patch("funnel_runner.clients.webhook.httpx.AsyncClient") as mock_client_class:
        mock_async_client(mock_client_class, 200)

        await WebhookClient(timeout=3.5).post("https://n8n.test/hook", {})

        mock_client_class.assert_called_once_with(timeout=3.5, follow_redirects=True, transport=None)


@pytest.mark.asyncio
async def test_post_follows_permanent_redirect():
    """A 308 from a moved endpoint should be followed, keeping method and body."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, request.content))
        if request.url.path == "/old":
            return httpx.Response(308, headers={"Location": "https://n8n.test/new"})
        return httpx.Response(200, json={"ok": True})

    client = WebhookClient(transport=httpx.MockTransport(handler))

    status = await client.post("https://n8n.test/old", {"event": "step"}, secret="s3cret")

    assert status == 200
    assert [(method, path) for method, path, _ in seen] == [("POST", "/old"), ("POST", "/new")]
    assert seen[0][2] == seen[1][2]


@pytest.mark.asyncio
async def test_post_maps_connection_errors():
    """Transport failures should surface as WebhookError, not raw httpx errors."""
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = WebhookClient(transport=httpx.MockTransport(handler))

    with pytest.raises(WebhookError) as exc_info:
        await client.post("https://n8n.test/hook", {"event": "step"})

    assert exc_info.value.status_code is None
    assert exc_info.value.code == "webhook-failed"
    assert "ConnectError" in str(exc_info.value)
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
