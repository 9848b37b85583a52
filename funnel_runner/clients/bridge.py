"""Request/response client for the chat bridge.

Every request carries a fresh correlation id. Outstanding calls live in a
table of futures keyed by that id; a single reader task resolves them as
responses arrive, and each call enforces its own timeout.
"""

import asyncio
import json
import time
from typing import Any, Optional, Protocol
from uuid import uuid4

import structlog
from pydantic import BaseModel

from funnel_runner.core.config import BridgeConfig
from funnel_runner.core.errors import (
    BridgeNotReadyError,
    BridgeTimeoutError,
    InvalidPayloadError,
    MissingIdError,
)

log = structlog.get_logger()

LOOKUP_TYPES = {"active-chat", "get-chat"}
PRESENCE_TYPES = {"mark-composing", "mark-recording", "mark-paused"}


class BridgeTransport(Protocol):
    async def send_text(self, text: str) -> None: ...

    async def recv_text(self) -> str: ...

    async def close(self) -> None: ...


class SendResult(BaseModel):
    ok: bool = False
    error: Optional[str] = None
    result: Any = None


def create_request_id() -> str:
    return f"req-{int(time.time() * 1000)}-{uuid4().hex[:12]}"


def _to_send_result(payload: Any) -> SendResult:
    if not isinstance(payload, dict):
        return SendResult(ok=False, error="empty-response")
    return SendResult.model_validate(payload)


def _require_chat_id(chat_id: Optional[str]) -> None:
    if not chat_id:
        raise MissingIdError("missing-id: chatId")


class PageBridge:
    """Correlates bridge requests with their responses."""

    def __init__(self, transport: BridgeTransport, config: Optional[BridgeConfig] = None):
        self.transport = transport
        self.config = config or BridgeConfig()
        self._pending: dict[str, asyncio.Future] = {}
        self._reader: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        if self._reader is None or self._reader.done():
            self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    async def close(self) -> None:
        self._closed = True
        if self._reader:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        self._fail_pending(BridgeNotReadyError("bridge-closed"))
        await self.transport.close()

    async def __aenter__(self) -> "PageBridge":
        self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _read_loop(self) -> None:
        try:
            while True:
                text = await self.transport.recv_text()
                self.handle_message(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("bridge_reader_stopped", error=str(e))
            self._fail_pending(BridgeNotReadyError(str(e) or "bridge-disconnected"))

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    def handle_message(self, message: Any) -> bool:
        """Resolve the call a response belongs to. Returns False if nobody was waiting."""
        if isinstance(message, (str, bytes)):
            try:
                message = json.loads(message)
            except json.JSONDecodeError:
                log.warning("bridge_response_not_json")
                return False

        if not isinstance(message, dict) or not message.get("id"):
            return False

        future = self._pending.pop(message["id"], None)
        if future is None:
            log.debug("bridge_response_unmatched", request_id=message["id"])
            return False

        if not future.done():
            future.set_result(message.get("payload"))
        return True

    def timeout_for(self, request_type: str) -> float:
        if request_type in LOOKUP_TYPES:
            return self.config.lookup_timeout_sec
        if request_type in PRESENCE_TYPES:
            return self.config.presence_timeout_sec
        if request_type == "send-file":
            return self.config.file_timeout_sec
        return self.config.text_timeout_sec

    async def request(self, request_type: str, timeout: Optional[float] = None, **fields) -> Any:
        """Send a request and wait for its payload."""
        if self._closed:
            raise BridgeNotReadyError("bridge-closed")
        self.start()

        timeout = timeout if timeout is not None else self.timeout_for(request_type)
        request_id = create_request_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self.transport.send_text(json.dumps({"id": request_id, "type": request_type, **fields}))
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            log.warning("bridge_request_timeout", type=request_type, request_id=request_id, timeout=timeout)
            raise BridgeTimeoutError(f"timeout: {request_type} after {timeout}s")
        finally:
            self._pending.pop(request_id, None)

    async def active_chat(self) -> Optional[dict]:
        return await self.request("active-chat")

    async def get_chat(self, chat_id: str) -> Optional[dict]:
        if not chat_id:
            return None
        return await self.request("get-chat", chatId=chat_id)

    async def insert_text(self, text: str) -> SendResult:
        return _to_send_result(await self.request("insert-text", text=text))

    async def send_text(self, chat_id: str, text: str, options: Optional[dict] = None) -> SendResult:
        _require_chat_id(chat_id)
        if not isinstance(text, str) or not text.strip():
            raise InvalidPayloadError("invalid-payload: empty text")
        fields = {"chatId": chat_id, "text": text}
        if options:
            fields["options"] = options
        return _to_send_result(await self.request("send-text", **fields))

    async def send_file(
        self,
        chat_id: str,
        file: str,
        filename: Optional[str] = None,
        caption: Optional[str] = None,
        options: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> SendResult:
        _require_chat_id(chat_id)
        if not file:
            raise InvalidPayloadError("invalid-payload: empty file")
        fields = {"chatId": chat_id, "file": file}
        if filename:
            fields["filename"] = filename
        if caption:
            fields["caption"] = caption
        if options:
            fields["options"] = options
        return _to_send_result(await self.request("send-file", timeout=timeout, **fields))

    async def mark_composing(self, chat_id: str, duration_ms: Optional[int] = None) -> SendResult:
        return _to_send_result(await self.request("mark-composing", chatId=chat_id, duration=duration_ms))

    async def mark_recording(self, chat_id: str, duration_ms: Optional[int] = None) -> SendResult:
        return _to_send_result(await self.request("mark-recording", chatId=chat_id, duration=duration_ms))

    async def mark_paused(self, chat_id: str) -> SendResult:
        return _to_send_result(await self.request("mark-paused", chatId=chat_id))


class DryRunTransport:
    """Transport that acknowledges every request without a live chat session."""

    def __init__(self):
        self.sent: list[dict] = []
        self._responses: asyncio.Queue = asyncio.Queue()

    async def send_text(self, text: str) -> None:
        request = json.loads(text)
        self.sent.append(request)
        log.info("dry_run_request", type=request.get("type"), chat_id=request.get("chatId"))

        if request.get("type") in ("active-chat", "get-chat"):
            payload = {"id": request.get("chatId") or "dry-run", "name": "Dry run"}
        else:
            payload = {"ok": True, "result": {"dryRun": True}}

        await self._responses.put(json.dumps({"id": request["id"], "payload": payload}))

    async def recv_text(self) -> str:
        text = await self._responses.get()
        if text is None:
            raise BridgeNotReadyError("transport-closed")
        return text

    async def close(self) -> None:
        await self._responses.put(None)
