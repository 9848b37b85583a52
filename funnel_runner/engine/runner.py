"""Funnel execution: the public runner surface and the per-run step sequencer."""

import asyncio
import copy
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Union

import structlog
from pydantic import ValidationError

from funnel_runner.clients.bridge import PageBridge, SendResult
from funnel_runner.clients.media_stream import MediaConnector, MediaStreamClient
from funnel_runner.clients.webhook import WebhookClient
from funnel_runner.core.config import Settings, render_template
from funnel_runner.core.errors import InvalidPayloadError, SendFileError, SendMessageError
from funnel_runner.core.schema import (
    Funnel,
    FunnelRunInput,
    FunnelStep,
    IntegrationSettings,
    SENDING_STEP_TYPES,
    LeadCard,
    StepType,
    now_ms,
)
from funnel_runner.engine.delay import resolve_delay_seconds
from funnel_runner.engine.events import (
    ErrorEvent,
    EventBus,
    EventKind,
    FinishedEvent,
    RunStatus,
    StepEvent,
    Subscription,
)
from funnel_runner.engine.leads import LeadStore, merge_tags, normalize_tags
from funnel_runner.engine.media import (
    MediaPayload,
    MediaResolver,
    guess_file_name,
    send_file_options,
    takes_caption,
)
from funnel_runner.engine.presence import COMPOSING, presence, presence_kind_for
from funnel_runner.engine.registry import RunHandle, RunRegistry

log = structlog.get_logger()

# Step types that wait before doing their work
WAITING_STEP_TYPES = SENDING_STEP_TYPES | {StepType.DELAY}


@dataclass
class _RunContext:
    handle: RunHandle
    funnel: Funnel
    chat_id: str
    integration: IntegrationSettings
    lead: LeadCard

    @property
    def run_id(self) -> str:
        return self.handle.run_id


def resolve_payload_template(template: Any, variables: dict) -> Any:
    """Render `{{var}}` placeholders in every string of a payload template."""
    if template is None:
        return None
    if isinstance(template, str):
        return render_template(template, variables)
    if isinstance(template, dict):
        return {key: resolve_payload_template(value, variables) for key, value in template.items()}
    if isinstance(template, list):
        return [resolve_payload_template(value, variables) for value in template]
    return template


class FunnelRunner:
    """Runs funnels against a chat bridge.

    `run_funnel` returns a run id immediately; progress and outcome are only
    reported through the step_start, step_done, error and finished events.
    """

    def __init__(
        self,
        bridge: PageBridge,
        lead_store: LeadStore,
        media_resolver: Optional[MediaResolver] = None,
        webhook: Optional[WebhookClient] = None,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or Settings()
        self.bridge = bridge
        self.leads = lead_store
        self.media = media_resolver or MediaResolver(None, lead_store.db_path, self.settings.media)
        self.webhook = webhook or WebhookClient()
        self.rng = rng or random.Random()
        self.registry = RunRegistry()
        self.events = EventBus()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        bridge: PageBridge,
        media_connector: Optional[MediaConnector] = None,
        db_path: Optional[Path] = None,
    ) -> "FunnelRunner":
        db_path = db_path or Path(settings.storage.db_path)
        stream = MediaStreamClient(media_connector, settings.media) if media_connector else None
        return cls(
            bridge=bridge,
            lead_store=LeadStore(db_path),
            media_resolver=MediaResolver(stream, db_path, settings.media),
            settings=settings,
        )

    # Subscriptions

    def on_step_start(self, listener: Callable[[StepEvent], None]) -> Subscription:
        return self.events.subscribe(EventKind.STEP_START, listener)

    def on_step_done(self, listener: Callable[[StepEvent], None]) -> Subscription:
        return self.events.subscribe(EventKind.STEP_DONE, listener)

    def on_error(self, listener: Callable[[ErrorEvent], None]) -> Subscription:
        return self.events.subscribe(EventKind.ERROR, listener)

    def on_finished(self, listener: Callable[[FinishedEvent], None]) -> Subscription:
        return self.events.subscribe(EventKind.FINISHED, listener)

    # Run control

    def run_funnel(self, run_input: Union[FunnelRunInput, dict]) -> str:
        """Start a run in the background and return its id.

        Never raises for bad input: validation happens inside the run, and an
        invalid input ends it with a finished(error) event.
        """
        # Later edits to the caller's input must not reach this run
        if isinstance(run_input, FunnelRunInput):
            run_input = run_input.model_copy(deep=True)
        else:
            run_input = copy.deepcopy(run_input)

        loop = asyncio.get_running_loop()
        handle = self.registry.create()
        handle.task = loop.create_task(self._start(handle, run_input))
        return handle.run_id

    def cancel(self, run_id: str) -> bool:
        return self.registry.cancel(run_id)

    def pause(self, run_id: str) -> bool:
        return self.registry.pause(run_id)

    def resume(self, run_id: str) -> bool:
        return self.registry.resume(run_id)

    def is_running(self, run_id: str) -> bool:
        return run_id in self.registry

    def active_runs(self) -> list[str]:
        return self.registry.active_runs()

    async def wait(self, run_id: str) -> None:
        """Wait until a run reaches a terminal state. Returns at once for unknown ids."""
        handle = self.registry.get(run_id)
        if handle and handle.task:
            await asyncio.shield(handle.task)

    # Sequencer

    def _step_event(
        self,
        ctx: _RunContext,
        step: FunnelStep,
        index: int,
        resolved_delay_sec: Optional[float] = None,
        event_cls: type = StepEvent,
        **extra,
    ) -> StepEvent:
        return event_cls(
            run_id=ctx.run_id,
            funnel_id=ctx.funnel.id,
            chat_id=ctx.chat_id,
            step_id=step.id,
            step_index=index,
            step=step.model_copy(deep=True),
            lead=ctx.lead.model_copy(deep=True),
            resolved_delay_sec=resolved_delay_sec,
            **extra,
        )

    def _resolve_delay(self, ctx: _RunContext, step: FunnelStep) -> Optional[float]:
        if step.type not in WAITING_STEP_TYPES:
            return None
        return resolve_delay_seconds(
            step,
            ctx.integration.default_delay_sec or 0,
            is_sending_step=step.is_sending,
            rng=self.rng,
        )

    async def _start(self, handle: RunHandle, run_input: Any) -> None:
        try:
            if not isinstance(run_input, FunnelRunInput):
                run_input = FunnelRunInput.model_validate(run_input)
        except ValidationError as e:
            self._reject(handle, run_input, e)
            return

        await self._run_sequence(_RunContext(
            handle=handle,
            funnel=run_input.funnel,
            chat_id=run_input.chat_id,
            integration=run_input.integration_settings,
            lead=run_input.lead,
        ))

    def _reject(self, handle: RunHandle, raw: Any, e: ValidationError) -> None:
        """Finish a run whose input failed validation. No step can be built, so only finished is emitted."""
        handle.error = InvalidPayloadError(f"invalid-payload: {e.error_count()} validation error(s)")
        log.error("run_input_invalid", run_id=handle.run_id, error=str(e))

        raw = raw if isinstance(raw, dict) else {}
        funnel = raw.get("funnel") if isinstance(raw.get("funnel"), dict) else {}
        self.events.emit(EventKind.FINISHED, FinishedEvent(
            run_id=handle.run_id,
            funnel_id=str(funnel.get("id") or ""),
            chat_id=str(raw.get("chatId") or raw.get("chat_id") or ""),
            lead=None,
            status=RunStatus.ERROR,
            error=handle.error,
        ))
        self.registry.remove(handle.run_id)
        log.info("run_finished", run_id=handle.run_id, status=RunStatus.ERROR.value)

    async def _run_sequence(self, ctx: _RunContext) -> None:
        handle = ctx.handle
        log.info("run_started", run_id=ctx.run_id, funnel_id=ctx.funnel.id, chat_id=ctx.chat_id,
                 steps=len(ctx.funnel.steps))

        try:
            for index, step in enumerate(ctx.funnel.steps):
                if not await handle.checkpoint():
                    break

                delay_sec = self._resolve_delay(ctx, step)
                self.events.emit(EventKind.STEP_START, self._step_event(ctx, step, index, delay_sec))

                try:
                    await self._execute_step(ctx, step, delay_sec or 0)
                except Exception as e:
                    handle.error = e
                    log.error("step_failed", run_id=ctx.run_id, step_id=step.id, step_type=step.type.value,
                              error=str(e))
                    self.events.emit(
                        EventKind.ERROR,
                        self._step_event(ctx, step, index, delay_sec, event_cls=ErrorEvent, error=e),
                    )
                    break

                if handle.cancelled:
                    break

                self.events.emit(EventKind.STEP_DONE, self._step_event(ctx, step, index, delay_sec))
        except asyncio.CancelledError:
            # Task torn down from outside (loop shutdown): report as cancelled
            handle.cancel()
            raise
        finally:
            if handle.cancelled:
                status = RunStatus.CANCELLED
            elif handle.error is not None:
                status = RunStatus.ERROR
            else:
                status = RunStatus.COMPLETED

            self.events.emit(EventKind.FINISHED, FinishedEvent(
                run_id=ctx.run_id,
                funnel_id=ctx.funnel.id,
                chat_id=ctx.chat_id,
                lead=ctx.lead.model_copy(deep=True),
                status=status,
                error=handle.error,
            ))
            self.registry.remove(ctx.run_id)
            log.info("run_finished", run_id=ctx.run_id, status=status.value)

    async def _execute_step(self, ctx: _RunContext, step: FunnelStep, delay_sec: float) -> None:
        if step.type == StepType.TEXT:
            await self._text_step(ctx, step, delay_sec)
        elif step.type == StepType.DELAY:
            await ctx.handle.sleep(delay_sec)
        elif step.type == StepType.TAG:
            self._tag_step(ctx, step)
        elif step.type == StepType.WEBHOOK:
            await self._webhook_step(ctx, step)
        elif step.is_media:
            await self._media_step(ctx, step, delay_sec)
        else:
            log.warning("unknown_step_type", step_id=step.id, step_type=step.type)

    async def _text_step(self, ctx: _RunContext, step: FunnelStep, delay_sec: float) -> None:
        message = (step.text or "").strip()
        if not message:
            log.warning("text_step_empty_skipped", run_id=ctx.run_id, step_id=step.id)
            return

        async with presence(
            self.bridge,
            ctx.chat_id,
            COMPOSING,
            max_duration_ms=self.settings.presence.max_duration_ms,
            duration_ms=int(delay_sec * 1000),
        ):
            if not await ctx.handle.sleep(delay_sec):
                return
            result = await self.bridge.send_text(ctx.chat_id, message)

        if not result.ok:
            raise SendMessageError(result.error or "send-message-failed")
        log.info("text_sent", run_id=ctx.run_id, step_id=step.id, chat_id=ctx.chat_id)

    def _tag_step(self, ctx: _RunContext, step: FunnelStep) -> None:
        tags = normalize_tags(step.add_tags)
        if not tags:
            log.warning("tag_step_empty_skipped", run_id=ctx.run_id, step_id=step.id)
            return

        ctx.lead = merge_tags(ctx.lead, tags)
        self.leads.save(ctx.lead)

    async def _webhook_step(self, ctx: _RunContext, step: FunnelStep) -> None:
        integration = ctx.integration
        if not integration.enable_webhook:
            log.warning("webhook_skipped_disabled", run_id=ctx.run_id, step_id=step.id)
            return
        if not integration.webhook_url:
            log.warning("webhook_skipped_no_url", run_id=ctx.run_id, step_id=step.id)
            return

        variables = {
            "runId": ctx.run_id,
            "chatId": ctx.chat_id,
            "funnelId": ctx.funnel.id,
            "stepId": step.id,
            "leadId": ctx.lead.id,
            "leadTitle": ctx.lead.title,
            "lane": ctx.lead.lane_id.value,
            "tags": ",".join(ctx.lead.tags),
        }
        body = {
            "runId": ctx.run_id,
            "chatId": ctx.chat_id,
            "funnelId": ctx.funnel.id,
            "stepId": step.id,
            "event": step.webhook_event or "step",
            "ts": now_ms(),
            "lead": ctx.lead.to_wire(),
            "payloadTemplateResolved": resolve_payload_template(step.payload_template, variables),
        }
        await self.webhook.post(integration.webhook_url, body, secret=integration.webhook_secret)

    async def _media_step(self, ctx: _RunContext, step: FunnelStep, delay_sec: float) -> None:
        media = await self.media.resolve(step)

        async with presence(
            self.bridge,
            ctx.chat_id,
            presence_kind_for(step.type),
            max_duration_ms=self.settings.presence.max_duration_ms,
            duration_ms=int(delay_sec * 1000),
        ):
            if not await ctx.handle.sleep(delay_sec):
                return
            result = await self._send_media(ctx, step, media)

        if not result.ok:
            raise SendFileError(result.error or "send-file-failed")
        log.info("media_sent", run_id=ctx.run_id, step_id=step.id, step_type=step.type.value,
                 source=media.source)

    async def _send_media(self, ctx: _RunContext, step: FunnelStep, media: MediaPayload) -> SendResult:
        is_video = step.type in (StepType.VIDEO, StepType.PTV)
        timeout = self.settings.bridge.video_timeout_sec if is_video else self.settings.bridge.file_timeout_sec
        filename = guess_file_name(step, media)
        caption = step.media_caption if takes_caption(step.type) else None

        result = await self.bridge.send_file(
            ctx.chat_id,
            media.data_url,
            filename=filename,
            caption=caption,
            options=send_file_options(step.type),
            timeout=timeout,
        )

        if not result.ok and step.type == StepType.VIDEO:
            log.warning("video_send_retry_forced_type", run_id=ctx.run_id, step_id=step.id, error=result.error)
            result = await self.bridge.send_file(
                ctx.chat_id,
                media.data_url,
                filename=filename,
                caption=caption,
                options=send_file_options(step.type, force_video=True),
                timeout=timeout,
            )
        return result
