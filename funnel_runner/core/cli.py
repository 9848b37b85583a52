"""Command-line interface for funnel-runner."""

import asyncio
import base64
import mimetypes
import random
from pathlib import Path
from typing import Optional

import click
import structlog

from funnel_runner.clients.bridge import DryRunTransport, PageBridge
from funnel_runner.core.config import DEFAULT_CONFIG_PATH, load_funnel, load_settings
from funnel_runner.core.db import DEFAULT_DB_PATH, delete_media, get_media, init_db, list_media, put_media
from funnel_runner.core.schema import FunnelRunInput, FunnelStep, LeadCard, StepType
from funnel_runner.engine.delay import resolve_delay_seconds
from funnel_runner.engine.leads import LeadStore, normalize_tags
from funnel_runner.engine.runner import FunnelRunner

# Configure structlog for CLI output
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer()
    ]
)

log = structlog.get_logger()


def describe_step(step: FunnelStep) -> str:
    if step.type == StepType.TEXT:
        return (step.text or "").strip()[:60] or "(empty)"
    if step.type == StepType.TAG:
        return ", ".join(normalize_tags(step.add_tags)) or "(no tags)"
    if step.type == StepType.WEBHOOK:
        return step.webhook_event or "step"
    if step.type == StepType.DELAY:
        return step.delay_expr or (f"{step.delay_sec}s" if step.delay_sec is not None else "default")
    return step.media_id or "(no media)"


@click.group()
def cli():
    """Funnel Runner - humanized chat funnels."""


@cli.command()
@click.argument("expr")
@click.option("--default", "default_delay", type=float, default=0, help="Integration default delay")
@click.option("--sending/--no-sending", default=True, help="Treat as a sending step")
@click.option("--samples", type=int, default=5, help="How many values to draw")
def delay(expr: str, default_delay: float, sending: bool, samples: int):
    """Preview delays resolved for a delay expression (e.g. 'rand(3,8)')."""
    step = FunnelStep(id="preview", type=StepType.TEXT if sending else StepType.DELAY, delay_expr=expr)
    rng = random.Random()
    values = [resolve_delay_seconds(step, default_delay, sending, rng=rng) for _ in range(samples)]
    click.echo(" ".join(f"{value:g}" for value in values))


@cli.command()
@click.argument("funnel_file", type=click.Path(exists=True, dir_okay=False))
def inspect(funnel_file: str):
    """Validate a funnel file and list its steps."""
    funnel = load_funnel(Path(funnel_file))

    click.echo(f"\nFunnel: {funnel.name} ({funnel.id})")
    if funnel.description:
        click.echo(f"  {funnel.description}")
    click.echo("───────────────")
    for index, step in enumerate(funnel.steps):
        click.echo(f"{index + 1:>3}. {step.type.value:<8} {describe_step(step)}")
    click.echo("───────────────")
    click.echo(f"Steps: {len(funnel.steps)}")


@cli.command("dry-run")
@click.argument("funnel_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--chat-id", required=True, help="Chat the funnel targets")
@click.option("--lead-id", default=None, help="Lead id (defaults to the chat id)")
@click.option("--title", default="", help="Lead title")
@click.option("--tag", "tags", multiple=True, help="Existing lead tag (repeatable)")
@click.option("--skip-delays", is_flag=True, help="Run every step without waiting")
@click.option("--db", "db_path", type=click.Path(), default=str(DEFAULT_DB_PATH),
              help="Database path")
@click.option("--config", "config_path", type=click.Path(), default=str(DEFAULT_CONFIG_PATH),
              help="Config directory path")
def dry_run(
    funnel_file: str,
    chat_id: str,
    lead_id: Optional[str],
    title: str,
    tags: tuple,
    skip_delays: bool,
    db_path: str,
    config_path: str,
):
    """Rehearse a funnel against a bridge that acknowledges every request."""
    db = Path(db_path)
    settings = load_settings(Path(config_path))
    funnel = load_funnel(Path(funnel_file))

    if skip_delays:
        for step in funnel.steps:
            step.delay_sec = 0

    lead_store = LeadStore(db)
    lead = lead_store.get(lead_id or chat_id) or LeadCard(
        id=lead_id or chat_id,
        chat_id=chat_id,
        title=title,
        tags=normalize_tags(tags),
    )

    async def rehearse() -> str:
        async with PageBridge(DryRunTransport(), settings.bridge) as bridge:
            runner = FunnelRunner.from_settings(settings, bridge, db_path=db)
            finished = []

            runner.on_step_start(lambda e: click.echo(
                f"→ {e.step_index + 1}. {e.step.type.value}"
                + (f" (wait {e.resolved_delay_sec:g}s)" if e.resolved_delay_sec else "")
            ))
            runner.on_step_done(lambda e: click.echo(f"  ✓ {e.step_id}"))
            runner.on_error(lambda e: click.echo(f"  ✗ {e.step_id}: {e.error}"))
            runner.on_finished(finished.append)

            run_id = runner.run_funnel(FunnelRunInput(
                funnel=funnel,
                chat_id=chat_id,
                lead=lead,
                integration_settings=settings.integration,
            ))
            click.echo(f"Run {run_id}")
            await runner.wait(run_id)
            status = finished[0].status.value if finished else "unknown"
            log.info("dry_run_finished", run_id=run_id, status=status, requests=len(bridge.transport.sent))
            return status

    status = asyncio.run(rehearse())
    click.echo(f"\nStatus: {status}")
    if status != "completed":
        raise SystemExit(1)


@cli.command()
@click.argument("lead_key")
@click.option("--db", "db_path", type=click.Path(), default=str(DEFAULT_DB_PATH),
              help="Database path")
def lead(lead_key: str, db_path: str):
    """Show a persisted lead by lead id or chat id."""
    card = LeadStore(Path(db_path)).get(lead_key)
    if not card:
        click.echo(f"Lead not found: {lead_key}")
        return

    click.echo(f"\nLead: {card.id}")
    click.echo(f"  Chat: {card.chat_id}")
    click.echo(f"  Title: {card.title or 'N/A'}")
    click.echo(f"  Lane: {card.lane_id.value}")
    click.echo(f"  Tags: {', '.join(card.tags) or '-'}")


@cli.group()
def media():
    """Manage the local media store."""


@media.command("put")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--id", "media_id", default=None, help="Store under this id")
@click.option("--db", "db_path", type=click.Path(), default=str(DEFAULT_DB_PATH),
              help="Database path")
def media_put(file_path: str, media_id: Optional[str], db_path: str):
    """Store a file and print its media id."""
    path = Path(file_path)
    db = Path(db_path)
    init_db(db)

    mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    data_url = f"data:{mime_type};base64,{base64.b64encode(path.read_bytes()).decode()}"
    stored_id = put_media(db, data_url, mime_type=mime_type, file_name=path.name, media_id=media_id)
    click.echo(stored_id)


@media.command("get")
@click.argument("media_id")
@click.option("--db", "db_path", type=click.Path(), default=str(DEFAULT_DB_PATH),
              help="Database path")
def media_get(media_id: str, db_path: str):
    """Show a stored media record."""
    db = Path(db_path)
    init_db(db)

    record = get_media(db, media_id)
    if not record:
        click.echo(f"Media not found: {media_id}")
        return
    click.echo(f"{record['id']}  {record['mime_type'] or '-'}  {record['file_name'] or '-'}  "
               f"{len(record['data_url'])} chars")


@media.command("ls")
@click.option("--db", "db_path", type=click.Path(), default=str(DEFAULT_DB_PATH),
              help="Database path")
def media_ls(db_path: str):
    """List stored media."""
    db = Path(db_path)
    init_db(db)
    for record in list_media(db):
        click.echo(f"{record['id']}  {record['mime_type'] or '-'}  {record['file_name'] or '-'}")


@media.command("rm")
@click.argument("media_id")
@click.option("--db", "db_path", type=click.Path(), default=str(DEFAULT_DB_PATH),
              help="Database path")
def media_rm(media_id: str, db_path: str):
    """Delete a stored media record."""
    db = Path(db_path)
    init_db(db)
    if delete_media(db, media_id):
        click.echo(f"Deleted {media_id}")
    else:
        click.echo(f"Media not found: {media_id}")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
