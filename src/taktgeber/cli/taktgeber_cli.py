#!/usr/bin/env python3
"""
Taktgeber CLI

Runs the scheduler service and stream workers, publishes manual triggers and
exposes the time format and whitelist helpers.
"""

import asyncio
import importlib
import json
import logging
import signal
import sys
from typing import Callable, Optional

import click
import yaml

from .. import __version__
from ..config import ServiceConfig, load_config, setup_logging
from ..core.errors import ConfigError, FormatError, TaktgeberError
from ..core.models import CRONJOB_SOURCE, CRONJOB_TRIGGER, DomainEvent
from ..core.timeformat import format_absolute, format_duration, now_ms, parse_absolute, parse_duration
from ..events.consumer import ConsumerConfig, EventConsumer
from ..events.publisher import EventPublisher
from ..events.redis_client import close_redis_client
from ..service import SchedulerService
from ..validators import ValidationContext, ValidatorRegistry, initialize_validators

logger = logging.getLogger(__name__)


def log_trigger(event: DomainEvent) -> None:
    """Default worker handler: report each trigger event"""
    data = event.data
    logger.info(f"Trigger received: {data.get('jobName')} ({data.get('jobId')}), event {event.event_id}")
    click.echo(
        f"⏰ {data.get('jobName')} ({data.get('jobId')}) "
        f"scheduled {data.get('scheduledTime')} payload={json.dumps(data.get('payload'))}"
    )


def load_handler(spec: str) -> Callable:
    """Resolve a ``module:function`` reference"""
    module_name, _, attr = spec.partition(':')
    if not module_name or not attr:
        raise click.BadParameter(f"expected module:function, got {spec!r}", param_hint='--handler')
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise click.BadParameter(f"cannot import {module_name}: {e}", param_hint='--handler')

    handler = getattr(module, attr, None)
    if not callable(handler):
        raise click.BadParameter(f"{spec} is not a callable", param_hint='--handler')
    return handler


def load_job_file(path: str) -> list:
    """Read job specs from a YAML file holding a list or a ``jobs`` mapping"""
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get('jobs', [])
    if not isinstance(data, list):
        raise ConfigError(f"Job file {path} must contain a list of jobs")
    return data


@click.group()
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), help='Path to a YAML config file')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.version_option(version=__version__, prog_name='Taktgeber')
@click.pass_context
def cli(ctx, config_path: Optional[str], verbose: bool):
    """
    Taktgeber - cron and one-time job scheduler publishing to Redis streams
    """
    try:
        config = load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e))

    if verbose:
        config.log_level = 'DEBUG'
    setup_logging(config)

    ctx.obj = config


@cli.command()
@click.option('--jobs', 'jobs_file', type=click.Path(exists=True, dir_okay=False), help='YAML file with jobs to seed')
@click.pass_obj
def serve(config: ServiceConfig, jobs_file: Optional[str]):
    """Run the scheduler service until interrupted"""
    if jobs_file:
        try:
            config.jobs = list(config.jobs) + load_job_file(jobs_file)
        except (OSError, yaml.YAMLError, ConfigError) as e:
            raise click.ClickException(f"Cannot load jobs: {e}")

    click.echo(f"🚀 Scheduler publishing to {config.stream_name} ({config.redacted_redis_url()})")
    asyncio.run(SchedulerService(config).run_forever())


@cli.command()
@click.option('--handler', 'handler_spec', help='Trigger handler as module:function')
@click.option('--group', 'group_name', help='Consumer group name')
@click.option('--name', 'consumer_name', help='Consumer name within the group')
@click.option('--claim-idle-ms', type=int, help='Take over entries idle longer than this in other consumers')
@click.pass_obj
def worker(config: ServiceConfig, handler_spec: Optional[str], group_name: Optional[str],
           consumer_name: Optional[str], claim_idle_ms: Optional[int]):
    """Consume trigger events from the stream"""
    handler = load_handler(handler_spec) if handler_spec else log_trigger

    consumer_config = ConsumerConfig.from_service_config(config)
    if group_name:
        consumer_config.group_name = group_name
    if consumer_name:
        consumer_config.consumer_name = consumer_name
    if claim_idle_ms is not None:
        consumer_config.claim_idle_ms = claim_idle_ms

    click.echo(
        f"👷 Worker {consumer_config.consumer_name} in group {consumer_config.group_name} "
        f"on {consumer_config.stream_name}"
    )
    asyncio.run(_run_worker(config, consumer_config, handler))


async def _run_worker(config: ServiceConfig, consumer_config: ConsumerConfig, handler: Callable):
    consumer = EventConsumer(config=config)
    await consumer.initialize()
    consumer.register_handler(CRONJOB_TRIGGER, handler)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, consumer.stop)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Cannot install handler for {sig.name}")

    try:
        await consumer.start(consumer_config)
    finally:
        await close_redis_client()


@cli.command()
@click.argument('name')
@click.option('--payload', help='JSON object attached to the event')
@click.option('--stream', help='Target stream (defaults to the configured stream)')
@click.pass_obj
def publish(config: ServiceConfig, name: str, payload: Optional[str], stream: Optional[str]):
    """Publish a manual trigger event for NAME"""
    try:
        data = json.loads(payload) if payload else None
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint='--payload')
    if data is not None and not isinstance(data, dict):
        raise click.BadParameter("payload must be a JSON object", param_hint='--payload')

    try:
        entry_id = asyncio.run(_publish(config, stream or config.stream_name, name, data))
    except TaktgeberError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Published {name} as {entry_id}")


async def _publish(config: ServiceConfig, stream_name: str, name: str, payload: Optional[dict]) -> str:
    publisher = EventPublisher(config=config)
    await publisher.initialize()
    try:
        now = now_ms()
        event = DomainEvent(
            type=CRONJOB_TRIGGER,
            source=CRONJOB_SOURCE,
            timestamp=now,
            data={'jobId': None, 'jobName': name, 'scheduledTime': now, 'payload': payload},
        )
        return await publisher.publish(stream_name, event)
    finally:
        await close_redis_client()


@cli.command('parse-time')
@click.argument('value')
def parse_time(value: str):
    """Convert YYYYMMDDHHMMSS (local time) to epoch milliseconds"""
    try:
        click.echo(parse_absolute(value))
    except FormatError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)


@cli.command('format-time')
@click.argument('timestamp', type=int)
def format_time(timestamp: int):
    """Convert epoch milliseconds to YYYYMMDDHHMMSS (local time)"""
    click.echo(format_absolute(timestamp))


@cli.command('parse-duration')
@click.argument('value')
def parse_duration_command(value: str):
    """Convert a duration such as 1h30m to milliseconds"""
    try:
        ms = parse_duration(value)
    except FormatError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"{ms} ({format_duration(ms)})")


@cli.command()
@click.argument('actor')
@click.argument('resource')
@click.option('--action', default='whatsapp_send_message', show_default=True, help='Gated action name')
@click.pass_obj
def check(config: ServiceConfig, actor: str, resource: str, action: str):
    """Dry-run whitelist validation of RESOURCE for ACTOR"""
    registry = initialize_validators(config, ValidatorRegistry())
    result = asyncio.run(registry.validate(action, resource, ValidationContext(actor_id=actor, dry_run=True)))

    if result.valid:
        click.echo(f"✅ {action}: {resource} allowed for {actor}")
    else:
        click.echo(f"❌ {action}: {result.error}")
        sys.exit(1)


def main():
    """Main CLI entry point"""
    try:
        cli()
    except KeyboardInterrupt:
        click.echo("\n⚠️  Interrupted by user")
        sys.exit(130)


if __name__ == '__main__':
    main()
