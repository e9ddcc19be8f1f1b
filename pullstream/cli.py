"""
Command-line interface for pullstream.

Provides commands to run a pull consumer, publish entries, and inspect
pending and dead-lettered entries.

Usage:
    pullstream consume -t orders          # Run the consumer service
    pullstream consume -t orders --once   # One health pull + one audit
    pullstream publish orders sku=A1 qty=2
    pullstream pending orders             # Pending entries and members
    pullstream dead-letters               # Browse the dead-letter stream
    pullstream health                     # Check Redis connectivity
"""

import asyncio
import signal
import sys

import click

from pullstream.config.settings import get_settings
from pullstream.observability.logging import setup_logging
from pullstream.observability.metrics import get_metrics


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """pullstream - pull-based consumer engine over Redis Streams."""
    if debug:
        import os
        os.environ["LOG_LEVEL"] = "DEBUG"
        get_settings.cache_clear()

    setup_logging()

    # Initialize tracing if enabled
    settings = get_settings()
    if settings.tracing_enabled:
        from pullstream.observability.tracing import setup_tracing

        setup_tracing(
            service_name=settings.otel_service_name,
            otlp_endpoint=settings.otel_exporter_otlp_endpoint,
        )


def _parse_fields(pairs: tuple[str, ...]) -> dict[str, str]:
    fields: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="FIELDS")
        fields[key] = value
    return fields


@main.command()
@click.option("--topic", "-t", "topics", multiple=True, help="Topic to subscribe to (repeatable)")
@click.option("--group", default=None, help="Consumer group (default: CONSUMER_GROUP)")
@click.option("--once", is_flag=True, help="Run one health pull and one audit, then exit")
@click.option("--metrics/--no-metrics", default=True, help="Enable metrics server")
def consume(topics: tuple[str, ...], group: str | None, once: bool, metrics: bool) -> None:
    """Run a pull consumer that logs every entry it receives."""
    import structlog

    from pullstream.queues.consumer import PullConsumer
    from pullstream.services.consumer_service import ConsumerService
    from pullstream.store.client import StreamStore

    settings = get_settings()
    topics = topics or tuple(settings.topics)
    if not topics:
        raise click.UsageError("No topics given; pass --topic or set TOPICS")

    logger = structlog.get_logger("pullstream.consume")

    def log_entry(fields: dict[str, str]) -> None:
        logger.info("Entry received", fields=fields)

    consumer = PullConsumer(StreamStore(str(settings.redis_url)), group or settings.consumer_group)
    for topic in dict.fromkeys(topics):
        consumer.subscribe(topic).register_listener(log_entry)

    service = ConsumerService(consumer, settings=settings)

    if once:
        results = asyncio.run(service.run_once())
        for procedure, reports in results.items():
            for report in reports:
                click.echo(
                    f"{procedure} {report.topic}: consumed={report.consumed} "
                    f"duplicates={report.duplicates} locked={report.locked} "
                    f"malformed={report.malformed} redelivered={report.redelivered} "
                    f"dead_lettered={report.dead_lettered} claimed={report.claimed} "
                    f"errors={report.errors}"
                )
        return

    async def run():
        if metrics:
            get_metrics().start_server()

        # Handle shutdown signals
        loop = asyncio.get_event_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(service.stop()))

        await service.start()

    asyncio.run(run())


@main.command()
@click.argument("topic")
@click.argument("fields", nargs=-1, required=True)
@click.option("--id", "message_id", default="*", help="Explicit entry id (default: server-assigned)")
def publish(topic: str, fields: tuple[str, ...], message_id: str) -> None:
    """Append an entry with KEY=VALUE fields to TOPIC."""
    from pullstream.producer.producer import Producer
    from pullstream.store.client import StreamStore

    parsed = _parse_fields(fields)

    async def run() -> str | None:
        async with StreamStore(str(get_settings().redis_url)) as store:
            return await Producer(store).send(topic, parsed, message_id=message_id)

    new_id = asyncio.run(run())
    if new_id is None:
        click.echo(click.style("Publish failed", fg="red"))
        sys.exit(1)
    click.echo(new_id)


@main.command()
@click.argument("topic")
@click.option("--group", default=None, help="Consumer group (default: CONSUMER_GROUP)")
@click.option("--count", default=20, help="Max pending entries to list")
def pending(topic: str, group: str | None, count: int) -> None:
    """Show group members and pending entries for TOPIC."""
    from pullstream.store.client import StreamStore
    from pullstream.store.errors import StoreError

    settings = get_settings()
    group = group or settings.consumer_group

    async def run():
        async with StreamStore(str(settings.redis_url)) as store:
            members = await store.pending_info(topic, group)
            entries = await store.list_pending(topic, group, count=count)
        return members, entries

    try:
        members, entries = asyncio.run(run())
    except StoreError as e:
        click.echo(click.style(f"Failed to read pending list: {e}", fg="red"))
        sys.exit(1)

    click.echo(f"\nGroup '{group}' on '{topic}'")
    click.echo("-" * 40)
    for name, count_pending in sorted(members.items()):
        click.echo(f"  {name}: {count_pending} pending")
    click.echo("-" * 40)
    for entry in entries:
        click.echo(
            f"  {entry.message_id}  consumer={entry.consumer} "
            f"deliveries={entry.delivery_count} idle={entry.idle_ms}ms"
        )
    if not entries:
        click.echo("  (no pending entries)")


@main.command("dead-letters")
@click.option("--stream", default=None, help="Dead-letter stream (default: consumer config)")
@click.option("--count", default=20, help="Max entries to show")
def dead_letters(stream: str | None, count: int) -> None:
    """Browse entries in the dead-letter stream."""
    from pullstream.queues.config import ConsumerConfig
    from pullstream.store.client import StreamStore
    from pullstream.store.errors import StoreError

    stream = stream or ConsumerConfig().dead_letter_stream

    async def run():
        async with StreamStore(str(get_settings().redis_url)) as store:
            return await store.range_read(stream, count=count)

    try:
        entries = asyncio.run(run())
    except StoreError as e:
        click.echo(click.style(f"Failed to read {stream}: {e}", fg="red"))
        sys.exit(1)

    if not entries:
        click.echo(f"{stream} is empty")
        return
    for entry_id, fields in entries.items():
        rendered = " ".join(f"{k}={v}" for k, v in fields.items())
        click.echo(f"{entry_id}  {rendered}")


@main.command()
def health() -> None:
    """Check connectivity to Redis."""
    import structlog
    logger = structlog.get_logger()

    from pullstream.store.client import StreamStore

    async def check() -> bool:
        try:
            async with StreamStore(str(get_settings().redis_url)) as store:
                return await store.ping()
        except Exception as e:
            logger.error("Redis health check failed", error=str(e))
            return False

    healthy = asyncio.run(check())

    click.echo("\nHealth Check Results:")
    click.echo("-" * 40)
    icon = "✓" if healthy else "✗"
    color = "green" if healthy else "red"
    click.echo(click.style(f"  {icon} redis: {healthy}", fg=color))
    click.echo("-" * 40)

    if healthy:
        click.echo(click.style("All core services healthy!", fg="green"))
        sys.exit(0)
    click.echo(click.style("Redis unhealthy!", fg="red"))
    sys.exit(1)


if __name__ == "__main__":
    main()
