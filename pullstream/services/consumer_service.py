"""
Consumer service - runs a PullConsumer's procedures on a schedule.

The engine's health pull and pending audit are independent, repeatable
operations; this service is the timer that drives them:

- health pull every pull_interval_seconds
- pending audit every audit_interval_seconds
- both loops pause with exponential backoff while Redis is unreachable
- stop() ends both loops after their current run
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from pullstream.config.settings import Settings, get_settings
from pullstream.observability.logging import bind_context
from pullstream.queues.backoff import ExponentialBackoff
from pullstream.queues.consumer import CycleReport, PullConsumer

logger = structlog.get_logger(__name__)

Procedure = Callable[[], Awaitable[list[CycleReport]]]


class ConsumerService:
    """
    Service that keeps a PullConsumer running.

    Usage:
        consumer = PullConsumer.from_settings()
        consumer.subscribe("orders", OrderCreated).register_listener(handle_order)

        service = ConsumerService(consumer)
        await service.start()  # Runs until stopped
    """

    def __init__(
        self,
        consumer: PullConsumer,
        settings: Settings | None = None,
        pull_interval: float | None = None,
        audit_interval: float | None = None,
    ):
        """
        Initialize the consumer service.

        Args:
            consumer: Engine with its subscriptions registered
            settings: Application settings (cached settings if None)
            pull_interval: Seconds between health pulls (settings default)
            audit_interval: Seconds between pending audits (settings default)
        """
        self._settings = settings or get_settings()
        self._consumer = consumer
        self._pull_interval = pull_interval or self._settings.pull_interval_seconds
        self._audit_interval = audit_interval or self._settings.audit_interval_seconds

        self._running = False
        self._stop_event = asyncio.Event()

        logger.info(
            "Consumer service initialized",
            group=consumer.group,
            consumer=consumer.consumer_name,
            pull_interval=self._pull_interval,
            audit_interval=self._audit_interval,
        )

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Start the consumer service.

        Runs until stop() is called or the task is cancelled.
        """
        self._running = True
        self._stop_event.clear()
        bind_context(group=self._consumer.group, consumer=self._consumer.consumer_name)

        logger.info("Starting consumer service")
        await self._consumer.store.connect()

        try:
            await self._wait_for_store()
            if not self._running:
                return
            await self._consumer.start()

            await asyncio.gather(
                self._run_periodic("health_pull", self._consumer.consume_health_messages, self._pull_interval),
                self._run_periodic("pending_audit", self._consumer.check_pending_list, self._audit_interval),
            )
        except asyncio.CancelledError:
            logger.info("Consumer service cancelled")
        finally:
            await self._cleanup()

    async def stop(self) -> None:
        """Stop the consumer service gracefully."""
        logger.info("Stopping consumer service")
        self._running = False
        self._stop_event.set()

    async def run_once(self) -> dict[str, list[CycleReport]]:
        """Run one health pull and one pending audit, without the schedule."""
        await self._consumer.store.connect()
        try:
            if not self._consumer.started:
                await self._consumer.start()
            return {
                "health_pull": await self._consumer.consume_health_messages(),
                "pending_audit": await self._consumer.check_pending_list(),
            }
        finally:
            await self._cleanup()

    async def _cleanup(self) -> None:
        await self._consumer.store.close()
        self._running = False
        logger.info("Consumer service cleaned up")

    async def _wait_for_store(self) -> None:
        backoff = self._new_backoff()
        while self._running and not await self._consumer.store.ping():
            delay = backoff.next_delay()
            logger.warning("Redis unavailable, retrying", attempt=backoff.attempt, delay=round(delay, 2))
            await self._sleep(delay)

    async def _run_periodic(self, name: str, procedure: Procedure, interval: float) -> None:
        backoff = self._new_backoff()
        while self._running:
            if not await self._consumer.store.ping():
                delay = backoff.next_delay()
                logger.warning(
                    "Redis unavailable, skipping run",
                    procedure=name,
                    attempt=backoff.attempt,
                    delay=round(delay, 2),
                )
                await self._sleep(delay)
                continue
            backoff.reset()

            reports = await procedure()
            self._log_reports(name, reports)
            await self._sleep(interval)

    def _log_reports(self, name: str, reports: list[CycleReport]) -> None:
        for report in reports:
            work = (
                report.consumed
                + report.duplicates
                + report.malformed
                + report.dead_lettered
                + report.claimed
            )
            if work or report.errors or report.locked:
                logger.info(
                    "Procedure run",
                    procedure=name,
                    topic=report.topic,
                    consumed=report.consumed,
                    duplicates=report.duplicates,
                    locked=report.locked,
                    malformed=report.malformed,
                    redelivered=report.redelivered,
                    dead_lettered=report.dead_lettered,
                    claimed=report.claimed,
                    errors=report.errors,
                )

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early when stop() is called."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _new_backoff(self) -> ExponentialBackoff:
        return ExponentialBackoff(
            base_delay=self._settings.backoff_base_delay,
            max_delay=self._settings.backoff_max_delay,
        )
