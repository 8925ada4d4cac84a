"""
Action worker: long-lived AMQP consumer that executes actions.

Each iteration:
1. Waits (up to CONSUMER_POLL_SECONDS) for one delivery
2. Dispatches it and settles it through the DeliveryResolver
3. Updates WorkerStats

CONSTRAINTS:
- One message at a time; scale out by running more workers
- No mid-action cancellation: shutdown waits for the in-flight message
- Graceful shutdown on SIGTERM/SIGINT

Usage:
    python -m action_processor.workers.action_worker
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from action_processor.actions.dispatcher import ActionDispatcher
from action_processor.actions.handlers import HandlerDependencies, build_registry
from action_processor.config.settings import ProcessorSettings, get_settings
from action_processor.database.session import dispose_engine, get_session_factory
from action_processor.integrations.http.client import OutboundCallExecutor
from action_processor.integrations.lookup.client import LookupClient
from action_processor.integrations.media.client import MediaClient
from action_processor.integrations.sendgrid.client import SendGridClient
from action_processor.integrations.twitter.client import TwitterClient
from action_processor.messaging.kombu_broker import KombuBroker
from action_processor.platform.secrets import SecretCipher, install_redacting_filter
from action_processor.repositories.action_store import ActionStore
from action_processor.repositories.rate_limit_repo import RateLimitRepository
from action_processor.services.delivery_resolver import (
    DeliveryOutcome,
    DeliveryResolver,
    OutcomeKind,
)
from action_processor.services.rate_limit_oracle import RateLimitOracle

logger = logging.getLogger(__name__)

CONSUMER_POLL_SECONDS = 1.0


@dataclass
class WorkerStats:
    """Cumulative statistics for the worker process lifetime."""

    processed: int = 0
    republished: int = 0
    followups: int = 0
    dropped: int = 0
    requeued: int = 0
    errors: int = 0
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def record(self, outcome: DeliveryOutcome) -> None:
        self.processed += 1
        if outcome.kind is OutcomeKind.ACK_REPUBLISH:
            self.republished += 1
        elif outcome.kind is OutcomeKind.ACK_TRIGGER_FOLLOWUPS:
            self.followups += 1
        elif outcome.kind is OutcomeKind.NACK_REQUEUE:
            self.requeued += 1
        else:
            self.dropped += 1

    def to_dict(self) -> dict:
        uptime = (
            datetime.now(timezone.utc) - self.started_at
        ).total_seconds()
        return {
            "processed": self.processed,
            "republished": self.republished,
            "followups": self.followups,
            "dropped": self.dropped,
            "requeued": self.requeued,
            "errors": self.errors,
            "uptime_seconds": round(uptime, 2),
        }


@dataclass
class ActionProcessor:
    """Wired processor components plus the clients that need closing."""

    resolver: DeliveryResolver
    closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def close(self) -> None:
        for close in self.closers:
            await close()
        dispose_engine()


def build_processor(settings: ProcessorSettings) -> ActionProcessor:
    """Instantiate every component once, from a single settings object."""
    session_factory = get_session_factory(settings.database_url)

    executor = OutboundCallExecutor(settings)
    twitter = TwitterClient(settings.twitter_api_url)
    media = MediaClient(settings.media_url)
    sendgrid = SendGridClient(
        settings.sendgrid_api_key,
        settings.sendgrid_email_from,
        base_url=settings.sendgrid_api_url,
    )
    lookup = LookupClient()

    deps = HandlerDependencies(
        settings=settings,
        oracle=RateLimitOracle(RateLimitRepository(session_factory), settings),
        executor=executor,
        store=ActionStore(session_factory),
        twitter=twitter,
        media=media,
        sendgrid=sendgrid,
        lookup=lookup,
        cipher=SecretCipher(settings.encryption_key),
    )
    dispatcher = ActionDispatcher(build_registry(deps))
    return ActionProcessor(
        resolver=DeliveryResolver(dispatcher, settings),
        closers=[executor.close, twitter.close, media.close, sendgrid.close, lookup.close],
    )


async def consume(
    resolver: DeliveryResolver,
    broker: KombuBroker,
    shutdown_event: asyncio.Event,
    stats: Optional[WorkerStats] = None,
) -> WorkerStats:
    """
    Process deliveries one at a time until shutdown_event is set.

    An in-flight delivery is always finished before the loop checks the
    event again. A delivery whose processing raises is logged and counted
    in `stats.errors`; the loop keeps consuming.
    """
    stats = stats or WorkerStats()
    while not shutdown_event.is_set():
        delivery = await broker.next_delivery(timeout=CONSUMER_POLL_SECONDS)
        if delivery is None:
            continue

        try:
            outcome = await resolver.process(delivery, broker)
        except Exception:
            # Unsettled deliveries are redelivered by the broker
            stats.errors += 1
            logger.exception(
                "action_worker.delivery_error",
                extra={"routing_key": delivery.routing_key},
            )
            continue
        stats.record(outcome)
    return stats


async def run_worker(settings: Optional[ProcessorSettings] = None) -> None:
    """Main worker loop. Runs until SIGTERM/SIGINT."""
    settings = settings or get_settings()
    stats = WorkerStats()
    shutdown_event = asyncio.Event()

    def _handle_signal(sig, _frame):
        logger.info("Received signal %s, shutting down gracefully", sig)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    processor = build_processor(settings)
    broker = KombuBroker(settings)
    await broker.connect()

    logger.info(
        "Action worker starting",
        extra={
            "queue": settings.amqp_queue,
            "binding_key": settings.amqp_binding_key,
            "prefetch": settings.amqp_prefetch,
        },
    )

    try:
        await consume(processor.resolver, broker, shutdown_event, stats)
    finally:
        await broker.close()
        await processor.close()

    logger.info("Action worker stopped", extra=stats.to_dict())


def main():
    """Entry point for running worker from command line."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    install_redacting_filter()
    try:
        asyncio.run(run_worker())
        sys.exit(0)
    except Exception as e:
        logger.error("Action worker crashed", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
