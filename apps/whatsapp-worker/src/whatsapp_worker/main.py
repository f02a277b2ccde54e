"""
WhatsApp Worker Service

Consumes the integration's Redis Streams and runs its periodic jobs.

This worker uses ONLY:
- wacore (DB, settings, logging, redis)
- wa_integration (handlers, dispatch, reconciler, policy)

Features:
- XREADGROUP consumers for horizontal scaling
- Inbound webhook processing (connection events, messages, auto-response),
  accounts in parallel and each account in arrival order
- Dispatch execution with retries, rate limits and dead letters
- Promotion of delayed and scheduled dispatch jobs
- Periodic connection reconciliation against the gateway, in the background
- PEL reclaim for entries left behind by dead consumers
- Graceful shutdown
"""

import asyncio
import logging
import os
import signal
import socket
import time

import redis

from wacore.db import get_db
from wacore.logging import setup_logging
from wacore.redis import get_redis_client
from wacore.settings import get_settings

from wa_integration.contracts.envelope import IntegrationEnvelope
from wa_integration.dispatch.executor import DispatchExecutor
from wa_integration.dispatch.queue import DispatchQueue
from wa_integration.dispatch.rate_limit import TenantRateLimiter
from wa_integration.gateway import MessagingGateway, build_gateway
from wa_integration.policy.engine import AutoResponsePolicyEngine
from wa_integration.policy.llm import ChatCompletionClient
from wa_integration.reconciler.service import ConnectionReconciler
from wa_integration.service.inbound_handler import InboundHandler
from wa_integration.streams.consumer import IntegrationStreamConsumer
from wa_integration.streams.groups import DISPATCH_STREAM, INBOUND_STREAM, ensure_integration_streams
from wa_integration.streams.lanes import run_keyed

setup_logging()
logger = logging.getLogger(__name__)

settings = get_settings()

# Configuration
CONSUMER_NAME = settings.WORKER_CONSUMER_NAME or f"whatsapp-worker-{socket.gethostname()}-{os.getpid()}"
BATCH_SIZE = settings.WORKER_BATCH_SIZE
BLOCK_MS = settings.WORKER_BLOCK_MS
INBOUND_CONCURRENCY = settings.WORKER_INBOUND_CONCURRENCY
RECLAIM_INTERVAL_SEC = settings.WORKER_RECLAIM_INTERVAL_SECONDS
RECLAIM_IDLE_MS = settings.WORKER_RECLAIM_IDLE_MS
RECONCILE_INTERVAL_SEC = settings.RECONCILE_INTERVAL_SECONDS
CLEANUP_INTERVAL_SEC = 3600

# Graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    global shutdown_requested
    logger.info(f"Received signal {signum}, requesting shutdown...")
    shutdown_requested = True


signal.signal(signal.SIGTERM, signal_handler)
signal.signal(signal.SIGINT, signal_handler)


class PeriodicTimer:
    """Tells the main loop when an interval has elapsed."""

    def __init__(self, interval_seconds: float, run_immediately: bool = False):
        self.interval_seconds = interval_seconds
        self.last_run = 0.0 if run_immediately else time.monotonic()

    def due(self) -> bool:
        now = time.monotonic()
        if now - self.last_run < self.interval_seconds:
            return False
        self.last_run = now
        return True


def inbound_lane(entry: tuple[str, IntegrationEnvelope]) -> str | None:
    """Inbound webhooks for the same account are handled in arrival order."""
    _msg_id, envelope = entry
    return envelope.account_key or envelope.payload.get("instance")


async def process_inbound_entry(
    msg_id: str,
    envelope: IntegrationEnvelope,
    consumer: IntegrationStreamConsumer,
    redis_client: redis.Redis,
    gateway: MessagingGateway,
    llm: ChatCompletionClient | None,
) -> bool:
    """Handle one webhook envelope in its own session; acked only once handled."""
    db = next(get_db())

    try:
        reconciler = ConnectionReconciler.from_settings(db, gateway, settings)
        queue = DispatchQueue.from_settings(redis_client, settings)
        engine = AutoResponsePolicyEngine(db, llm, timeout_seconds=settings.LLM_TIMEOUT_SECONDS)
        handler = InboundHandler(db, reconciler, queue, engine)

        result = await handler.handle_envelope(envelope)
        consumer.ack(INBOUND_STREAM, msg_id)

        logger.debug(
            "Processed inbound webhook",
            extra={"msg_id": msg_id, "result": result},
        )
        return True

    except Exception as e:
        db.rollback()
        logger.error(
            f"Failed to process inbound webhook {msg_id}: {e}",
            exc_info=True,
        )
        # Don't ACK - will be reclaimed
        return False

    finally:
        db.close()


async def handle_inbound(
    messages: list[tuple[str, IntegrationEnvelope]],
    consumer: IntegrationStreamConsumer,
    redis_client: redis.Redis,
    gateway: MessagingGateway,
    llm: ChatCompletionClient | None,
) -> int:
    """Process webhook envelopes, different accounts concurrently."""
    if not messages:
        return 0

    handled = await run_keyed(
        messages,
        key=inbound_lane,
        handle=lambda entry: process_inbound_entry(*entry, consumer, redis_client, gateway, llm),
        limit=INBOUND_CONCURRENCY,
    )
    return sum(handled)


async def handle_dispatch(
    messages: list[tuple[str, IntegrationEnvelope]],
    consumer: IntegrationStreamConsumer,
    redis_client: redis.Redis,
    gateway: MessagingGateway,
) -> int:
    """Execute announced dispatch jobs."""
    if not messages:
        return 0

    processed = 0
    db = next(get_db())

    try:
        executor = DispatchExecutor(
            db,
            DispatchQueue.from_settings(redis_client, settings),
            gateway,
            TenantRateLimiter(redis_client, default_plan=settings.DEFAULT_RATE_PLAN),
            worker_name=CONSUMER_NAME,
            backoff_cap_ms=settings.DISPATCH_BACKOFF_MAX_MS,
            encryption_key=settings.ENCRYPTION_KEY,
        )

        for msg_id, envelope in messages:
            job_id = envelope.payload.get("job_id")
            if not job_id:
                logger.warning(f"Dispatch entry {msg_id} has no job_id, dropping")
                consumer.ack(DISPATCH_STREAM, msg_id)
                continue

            try:
                # Every outcome leaves the job consistent in Redis
                outcome = await executor.execute(job_id)
                consumer.ack(DISPATCH_STREAM, msg_id)
                processed += 1

                logger.debug(
                    f"Executed dispatch job {job_id}",
                    extra={"msg_id": msg_id, "outcome": outcome.value},
                )

            except Exception as e:
                db.rollback()
                logger.error(
                    f"Failed to execute dispatch job {job_id}: {e}",
                    exc_info=True,
                )

    finally:
        db.close()

    return processed


async def run_reconcile(gateway: MessagingGateway) -> None:
    """One poll cycle over every reconcilable account. Runs as a background task."""
    db = next(get_db())
    try:
        reconciler = ConnectionReconciler.from_settings(db, gateway, settings)
        await reconciler.poll_all()
    except Exception as e:
        db.rollback()
        logger.error(f"Reconcile cycle failed: {e}", exc_info=True)
    finally:
        db.close()


async def run_reclaim(
    consumer: IntegrationStreamConsumer,
    redis_client: redis.Redis,
    gateway: MessagingGateway,
    llm: ChatCompletionClient | None,
) -> None:
    """Take over entries idle in other consumers' PEL and process them here."""
    inbound = consumer.reclaim_pending(INBOUND_STREAM, min_idle_ms=RECLAIM_IDLE_MS, count=100)
    if inbound:
        logger.info(f"Reclaimed {len(inbound)} inbound webhooks")
        await handle_inbound(inbound, consumer, redis_client, gateway, llm)

    dispatch = consumer.reclaim_pending(DISPATCH_STREAM, min_idle_ms=RECLAIM_IDLE_MS, count=100)
    if dispatch:
        logger.info(f"Reclaimed {len(dispatch)} dispatch entries")
        await handle_dispatch(dispatch, consumer, redis_client, gateway)


async def main_loop():
    """Main worker loop."""
    redis_client = get_redis_client()

    # Ensure streams exist
    ensure_integration_streams(redis_client)

    consumer = IntegrationStreamConsumer(redis_client, CONSUMER_NAME)
    queue = DispatchQueue.from_settings(redis_client, settings)
    gateway = build_gateway(settings)
    llm = ChatCompletionClient.from_settings(settings)

    reconcile_timer = PeriodicTimer(RECONCILE_INTERVAL_SEC, run_immediately=True)
    reclaim_timer = PeriodicTimer(RECLAIM_INTERVAL_SEC)
    cleanup_timer = PeriodicTimer(CLEANUP_INTERVAL_SEC)
    reconcile_task: asyncio.Task | None = None

    logger.info(
        f"Starting WhatsApp worker "
        f"(consumer={CONSUMER_NAME}, batch={BATCH_SIZE}, gateway={settings.GATEWAY_MODE}, "
        f"auto_response={'on' if llm else 'off'})"
    )

    try:
        while not shutdown_requested:
            try:
                promoted = queue.promote_due()

                # Blocking read off the event loop so a running reconcile cycle keeps going
                inbound = await asyncio.to_thread(
                    consumer.read_messages, INBOUND_STREAM, count=BATCH_SIZE, block_ms=BLOCK_MS
                )
                inbound_count = await handle_inbound(inbound, consumer, redis_client, gateway, llm)
                if inbound_count > 0:
                    logger.info(f"Processed {inbound_count} inbound webhooks")

                dispatch = consumer.read_messages(DISPATCH_STREAM, count=BATCH_SIZE, block_ms=100)
                dispatch_count = await handle_dispatch(dispatch, consumer, redis_client, gateway)
                if dispatch_count > 0:
                    logger.info(f"Executed {dispatch_count} dispatch jobs")

                if reconcile_timer.due():
                    if reconcile_task is not None and not reconcile_task.done():
                        logger.warning("Previous reconcile cycle still running, skipping this one")
                    else:
                        reconcile_task = asyncio.create_task(run_reconcile(gateway))

                if reclaim_timer.due():
                    await run_reclaim(consumer, redis_client, gateway, llm)

                if cleanup_timer.due():
                    queue.clean_completed()

                # Small sleep if nothing processed
                if inbound_count == 0 and dispatch_count == 0 and promoted == 0:
                    await asyncio.sleep(0.1)

            except Exception as e:
                logger.error(f"Error in main loop: {e}", exc_info=True)
                await asyncio.sleep(1)
    finally:
        if reconcile_task is not None and not reconcile_task.done():
            await reconcile_task
        await gateway.close()
        if llm is not None:
            await llm.close()

    logger.info("WhatsApp worker shutting down gracefully")


def main():
    """Entry point."""
    logger.info("WhatsApp worker starting...")
    asyncio.run(main_loop())


if __name__ == "__main__":
    main()
