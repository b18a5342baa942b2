"""
Webhook Ingest
==============

``ingest_payload`` normalizes a verified provider payload and runs it
through the pipeline. Webhook routes call it inline, or, with
``WEBHOOK_INGEST_MODE=queued``, append the verified payload to a Redis
Stream (``stream:entitlements:ingest``) and answer 202; ``IngestWorker``
drains the stream in the background.

Retry / dead letters:
    - Malformed payloads are dead-lettered in the database and ACKed.
    - When the ledger is unavailable the message stays pending and is
      re-claimed once it has been idle for ``RECLAIM_IDLE_MS``.
    - After ``MAX_RETRIES`` deliveries the payload is dead-lettered in the
      database and ACKed.
"""

import asyncio
import json
import logging
from typing import Any, Optional

from redis.exceptions import ResponseError

from entitlement_engine.core.errors import LedgerUnavailableError, MalformedEventError
from entitlement_engine.models.ledger import LedgerOutcome
from entitlement_engine.models.subscription import Provider
from entitlement_engine.services.normalizer import normalize
from entitlement_engine.services.pipeline import EntitlementPipeline, PipelineResult
from entitlement_engine.services.redis_client import get_redis

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STREAM_KEY = "stream:entitlements:ingest"
CONSUMER_GROUP = "ingest-workers"
CONSUMER_NAME = "worker-1"
MAX_RETRIES = 5
BLOCK_MS = 1000  # how long XREADGROUP blocks before returning empty
BATCH_SIZE = 50  # max messages per XREADGROUP call
RECLAIM_IDLE_MS = 30_000
STREAM_MAXLEN = 100_000


async def ingest_payload(
    pipeline: EntitlementPipeline,
    provider: Provider,
    payload: dict[str, Any],
) -> PipelineResult:
    """
    Normalize and process one verified webhook payload.

    Malformed payloads are dead-lettered and reported as ignored, never
    raised: the provider should not keep redelivering them.

    Raises:
        LedgerUnavailableError: storage cannot admit or reject the event.
    """
    try:
        event = normalize(payload, provider)
    except MalformedEventError as exc:
        event_id = payload.get("id") or payload.get("notificationUUID")
        await pipeline.dead_letter(
            reason=str(exc),
            error_type=type(exc).__name__,
            payload=payload,
            provider=provider.value,
            event_id=str(event_id) if event_id else None,
        )
        return PipelineResult(
            event_id=str(event_id or ""),
            outcome=LedgerOutcome.IGNORED,
            dead_lettered=True,
            reason=str(exc),
        )

    return await pipeline.process(event)


async def enqueue_webhook(provider: Provider, payload: dict[str, Any]) -> str:
    """Append a verified payload to the ingest stream. Returns the stream id."""
    client = await get_redis()
    return await client.xadd(
        STREAM_KEY,
        {"provider": provider.value, "payload": json.dumps(payload)},
        maxlen=STREAM_MAXLEN,
        approximate=True,
    )


# ---------------------------------------------------------------------------
# IngestWorker
# ---------------------------------------------------------------------------

class IngestWorker:
    """Background worker that drains the ingest stream into the pipeline."""

    def __init__(self, pipeline: EntitlementPipeline) -> None:
        self.pipeline = pipeline
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Create the consumer group and start the processing loop."""
        client = await get_redis()
        try:
            await client.xgroup_create(STREAM_KEY, CONSUMER_GROUP, id="0", mkstream=True)
            logger.info("Created consumer group '%s'", CONSUMER_GROUP)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

        self._running = True
        self._task = asyncio.create_task(self._process_loop())
        logger.info("IngestWorker started")

    async def stop(self) -> None:
        """Signal the loop to stop and wait for it to finish."""
        self._running = False
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except asyncio.TimeoutError:
                logger.warning("IngestWorker did not stop in time; cancelling")
                self._task.cancel()
            self._task = None
        logger.info("IngestWorker stopped")

    # -- main loop ---------------------------------------------------------

    async def _process_loop(self) -> None:
        while self._running:
            try:
                await self.reclaim_pending()
                await self.read_and_process()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("IngestWorker loop error: %s", exc)
                await asyncio.sleep(1)

    async def read_and_process(self) -> None:
        """Read a batch of new messages and process them."""
        client = await get_redis()
        messages = await client.xreadgroup(
            CONSUMER_GROUP,
            CONSUMER_NAME,
            {STREAM_KEY: ">"},
            count=BATCH_SIZE,
            block=BLOCK_MS,
        )
        for _stream_name, entries in messages or []:
            for msg_id, fields in entries:
                await self.handle_message(client, msg_id, fields)

    async def reclaim_pending(self) -> None:
        """
        Retry messages left pending by a failed attempt; dead-letter those
        delivered ``MAX_RETRIES`` times.
        """
        client = await get_redis()
        pending = await client.xpending_range(
            STREAM_KEY, CONSUMER_GROUP, "-", "+", count=BATCH_SIZE, idle=RECLAIM_IDLE_MS,
        )

        for entry in pending:
            msg_id = entry["message_id"]
            times_delivered = entry["times_delivered"]

            claimed = await client.xclaim(
                STREAM_KEY, CONSUMER_GROUP, CONSUMER_NAME, RECLAIM_IDLE_MS, [msg_id],
            )
            if not claimed:
                continue
            _, fields = claimed[0]

            if times_delivered >= MAX_RETRIES:
                await self._dead_letter_message(client, msg_id, fields, times_delivered)
            else:
                await self.handle_message(client, msg_id, fields)

    # -- message handler ---------------------------------------------------

    async def handle_message(self, client: Any, msg_id: str, fields: dict) -> None:
        """Process one stream message, ACK unless the ledger is unavailable."""
        try:
            provider = Provider(fields.get("provider", ""))
            payload = json.loads(fields.get("payload", ""))
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            logger.error("Unreadable ingest message %s, dead-lettering", msg_id)
            await self._dead_letter_message(client, msg_id, fields, 1)
            return

        try:
            result = await ingest_payload(self.pipeline, provider, payload)
        except LedgerUnavailableError as exc:
            # Leave un-ACKed; reclaim_pending retries it
            logger.error("Ingest of %s deferred, ledger unavailable: %s", msg_id, exc)
            return

        await client.xack(STREAM_KEY, CONSUMER_GROUP, msg_id)
        logger.info(
            "Ingested %s from stream: event %s -> %s%s",
            provider.value,
            result.event_id,
            result.outcome.value,
            " (duplicate)" if result.duplicate else "",
        )

    async def _dead_letter_message(
        self,
        client: Any,
        msg_id: str,
        fields: dict,
        times_delivered: int,
    ) -> None:
        try:
            payload = json.loads(fields.get("payload", ""))
        except json.JSONDecodeError:
            payload = {"raw": fields.get("payload")}
        if not isinstance(payload, dict):
            payload = {"raw": payload}

        await self.pipeline.dead_letter(
            reason=f"stream message {msg_id} failed after {times_delivered} deliveries",
            error_type="IngestRetriesExhausted",
            payload=payload,
            provider=fields.get("provider"),
        )
        await client.xack(STREAM_KEY, CONSUMER_GROUP, msg_id)
        logger.warning(
            "Dead-lettered stream message %s after %d deliveries", msg_id, times_delivered,
        )
