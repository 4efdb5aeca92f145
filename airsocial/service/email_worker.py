"""Background consumer that turns email events into sent emails.

One dispatcher runs per queue. Each owns a single AMQP channel, used only
from its own executor thread because pika's blocking adapter is not thread
safe. Delivery handling:
- Malformed envelopes are dead-lettered immediately
- Envelopes already marked processed are acked without sending
- Successful sends set the processed marker, then ack
- Failed sends are redelivered with an incremented ``x-retry-count`` header
  until the retry budget is spent, then dead-lettered
- A retry copy must be confirmed by the broker before the original is acked
"""

from __future__ import annotations

import asyncio
import functools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import pika
from pika.exceptions import AMQPError
from pydantic import ValidationError as PydanticValidationError

from airsocial.logging import get_logger
from airsocial.service.email import PermanentEmailError
from airsocial.service.events import EventEnvelope, QueueConfig
from airsocial.storage.cache_keys import email_processed_key
from airsocial.storage.errors import StorageError

logger = get_logger(__name__)

RETRY_HEADER = "x-retry-count"
DEFAULT_MAX_RETRY = 3
DEFAULT_PROCESSED_TTL_SECONDS = 24 * 60 * 60
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_RETRY_DELAY_SECONDS = 1.0
MAX_RECONNECT_BACKOFF_SECONDS = 60.0


@dataclass
class Delivery:
    delivery_tag: int
    body: bytes
    headers: Dict[str, Any] = field(default_factory=dict)
    routing_key: str = ""
    properties: Any = None

    @property
    def retry_count(self) -> int:
        try:
            return int(self.headers.get(RETRY_HEADER, 0) or 0)
        except (TypeError, ValueError):
            return 0


class DeliveryOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


class DeliveryChannel(Protocol):
    def next_delivery(self) -> Optional[Delivery]: ...

    def ack(self, delivery_tag: int) -> None: ...

    def nack(self, delivery_tag: int, requeue: bool) -> None: ...

    def republish(self, delivery: Delivery, headers: Dict[str, Any]) -> None: ...

    def close(self) -> None: ...


def declare_topology(channel: Any, exchange: str, queue: QueueConfig, *, prefetch: int = 1) -> None:
    """Declare exchange, dead-letter queue and work queue, then bind them.

    Every declaration is idempotent so each consumer can run it on connect.
    """
    channel.exchange_declare(exchange=exchange, exchange_type="topic", durable=True)
    if queue.dead_letter_queue and queue.dead_letter_routing_key:
        channel.queue_declare(queue=queue.dead_letter_queue, durable=True)
        channel.queue_bind(
            queue=queue.dead_letter_queue,
            exchange=queue.dead_letter_exchange or exchange,
            routing_key=queue.dead_letter_routing_key,
        )
    channel.queue_declare(
        queue=queue.name, durable=queue.durable, arguments=queue.arguments() or None
    )
    channel.queue_bind(queue=queue.name, exchange=exchange, routing_key=queue.routing_key)
    channel.basic_qos(prefetch_count=prefetch)


class AmqpDeliveryChannel:
    """pika-backed delivery channel with manual acknowledgement."""

    def __init__(
        self,
        url: str,
        exchange: str,
        queue: QueueConfig,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        connection_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        factory = connection_factory or (lambda: pika.BlockingConnection(pika.URLParameters(url)))
        self.queue = queue
        self.connection = factory()
        self.channel = self.connection.channel()
        # Publisher confirms make basic_publish block until the broker takes the copy
        self.channel.confirm_delivery()
        declare_topology(self.channel, exchange, queue)
        self._consumer = self.channel.consume(
            queue.name, auto_ack=False, inactivity_timeout=poll_interval
        )

    def next_delivery(self) -> Optional[Delivery]:
        method, properties, body = next(self._consumer)
        if method is None:
            return None
        return Delivery(
            delivery_tag=method.delivery_tag,
            body=body,
            headers=dict(getattr(properties, "headers", None) or {}),
            routing_key=method.routing_key,
            properties=properties,
        )

    def ack(self, delivery_tag: int) -> None:
        self.channel.basic_ack(delivery_tag=delivery_tag)

    def nack(self, delivery_tag: int, requeue: bool) -> None:
        self.channel.basic_nack(delivery_tag=delivery_tag, requeue=requeue)

    def republish(self, delivery: Delivery, headers: Dict[str, Any]) -> None:
        # Straight back onto our own queue through the default exchange
        original = delivery.properties
        properties = pika.BasicProperties(
            content_type=getattr(original, "content_type", None) or "application/json",
            delivery_mode=2,
            message_id=getattr(original, "message_id", None),
            timestamp=getattr(original, "timestamp", None),
            headers=headers,
        )
        self.channel.basic_publish(
            exchange="",
            routing_key=self.queue.name,
            body=delivery.body,
            properties=properties,
            mandatory=True,
        )

    def close(self) -> None:
        try:
            if self.channel.is_open:
                self.channel.cancel()
            if self.connection.is_open:
                self.connection.close()
        except AMQPError as exc:
            logger.debug("delivery_channel_close_failed", queue=self.queue.name, error=str(exc))


EnvelopeHandler = Callable[[EventEnvelope], Awaitable[None]]


class EmailDispatcher:
    """Consumes one email queue and dispatches envelopes to a handler."""

    def __init__(
        self,
        queue: QueueConfig,
        handler: EnvelopeHandler,
        cache: Any,
        channel_factory: Callable[[], DeliveryChannel],
        *,
        max_retry: int = DEFAULT_MAX_RETRY,
        processed_ttl_seconds: int = DEFAULT_PROCESSED_TTL_SECONDS,
        reconnect_delay: float = 1.0,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        self.queue = queue
        self.name = f"email:{queue.name}"
        self.handler = handler
        self.cache = cache
        self.channel_factory = channel_factory
        self.max_retry = max_retry
        self.processed_ttl_seconds = processed_ttl_seconds
        self.reconnect_delay = reconnect_delay
        self.retry_delay = retry_delay
        self._channel: Optional[DeliveryChannel] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _on_channel_thread(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args))

    async def start(self) -> None:
        if self._running:
            logger.warning("email_dispatcher_already_running", queue=self.queue.name)
            return
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=self.name)
        self._stop_event = asyncio.Event()
        try:
            # Connect eagerly so broker or topology problems fail startup
            self._channel = await self._on_channel_thread(self.channel_factory)
        except Exception:
            self._executor.shutdown(wait=False)
            self._executor = None
            raise
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("email_dispatcher_started", queue=self.queue.name)

    async def stop(self) -> None:
        """Ask the loop to exit after the message in hand; safe to call twice."""
        if not self._running:
            return
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        logger.info("email_dispatcher_stopping", queue=self.queue.name)

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        try:
            while self._running:
                try:
                    if self._channel is None:
                        self._channel = await self._on_channel_thread(self.channel_factory)
                        logger.info("email_dispatcher_reconnected", queue=self.queue.name)
                    delivery = await self._on_channel_thread(self._channel.next_delivery)
                    if delivery is None:
                        continue
                    await self.handle_delivery(self._channel, delivery)
                    consecutive_errors = 0
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    consecutive_errors += 1
                    logger.error(
                        "email_dispatcher_loop_error",
                        queue=self.queue.name,
                        error=str(exc),
                        error_type=type(exc).__name__,
                        consecutive_errors=consecutive_errors,
                    )
                    await self._discard_channel()
                    backoff = min(
                        MAX_RECONNECT_BACKOFF_SECONDS,
                        self.reconnect_delay * (2 ** (consecutive_errors - 1)),
                    )
                    await self._sleep_unless_stopped(backoff)
        finally:
            await self._discard_channel()
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None
            logger.info("email_dispatcher_stopped", queue=self.queue.name)

    async def _sleep_unless_stopped(self, seconds: float) -> None:
        if self._stop_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), seconds)
        except asyncio.TimeoutError:
            pass

    async def _discard_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return
        try:
            await self._on_channel_thread(channel.close)
        except Exception as exc:
            logger.warning("email_dispatcher_close_failed", queue=self.queue.name, error=str(exc))

    async def handle_delivery(self, channel: DeliveryChannel, delivery: Delivery) -> DeliveryOutcome:
        try:
            envelope = EventEnvelope.model_validate_json(delivery.body)
        except (PydanticValidationError, ValueError) as exc:
            logger.warning(
                "email_event_malformed",
                queue=self.queue.name,
                delivery_tag=delivery.delivery_tag,
                error=str(exc),
            )
            await self._on_channel_thread(channel.nack, delivery.delivery_tag, False)
            return DeliveryOutcome.DEAD_LETTERED

        processed_key = email_processed_key(envelope.event_id)
        if await self.cache.exists(processed_key):
            logger.info(
                "email_event_duplicate", queue=self.queue.name, event_id=envelope.event_id
            )
            await self._on_channel_thread(channel.ack, delivery.delivery_tag)
            return DeliveryOutcome.DUPLICATE

        try:
            await self.handler(envelope)
        except PermanentEmailError as exc:
            logger.error(
                "email_event_rejected",
                queue=self.queue.name,
                event_id=envelope.event_id,
                error=str(exc),
            )
            await self._on_channel_thread(channel.nack, delivery.delivery_tag, False)
            return DeliveryOutcome.DEAD_LETTERED
        except Exception as exc:
            return await self._retry_or_dead_letter(channel, delivery, envelope, exc)

        try:
            await self.cache.put(processed_key, 1, self.processed_ttl_seconds)
        except StorageError as exc:
            # Email already went out; a redelivery may send a duplicate
            logger.warning(
                "email_processed_marker_failed", event_id=envelope.event_id, error=str(exc)
            )
        await self._on_channel_thread(channel.ack, delivery.delivery_tag)
        logger.info(
            "email_event_processed",
            queue=self.queue.name,
            event_id=envelope.event_id,
            event_type=envelope.event_type,
        )
        return DeliveryOutcome.PROCESSED

    async def _retry_or_dead_letter(
        self,
        channel: DeliveryChannel,
        delivery: Delivery,
        envelope: EventEnvelope,
        exc: Exception,
    ) -> DeliveryOutcome:
        attempt = delivery.retry_count
        if attempt < self.max_retry:
            headers = {**delivery.headers, RETRY_HEADER: attempt + 1}
            logger.warning(
                "email_event_retry",
                queue=self.queue.name,
                event_id=envelope.event_id,
                retry_count=attempt + 1,
                max_retry=self.max_retry,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if self.retry_delay > 0:
                await self._sleep_unless_stopped(self.retry_delay)
            # AMQP cannot rewrite headers on requeue, so publish a copy and ack the original
            try:
                await self._on_channel_thread(channel.republish, delivery, headers)
            except Exception as publish_exc:
                # Left unacked, the broker redelivers the original once the channel closes
                logger.error(
                    "email_event_retry_publish_failed",
                    queue=self.queue.name,
                    event_id=envelope.event_id,
                    error=str(publish_exc),
                    error_type=type(publish_exc).__name__,
                )
                raise
            await self._on_channel_thread(channel.ack, delivery.delivery_tag)
            return DeliveryOutcome.RETRIED

        logger.error(
            "email_event_dead_lettered",
            queue=self.queue.name,
            event_id=envelope.event_id,
            retry_count=attempt,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        await self._on_channel_thread(channel.nack, delivery.delivery_tag, False)
        return DeliveryOutcome.DEAD_LETTERED
