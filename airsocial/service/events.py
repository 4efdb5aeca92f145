"""Event envelopes and the broker-facing publisher.

Events travel over one durable topic exchange. The publisher keeps a bounded
pool of confirm-mode channels; every publish holds one channel exclusively
until the broker acks, nacks or returns the message, so per-channel delivery
sequence numbers stay coherent. Blocking pika calls run in worker threads so
the request path only awaits.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

import pika
from pika.exceptions import (
    AMQPError,
    ConnectionClosed,
    NackError,
    StreamLostError,
    UnroutableError,
)
from pydantic import BaseModel, Field

from airsocial.logging import get_logger
from airsocial.service.errors import (
    NoRouteError,
    PublishCancelledError,
    PublishError,
    PublishRejectedError,
)

logger = get_logger(__name__)

EVENT_EMAIL_VERIFY = "email.verify"
EVENT_EMAIL_RESET_PASSWORD = "email.reset.password"


@dataclass(frozen=True)
class QueueConfig:
    name: str
    routing_key: str
    durable: bool = True
    dead_letter_exchange: Optional[str] = None
    dead_letter_routing_key: Optional[str] = None
    dead_letter_queue: Optional[str] = None

    def arguments(self) -> Dict[str, Any]:
        args: Dict[str, Any] = {}
        if self.dead_letter_exchange:
            args["x-dead-letter-exchange"] = self.dead_letter_exchange
        if self.dead_letter_routing_key:
            args["x-dead-letter-routing-key"] = self.dead_letter_routing_key
        return args


EMAIL_VERIFY_QUEUE = QueueConfig(
    name="email_verify_queue",
    routing_key=EVENT_EMAIL_VERIFY,
    dead_letter_exchange="events",
    dead_letter_routing_key="email.verify.dlq",
    dead_letter_queue="email_verify_queue.dlq",
)

EMAIL_RESET_PASSWORD_QUEUE = QueueConfig(
    name="email_reset_password_queue",
    routing_key=EVENT_EMAIL_RESET_PASSWORD,
    dead_letter_exchange="events",
    dead_letter_routing_key="email.reset.password.dlq",
    dead_letter_queue="email_reset_password_queue.dlq",
)


class EmailEventData(BaseModel):
    email: str
    name: str
    link: str
    expiry: str


class EventEnvelope(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def new(cls, event_type: str, data: BaseModel | Dict[str, Any]) -> "EventEnvelope":
        payload = data.model_dump() if isinstance(data, BaseModel) else dict(data)
        return cls(event_type=event_type, data=payload)


def _encode_payload(payload: Any) -> bytes:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class EventBus(Protocol):
    async def publish(
        self, routing_key: str, payload: Any, *, timeout: Optional[float] = None
    ) -> None: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


@dataclass
class _PublishChannel:
    connection: Any
    channel: Any
    next_seq_no: int = 0

    def close(self) -> None:
        try:
            if self.connection.is_open:
                self.connection.close()
        except AMQPError as exc:
            logger.debug("publish_channel_close_failed", error=str(exc))


class EventPublisher:
    """Confirm-mode publisher backed by a pool of pika channels."""

    def __init__(
        self,
        url: str,
        exchange: str = "events",
        *,
        pool_size: int = 1,
        publish_timeout: float = 5.0,
        connection_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        if pool_size <= 0:
            pool_size = 1
        self.url = url
        self.exchange = exchange
        self.pool_size = pool_size
        self.publish_timeout = publish_timeout
        self._connection_factory = connection_factory or (
            lambda: pika.BlockingConnection(pika.URLParameters(url))
        )
        self._slots = asyncio.Semaphore(pool_size)
        # Thread-side mirror of _slots so health checks share the same bound
        self._in_use = threading.BoundedSemaphore(pool_size)
        self._idle: Deque[_PublishChannel] = deque()
        self._idle_lock = threading.Lock()
        self._closed = False

    def _open_channel(self) -> _PublishChannel:
        connection = self._connection_factory()
        channel = connection.channel()
        channel.exchange_declare(exchange=self.exchange, exchange_type="topic", durable=True)
        channel.confirm_delivery()
        logger.info("publish_channel_opened", exchange=self.exchange)
        return _PublishChannel(connection=connection, channel=channel)

    def _checkout(self) -> _PublishChannel:
        while True:
            with self._idle_lock:
                if not self._idle:
                    break
                candidate = self._idle.popleft()
            if self._is_alive(candidate):
                return candidate
            candidate.close()
        return self._open_channel()

    @staticmethod
    def _is_alive(pooled: _PublishChannel) -> bool:
        if not (pooled.connection.is_open and pooled.channel.is_open):
            return False
        try:
            # Services pending heartbeats and surfaces a socket the broker already dropped
            pooled.connection.process_data_events(time_limit=0)
        except AMQPError as exc:
            logger.info("publish_channel_stale", error=str(exc))
            return False
        return pooled.connection.is_open and pooled.channel.is_open

    def _checkin(self, pooled: _PublishChannel) -> None:
        with self._idle_lock:
            if not self._closed:
                self._idle.append(pooled)
                return
        pooled.close()

    def _publish_blocking(self, routing_key: str, body: bytes) -> None:
        self._in_use.acquire()
        try:
            try:
                self._publish_once(routing_key, body)
            except (StreamLostError, ConnectionClosed) as exc:
                # Connection died between the liveness check and the publish
                logger.warning("event_publish_reconnect", routing_key=routing_key, error=str(exc))
                try:
                    self._publish_once(routing_key, body)
                except (StreamLostError, ConnectionClosed) as retry_exc:
                    logger.error(
                        "event_publish_failed", routing_key=routing_key, error=str(retry_exc)
                    )
                    raise PublishError("broker publish failed") from retry_exc
        finally:
            self._in_use.release()

    def _publish_once(self, routing_key: str, body: bytes) -> None:
        try:
            pooled = self._checkout()
        except AMQPError as exc:
            logger.error("publish_channel_open_failed", error=str(exc))
            raise PublishError("broker unavailable") from exc

        pooled.next_seq_no += 1
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=2,  # persistent
            message_id=str(uuid.uuid4()),
            timestamp=int(time.time()),
        )
        try:
            pooled.channel.basic_publish(
                exchange=self.exchange,
                routing_key=routing_key,
                body=body,
                properties=properties,
                mandatory=True,
            )
        except UnroutableError as exc:
            self._checkin(pooled)
            logger.warning("event_unroutable", routing_key=routing_key, seq_no=pooled.next_seq_no)
            raise NoRouteError(f"no queue bound for routing key {routing_key}") from exc
        except NackError as exc:
            self._checkin(pooled)
            logger.warning("event_nacked", routing_key=routing_key, seq_no=pooled.next_seq_no)
            raise PublishRejectedError("broker rejected the message") from exc
        except (StreamLostError, ConnectionClosed):
            pooled.close()
            raise
        except AMQPError as exc:
            # Broken channel: drop it so the next checkout reconnects
            pooled.close()
            logger.error("event_publish_failed", routing_key=routing_key, error=str(exc))
            raise PublishError("broker publish failed") from exc
        self._checkin(pooled)
        logger.debug("event_published", routing_key=routing_key, seq_no=pooled.next_seq_no)

    async def publish(
        self, routing_key: str, payload: Any, *, timeout: Optional[float] = None
    ) -> None:
        if timeout is None:
            timeout = self.publish_timeout
        if timeout <= 0:
            raise PublishCancelledError("publish deadline already passed")
        if self._closed:
            raise PublishError("publisher is closed")

        body = _encode_payload(payload)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout)
        except asyncio.TimeoutError as exc:
            raise PublishCancelledError("timed out waiting for a publish channel") from exc

        handed_off = False
        try:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PublishCancelledError("publish deadline passed")
            work = asyncio.ensure_future(
                asyncio.to_thread(self._publish_blocking, routing_key, body)
            )
            try:
                await asyncio.wait_for(asyncio.shield(work), remaining)
            except asyncio.TimeoutError as exc:
                # The thread still owns the channel; free the slot when it finishes
                work.add_done_callback(self._release_after)
                handed_off = True
                logger.warning("event_publish_timeout", routing_key=routing_key, timeout=timeout)
                raise PublishCancelledError("broker did not confirm before the deadline") from exc
            except asyncio.CancelledError:
                work.add_done_callback(self._release_after)
                handed_off = True
                raise
        finally:
            if not handed_off:
                self._slots.release()

    def _release_after(self, work: asyncio.Future) -> None:
        if not work.cancelled() and work.exception() is not None:
            logger.debug("abandoned_publish_failed", error=str(work.exception()))
        self._slots.release()

    def verify_connection(self) -> None:
        if not self._in_use.acquire(timeout=self.publish_timeout):
            raise PublishError("no publish channel available")
        try:
            pooled = self._checkout()
            self._checkin(pooled)
        finally:
            self._in_use.release()

    async def close(self) -> None:
        with self._idle_lock:
            if self._closed:
                return
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
        for pooled in idle:
            await asyncio.to_thread(pooled.close)
        logger.info("event_publisher_closed", exchange=self.exchange)


@dataclass
class PublishedMessage:
    routing_key: str
    payload: Dict[str, Any]
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class MemoryEventBus:
    """In-process bus for tests and brokerless development.

    Set ``fail_with`` to an exception instance to simulate an unavailable broker.
    """

    def __init__(self) -> None:
        self.published: List[PublishedMessage] = []
        self.fail_with: Optional[Exception] = None
        self._lock = threading.Lock()
        self._closed = False

    async def publish(
        self, routing_key: str, payload: Any, *, timeout: Optional[float] = None
    ) -> None:
        if timeout is not None and timeout <= 0:
            raise PublishCancelledError("publish deadline already passed")
        if self._closed:
            raise PublishError("publisher is closed")
        if self.fail_with is not None:
            raise self.fail_with
        decoded = json.loads(_encode_payload(payload))
        with self._lock:
            self.published.append(PublishedMessage(routing_key=routing_key, payload=decoded))
        logger.info("event_published_memory", routing_key=routing_key)

    def messages(self, routing_key: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                m.payload
                for m in self.published
                if routing_key is None or m.routing_key == routing_key
            ]

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        self._closed = True
