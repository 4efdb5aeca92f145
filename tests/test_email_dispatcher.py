"""Tests for the email queue consumer: idempotency, retries and dead-lettering."""

import asyncio
import time
from types import SimpleNamespace

import pytest
from pika.exceptions import NackError

from airsocial.service.email import (
    EmailDeliveryError,
    EmailEventHandler,
    EmailSender,
    OutgoingEmail,
)
from airsocial.service.email_worker import (
    RETRY_HEADER,
    AmqpDeliveryChannel,
    Delivery,
    DeliveryOutcome,
    EmailDispatcher,
    declare_topology,
)
from airsocial.service.events import (
    EMAIL_VERIFY_QUEUE,
    EVENT_EMAIL_VERIFY,
    EmailEventData,
    EventEnvelope,
)
from airsocial.storage.cache_keys import email_processed_key
from airsocial.storage.memory import MemoryCache


class RecordingSender(EmailSender):
    def __init__(self, failures: int = 0):
        super().__init__()
        self.sent = []
        self.failures = failures

    def send(self, message: OutgoingEmail) -> None:
        if self.failures:
            self.failures -= 1
            raise EmailDeliveryError("smtp connection failed")
        self.sent.append(message)


class FakeDeliveryChannel:
    """In-memory stand-in for an AMQP queue with manual acks."""

    def __init__(self, deliveries=()):
        self.queue = list(deliveries)
        self.acked = []
        self.nacked = []
        self.republished = []
        self.closed = False
        self.republish_error = None
        self._next_tag = 1000

    def next_delivery(self):
        if not self.queue:
            # Mimic the consumer inactivity timeout
            time.sleep(0.005)
            return None
        return self.queue.pop(0)

    def ack(self, delivery_tag):
        self.acked.append(delivery_tag)

    def nack(self, delivery_tag, requeue):
        self.nacked.append((delivery_tag, requeue))

    def republish(self, delivery, headers):
        if self.republish_error is not None:
            raise self.republish_error
        self._next_tag += 1
        copy = Delivery(
            delivery_tag=self._next_tag,
            body=delivery.body,
            headers=headers,
            routing_key=delivery.routing_key,
        )
        self.republished.append(copy)
        self.queue.append(copy)

    def close(self):
        self.closed = True


def _envelope_body(event_id=None):
    envelope = EventEnvelope.new(
        EVENT_EMAIL_VERIFY,
        EmailEventData(
            email="a@x.io",
            name="Ada",
            link="http://localhost:8080/api/v1/auth/verify-email?token=abc",
            expiry="30 minutes",
        ),
    )
    if event_id:
        envelope.event_id = event_id
    return envelope.model_dump_json().encode()


def _dispatcher(sender, cache=None, max_retry=3, channel=None):
    return EmailDispatcher(
        EMAIL_VERIFY_QUEUE,
        EmailEventHandler(sender),
        cache or MemoryCache(),
        lambda: channel or FakeDeliveryChannel(),
        max_retry=max_retry,
        processed_ttl_seconds=3600,
        retry_delay=0,
    )


class TestHandleDelivery:
    async def test_success_sends_marks_and_acks(self):
        sender = RecordingSender()
        cache = MemoryCache()
        dispatcher = _dispatcher(sender, cache)
        channel = FakeDeliveryChannel()
        body = _envelope_body("evt-1")

        outcome = await dispatcher.handle_delivery(channel, Delivery(delivery_tag=1, body=body))

        assert outcome is DeliveryOutcome.PROCESSED
        assert channel.acked == [1]
        assert len(sender.sent) == 1
        assert sender.sent[0].to == "a@x.io"
        assert "verify-email?token=abc" in sender.sent[0].html_body
        assert await cache.exists(email_processed_key("evt-1"))

    async def test_duplicate_delivery_sends_once(self):
        sender = RecordingSender()
        dispatcher = _dispatcher(sender)
        channel = FakeDeliveryChannel()
        body = _envelope_body("evt-dup")

        first = await dispatcher.handle_delivery(channel, Delivery(delivery_tag=1, body=body))
        second = await dispatcher.handle_delivery(channel, Delivery(delivery_tag=2, body=body))

        assert first is DeliveryOutcome.PROCESSED
        assert second is DeliveryOutcome.DUPLICATE
        assert len(sender.sent) == 1
        assert channel.acked == [1, 2]
        assert channel.nacked == []

    async def test_malformed_body_is_dead_lettered(self):
        sender = RecordingSender()
        dispatcher = _dispatcher(sender)
        channel = FakeDeliveryChannel()

        outcome = await dispatcher.handle_delivery(channel, Delivery(delivery_tag=9, body=b"{not json"))

        assert outcome is DeliveryOutcome.DEAD_LETTERED
        assert channel.nacked == [(9, False)]
        assert sender.sent == []

    async def test_invalid_event_data_is_dead_lettered_without_retry(self):
        sender = RecordingSender()
        dispatcher = _dispatcher(sender)
        channel = FakeDeliveryChannel()
        body = EventEnvelope.new(EVENT_EMAIL_VERIFY, {"email": "a@x.io"}).model_dump_json().encode()

        outcome = await dispatcher.handle_delivery(channel, Delivery(delivery_tag=3, body=body))

        assert outcome is DeliveryOutcome.DEAD_LETTERED
        assert channel.nacked == [(3, False)]
        assert channel.republished == []

    async def test_unknown_event_type_is_acked(self):
        sender = RecordingSender()
        dispatcher = _dispatcher(sender)
        channel = FakeDeliveryChannel()
        body = EventEnvelope.new("user.followed", {"id": 1}).model_dump_json().encode()

        outcome = await dispatcher.handle_delivery(channel, Delivery(delivery_tag=4, body=body))

        assert outcome is DeliveryOutcome.PROCESSED
        assert channel.acked == [4]
        assert sender.sent == []

    async def test_failure_republishes_with_incremented_retry_count(self):
        sender = RecordingSender(failures=1)
        dispatcher = _dispatcher(sender)
        channel = FakeDeliveryChannel()

        outcome = await dispatcher.handle_delivery(
            channel, Delivery(delivery_tag=5, body=_envelope_body(), headers={"trace": "t"})
        )

        assert outcome is DeliveryOutcome.RETRIED
        assert channel.acked == [5]
        assert channel.republished[0].headers == {"trace": "t", RETRY_HEADER: 1}

    async def test_unconfirmed_retry_leaves_original_unacked(self):
        sender = RecordingSender(failures=1)
        dispatcher = _dispatcher(sender)
        channel = FakeDeliveryChannel()
        channel.republish_error = NackError([])

        with pytest.raises(NackError):
            await dispatcher.handle_delivery(
                channel, Delivery(delivery_tag=6, body=_envelope_body())
            )

        assert channel.acked == []
        assert channel.nacked == []
        assert channel.republished == []

    async def test_retry_waits_before_republishing(self, monkeypatch):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        sender = RecordingSender(failures=1)
        dispatcher = _dispatcher(sender)
        dispatcher.retry_delay = 1.0
        monkeypatch.setattr(dispatcher, "_sleep_unless_stopped", fake_sleep)
        channel = FakeDeliveryChannel()

        outcome = await dispatcher.handle_delivery(
            channel, Delivery(delivery_tag=7, body=_envelope_body())
        )

        assert outcome is DeliveryOutcome.RETRIED
        assert delays == [1.0]

    @pytest.mark.parametrize("max_retry", [0, 1, 3])
    async def test_retry_bound_then_dead_letter(self, max_retry):
        sender = RecordingSender(failures=100)
        dispatcher = _dispatcher(sender, max_retry=max_retry)
        channel = FakeDeliveryChannel([Delivery(delivery_tag=1, body=_envelope_body())])

        outcomes = []
        while channel.queue:
            outcomes.append(await dispatcher.handle_delivery(channel, channel.next_delivery()))

        assert outcomes.count(DeliveryOutcome.RETRIED) == max_retry
        assert outcomes[-1] is DeliveryOutcome.DEAD_LETTERED
        assert len(channel.nacked) == 1
        assert channel.nacked[0][1] is False
        assert sender.sent == []

    async def test_transient_failure_then_success(self):
        sender = RecordingSender(failures=2)
        dispatcher = _dispatcher(sender, max_retry=3)
        channel = FakeDeliveryChannel([Delivery(delivery_tag=1, body=_envelope_body())])

        while channel.queue:
            await dispatcher.handle_delivery(channel, channel.next_delivery())

        assert len(sender.sent) == 1
        assert channel.nacked == []


class TestDispatcherLifecycle:
    async def test_run_loop_drains_queue_and_stops(self):
        sender = RecordingSender()
        channel = FakeDeliveryChannel(
            [Delivery(delivery_tag=i, body=_envelope_body(f"evt-{i}")) for i in range(1, 4)]
        )
        dispatcher = _dispatcher(sender, channel=channel)

        await dispatcher.start()
        for _ in range(100):
            if len(channel.acked) == 3:
                break
            await asyncio.sleep(0.01)
        await dispatcher.stop()
        await asyncio.wait_for(dispatcher.wait(), 2)

        assert channel.acked == [1, 2, 3]
        assert len(sender.sent) == 3
        assert channel.closed
        assert not dispatcher.running

    async def test_start_fails_when_broker_unreachable(self):
        def factory():
            raise ConnectionError("broker down")

        dispatcher = EmailDispatcher(
            EMAIL_VERIFY_QUEUE, EmailEventHandler(RecordingSender()), MemoryCache(), factory
        )
        with pytest.raises(ConnectionError):
            await dispatcher.start()
        assert not dispatcher.running


class RecordingTopologyChannel:
    def __init__(self):
        self.calls = []

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self.calls.append((name, kwargs))

        return record


def test_declare_topology_binds_queue_and_dead_letter_queue():
    channel = RecordingTopologyChannel()
    declare_topology(channel, "events", EMAIL_VERIFY_QUEUE)

    names = [name for name, _ in channel.calls]
    assert names == [
        "exchange_declare",
        "queue_declare",
        "queue_bind",
        "queue_declare",
        "queue_bind",
        "basic_qos",
    ]
    dlq_declare = channel.calls[1][1]
    assert dlq_declare["queue"] == "email_verify_queue.dlq"
    work_declare = channel.calls[3][1]
    assert work_declare["queue"] == "email_verify_queue"
    assert work_declare["arguments"] == {
        "x-dead-letter-exchange": "events",
        "x-dead-letter-routing-key": "email.verify.dlq",
    }
    assert channel.calls[4][1]["routing_key"] == "email.verify"
    assert channel.calls[5][1] == {"prefetch_count": 1}


def test_amqp_channel_confirms_retry_copies():
    channel = RecordingTopologyChannel()
    delivery_channel = AmqpDeliveryChannel(
        "amqp://unused",
        "events",
        EMAIL_VERIFY_QUEUE,
        connection_factory=lambda: SimpleNamespace(channel=lambda: channel),
    )

    delivery_channel.republish(
        Delivery(delivery_tag=1, body=b"{}"), {RETRY_HEADER: 1}
    )

    names = [name for name, _ in channel.calls]
    assert names.index("confirm_delivery") < names.index("basic_publish")
    publish = channel.calls[names.index("basic_publish")][1]
    assert publish["mandatory"] is True
    assert publish["routing_key"] == "email_verify_queue"
    assert publish["properties"].headers == {RETRY_HEADER: 1}
