"""Tests for the dead-letter retry loop."""

from datetime import date

import pytest

from greeter.models.delivery_record import DeliveryStatus
from greeter.models.queued_message import QueueName
from greeter.services.retry_loop import RetryLoop

pytestmark = pytest.mark.asyncio

OCCURRENCE = date(2024, 3, 15)


async def _dead_lettered(services, webhook, user):
    """Run one failed delivery through the main queue so it lands in the DLQ."""
    await services.tracker.create(user.id, OCCURRENCE)
    await services.queue.enqueue([services.pipeline.build_message(user, OCCURRENCE)])
    webhook.statuses = [500]
    await services.queue.consume()


class TestRetryLoop:
    async def test_empty_queue_is_a_no_op(self, services, webhook):
        report = await services.retry_loop.run_cycle()

        assert report.pending == 0
        assert report.received == 0
        assert webhook.requests == []

    async def test_successful_retry_removes_message(self, services, webhook, user_factory):
        user = await user_factory()
        await _dead_lettered(services, webhook, user)

        report = await services.retry_loop.run_cycle()

        assert report.delivered == 1
        assert await services.transport.approximate_count(QueueName.DEAD_LETTER) == 0
        record = await services.tracker.get(services.tracker.make_key(user.id, OCCURRENCE))
        assert record.status == DeliveryStatus.SENT
        assert record.attempts == 2

    async def test_failing_retry_stays_until_attempts_exhausted(
        self, services, webhook, user_factory
    ):
        user = await user_factory()
        await _dead_lettered(services, webhook, user)
        webhook.default_status = 500

        second = await services.retry_loop.run_cycle()
        assert second.left == 1
        assert await services.transport.approximate_count(QueueName.DEAD_LETTER) == 1

        third = await services.retry_loop.run_cycle()
        assert third.removed == 1
        assert await services.transport.approximate_count(QueueName.DEAD_LETTER) == 0

        record = await services.tracker.get(services.tracker.make_key(user.id, OCCURRENCE))
        assert record.status == DeliveryStatus.FAILED
        assert record.attempts == 3
        assert len(webhook.requests) == 3

        # Nothing left to retry, and no fourth call
        assert (await services.retry_loop.run_cycle()).pending == 0
        assert len(webhook.requests) == 3

    async def test_retry_count_is_persisted(self, services, webhook, user_factory):
        user = await user_factory()
        await _dead_lettered(services, webhook, user)
        webhook.default_status = 500

        await services.retry_loop.run_cycle()

        [received] = await services.transport.receive(QueueName.DEAD_LETTER, 1, 0)
        assert received.body["retryCount"] == 1

    async def test_batch_size_limits_each_cycle(self, services, webhook, user_factory):
        for i in range(3):
            await services.transport.enqueue(QueueName.DEAD_LETTER, {"garbage": i})
        loop = RetryLoop(services.transport, services.dispatcher, batch_size=2)

        report = await loop.run_cycle()

        assert report.pending == 3
        assert report.received == 2
        assert report.removed == 2

    async def test_resubmit_mode_pushes_back_to_main(self, services, webhook, user_factory):
        user = await user_factory()
        await _dead_lettered(services, webhook, user)
        loop = RetryLoop(
            services.transport,
            services.dispatcher,
            visibility_timeout_seconds=0,
            mode="resubmit",
        )

        report = await loop.run_cycle()

        assert report.resubmitted == 1
        assert await services.transport.approximate_count(QueueName.DEAD_LETTER) == 0
        [received] = await services.transport.receive(QueueName.MAIN, 1, 0)
        assert received.body["retryCount"] == 1
