"""Tests for the webhook dispatcher and its tracker protocol."""

from datetime import date

import httpx
import pytest

from greeter.core.errors import TransientDeliveryError
from greeter.models.delivery_record import DeliveryStatus
from greeter.schemas.delivery import GreetingMessage
from greeter.services.webhook_dispatcher import DispatchOutcome

pytestmark = pytest.mark.asyncio

OCCURRENCE = date(2024, 3, 15)


async def _claimed_message(services, user) -> GreetingMessage:
    await services.tracker.create(user.id, OCCURRENCE)
    return services.pipeline.build_message(user, OCCURRENCE)


class TestSend:
    async def test_posts_webhook_payload(self, services, webhook, user_factory):
        user = await user_factory(first_name="Ada", last_name="Lovelace", location="Asia/Tokyo")
        message = services.pipeline.build_message(user, OCCURRENCE)

        await services.dispatcher.send(message.webhook_payload())

        assert webhook.payloads == [
            {
                "userId": str(user.id),
                "firstName": "Ada",
                "lastName": "Lovelace",
                "location": "Asia/Tokyo",
                "message": "Hey, Ada Lovelace it's your birthday",
            }
        ]
        assert str(webhook.requests[0].url) == "http://webhook.test/greetings"

    async def test_non_2xx_is_transient(self, services, webhook):
        webhook.default_status = 503

        with pytest.raises(TransientDeliveryError) as exc_info:
            await services.dispatcher.send({"userId": "x"})

        assert exc_info.value.status_code == 503

    async def test_timeout_is_transient(self, services, webhook):
        webhook.fail_with = httpx.ReadTimeout("too slow")

        with pytest.raises(TransientDeliveryError) as exc_info:
            await services.dispatcher.send({"userId": "x"})

        assert exc_info.value.status_code is None


class TestDeliver:
    async def test_success_marks_sent_and_stamps_user(self, services, webhook, user_factory):
        user = await user_factory()
        message = await _claimed_message(services, user)

        result = await services.dispatcher.deliver(message)

        assert result.outcome == DispatchOutcome.DELIVERED
        assert result.success
        record = await services.tracker.get(message.key)
        assert record.status == DeliveryStatus.SENT
        assert record.attempts == 1
        assert (await services.users.get_user(user.id)).last_greeting_sent_at is not None

    async def test_already_sent_short_circuits(self, services, webhook, user_factory):
        user = await user_factory()
        message = await _claimed_message(services, user)
        await services.dispatcher.deliver(message)

        result = await services.dispatcher.deliver(message)

        assert result.outcome == DispatchOutcome.ALREADY_SENT
        assert len(webhook.requests) == 1

    async def test_cancelled_short_circuits(self, services, webhook, user_factory):
        user = await user_factory()
        message = await _claimed_message(services, user)
        await services.tracker.cancel(message.key)

        result = await services.dispatcher.deliver(message)

        assert result.outcome == DispatchOutcome.CANCELLED
        assert webhook.requests == []

    async def test_failure_marks_failed_and_is_retryable(self, services, webhook, user_factory):
        user = await user_factory()
        message = await _claimed_message(services, user)
        webhook.statuses = [500]

        result = await services.dispatcher.deliver(message)

        assert result.outcome == DispatchOutcome.FAILED
        assert result.retryable
        record = await services.tracker.get(message.key)
        assert record.status == DeliveryStatus.FAILED
        assert record.attempts == 1
        assert "500" in record.last_error

    async def test_third_failure_is_terminal(self, services, webhook, user_factory):
        user = await user_factory()
        message = await _claimed_message(services, user)
        webhook.default_status = 500

        outcomes = [(await services.dispatcher.deliver(message)).outcome for _ in range(4)]

        assert outcomes == [
            DispatchOutcome.FAILED,
            DispatchOutcome.FAILED,
            DispatchOutcome.EXHAUSTED,
            DispatchOutcome.EXHAUSTED,
        ]
        # The fourth call never reached the webhook
        assert len(webhook.requests) == 3
        assert (await services.tracker.get(message.key)).attempts == 3

    async def test_missing_record_is_recreated(self, services, webhook, user_factory):
        user = await user_factory()
        message = services.pipeline.build_message(user, OCCURRENCE)

        result = await services.dispatcher.deliver(message)

        assert result.outcome == DispatchOutcome.DELIVERED
        assert (await services.tracker.get(message.key)).status == DeliveryStatus.SENT

    async def test_deleted_user_still_settles_record(self, services, webhook, user_factory):
        user = await user_factory()
        message = await _claimed_message(services, user)
        await services.users.delete_user(user.id)

        result = await services.dispatcher.deliver(message)

        assert result.outcome == DispatchOutcome.DELIVERED
        assert (await services.tracker.get(message.key)).status == DeliveryStatus.SENT

    async def test_held_lease_is_not_sent(self, services, webhook, user_factory):
        user = await user_factory()
        message = await _claimed_message(services, user)
        await services.tracker.acquire_lease(message.key, 60, max_attempts=3)

        result = await services.dispatcher.deliver(message)

        assert result.outcome == DispatchOutcome.IN_FLIGHT
        assert not result.retryable
        assert webhook.requests == []
        assert (await services.tracker.get(message.key)).attempts == 0
