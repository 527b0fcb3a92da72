"""Tests for the precise-trigger strategy: trigger service and daily scheduling."""

from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from apscheduler import ConflictPolicy, ScheduleLookupError
from apscheduler.triggers.date import DateTrigger

from greeter.core.errors import ConflictError, InfrastructureError
from greeter.core.scheduler import precise_trigger_job
from greeter.models.delivery_record import DeliveryStatus
from greeter.models.queued_message import QueueName
from greeter.services.greeting_pipeline import GreetingPipeline
from greeter.services.trigger_service import PreciseTriggerService

pytestmark = pytest.mark.asyncio

MIDNIGHT_UTC = datetime(2024, 3, 15, 0, 0, tzinfo=UTC)
OCCURRENCE = date(2024, 3, 15)


@pytest.fixture
def scheduler():
    return AsyncMock()


@pytest.fixture
def precise_pipeline(services, scheduler):
    triggers = PreciseTriggerService(scheduler, precise_trigger_job)
    return GreetingPipeline(
        services.locator,
        services.tracker,
        services.queue,
        services.dispatcher,
        message_template=services.config.greeting.message_template,
        target_time_local="09:00",
        triggers=triggers,
        register_backoff_factor=0,
    )


class TestPreciseTriggerService:
    async def test_register_adds_one_shot_schedule(self, scheduler):
        triggers = PreciseTriggerService(scheduler, precise_trigger_job)
        instant = datetime(2024, 3, 15, 13, 0, tzinfo=UTC)

        run_time = await triggers.register("user_2024-03-15", instant, {"userId": "user"})

        assert run_time == instant
        scheduler.add_schedule.assert_awaited_once()
        args, kwargs = scheduler.add_schedule.call_args
        assert args[0] is precise_trigger_job
        assert isinstance(args[1], DateTrigger)
        assert kwargs["id"] == "user_2024-03-15"
        assert kwargs["kwargs"] == {"payload": {"userId": "user"}}
        assert kwargs["conflict_policy"] == ConflictPolicy.replace

    async def test_offline_fires_shortly_after_now(self, scheduler):
        triggers = PreciseTriggerService(scheduler, precise_trigger_job, offline_delay_seconds=60)
        far_future = datetime(2099, 1, 1, tzinfo=UTC)

        run_time = await triggers.register("user_2099-01-01", far_future, {})

        assert run_time < datetime.now(UTC) + timedelta(seconds=61)

    async def test_register_failure_is_infrastructure_error(self, scheduler):
        scheduler.add_schedule.side_effect = RuntimeError("data store unavailable")
        triggers = PreciseTriggerService(scheduler, precise_trigger_job)

        with pytest.raises(InfrastructureError):
            await triggers.register("user_2024-03-15", MIDNIGHT_UTC, {})

    async def test_cancel_missing_trigger_is_not_an_error(self, scheduler):
        scheduler.remove_schedule.side_effect = ScheduleLookupError("user_2024-03-15")
        triggers = PreciseTriggerService(scheduler, precise_trigger_job)

        assert await triggers.cancel("user_2024-03-15") is False

    async def test_cancel_existing_trigger(self, scheduler):
        triggers = PreciseTriggerService(scheduler, precise_trigger_job)

        assert await triggers.cancel("user_2024-03-15") is True
        scheduler.remove_schedule.assert_awaited_once_with("user_2024-03-15")


class TestScheduleDueToday:
    async def test_registers_trigger_at_local_nine(
        self, services, scheduler, precise_pipeline, user_factory
    ):
        user = await user_factory(location="America/New_York")

        report = await precise_pipeline.schedule_due_today(MIDNIGHT_UTC)

        assert report.registered == 1
        key = services.tracker.make_key(user.id, OCCURRENCE)
        trigger = scheduler.add_schedule.call_args.args[1]
        assert trigger.run_time == datetime(2024, 3, 15, 13, 0, tzinfo=UTC)
        assert scheduler.add_schedule.call_args.kwargs["id"] == key
        assert (await services.tracker.get(key)).status == DeliveryStatus.PENDING

    async def test_running_twice_registers_once(
        self, services, scheduler, precise_pipeline, user_factory
    ):
        await user_factory(location="America/New_York")

        await precise_pipeline.schedule_due_today(MIDNIGHT_UTC)
        second = await precise_pipeline.schedule_due_today(MIDNIGHT_UTC)

        assert second.already_claimed == 1
        assert scheduler.add_schedule.await_count == 1

    async def test_past_instant_is_delivered_immediately(
        self, services, webhook, scheduler, precise_pipeline, user_factory
    ):
        """09:00 on Mar 15 in Kiritimati (UTC+14) is already over at 00:00 UTC."""
        user = await user_factory(location="Pacific/Kiritimati")

        report = await precise_pipeline.schedule_due_today(MIDNIGHT_UTC)

        assert report.caught_up == 1
        scheduler.add_schedule.assert_not_awaited()
        assert len(webhook.requests) == 1
        record = await services.tracker.get(services.tracker.make_key(user.id, OCCURRENCE))
        assert record.status == DeliveryStatus.SENT

    async def test_registration_failure_marks_record_failed(
        self, services, scheduler, precise_pipeline, user_factory
    ):
        user = await user_factory(location="America/New_York")
        scheduler.add_schedule.side_effect = RuntimeError("data store unavailable")

        report = await precise_pipeline.schedule_due_today(MIDNIGHT_UTC)

        assert report.failed == 1
        assert scheduler.add_schedule.await_count == 3
        record = await services.tracker.get(services.tracker.make_key(user.id, OCCURRENCE))
        assert record.status == DeliveryStatus.FAILED
        assert record.attempts == 0

    async def test_requires_precise_strategy(self, services):
        with pytest.raises(ConflictError):
            await services.pipeline.schedule_due_today(MIDNIGHT_UTC)


class TestDeliverTriggered:
    async def test_failure_goes_to_dead_letter(
        self, services, webhook, precise_pipeline, user_factory
    ):
        user = await user_factory(location="America/New_York")
        await services.tracker.create(user.id, OCCURRENCE)
        message = precise_pipeline.build_message(user, OCCURRENCE)
        webhook.statuses = [502]

        result = await precise_pipeline.deliver_triggered(
            message.model_dump(mode="json", by_alias=True)
        )

        assert result.retryable
        assert await services.transport.approximate_count(QueueName.DEAD_LETTER) == 1

    async def test_cancel_removes_trigger_and_cancels_record(
        self, services, webhook, scheduler, precise_pipeline, user_factory
    ):
        user = await user_factory(location="America/New_York")
        await precise_pipeline.schedule_due_today(MIDNIGHT_UTC)
        key = services.tracker.make_key(user.id, OCCURRENCE)

        cancelled = await precise_pipeline.cancel_pending_occurrence(user.id)

        assert cancelled is True
        scheduler.remove_schedule.assert_awaited_once_with(key)
        assert (await services.tracker.get(key)).status == DeliveryStatus.CANCELLED
