"""
Greeting pipeline: detection, claiming and hand-off for both delivery strategies.

Polling strategy (default), every few minutes:
    due_now users -> claim occurrence -> enqueue -> (consumer) -> webhook

Precise strategy, once a day at 00:00 UTC:
    due_today users -> claim occurrence -> one-shot trigger at 09:00 local
    -> (trigger fires) -> webhook -> dead-letter queue on failure

Claiming is the tracker's conditional insert, so overlapping cycles and
concurrent workers never produce two messages for one occurrence.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime

import backoff

from greeter.core.datetime_utils import (
    aware_utc_now,
    local_instant_utc,
    parse_local_time,
    to_aware_utc,
)
from greeter.core.errors import ConflictError, GreeterError, InfrastructureError
from greeter.core.logging import get_logger
from greeter.models.delivery_record import DeliveryStatus
from greeter.models.user import User
from greeter.schemas.delivery import GreetingMessage
from greeter.services.birthday_locator import BirthdayLocator
from greeter.services.delivery_queue import DeliveryQueue
from greeter.services.delivery_tracker import DeliveryTracker
from greeter.services.trigger_service import PreciseTriggerService
from greeter.services.webhook_dispatcher import DispatchResult, WebhookDispatcher

logger = get_logger(__name__)


@dataclass
class CycleReport:
    due: int = 0
    claimed: int = 0
    already_claimed: int = 0
    enqueued: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class ScheduleReport:
    due: int = 0
    registered: int = 0
    already_claimed: int = 0
    caught_up: int = 0  # instant already passed, dispatched immediately
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class GreetingPipeline:
    def __init__(
        self,
        locator: BirthdayLocator,
        tracker: DeliveryTracker,
        queue: DeliveryQueue,
        dispatcher: WebhookDispatcher,
        message_template: str,
        target_time_local: str,
        triggers: PreciseTriggerService | None = None,
        register_max_tries: int = 3,
        register_backoff_factor: float = 1.0,
    ) -> None:
        self._locator = locator
        self._tracker = tracker
        self._queue = queue
        self._dispatcher = dispatcher
        self._message_template = message_template
        self._target_time = parse_local_time(target_time_local)
        self.triggers = triggers
        self._register_max_tries = register_max_tries
        self._register_backoff_factor = register_backoff_factor

    def build_message(self, user: User, occurrence_date: date) -> GreetingMessage:
        return GreetingMessage(
            user_id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            location=user.location,
            message=self._message_template.format(
                first_name=user.first_name,
                last_name=user.last_name,
            ),
            occurrence_date=occurrence_date,
        )

    async def claim_occurrence(self, user_id: uuid.UUID, occurrence_date: date) -> bool:
        """Claim a user's greeting for a day. True only for the single winner."""
        try:
            await self._tracker.create(user_id, occurrence_date)
            return True
        except ConflictError:
            key = self._tracker.make_key(user_id, occurrence_date)
            return await self._tracker.reopen(key) is not None

    async def run_polling_cycle(self, now: datetime | None = None) -> CycleReport:
        """Detect due-now users and enqueue one greeting per newly claimed occurrence."""
        reference = to_aware_utc(now) if now is not None else aware_utc_now()
        occurrence_date = reference.date()
        report = CycleReport()

        users = await self._locator.due_now(reference)
        report.due = len(users)

        claimed: list[GreetingMessage] = []
        for user in users:
            try:
                if not await self.claim_occurrence(user.id, occurrence_date):
                    report.already_claimed += 1
                    continue
            except GreeterError as e:
                report.errors.append(f"{user.id}: {e.message}")
                logger.bind(user_id=str(user.id), error=e.message).error("greeting_claim_failed")
                continue
            claimed.append(self.build_message(user, occurrence_date))
        report.claimed = len(claimed)

        if claimed:
            enqueue_report = await self._queue.enqueue(claimed)
            report.enqueued = enqueue_report.enqueued
            for message in enqueue_report.failed:
                report.failed += 1
                await self._mark_handoff_failed(message.key, "enqueue failed", report.errors)

        logger.bind(
            due=report.due,
            claimed=report.claimed,
            already_claimed=report.already_claimed,
            enqueued=report.enqueued,
            failed=report.failed,
        ).info("polling_cycle_complete")
        return report

    async def schedule_due_today(self, now: datetime | None = None) -> ScheduleReport:
        """Register a precise trigger at 09:00 local for each user whose birthday is today."""
        if self.triggers is None:
            raise ConflictError("Precise delivery strategy is not enabled")

        reference = to_aware_utc(now) if now is not None else aware_utc_now()
        occurrence_date = reference.date()
        report = ScheduleReport()

        users = await self._locator.due_today(reference)
        report.due = len(users)

        for user in users:
            key = self._tracker.make_key(user.id, occurrence_date)
            try:
                if not await self.claim_occurrence(user.id, occurrence_date):
                    report.already_claimed += 1
                    continue
            except GreeterError as e:
                report.errors.append(f"{user.id}: {e.message}")
                logger.bind(user_id=str(user.id), error=e.message).error("greeting_claim_failed")
                continue

            message = self.build_message(user, occurrence_date)
            instant = local_instant_utc(occurrence_date, self._target_time, user.location)

            if instant <= reference and not self.triggers.offline:
                # 09:00 local already passed on this date (far-east zones at 00:00 UTC)
                report.caught_up += 1
                try:
                    await self.deliver_triggered(message.model_dump(mode="json", by_alias=True))
                except GreeterError as e:
                    report.errors.append(f"{key}: {e.message}")
                    logger.bind(key=key, error=e.message).error("greeting_catch_up_failed")
                continue

            try:
                await self._register_with_retry(
                    self.triggers, key, instant, message.model_dump(mode="json", by_alias=True)
                )
            except InfrastructureError as e:
                report.failed += 1
                await self._mark_handoff_failed(key, e.message, report.errors)
                continue
            report.registered += 1

        logger.bind(
            date=str(occurrence_date),
            due=report.due,
            registered=report.registered,
            already_claimed=report.already_claimed,
            caught_up=report.caught_up,
            failed=report.failed,
        ).info("precise_schedule_complete")
        return report

    async def deliver_triggered(self, payload: dict) -> DispatchResult:
        """Trigger callback: deliver now, hand retryable failures to the dead-letter queue."""
        message = GreetingMessage.model_validate(payload)
        result = await self._dispatcher.deliver(message)
        if result.retryable:
            await self._queue.dead_letter(message)
        return result

    async def cancel_pending_occurrence(self, user_id: uuid.UUID) -> bool:
        """Cancel every not-yet-sent greeting for a user.

        Called after a delete or a birthday/location change. Covers records
        claimed on an earlier UTC date that still wait for a retry. Trigger
        removal is best effort; the tracker transition is what stops delivery.
        """
        keys = await self._tracker.cancel_for_user(user_id)
        if not keys:
            logger.bind(user_id=str(user_id)).debug("no_pending_occurrence_to_cancel")
            return False

        if self.triggers is not None:
            for key in keys:
                await self.triggers.cancel(key)
        return True

    async def _register_with_retry(
        self,
        triggers: PreciseTriggerService,
        key: str,
        instant: datetime,
        payload: dict,
    ) -> datetime:
        register = backoff.on_exception(
            backoff.expo,
            InfrastructureError,
            max_tries=self._register_max_tries,
            factor=self._register_backoff_factor,
        )(triggers.register)
        return await register(key, instant, payload)

    async def _mark_handoff_failed(self, key: str, reason: str, errors: list[str]) -> None:
        """Surface a claimed occurrence that never reached the queue or a trigger."""
        errors.append(f"{key}: {reason}")
        try:
            await self._tracker.advance_status(
                key, DeliveryStatus.FAILED, error=reason, count_attempt=False
            )
        except GreeterError as e:
            logger.bind(key=key, error=e.message).error("handoff_failure_not_recorded")
            return
        logger.bind(key=key, reason=reason).error("greeting_handoff_failed")
