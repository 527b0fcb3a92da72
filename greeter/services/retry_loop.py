"""
Dead-letter retry loop.

Periodically drains a small batch from the dead-letter queue and gives each
greeting another delivery attempt. The attempt cap lives on the delivery
record, so a message that keeps failing is dropped once its record is
exhausted no matter how many times it cycles through here.
"""

from dataclasses import dataclass

from pydantic import ValidationError as PydanticValidationError

from greeter.core.errors import GreeterError
from greeter.core.logging import get_logger
from greeter.models.queued_message import QueueName
from greeter.schemas.delivery import GreetingMessage
from greeter.services.queue_transport import QueueTransport, receive_limit
from greeter.services.webhook_dispatcher import DispatchOutcome, WebhookDispatcher

logger = get_logger(__name__)


@dataclass
class RetryReport:
    pending: int = 0  # approximate DLQ depth at the start of the cycle
    received: int = 0
    delivered: int = 0
    resubmitted: int = 0
    removed: int = 0  # settled without a successful send
    left: int = 0  # still failing, stays in the DLQ


class RetryLoop:
    def __init__(
        self,
        transport: QueueTransport,
        dispatcher: WebhookDispatcher,
        batch_size: int = 10,
        visibility_timeout_seconds: int = 30,
        mode: str = "deliver",
        seconds_per_message: float = 0,
    ) -> None:
        self._transport = transport
        self._dispatcher = dispatcher
        self._batch_size = receive_limit(
            batch_size, visibility_timeout_seconds, seconds_per_message
        )
        self._visibility_timeout = visibility_timeout_seconds
        self._mode = mode

    async def run_cycle(self) -> RetryReport:
        report = RetryReport()
        report.pending = await self._transport.approximate_count(QueueName.DEAD_LETTER)
        if report.pending == 0:
            logger.debug("dead_letter_queue_empty")
            return report

        batch = await self._transport.receive(
            QueueName.DEAD_LETTER, self._batch_size, self._visibility_timeout
        )
        report.received = len(batch)

        for received in batch:
            try:
                message = GreetingMessage.model_validate(received.body)
            except PydanticValidationError as e:
                logger.bind(message_id=received.id, error=str(e)).error(
                    "dead_letter_message_undecodable"
                )
                await self._transport.delete(received.receipt_handle)
                report.removed += 1
                continue

            message = message.model_copy(update={"retry_count": message.retry_count + 1})
            try:
                if self._mode == "resubmit":
                    await self._resubmit(message, received.receipt_handle, report)
                else:
                    await self._redeliver(message, received.receipt_handle, report)
            except GreeterError as e:
                report.left += 1
                logger.bind(key=message.key, error=e.message).error("dead_letter_retry_error")

        logger.bind(
            pending=report.pending,
            received=report.received,
            delivered=report.delivered,
            resubmitted=report.resubmitted,
            removed=report.removed,
            left=report.left,
        ).info("dead_letter_cycle_complete")
        return report

    async def _redeliver(self, message: GreetingMessage, handle: str, report: RetryReport) -> None:
        await self._transport.update_body(handle, message.model_dump(mode="json", by_alias=True))
        result = await self._dispatcher.deliver(message)

        if result.outcome == DispatchOutcome.IN_FLIGHT:
            report.left += 1
            return

        if result.retryable:
            report.left += 1
            logger.bind(
                key=message.key,
                attempts=result.attempts,
                retry_count=message.retry_count,
            ).warning("dead_letter_retry_failed")
            return

        await self._transport.delete(handle)
        if result.outcome == DispatchOutcome.DELIVERED:
            report.delivered += 1
            return

        report.removed += 1
        if result.outcome == DispatchOutcome.EXHAUSTED:
            logger.bind(
                key=message.key,
                attempts=result.attempts,
                error=result.detail,
            ).error("dead_letter_greeting_abandoned")

    async def _resubmit(self, message: GreetingMessage, handle: str, report: RetryReport) -> None:
        body = message.model_dump(mode="json", by_alias=True)
        await self._transport.enqueue(QueueName.MAIN, body)
        await self._transport.delete(handle)
        report.resubmitted += 1
        logger.bind(key=message.key, retry_count=message.retry_count).info(
            "dead_letter_resubmitted"
        )
