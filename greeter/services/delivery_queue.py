"""
Delivery Queue: decouples detection from the webhook call.

Producers enqueue GreetingMessages in batches; the consumer receives them,
hands each one to the dispatcher, and either acknowledges it or moves it to
the dead-letter queue for the retry loop.
"""

from dataclasses import dataclass, field

from pydantic import ValidationError as PydanticValidationError

from greeter.core.errors import GreeterError
from greeter.core.logging import get_logger
from greeter.models.queued_message import QueueName
from greeter.schemas.delivery import GreetingMessage
from greeter.services.queue_transport import QueueTransport, ReceivedMessage, receive_limit
from greeter.services.webhook_dispatcher import DispatchOutcome, DispatchResult, WebhookDispatcher

logger = get_logger(__name__)


@dataclass
class EnqueueReport:
    enqueued: int = 0
    failed: list[GreetingMessage] = field(default_factory=list)


@dataclass
class ConsumeReport:
    received: int = 0
    delivered: int = 0
    skipped: int = 0  # already sent, cancelled or exhausted
    dead_lettered: int = 0
    dropped: int = 0  # undecodable bodies
    in_flight: int = 0  # another consumer is sending it, left on the queue
    errors: int = 0  # left for redelivery after the visibility timeout


class DeliveryQueue:
    def __init__(
        self,
        transport: QueueTransport,
        dispatcher: WebhookDispatcher,
        batch_size: int = 200,
        visibility_timeout_seconds: int = 30,
        seconds_per_message: float = 0,
    ) -> None:
        self._transport = transport
        self._dispatcher = dispatcher
        self._batch_size = batch_size
        self._visibility_timeout = visibility_timeout_seconds
        self._receive_size = receive_limit(
            batch_size, visibility_timeout_seconds, seconds_per_message
        )

    async def enqueue(self, messages: list[GreetingMessage]) -> EnqueueReport:
        """Send messages to the main queue in chunks of ``batch_size``."""
        report = EnqueueReport()
        for start in range(0, len(messages), self._batch_size):
            chunk = messages[start : start + self._batch_size]
            bodies = [m.model_dump(mode="json", by_alias=True) for m in chunk]
            batch = await self._transport.enqueue_batch(QueueName.MAIN, bodies)

            report.enqueued += len(batch.succeeded)
            for index, error in batch.failed:
                report.failed.append(chunk[index])
                logger.bind(key=chunk[index].key, error=error).error("greeting_enqueue_failed")

        logger.bind(enqueued=report.enqueued, failed=len(report.failed)).info("greetings_enqueued")
        return report

    async def dead_letter(self, message: GreetingMessage) -> None:
        await self._transport.enqueue(
            QueueName.DEAD_LETTER, message.model_dump(mode="json", by_alias=True)
        )
        logger.bind(key=message.key, retry_count=message.retry_count).warning(
            "greeting_dead_lettered"
        )

    async def dispatch_from_queue(self, received: ReceivedMessage) -> DispatchResult | None:
        """Deliver one received message and settle it on the queue.

        Returns ``None`` for bodies that cannot be decoded; those are dropped.
        """
        try:
            message = GreetingMessage.model_validate(received.body)
        except PydanticValidationError as e:
            logger.bind(message_id=received.id, error=str(e)).error("queue_message_undecodable")
            await self._transport.delete(received.receipt_handle)
            return None

        result = await self._dispatcher.deliver(message)
        if result.outcome == DispatchOutcome.IN_FLIGHT:
            # Left on the queue: once the lease holder is done this copy is skipped or retried
            return result
        if result.retryable:
            # DLQ first: a crash between the two steps redelivers, it never loses
            await self.dead_letter(message)
        await self._transport.delete(received.receipt_handle)
        return result

    async def consume(self, max_messages: int = 500) -> ConsumeReport:
        """Drain up to ``max_messages`` from the main queue.

        A failure on one message never stops the rest of the batch.
        """
        report = ConsumeReport()
        while report.received < max_messages:
            batch = await self._transport.receive(
                QueueName.MAIN,
                min(self._receive_size, max_messages - report.received),
                self._visibility_timeout,
            )
            if not batch:
                break
            report.received += len(batch)

            for received in batch:
                try:
                    result = await self.dispatch_from_queue(received)
                except GreeterError as e:
                    report.errors += 1
                    logger.bind(message_id=received.id, error=e.message).error(
                        "queue_message_dispatch_error"
                    )
                    continue

                if result is None:
                    report.dropped += 1
                elif result.outcome == DispatchOutcome.IN_FLIGHT:
                    report.in_flight += 1
                elif result.retryable:
                    report.dead_lettered += 1
                elif result.outcome == DispatchOutcome.DELIVERED:
                    report.delivered += 1
                else:
                    report.skipped += 1

        if report.received:
            logger.bind(
                received=report.received,
                delivered=report.delivered,
                skipped=report.skipped,
                dead_lettered=report.dead_lettered,
                dropped=report.dropped,
                in_flight=report.in_flight,
                errors=report.errors,
            ).info("queue_consumed")
        return report
