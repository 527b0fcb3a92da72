"""
Queue transport backed by the ``queued_messages`` table.

Gives the delivery queue and the dead-letter queue at-least-once semantics:
a received message is hidden for the visibility timeout and reappears unless
it is deleted with the receipt handle from that receive.
"""

import uuid
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greeter.core.database import session_scope
from greeter.core.datetime_utils import utc_now
from greeter.core.errors import InfrastructureError
from greeter.core.logging import get_logger
from greeter.models.queued_message import QueuedMessage, QueueName

logger = get_logger(__name__)


def receive_limit(
    batch_size: int,
    visibility_timeout_seconds: int,
    seconds_per_message: float,
) -> int:
    """Most messages one receive may claim and still settle inside the visibility timeout.

    A consumer works through a received batch one webhook call at a time, so
    a batch larger than this lets its tail reappear for another consumer.
    """
    if seconds_per_message <= 0:
        return batch_size
    return max(1, min(batch_size, int(visibility_timeout_seconds // seconds_per_message)))


@dataclass
class ReceivedMessage:
    id: str
    receipt_handle: str
    body: dict
    receive_count: int


@dataclass
class BatchResult:
    """Per-entry outcome of a batch enqueue. Indexes refer to the input list."""

    succeeded: list[int] = field(default_factory=list)
    failed: list[tuple[int, str]] = field(default_factory=list)


class QueueTransport:
    """Named queues with visibility timeouts on one SQL table."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def enqueue_batch(self, queue: QueueName, bodies: list[dict]) -> BatchResult:
        """Insert each body as its own message.

        Entries are written in separate units of work so a bad entry only
        fails itself.
        """
        result = BatchResult()
        for index, body in enumerate(bodies):
            try:
                async with session_scope(self._sessions) as db:
                    db.add(QueuedMessage(queue=queue, body=body, visible_at=utc_now()))
            except InfrastructureError as e:
                result.failed.append((index, e.message))
                continue
            result.succeeded.append(index)
        return result

    async def enqueue(self, queue: QueueName, body: dict) -> None:
        batch = await self.enqueue_batch(queue, [body])
        if batch.failed:
            raise InfrastructureError(f"Failed to enqueue to {queue.value}: {batch.failed[0][1]}")

    async def receive(
        self,
        queue: QueueName,
        max_count: int,
        visibility_timeout_seconds: int,
    ) -> list[ReceivedMessage]:
        """Claim up to ``max_count`` visible messages.

        Each claim is a conditional UPDATE on ``visible_at``, so a message
        another consumer claimed between our SELECT and UPDATE is skipped.
        """
        now = utc_now()
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                select(QueuedMessage.id)
                .where(QueuedMessage.queue == queue, QueuedMessage.visible_at <= now)
                .order_by(QueuedMessage.created_at)
                .limit(max_count)
            )
            candidate_ids = list(result.scalars().all())

        received: list[ReceivedMessage] = []
        hidden_until = now + timedelta(seconds=visibility_timeout_seconds)
        for message_id in candidate_ids:
            handle = str(uuid.uuid4())
            async with session_scope(self._sessions) as db:
                claimed = await db.execute(
                    update(QueuedMessage)
                    .where(QueuedMessage.id == message_id, QueuedMessage.visible_at <= now)
                    .values(
                        receipt_handle=handle,
                        receive_count=QueuedMessage.receive_count + 1,
                        visible_at=hidden_until,
                    )
                    .returning(QueuedMessage.body, QueuedMessage.receive_count)
                    .execution_options(synchronize_session=False)
                )
                row = claimed.one_or_none()
            if row is None:
                continue
            received.append(
                ReceivedMessage(
                    id=message_id,
                    receipt_handle=handle,
                    body=row.body,
                    receive_count=row.receive_count,
                )
            )

        if received:
            logger.bind(queue=queue.value, count=len(received)).debug("queue_messages_received")
        return received

    async def delete(self, receipt_handle: str) -> bool:
        """Acknowledge a message. False if the handle is stale (message re-received or gone)."""
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                delete(QueuedMessage).where(QueuedMessage.receipt_handle == receipt_handle)
            )
            return (result.rowcount or 0) > 0

    async def update_body(self, receipt_handle: str, body: dict) -> bool:
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                update(QueuedMessage)
                .where(QueuedMessage.receipt_handle == receipt_handle)
                .values(body=body)
                .execution_options(synchronize_session=False)
            )
            return (result.rowcount or 0) > 0

    async def approximate_count(self, queue: QueueName) -> int:
        """Messages in the queue, visible or in flight."""
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                select(func.count()).select_from(QueuedMessage).where(QueuedMessage.queue == queue)
            )
            return result.scalar_one()

