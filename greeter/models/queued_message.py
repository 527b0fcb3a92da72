"""Rows backing the delivery queue and its dead-letter holding area."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from greeter.core.datetime_utils import utc_now
from greeter.models.base import Base


class QueueName(str, enum.Enum):
    MAIN = "main"
    DEAD_LETTER = "dead_letter"


class QueuedMessage(Base):
    """A greeting waiting to be dispatched.

    ``visible_at`` implements the visibility timeout: a received message is
    hidden until then, after which another receive can claim it again.
    """

    __tablename__ = "queued_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    queue: Mapped[QueueName] = mapped_column(
        Enum(
            QueueName,
            values_callable=lambda e: [x.value for x in e],
            name="queuename",
            native_enum=False,
            length=16,
        ),
        index=True,
    )
    body: Mapped[dict] = mapped_column(JSON)
    receipt_handle: Mapped[str | None] = mapped_column(String(36), default=None, index=True)
    receive_count: Mapped[int] = mapped_column(Integer, default=0)
    visible_at: Mapped[datetime] = mapped_column(default=utc_now, index=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now)

    def __repr__(self) -> str:
        return f"<QueuedMessage {self.id} queue={self.queue.value}>"
