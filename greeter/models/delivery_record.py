"""Per-user, per-occurrence delivery tracking ("message log")."""

import enum
import uuid
from datetime import date, datetime

from sqlalchemy import Date, Enum, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from greeter.models.base import Base, TimestampMixin


class DeliveryStatus(str, enum.Enum):
    """Lifecycle of one greeting occurrence."""

    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class DeliveryRecord(Base, TimestampMixin):
    """Dedup and audit record for one user's greeting on one day.

    The primary key ``{user_id}_{YYYY-MM-DD}`` is the dedup boundary: the
    insert is the claim, so a second insert for the same occurrence fails
    instead of overwriting.
    """

    __tablename__ = "delivery_records"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    occurrence_date: Mapped[date] = mapped_column(Date, index=True)
    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(
            DeliveryStatus,
            values_callable=lambda e: [x.value for x in e],
            name="deliverystatus",
            native_enum=False,
            length=16,
        ),
        default=DeliveryStatus.PENDING,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(default=None)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)
    # Set while one worker has the webhook call in flight
    locked_until: Mapped[datetime | None] = mapped_column(default=None)
    expires_at: Mapped[datetime] = mapped_column(index=True)

    def __repr__(self) -> str:
        return f"<DeliveryRecord {self.key} {self.status.value} attempts={self.attempts}>"
