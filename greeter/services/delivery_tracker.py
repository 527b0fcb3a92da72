"""Delivery Tracker: the single source of truth for "has this user been greeted".

All mutual exclusion in the pipeline happens here, through conditional writes:

- ``create`` inserts on the primary key, so only one worker can claim an
  occurrence; everyone else gets ``ConflictError``.
- ``acquire_lease`` is a conditional UPDATE on ``locked_until``, so only one
  worker at a time has the webhook call for an occurrence in flight.
- ``advance_status`` is one ``UPDATE ... WHERE key = :key`` that increments
  ``attempts`` in the database and releases the lease.
"""

import uuid
from datetime import date, datetime, timedelta

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from greeter.core.database import session_scope
from greeter.core.datetime_utils import utc_now
from greeter.core.errors import ConflictError, NotFoundError
from greeter.core.logging import get_logger
from greeter.models.delivery_record import DeliveryRecord, DeliveryStatus

logger = get_logger(__name__)


class DeliveryTracker:
    """Durable per-user, per-day record of greeting attempts and outcome."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        record_ttl_hours: int,
    ) -> None:
        self._sessions = sessions
        self._ttl = timedelta(hours=record_ttl_hours)

    @staticmethod
    def make_key(user_id: uuid.UUID | str, occurrence_date: date) -> str:
        return f"{user_id}_{occurrence_date.isoformat()}"

    async def create(self, user_id: uuid.UUID, occurrence_date: date) -> DeliveryRecord:
        """Claim an occurrence. Fails with ``ConflictError`` if already claimed."""
        key = self.make_key(user_id, occurrence_date)
        now = utc_now()
        record = DeliveryRecord(
            key=key,
            user_id=user_id,
            occurrence_date=occurrence_date,
            status=DeliveryStatus.PENDING,
            attempts=0,
            created_at=now,
            updated_at=now,
            expires_at=now + self._ttl,
        )
        try:
            async with session_scope(self._sessions) as db:
                db.add(record)
                await db.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"Delivery record already exists for user {user_id} on {occurrence_date}"
            ) from e

        logger.bind(key=key).debug("delivery_record_created")
        return record

    async def get(self, key: str) -> DeliveryRecord | None:
        async with session_scope(self._sessions) as db:
            return await db.get(DeliveryRecord, key)

    async def advance_status(
        self,
        key: str,
        status: DeliveryStatus,
        *,
        error: str | None = None,
        count_attempt: bool = True,
    ) -> DeliveryRecord:
        """Set the status of an existing record.

        Args:
            key: Record key
            status: New status
            error: Failure detail to store (cleared on success)
            count_attempt: Whether this transition was caused by a delivery
                attempt. Cancellations and enqueue/registration failures
                don't count against the cap.

        Raises:
            NotFoundError: If the record does not exist (expired or purged)
        """
        now = utc_now()
        values: dict = {
            "status": status,
            "updated_at": now,
            "last_error": error,
            "locked_until": None,
        }
        if count_attempt:
            values["attempts"] = DeliveryRecord.attempts + 1
            values["last_attempt_at"] = now

        async with session_scope(self._sessions) as db:
            result = await db.execute(
                update(DeliveryRecord)
                .where(DeliveryRecord.key == key)
                .values(**values)
                .returning(DeliveryRecord)
                .execution_options(synchronize_session=False)
            )
            record = result.scalar_one_or_none()
            if record is None:
                raise NotFoundError(f"Delivery record {key} not found")

        logger.bind(key=key, status=status.value, attempts=record.attempts).debug(
            "delivery_status_advanced"
        )
        return record

    async def acquire_lease(
        self,
        key: str,
        lease_seconds: int,
        max_attempts: int,
        now: datetime | None = None,
    ) -> DeliveryRecord | None:
        """Reserve an occurrence for one webhook call.

        Succeeds only for a PENDING or FAILED record with attempts left and no
        live lease. Returns ``None`` otherwise; the caller must not send.
        """
        now = now or utc_now()
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                update(DeliveryRecord)
                .where(
                    DeliveryRecord.key == key,
                    DeliveryRecord.status.in_([DeliveryStatus.PENDING, DeliveryStatus.FAILED]),
                    DeliveryRecord.attempts < max_attempts,
                    or_(DeliveryRecord.locked_until.is_(None), DeliveryRecord.locked_until < now),
                )
                .values(locked_until=now + timedelta(seconds=lease_seconds))
                .returning(DeliveryRecord)
                .execution_options(synchronize_session=False)
            )
            record = result.scalar_one_or_none()

        if record is not None:
            logger.bind(key=key).debug("delivery_lease_acquired")
        return record

    async def reopen(self, key: str) -> DeliveryRecord | None:
        """Move a record that never reached the webhook back to PENDING.

        Applies to CANCELLED records and to FAILED records with no counted
        attempt (the enqueue or trigger registration failed). Returns ``None``
        for anything else, so two workers racing to reopen the same
        occurrence get exactly one winner.
        """
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                update(DeliveryRecord)
                .where(
                    DeliveryRecord.key == key,
                    or_(
                        DeliveryRecord.status == DeliveryStatus.CANCELLED,
                        and_(
                            DeliveryRecord.status == DeliveryStatus.FAILED,
                            DeliveryRecord.attempts == 0,
                        ),
                    ),
                )
                .values(status=DeliveryStatus.PENDING, updated_at=utc_now(), last_error=None)
                .returning(DeliveryRecord)
                .execution_options(synchronize_session=False)
            )
            record = result.scalar_one_or_none()

        if record is not None:
            logger.bind(key=key).info("delivery_record_reopened")
        return record

    async def cancel(self, key: str) -> DeliveryRecord | None:
        """Mark a PENDING or FAILED record CANCELLED without counting an attempt.

        Returns ``None`` when the record is missing or already SENT/CANCELLED.
        """
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                update(DeliveryRecord)
                .where(
                    DeliveryRecord.key == key,
                    DeliveryRecord.status.in_([DeliveryStatus.PENDING, DeliveryStatus.FAILED]),
                )
                .values(status=DeliveryStatus.CANCELLED, updated_at=utc_now())
                .returning(DeliveryRecord)
                .execution_options(synchronize_session=False)
            )
            record = result.scalar_one_or_none()

        if record is not None:
            logger.bind(key=key).info("delivery_record_cancelled")
        return record

    async def cancel_for_user(self, user_id: uuid.UUID) -> list[str]:
        """Cancel every PENDING or FAILED record of a user, whatever its date.

        Returns the keys that were cancelled.
        """
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                update(DeliveryRecord)
                .where(
                    DeliveryRecord.user_id == user_id,
                    DeliveryRecord.status.in_([DeliveryStatus.PENDING, DeliveryStatus.FAILED]),
                )
                .values(status=DeliveryStatus.CANCELLED, updated_at=utc_now())
                .returning(DeliveryRecord.key)
                .execution_options(synchronize_session=False)
            )
            keys = list(result.scalars().all())

        if keys:
            logger.bind(user_id=str(user_id), keys=keys).info("delivery_records_cancelled")
        return keys

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete records past their expiry. Returns the number removed."""
        cutoff = now or utc_now()
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                delete(DeliveryRecord).where(DeliveryRecord.expires_at < cutoff)
            )
            purged = result.rowcount or 0

        if purged:
            logger.bind(purged=purged).info("delivery_records_purged")
        return purged

    async def list_by_status(
        self, status: DeliveryStatus, limit: int = 100
    ) -> list[DeliveryRecord]:
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                select(DeliveryRecord)
                .where(DeliveryRecord.status == status)
                .order_by(DeliveryRecord.updated_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
