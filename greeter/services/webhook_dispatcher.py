"""
Webhook Dispatcher: posts greetings to the external endpoint and records the outcome.

The tracker protocol for a single call is fixed:

1. Read the record (create it if it expired or was never created).
2. Short-circuit when it is already SENT, CANCELLED, or out of attempts.
3. Take the record's lease; if another worker holds it, do not send.
4. POST the payload.
5. Mark SENT only after a 2xx; otherwise mark FAILED. Both count one attempt
   and release the lease.
"""

import enum
from dataclasses import dataclass

import httpx

from greeter.core.errors import ConflictError, NotFoundError, TransientDeliveryError
from greeter.core.logging import get_logger
from greeter.models.delivery_record import DeliveryRecord, DeliveryStatus
from greeter.schemas.delivery import GreetingMessage
from greeter.services.delivery_tracker import DeliveryTracker
from greeter.services.user_store import UserStore

logger = get_logger(__name__)


class DispatchOutcome(str, enum.Enum):
    DELIVERED = "delivered"
    ALREADY_SENT = "already_sent"
    CANCELLED = "cancelled"
    FAILED = "failed"  # attempt failed, attempts remain
    EXHAUSTED = "exhausted"  # no attempts remain, terminal
    IN_FLIGHT = "in_flight"  # another worker holds the lease


@dataclass
class DispatchResult:
    """Result of delivering one greeting occurrence."""

    key: str
    outcome: DispatchOutcome
    attempts: int
    detail: str = ""

    @property
    def success(self) -> bool:
        return self.outcome in (DispatchOutcome.DELIVERED, DispatchOutcome.ALREADY_SENT)

    @property
    def retryable(self) -> bool:
        return self.outcome == DispatchOutcome.FAILED


class WebhookDispatcher:
    """Sends greetings to a single configured HTTP endpoint."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        tracker: DeliveryTracker,
        users: UserStore,
        max_attempts: int,
        timeout_seconds: float,
        lease_seconds: int = 60,
    ) -> None:
        self._client = client
        self._endpoint = endpoint
        self._tracker = tracker
        self._users = users
        self._max_attempts = max_attempts
        self._timeout = httpx.Timeout(timeout_seconds)
        self._lease_seconds = lease_seconds

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def send(self, payload: dict) -> httpx.Response:
        """POST the payload to the webhook endpoint.

        Returns:
            The 2xx response

        Raises:
            TransientDeliveryError: Non-2xx status, timeout, or transport error
        """
        try:
            response = await self._client.post(self._endpoint, json=payload, timeout=self._timeout)
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Webhook timed out: {e!r}") from e
        except httpx.HTTPError as e:
            raise TransientDeliveryError(f"Webhook transport error: {e!r}") from e

        if not response.is_success:
            raise TransientDeliveryError(
                f"Webhook failed with status {response.status_code}",
                status_code=response.status_code,
            )
        return response

    async def deliver(self, message: GreetingMessage) -> DispatchResult:
        """Deliver one occurrence, consulting and updating the tracker around the call."""
        key = message.key
        record = await self._load_record(message)
        settled = self._settled(record)
        if settled is not None:
            return settled

        if await self._tracker.acquire_lease(key, self._lease_seconds, self._max_attempts) is None:
            current = await self._tracker.get(key)
            settled = self._settled(current) if current is not None else None
            if settled is not None:
                return settled
            logger.bind(key=key).info("greeting_delivery_in_flight")
            return DispatchResult(key, DispatchOutcome.IN_FLIGHT, record.attempts)

        try:
            await self.send(message.webhook_payload())
        except TransientDeliveryError as e:
            failed = await self._tracker.advance_status(key, DeliveryStatus.FAILED, error=e.message)
            if failed.attempts >= self._max_attempts:
                logger.bind(
                    key=key,
                    user_id=str(message.user_id),
                    attempts=failed.attempts,
                    error=e.message,
                ).error("greeting_delivery_exhausted")
                return DispatchResult(key, DispatchOutcome.EXHAUSTED, failed.attempts, e.message)

            logger.bind(
                key=key,
                attempts=failed.attempts,
                status_code=e.status_code,
                error=e.message,
            ).warning("greeting_delivery_failed")
            return DispatchResult(key, DispatchOutcome.FAILED, failed.attempts, e.message)

        sent = await self._tracker.advance_status(key, DeliveryStatus.SENT)
        try:
            await self._users.mark_greeting_sent(message.user_id)
        except NotFoundError:
            logger.bind(user_id=str(message.user_id)).debug("greeted_user_since_deleted")

        logger.bind(
            key=key,
            user_id=str(message.user_id),
            location=message.location,
            attempts=sent.attempts,
        ).info("greeting_delivered")
        return DispatchResult(key, DispatchOutcome.DELIVERED, sent.attempts)

    def _settled(self, record: DeliveryRecord) -> DispatchResult | None:
        """Result for a record that must not be sent again, else ``None``."""
        key = record.key
        if record.status == DeliveryStatus.SENT:
            logger.bind(key=key).info("greeting_already_sent")
            return DispatchResult(key, DispatchOutcome.ALREADY_SENT, record.attempts)

        if record.status == DeliveryStatus.CANCELLED:
            logger.bind(key=key).info("greeting_cancelled_skip")
            return DispatchResult(key, DispatchOutcome.CANCELLED, record.attempts)

        if record.attempts >= self._max_attempts:
            logger.bind(key=key, attempts=record.attempts).warning("greeting_attempts_exhausted")
            return DispatchResult(
                key,
                DispatchOutcome.EXHAUSTED,
                record.attempts,
                detail=record.last_error or "max attempts reached",
            )
        return None

    async def _load_record(self, message: GreetingMessage) -> DeliveryRecord:
        record = await self._tracker.get(message.key)
        if record is not None:
            return record

        # Expired/purged, or a path that skipped the claim: recreate before sending
        try:
            return await self._tracker.create(message.user_id, message.occurrence_date)
        except ConflictError:
            record = await self._tracker.get(message.key)
            if record is None:
                raise NotFoundError(f"Delivery record {message.key} vanished") from None
            return record
