import uuid
from datetime import date, datetime

from pydantic import Field

from greeter.models.delivery_record import DeliveryStatus
from greeter.schemas.common import CamelModel


class GreetingMessage(CamelModel):
    """One queued greeting: the webhook payload plus its occurrence bookkeeping."""

    user_id: uuid.UUID
    first_name: str
    last_name: str
    location: str
    message: str
    occurrence_date: date
    retry_count: int = 0

    @property
    def key(self) -> str:
        return f"{self.user_id}_{self.occurrence_date.isoformat()}"

    def webhook_payload(self) -> dict:
        """JSON body posted to the webhook endpoint."""
        return {
            "userId": str(self.user_id),
            "firstName": self.first_name,
            "lastName": self.last_name,
            "location": self.location,
            "message": self.message,
        }


class DeliveryRecordResponse(CamelModel):
    """Delivery record as returned by the API."""

    key: str
    user_id: uuid.UUID
    occurrence_date: date
    status: DeliveryStatus
    attempts: int = Field(ge=0)
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
