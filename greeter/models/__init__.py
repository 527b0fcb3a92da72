from greeter.models.base import Base
from greeter.models.delivery_record import DeliveryRecord, DeliveryStatus
from greeter.models.job_run import JobRun
from greeter.models.queued_message import QueuedMessage, QueueName
from greeter.models.user import User

__all__ = [
    "Base",
    "User",
    "DeliveryRecord",
    "DeliveryStatus",
    "QueuedMessage",
    "QueueName",
    "JobRun",
]
