from greeter.schemas.common import CamelModel, ErrorResponse
from greeter.schemas.delivery import DeliveryRecordResponse, GreetingMessage
from greeter.schemas.user import UserCreate, UserResponse, UserUpdate

__all__ = [
    "CamelModel",
    "ErrorResponse",
    "GreetingMessage",
    "DeliveryRecordResponse",
    "UserCreate",
    "UserUpdate",
    "UserResponse",
]
