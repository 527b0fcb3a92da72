"""Error taxonomy shared by the stores, the delivery pipeline and the API.

Callers branch on the exception class, never on the message text:

- ValidationError: malformed input, surfaced to the caller, never retried.
- NotFoundError: user-facing 404; internal cleanup treats it as "nothing to do".
- ConflictError: user-facing 409; for delivery records it means another worker
  already claimed the occurrence.
- TransientDeliveryError: the webhook call failed or timed out.
- InfrastructureError: storage or queue transport failure.
"""


class GreeterError(Exception):
    """Base class for all domain errors."""

    code = "internal_error"
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(GreeterError):
    code = "validation_error"
    http_status = 400


class NotFoundError(GreeterError):
    code = "not_found"
    http_status = 404


class ConflictError(GreeterError):
    code = "conflict"
    http_status = 409


class TransientDeliveryError(GreeterError):
    """Webhook returned a non-2xx response or the call did not complete."""

    code = "delivery_failed"
    http_status = 502

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InfrastructureError(GreeterError):
    code = "infrastructure_error"
    http_status = 500
