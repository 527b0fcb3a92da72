from fastapi import APIRouter, Query

from greeter.core.errors import NotFoundError
from greeter.dependencies import AppServices
from greeter.models.delivery_record import DeliveryStatus
from greeter.models.queued_message import QueueName
from greeter.schemas.common import CamelModel
from greeter.schemas.delivery import DeliveryRecordResponse

router = APIRouter()


class QueueDepthResponse(CamelModel):
    """Approximate message counts, in flight included."""

    main: int
    dead_letter: int


@router.get("/deliveries/{key}", response_model=DeliveryRecordResponse)
async def get_delivery(key: str, services: AppServices) -> DeliveryRecordResponse:
    """Look up one occurrence by its ``{userId}_{YYYY-MM-DD}`` key."""
    record = await services.tracker.get(key)
    if record is None:
        raise NotFoundError(f"Delivery record {key} not found")
    return DeliveryRecordResponse.model_validate(record)


@router.get("/deliveries", response_model=list[DeliveryRecordResponse])
async def list_deliveries(
    services: AppServices,
    status: DeliveryStatus = Query(default=DeliveryStatus.FAILED),
    limit: int = Query(default=100, ge=1, le=500),
) -> list[DeliveryRecordResponse]:
    records = await services.tracker.list_by_status(status, limit=limit)
    return [DeliveryRecordResponse.model_validate(r) for r in records]


@router.get("/queues", response_model=QueueDepthResponse)
async def queue_depths(services: AppServices) -> QueueDepthResponse:
    return QueueDepthResponse(
        main=await services.transport.approximate_count(QueueName.MAIN),
        dead_letter=await services.transport.approximate_count(QueueName.DEAD_LETTER),
    )
