import uuid

from fastapi import APIRouter, Query, Request, status

from greeter.core.errors import GreeterError
from greeter.core.logging import get_logger
from greeter.core.rate_limit import limiter
from greeter.dependencies import AppServices
from greeter.schemas.user import UserCreate, UserResponse, UserUpdate

logger = get_logger(__name__)

router = APIRouter()


async def _cancel_pending(services: AppServices, user_id: uuid.UUID) -> None:
    """Stop pending greetings after the user changed. The user write already succeeded."""
    try:
        await services.pipeline.cancel_pending_occurrence(user_id)
    except GreeterError as e:
        logger.bind(user_id=str(user_id), error=e.message).error("pending_cancel_failed")


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_user(request: Request, data: UserCreate, services: AppServices) -> UserResponse:
    """Register a user for birthday greetings."""
    user = await services.users.create_user(data)
    return UserResponse.model_validate(user)


@router.get("/users", response_model=list[UserResponse])
async def list_users(
    services: AppServices,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[UserResponse]:
    users = await services.users.list_users(limit=limit, offset=offset)
    return [UserResponse.model_validate(u) for u in users]


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(user_id: uuid.UUID, services: AppServices) -> UserResponse:
    user = await services.users.get_user(user_id)
    return UserResponse.model_validate(user)


@router.api_route("/users/{user_id}", methods=["PATCH", "PUT"], response_model=UserResponse)
async def update_user(user_id: uuid.UUID, data: UserUpdate, services: AppServices) -> UserResponse:
    """
    Partially update a user.

    Changing the birthday or location cancels the pending greetings; if the
    user is still due under the new values, the next poll claims it again.
    """
    change = await services.users.update_user(user_id, data)
    if change.schedule_changed:
        await _cancel_pending(services, user_id)
    return UserResponse.model_validate(change.user)


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(user_id: uuid.UUID, services: AppServices) -> None:
    await services.users.delete_user(user_id)
    await _cancel_pending(services, user_id)
