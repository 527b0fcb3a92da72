"""User storage: CRUD with conditional writes and the birthday index query."""

import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from greeter.core.database import session_scope
from greeter.core.datetime_utils import is_valid_timezone, month_day, utc_now
from greeter.core.errors import ConflictError, NotFoundError, ValidationError
from greeter.core.logging import get_logger
from greeter.models.user import User
from greeter.schemas.user import UserCreate, UserUpdate

logger = get_logger(__name__)


@dataclass
class UserChange:
    """Result of a partial update."""

    user: User
    schedule_changed: bool  # birthday or location changed


class UserStore:
    """Reads and writes users.

    Every mutation is conditional on the row's existence so concurrent deletes
    surface as ``NotFoundError`` instead of silently creating or losing rows.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def create_user(self, data: UserCreate, user_id: uuid.UUID | None = None) -> User:
        if not is_valid_timezone(data.location):
            raise ValidationError(f"Invalid location: {data.location}")

        user = User(
            id=user_id or uuid.uuid4(),
            first_name=data.first_name,
            last_name=data.last_name,
            birthday=data.birthday,
            birthday_md=month_day(data.birthday),
            location=data.location,
        )
        try:
            async with session_scope(self._sessions) as db:
                db.add(user)
                await db.flush()
        except IntegrityError as e:
            raise ConflictError(f"User with ID {user.id} already exists") from e

        logger.bind(user_id=str(user.id), location=user.location).info("user_created")
        return user

    async def get_user(self, user_id: uuid.UUID) -> User:
        async with session_scope(self._sessions) as db:
            user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def list_users(self, limit: int = 50, offset: int = 0) -> list[User]:
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                select(User).order_by(User.created_at, User.id).offset(offset).limit(limit)
            )
            return list(result.scalars().all())

    async def update_user(self, user_id: uuid.UUID, data: UserUpdate) -> UserChange:
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if "location" in changes and not is_valid_timezone(changes["location"]):
            raise ValidationError(f"Invalid location: {changes['location']}")
        if "birthday" in changes:
            changes["birthday_md"] = month_day(changes["birthday"])

        async with session_scope(self._sessions) as db:
            current = await db.get(User, user_id)
            if current is None:
                raise NotFoundError(f"User {user_id} not found")
            schedule_changed = (
                "birthday" in changes and changes["birthday"] != current.birthday
            ) or ("location" in changes and changes["location"] != current.location)

            for field, value in changes.items():
                setattr(current, field, value)
            current.updated_at = utc_now()
            try:
                await db.flush()
            except StaleDataError as e:
                # Row deleted between the read and the write
                raise NotFoundError(f"User {user_id} not found") from e

        logger.bind(
            user_id=str(user_id),
            fields=sorted(changes),
            schedule_changed=schedule_changed,
        ).info("user_updated")
        return UserChange(user=current, schedule_changed=schedule_changed)

    async def delete_user(self, user_id: uuid.UUID) -> None:
        async with session_scope(self._sessions) as db:
            result = await db.execute(delete(User).where(User.id == user_id))
            if result.rowcount == 0:
                raise NotFoundError(f"User {user_id} not found")

        logger.bind(user_id=str(user_id)).info("user_deleted")

    async def find_by_birthday_md(self, birthday_mds: list[str]) -> list[User]:
        """Users whose MM-DD birthday index matches any of the given values."""
        if not birthday_mds:
            return []
        async with session_scope(self._sessions) as db:
            result = await db.execute(select(User).where(User.birthday_md.in_(birthday_mds)))
            return list(result.scalars().all())

    async def mark_greeting_sent(self, user_id: uuid.UUID, sent_at: datetime | None = None) -> None:
        async with session_scope(self._sessions) as db:
            result = await db.execute(
                update(User)
                .where(User.id == user_id)
                .values(last_greeting_sent_at=sent_at or utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"User {user_id} not found")
