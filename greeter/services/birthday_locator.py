"""Birthday Locator: which users are due for a greeting right now, or today."""

from datetime import datetime, timedelta

from greeter.core.datetime_utils import (
    aware_utc_now,
    birthday_md_candidates,
    is_birthday_on,
    is_in_greeting_window,
    local_now,
    start_of_local_year,
    to_aware_utc,
)
from greeter.core.logging import get_logger
from greeter.models.user import User
from greeter.services.user_store import UserStore

logger = get_logger(__name__)


class BirthdayLocator:
    """Answers the two locator queries on top of the user store's birthday index.

    - Due-today: the birthday's month/day equals today's month/day in UTC.
      Used by the precise-trigger strategy, which schedules ahead.
    - Due-now: in the user's own timezone it is their birthday and the local
      time is within ``[target, target + window)``, and no greeting has been
      stamped yet this local year.
    """

    def __init__(
        self,
        users: UserStore,
        target_time_local: str,
        window_minutes: int,
    ) -> None:
        self._users = users
        self._target_time_local = target_time_local
        self._window_minutes = window_minutes

    async def due_today(self, now: datetime | None = None) -> list[User]:
        today = to_aware_utc(now).date() if now is not None else aware_utc_now().date()
        users = await self._users.find_by_birthday_md(birthday_md_candidates(today))
        due = [user for user in users if is_birthday_on(user.birthday, today)]
        logger.bind(date=str(today), count=len(due)).debug("users_due_today")
        return due

    async def due_now(self, now: datetime | None = None) -> list[User]:
        reference = to_aware_utc(now) if now is not None else aware_utc_now()
        utc_today = reference.date()

        # Local dates sit within a day of the UTC date, so three MM-DD values cover every zone
        candidates: list[str] = []
        for offset in (-1, 0, 1):
            candidates.extend(birthday_md_candidates(utc_today + timedelta(days=offset)))
        users = await self._users.find_by_birthday_md(sorted(set(candidates)))

        due = []
        for user in users:
            if self._is_due_now(user, reference):
                due.append(user)
                logger.bind(
                    user_id=str(user.id),
                    location=user.location,
                ).debug("user_due_now")

        logger.bind(candidates=len(users), due=len(due)).debug("users_due_now")
        return due

    def _is_due_now(self, user: User, reference: datetime) -> bool:
        local = local_now(user.location, reference)
        if not is_birthday_on(user.birthday, local.date()):
            return False
        if not is_in_greeting_window(
            user.location,
            self._target_time_local,
            self._window_minutes,
            now_utc=reference,
        ):
            return False
        if user.last_greeting_sent_at is not None:
            return user.last_greeting_sent_at < start_of_local_year(user.location, reference)
        return True
