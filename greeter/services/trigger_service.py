"""
Precise triggers: one-shot APScheduler schedules that fire at an exact instant.

Used by the ``precise`` delivery strategy, which registers a trigger per user
for 09:00 local time instead of polling. Schedule ids are the delivery
record keys, so re-registering the same occurrence replaces the trigger.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from apscheduler import AsyncScheduler, ConflictPolicy, ScheduleLookupError
from apscheduler.triggers.date import DateTrigger

from greeter.core.datetime_utils import aware_utc_now, to_aware_utc
from greeter.core.errors import InfrastructureError
from greeter.core.logging import get_logger

logger = get_logger(__name__)

TriggerCallback = Callable[..., Awaitable[Any]]


class PreciseTriggerService:
    def __init__(
        self,
        scheduler: AsyncScheduler,
        callback: TriggerCallback,
        offline_delay_seconds: int | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._callback = callback
        self._offline_delay = offline_delay_seconds

    @property
    def offline(self) -> bool:
        return self._offline_delay is not None

    async def register(self, name: str, instant: datetime, payload: dict) -> datetime:
        """Register a one-shot trigger that calls back with ``payload`` at ``instant``.

        Returns:
            The instant actually scheduled (offline mode fires shortly after now)

        Raises:
            InfrastructureError: If the scheduler rejects the schedule
        """
        run_time = to_aware_utc(instant)
        if self._offline_delay is not None:
            run_time = aware_utc_now() + timedelta(seconds=self._offline_delay)

        try:
            await self._scheduler.add_schedule(
                self._callback,
                DateTrigger(run_time=run_time),
                id=name,
                kwargs={"payload": payload},
                conflict_policy=ConflictPolicy.replace,
            )
        except Exception as e:
            raise InfrastructureError(f"Failed to register trigger {name}: {e}") from e

        logger.bind(trigger=name, run_time=run_time.isoformat()).info("precise_trigger_registered")
        return run_time

    async def cancel(self, name: str) -> bool:
        """Remove a trigger. Best effort: failures are logged, never raised."""
        try:
            await self._scheduler.remove_schedule(name)
        except ScheduleLookupError:
            logger.bind(trigger=name).debug("precise_trigger_not_found")
            return False
        except Exception as e:
            logger.bind(trigger=name, error=str(e)).warning("precise_trigger_cancel_failed")
            return False

        logger.bind(trigger=name).info("precise_trigger_cancelled")
        return True
