"""
APScheduler integration for FastAPI.

Runs the greeting jobs in-process. Schedules live in memory; delivery state
lives in the database, so a restart re-creates the schedules and loses
nothing that matters.

Jobs:
- Greeting poll: finds users whose local 09:00 window is open and enqueues them
- Queue consume: drains the delivery queue into the webhook
- Dead-letter retry: re-attempts failed deliveries, capped per occurrence
- Schedule today: registers precise per-user triggers at 00:00 UTC (precise strategy)
- Record purge: deletes expired delivery records
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any

from apscheduler import AsyncScheduler, ConflictPolicy, JobOutcome, JobReleased
from apscheduler.datastores.memory import MemoryDataStore
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from greeter.config import AppConfig
from greeter.core.database import session_scope
from greeter.core.datetime_utils import parse_local_time, to_naive_utc, utc_now
from greeter.core.logging import get_logger
from greeter.services.trigger_service import PreciseTriggerService

if TYPE_CHECKING:
    from greeter.bootstrap import Services

logger = get_logger(__name__)

# Global scheduler instance
scheduler: AsyncScheduler | None = None

# Services the jobs run against, bound in start_scheduler()
_services: "Services | None" = None


def _require_services() -> "Services":
    if _services is None:
        raise RuntimeError("Scheduler jobs called before start_scheduler()")
    return _services


async def greeting_poll_job() -> None:
    """Polling job - enqueue greetings for users inside their window, then drain the queue."""
    services = _require_services()
    logger.debug("greeting_poll_job_started")
    try:
        cycle = await services.pipeline.run_polling_cycle()
        if cycle.enqueued:
            await services.queue.consume(services.config.queue.consume_max_messages)
    except Exception as e:
        logger.bind(error=str(e)).error("greeting_poll_job_failed")
        raise  # Re-raise so APScheduler records the failure


async def queue_consume_job() -> None:
    """Consume job - picks up messages left behind by crashed or slow consumers."""
    services = _require_services()
    try:
        await services.queue.consume(services.config.queue.consume_max_messages)
    except Exception as e:
        logger.bind(error=str(e)).error("queue_consume_job_failed")
        raise


async def dead_letter_retry_job() -> None:
    """Retry job - gives dead-lettered greetings another attempt."""
    services = _require_services()
    try:
        report = await services.retry_loop.run_cycle()
        if report.received:
            logger.bind(
                delivered=report.delivered,
                removed=report.removed,
                left=report.left,
            ).info("dead_letter_retry_job_completed")
    except Exception as e:
        logger.bind(error=str(e)).error("dead_letter_retry_job_failed")
        raise


async def schedule_today_job() -> None:
    """Precise job - registers one trigger per user whose birthday is today (UTC)."""
    services = _require_services()
    logger.info("schedule_today_job_started")
    try:
        report = await services.pipeline.schedule_due_today()
        logger.bind(registered=report.registered, failed=report.failed).info(
            "schedule_today_job_completed"
        )
    except Exception as e:
        logger.bind(error=str(e)).error("schedule_today_job_failed")
        raise


async def precise_trigger_job(payload: dict) -> None:
    """Callback for a precise trigger: deliver one greeting now."""
    services = _require_services()
    try:
        result = await services.pipeline.deliver_triggered(payload)
        logger.bind(key=result.key, outcome=result.outcome.value).info("precise_trigger_fired")
    except Exception as e:
        logger.bind(error=str(e)).error("precise_trigger_job_failed")
        raise


async def record_purge_job() -> None:
    """Purge job - deletes delivery records past their TTL."""
    services = _require_services()
    try:
        await services.tracker.purge_expired()
    except Exception as e:
        logger.bind(error=str(e)).error("record_purge_job_failed")
        raise


async def _record_job_result(
    job_id: str,
    scheduled_at: datetime,
    started_at: datetime,
    outcome: JobOutcome,
    error: str | None = None,
) -> None:
    """Record job execution result to database."""
    from greeter.models.job_run import JobRun

    services = _require_services()
    async with session_scope(services.database.sessions) as db:
        db.add(
            JobRun(
                job_id=job_id,
                scheduled_at=to_naive_utc(scheduled_at),
                started_at=to_naive_utc(started_at),
                finished_at=utc_now(),
                outcome=outcome.name,
                error=error,
            )
        )


async def start_scheduler(services: "Services", config: AppConfig) -> AsyncScheduler | None:
    """Initialize and start the scheduler with the greeting jobs."""
    global scheduler, _services

    settings = config.settings
    if not settings.scheduler_enabled:
        logger.info("scheduler_disabled_by_config")
        return None

    _services = services
    scheduler = AsyncScheduler(data_store=MemoryDataStore())

    # Start the scheduler first (required before calling other methods in APScheduler 4.x)
    await scheduler.__aenter__()

    # Subscribe to job events for history tracking
    scheduler.subscribe(_on_job_completed)

    job_ids = ["queue_consume", "dead_letter_retry", "record_purge"]

    if settings.delivery_strategy == "precise":
        services.pipeline.triggers = PreciseTriggerService(
            scheduler,
            precise_trigger_job,
            offline_delay_seconds=config.trigger.offline_delay_seconds,
        )
        run_at = parse_local_time(config.trigger.schedule_time_utc)
        await scheduler.add_schedule(
            schedule_today_job,
            CronTrigger(hour=run_at.hour, minute=run_at.minute, timezone="UTC"),
            id="schedule_today",
            conflict_policy=ConflictPolicy.replace,
        )
        # Today's triggers may be missing after a restart; claims make this safe to repeat
        await scheduler.add_job(schedule_today_job)
        job_ids.append("schedule_today")
    else:
        await scheduler.add_schedule(
            greeting_poll_job,
            IntervalTrigger(minutes=config.polling.interval_minutes),
            id="greeting_poll",
            conflict_policy=ConflictPolicy.replace,
        )
        job_ids.append("greeting_poll")

    await scheduler.add_schedule(
        queue_consume_job,
        IntervalTrigger(seconds=config.queue.consume_interval_seconds),
        id="queue_consume",
        conflict_policy=ConflictPolicy.replace,
    )

    await scheduler.add_schedule(
        dead_letter_retry_job,
        IntervalTrigger(minutes=config.retry.interval_minutes),
        id="dead_letter_retry",
        conflict_policy=ConflictPolicy.replace,
    )

    await scheduler.add_schedule(
        record_purge_job,
        IntervalTrigger(hours=config.tracker.purge_interval_hours),
        id="record_purge",
        conflict_policy=ConflictPolicy.replace,
    )

    # Start the scheduler's background worker to actually process jobs
    await scheduler.start_in_background()

    logger.bind(strategy=settings.delivery_strategy, jobs=sorted(job_ids)).info("scheduler_started")
    return scheduler


async def _on_job_completed(event: Any) -> None:
    """Handle job completion events."""
    if isinstance(event, JobReleased):
        try:
            scheduled_at = (
                getattr(event, "scheduled_start", None)
                or getattr(event, "scheduled_fire_time", None)
                or utc_now()
            )
            started_at = getattr(event, "started_at", None) or utc_now()
            error = None
            if event.outcome == JobOutcome.error:
                error = getattr(event, "exception_message", None) or str(
                    getattr(event, "exception", "") or ""
                )
            await _record_job_result(
                job_id=event.schedule_id or "unknown",
                scheduled_at=scheduled_at,
                started_at=started_at,
                outcome=event.outcome,
                error=error or None,
            )
        except Exception as e:
            logger.bind(error=str(e)).error("failed_to_record_job_result")


async def stop_scheduler() -> None:
    """Gracefully stop the scheduler."""
    global scheduler, _services
    if scheduler:
        await scheduler.__aexit__(None, None, None)
        logger.info("scheduler_stopped")
        scheduler = None
    _services = None


async def get_job_schedules() -> list[dict[str, Any]]:
    """Get all registered job schedules."""
    if not scheduler:
        return []

    schedules = await scheduler.get_schedules()
    return [
        {
            "id": s.id,
            "task_id": s.task_id,
            "trigger": str(s.trigger),
            "next_fire_time": s.next_fire_time.isoformat() if s.next_fire_time else None,
            "last_fire_time": s.last_fire_time.isoformat() if s.last_fire_time else None,
        }
        for s in schedules
    ]
