"""Job monitoring and manual trigger endpoints."""

from datetime import datetime

from fastapi import APIRouter, Query
from pydantic import BaseModel
from sqlalchemy import select

from greeter.core.database import session_scope
from greeter.core.scheduler import get_job_schedules
from greeter.dependencies import AppServices
from greeter.models.job_run import JobRun
from greeter.schemas.common import CamelModel

router = APIRouter()


class ScheduleResponse(BaseModel):
    """Response model for a job schedule."""

    id: str
    task_id: str
    trigger: str
    next_fire_time: str | None
    last_fire_time: str | None


class JobRunResponse(BaseModel):
    """Response model for a job run."""

    id: str
    job_id: str
    scheduled_at: datetime
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    outcome: str
    error: str | None


class PollResponse(CamelModel):
    due: int
    claimed: int
    already_claimed: int
    enqueued: int
    failed: int
    delivered: int
    dead_lettered: int


class RetryResponse(CamelModel):
    pending: int
    received: int
    delivered: int
    resubmitted: int
    removed: int
    left: int


class ScheduleTodayResponse(CamelModel):
    due: int
    registered: int
    already_claimed: int
    caught_up: int
    failed: int


@router.post("/jobs/poll", response_model=PollResponse)
async def run_poll(services: AppServices) -> PollResponse:
    """
    Run one polling cycle now, then drain the delivery queue.

    Safe to call while the scheduler is running: occurrences are claimed
    through the delivery tracker, so nobody is greeted twice.
    """
    cycle = await services.pipeline.run_polling_cycle()
    consumed = await services.queue.consume(services.config.queue.consume_max_messages)
    return PollResponse(
        due=cycle.due,
        claimed=cycle.claimed,
        already_claimed=cycle.already_claimed,
        enqueued=cycle.enqueued,
        failed=cycle.failed,
        delivered=consumed.delivered,
        dead_lettered=consumed.dead_lettered,
    )


@router.post("/jobs/retry", response_model=RetryResponse)
async def run_retry(services: AppServices) -> RetryResponse:
    """Run one dead-letter retry cycle now."""
    report = await services.retry_loop.run_cycle()
    return RetryResponse(
        pending=report.pending,
        received=report.received,
        delivered=report.delivered,
        resubmitted=report.resubmitted,
        removed=report.removed,
        left=report.left,
    )


@router.post("/jobs/schedule-today", response_model=ScheduleTodayResponse)
async def run_schedule_today(services: AppServices) -> ScheduleTodayResponse:
    """Register today's precise triggers now (precise strategy only)."""
    report = await services.pipeline.schedule_due_today()
    return ScheduleTodayResponse(
        due=report.due,
        registered=report.registered,
        already_claimed=report.already_claimed,
        caught_up=report.caught_up,
        failed=report.failed,
    )


@router.get("/jobs/schedules", response_model=list[ScheduleResponse])
async def list_schedules() -> list[ScheduleResponse]:
    """
    List all registered job schedules.

    Returns schedule information including next/last fire times.
    """
    schedules = await get_job_schedules()
    return [ScheduleResponse(**s) for s in schedules]


@router.get("/jobs/runs", response_model=list[JobRunResponse])
async def list_job_runs(
    services: AppServices,
    job_id: str | None = Query(default=None, description="Filter by job ID"),
    limit: int = Query(default=50, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[JobRunResponse]:
    """List job execution history, newest first."""
    query = select(JobRun).order_by(JobRun.scheduled_at.desc())

    if job_id:
        query = query.where(JobRun.job_id == job_id)

    async with session_scope(services.database.sessions) as db:
        result = await db.execute(query.offset(offset).limit(limit))
        runs = result.scalars().all()

    return [
        JobRunResponse(
            id=run.id,
            job_id=run.job_id,
            scheduled_at=run.scheduled_at,
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_seconds=(run.finished_at - run.started_at).total_seconds(),
            outcome=run.outcome,
            error=run.error,
        )
        for run in runs
    ]
