"""
Composition root: builds the database, HTTP client and services once.

Both the FastAPI lifespan and the CLI commands open services through
``open_services`` so they share one wiring and one shutdown path.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx

from greeter.config import AppConfig
from greeter.core.database import Database
from greeter.core.logging import get_logger
from greeter.services.birthday_locator import BirthdayLocator
from greeter.services.delivery_queue import DeliveryQueue
from greeter.services.delivery_tracker import DeliveryTracker
from greeter.services.greeting_pipeline import GreetingPipeline
from greeter.services.queue_transport import QueueTransport
from greeter.services.retry_loop import RetryLoop
from greeter.services.user_store import UserStore
from greeter.services.webhook_dispatcher import WebhookDispatcher

logger = get_logger(__name__)


@dataclass
class Services:
    config: AppConfig
    database: Database
    http: httpx.AsyncClient
    users: UserStore
    tracker: DeliveryTracker
    locator: BirthdayLocator
    transport: QueueTransport
    dispatcher: WebhookDispatcher
    queue: DeliveryQueue
    retry_loop: RetryLoop
    pipeline: GreetingPipeline


def build_services(config: AppConfig, database: Database, http: httpx.AsyncClient) -> Services:
    """Wire every service from an open database and HTTP client."""
    settings = config.settings

    users = UserStore(database.sessions)
    tracker = DeliveryTracker(database.sessions, config.tracker.record_ttl_hours)
    locator = BirthdayLocator(
        users,
        target_time_local=config.greeting.target_time_local,
        window_minutes=config.greeting.window_minutes,
    )
    transport = QueueTransport(database.sessions)
    dispatcher = WebhookDispatcher(
        http,
        endpoint=settings.webhook_endpoint,
        tracker=tracker,
        users=users,
        max_attempts=config.retry.max_attempts,
        timeout_seconds=settings.webhook_timeout_seconds,
        lease_seconds=config.tracker.lease_seconds,
    )
    queue = DeliveryQueue(
        transport,
        dispatcher,
        batch_size=config.queue.batch_size,
        visibility_timeout_seconds=config.queue.visibility_timeout_seconds,
        seconds_per_message=settings.webhook_timeout_seconds,
    )
    retry_loop = RetryLoop(
        transport,
        dispatcher,
        batch_size=config.retry.batch_size,
        visibility_timeout_seconds=config.queue.visibility_timeout_seconds,
        mode=config.retry.mode,
        seconds_per_message=settings.webhook_timeout_seconds,
    )
    pipeline = GreetingPipeline(
        locator,
        tracker,
        queue,
        dispatcher,
        message_template=config.greeting.message_template,
        target_time_local=config.greeting.target_time_local,
        register_max_tries=config.trigger.register_max_tries,
    )

    return Services(
        config=config,
        database=database,
        http=http,
        users=users,
        tracker=tracker,
        locator=locator,
        transport=transport,
        dispatcher=dispatcher,
        queue=queue,
        retry_loop=retry_loop,
        pipeline=pipeline,
    )


@asynccontextmanager
async def open_services(config: AppConfig) -> AsyncIterator[Services]:
    """Open the database and HTTP client, yield wired services, close both on exit."""
    settings = config.settings
    database = Database.from_url(settings.database_url, echo=settings.debug)
    http = httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)
    logger.bind(
        strategy=settings.delivery_strategy,
        offline=settings.is_offline,
    ).info("services_opened")
    try:
        yield build_services(config, database, http)
    finally:
        await http.aclose()
        await database.close()
        logger.info("services_closed")
