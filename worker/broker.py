from __future__ import annotations

import os
from typing import Optional

from taskiq.events import TaskiqEvents
from taskiq.state import TaskiqState
from taskiq_redis import RedisAsyncResultBackend, RedisStreamBroker

from shared.config import config
from shared.database import close_db, init_db
from shared.logger import get_logger

logger = get_logger(__name__)


def _resolve_redis_url() -> str:
    """Prefer config.redis_url but fall back to REDIS_URL or localhost."""
    configured: Optional[str] = getattr(config, "redis_url", None)
    if configured:
        return configured
    env_value = os.getenv("REDIS_URL")
    if env_value:
        return env_value
    return "redis://localhost:6379/0"


redis_url = _resolve_redis_url()
result_backend = RedisAsyncResultBackend(redis_url=redis_url)
broker = RedisStreamBroker(url=redis_url).with_result_backend(result_backend)

_schedule_scheduler = None
_schedule_supervisor = None


@broker.on_event(TaskiqEvents.WORKER_STARTUP)
async def _on_worker_startup(_: TaskiqState) -> None:
    """Initialize shared resources before processing tasks."""
    from api.schedules.dispatcher import ScheduleDispatcher  # lazy import
    from api.schedules.jobs import ScheduleJobSupervisor
    from api.schedules.scheduler import ScheduleDispatchScheduler

    global _schedule_scheduler, _schedule_supervisor

    logger.info("Initializing Taskiq worker")
    await init_db()

    if config.schedule_dispatcher_enabled:
        logger.info(
            f"Starting schedule dispatcher in worker (strategy={config.schedule_execution_strategy})"
        )
        if config.schedule_execution_strategy == "direct":
            _schedule_supervisor = ScheduleJobSupervisor()
        _schedule_scheduler = ScheduleDispatchScheduler(
            interval_seconds=config.schedule_poll_interval_seconds,
            dispatcher=ScheduleDispatcher(supervisor=_schedule_supervisor),
        )
        await _schedule_scheduler.start()
    else:
        logger.info("Schedule dispatcher disabled via configuration")


@broker.on_event(TaskiqEvents.WORKER_SHUTDOWN)
async def _on_worker_shutdown(_: TaskiqState) -> None:
    """Clean up background services when worker exits."""
    global _schedule_scheduler, _schedule_supervisor

    if _schedule_scheduler:
        logger.info("Stopping schedule dispatcher")
        await _schedule_scheduler.stop()
        _schedule_scheduler = None

    if _schedule_supervisor:
        logger.info(f"Draining {_schedule_supervisor.pending} scheduled jobs")
        await _schedule_supervisor.shutdown()
        _schedule_supervisor = None

    await close_db()
    logger.info("Taskiq worker shutdown complete")


__all__ = ["broker"]
