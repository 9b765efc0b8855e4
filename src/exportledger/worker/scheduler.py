"""In-process scheduler for periodic worker tasks.

Two tasks run alongside the export loop:
- Ledger roots: daily at ledger.root_hour_utc, and once at startup
- Retention: every retention.interval_seconds, starting at startup

Tasks run in the worker process itself rather than through the exports
table; both are idempotent, so several worker processes running the same
schedule is harmless.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from exportledger.core.config import Settings
    from exportledger.services.storage import ObjectStoreClient

logger = logging.getLogger(__name__)

TaskFunc = Callable[[], Awaitable[Any]]

LEDGER_ROOT_TASK = "ledger_roots"
RETENTION_TASK = "export_retention"


@dataclass
class ScheduledTask:
    """A periodic coroutine.

    Exactly one of interval or daily_at_hour must be set.

    Attributes:
        name: Task name used in logs.
        func: Zero-argument coroutine function to run.
        interval: Time between runs.
        daily_at_hour: UTC hour at which to run once a day.
        run_on_startup: Run on the first tick instead of waiting for the
            first scheduled time.
        enabled: Whether the task is considered at all.
        last_run: When the task last started.
        next_run: When the task is next due (set on the first tick).
    """

    name: str
    func: TaskFunc
    interval: timedelta | None = None
    daily_at_hour: int | None = None
    run_on_startup: bool = False
    enabled: bool = True
    last_run: datetime | None = None
    next_run: datetime | None = None

    def __post_init__(self) -> None:
        if (self.interval is None) == (self.daily_at_hour is None):
            msg = f"Task {self.name} needs exactly one of interval or daily_at_hour"
            raise ValueError(msg)
        if self.daily_at_hour is not None and not 0 <= self.daily_at_hour <= 23:
            msg = f"Task {self.name}: daily_at_hour must be 0-23, got {self.daily_at_hour}"
            raise ValueError(msg)

    def compute_next_run(self, now: datetime) -> datetime:
        """Next due time strictly after now."""
        if self.interval is not None:
            return now + self.interval

        candidate = now.replace(hour=self.daily_at_hour, minute=0, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    def is_due(self, now: datetime) -> bool:
        return self.next_run is not None and now >= self.next_run


class Scheduler:
    """Runs due tasks on each tick.

    Example:
        scheduler = Scheduler()
        scheduler.add_task(ScheduledTask(
            name="cleanup",
            func=cleanup,
            interval=timedelta(hours=1),
        ))
        await scheduler.tick()
    """

    def __init__(
        self,
        tasks: list[ScheduledTask] | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._tasks: list[ScheduledTask] = []
        self._clock = clock or (lambda: datetime.now(UTC))
        for task in tasks or []:
            self.add_task(task)

    @property
    def tasks(self) -> list[ScheduledTask]:
        return list(self._tasks)

    def add_task(self, task: ScheduledTask) -> None:
        self._tasks.append(task)
        logger.debug(
            "Added scheduled task: name=%s, interval=%s, daily_at_hour=%s, run_on_startup=%s",
            task.name,
            task.interval,
            task.daily_at_hour,
            task.run_on_startup,
        )

    async def tick(self) -> list[str]:
        """Run every enabled task that is due.

        A failing task is logged and rescheduled as if it had succeeded.

        Returns:
            Names of the tasks that ran.
        """
        now = self._clock()
        ran: list[str] = []

        for task in self._tasks:
            if not task.enabled:
                continue

            if task.next_run is None:
                task.next_run = now if task.run_on_startup else task.compute_next_run(now)
                logger.info(
                    "Scheduled task: name=%s, first_run=%s", task.name, task.next_run.isoformat()
                )

            if not task.is_due(now):
                continue

            task.last_run = now
            task.next_run = task.compute_next_run(now)
            try:
                result = await task.func()
                logger.info(
                    "Scheduled task finished: name=%s, result=%s, next_run=%s",
                    task.name,
                    result,
                    task.next_run.isoformat(),
                )
            except Exception as e:
                logger.exception("Scheduled task failed: name=%s, error=%s", task.name, e)
            ran.append(task.name)

        return ran


async def run_scheduler_loop(
    scheduler: Scheduler,
    *,
    check_interval: float = 30.0,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Tick the scheduler every check_interval seconds until shutdown.

    Args:
        scheduler: Scheduler with its tasks registered.
        check_interval: Seconds between ticks.
        shutdown_event: Event to signal shutdown.
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    logger.info(
        "Scheduler starting: check_interval=%ss, tasks=%d",
        check_interval,
        len(scheduler.tasks),
    )

    while not shutdown_event.is_set():
        try:
            await scheduler.tick()
        except Exception as e:
            logger.exception("Error in scheduler loop: %s", e)

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=check_interval)

    logger.info("Scheduler stopped")


def build_default_tasks(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    storage: ObjectStoreClient,
) -> list[ScheduledTask]:
    """The ledger root and retention tasks, configured from settings."""
    from exportledger.worker.handlers.ledger_root import compute_ledger_roots_task
    from exportledger.worker.handlers.retention import enforce_export_retention_task

    async def ledger_roots() -> int:
        return await compute_ledger_roots_task(session_factory)

    async def retention() -> dict[str, int]:
        return await enforce_export_retention_task(
            session_factory,
            storage,
            bucket=settings.exports.bucket,
            tier_days=settings.retention.tier_days,
            default_tier=settings.retention.default_tier,
            stale_grace_days=settings.retention.stale_grace_days,
        )

    return [
        ScheduledTask(
            name=LEDGER_ROOT_TASK,
            func=ledger_roots,
            daily_at_hour=settings.ledger.root_hour_utc,
            run_on_startup=settings.ledger.compute_root_on_startup,
        ),
        ScheduledTask(
            name=RETENTION_TASK,
            func=retention,
            interval=timedelta(seconds=settings.retention.interval_seconds),
            run_on_startup=True,
        ),
    ]
