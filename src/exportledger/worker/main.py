"""Export worker service entry point.

This module provides the ExportWorker that:
- Claims queued exports through the configured claim backend
- Dispatches each export to the renderer for its type
- Wakes early when an export is enqueued in the same process
- Runs the ledger root and retention schedules alongside the export loop
- Handles graceful shutdown via SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, NoReturn

from exportledger.core.config import DEFAULT_LEDGER_SALT, ClaimBackendMode
from exportledger.db.models.base import ExportType
from exportledger.services.claims import AtomicClaimUnavailableError, select_claim_backend
from exportledger.services.diagnostics import DEFAULT_REQUIRED_EVIDENCE
from exportledger.services.export_queue import (
    DEFAULT_MAX_FAILURES,
    add_wake_listener,
    remove_wake_listener,
)
from exportledger.worker.handlers.export import ExportHandlerOptions, ExportOutcome, process_export

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from exportledger.core.config import Settings
    from exportledger.services.renderers import Renderer
    from exportledger.services.storage import ObjectStoreClient

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Configuration for the export worker process.

    Attributes:
        worker_id: Identifier used in logs.
        poll_interval: Seconds to wait for a wake-up when nothing was claimed.
        max_concurrent: Deployment-wide cap on active exports.
        max_failures: Failures after which an export is permanently failed.
        claim_backend: Claim strategy (auto, atomic, optimistic).
        require_atomic_claim: Skip claiming unless the atomic backend works.
        bucket: Bucket for artifacts and manifests.
        required_evidence: Evidence items a proof pack needs.
        ledger_salt: Salt for ledger event hashes.
        scheduler_interval: Seconds between scheduler ticks.
        shutdown_timeout: Seconds to wait for the loops to stop.
    """

    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    poll_interval: float = 5.0
    max_concurrent: int = 3
    max_failures: int = DEFAULT_MAX_FAILURES
    claim_backend: ClaimBackendMode = ClaimBackendMode.AUTO
    require_atomic_claim: bool = False
    bucket: str = "exports"
    required_evidence: int = DEFAULT_REQUIRED_EVIDENCE
    ledger_salt: str = DEFAULT_LEDGER_SALT
    scheduler_interval: float = 30.0
    shutdown_timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkerConfig:
        return cls(
            worker_id=os.environ.get("WORKER_ID", f"worker-{uuid.uuid4().hex[:8]}"),
            poll_interval=settings.exports.poll_interval,
            max_concurrent=settings.exports.max_concurrent,
            max_failures=settings.exports.max_failures,
            claim_backend=settings.exports.claim_backend,
            require_atomic_claim=settings.exports.require_atomic_claim,
            bucket=settings.exports.bucket,
            required_evidence=settings.exports.required_evidence_count,
            ledger_salt=settings.ledger.hash_salt.get_secret_value(),
        )

    def handler_options(self) -> ExportHandlerOptions:
        return ExportHandlerOptions(
            bucket=self.bucket,
            max_failures=self.max_failures,
            required_evidence=self.required_evidence,
            ledger_salt=self.ledger_salt,
        )


class ExportWorker:
    """Claims and processes exports one at a time.

    Several workers, in one process or many, can share the exports table;
    the claim backend guarantees each queued export goes to exactly one of
    them.

    Example:
        worker = ExportWorker(WorkerConfig(), session_factory, storage)
        worker.register_renderer(ExportType.LEDGER, ledger_renderer)
        await worker.start()
    """

    def __init__(
        self,
        config: WorkerConfig,
        session_factory: async_sessionmaker[AsyncSession],
        storage: ObjectStoreClient,
        renderers: Mapping[ExportType | str, Renderer] | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self._session_factory = session_factory
        self._renderers: dict[str, Renderer] = {}
        self._shutdown_event = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._started_at: datetime | None = None
        self._exports_processed = 0
        self._exports_failed = 0

        for export_type, renderer in (renderers or {}).items():
            self.register_renderer(export_type, renderer)

    @property
    def exports_processed(self) -> int:
        return self._exports_processed

    @property
    def exports_failed(self) -> int:
        return self._exports_failed

    def register_renderer(self, export_type: ExportType | str, renderer: Renderer) -> None:
        """Register the renderer for an export type, replacing any previous one."""
        type_str = export_type.value if isinstance(export_type, ExportType) else export_type
        self._renderers[type_str] = renderer
        logger.debug("Registered renderer for export_type=%s", type_str)

    def wake(self) -> None:
        """Cut the current idle wait short."""
        self._wake_event.set()

    async def start(self) -> None:
        """Run the export loop until stop() is called."""
        self._started_at = datetime.now(UTC)
        add_wake_listener(self.wake)
        logger.info(
            "Export worker starting: worker_id=%s, poll_interval=%ss, max_concurrent=%d, "
            "claim_backend=%s, require_atomic_claim=%s, renderers=%s",
            self.config.worker_id,
            self.config.poll_interval,
            self.config.max_concurrent,
            ClaimBackendMode(self.config.claim_backend).value,
            self.config.require_atomic_claim,
            sorted(self._renderers),
        )

        try:
            await self._run_loop()
        finally:
            remove_wake_listener(self.wake)
            self.storage.buckets.reset()
            logger.info(
                "Export worker stopped: worker_id=%s, processed=%d, failed=%d, uptime=%s",
                self.config.worker_id,
                self._exports_processed,
                self._exports_failed,
                self._get_uptime(),
            )

    async def stop(self) -> None:
        """Request graceful shutdown; the export in progress is finished first."""
        logger.info("Export worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()
        self._wake_event.set()

    async def _run_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                outcome = await self.process_next()
            except Exception as e:
                logger.exception("Error in export worker loop: %s", e)
                outcome = None

            # Right after a job, look for the next one without waiting
            if outcome is not None:
                continue

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._wake_event.wait(),
                    timeout=self.config.poll_interval,
                )
            self._wake_event.clear()

    async def process_next(self) -> ExportOutcome | None:
        """Claim and process at most one export.

        Returns:
            The outcome, or None if nothing was claimed.
        """
        async with self._session_factory() as session:
            try:
                backend = select_claim_backend(
                    self.config.claim_backend,
                    self.config.require_atomic_claim,
                    session,
                )
            except AtomicClaimUnavailableError as e:
                logger.critical(
                    "Export claims disabled: worker_id=%s, error=%s",
                    self.config.worker_id,
                    e,
                )
                return None

            job = await backend.claim(session, max_concurrent=self.config.max_concurrent)

        if job is None:
            return None

        outcome = await process_export(
            job,
            session_factory=self._session_factory,
            renderer=self._renderers.get(job.export_type),
            storage=self.storage,
            options=self.config.handler_options(),
        )

        if outcome.succeeded:
            self._exports_processed += 1
        else:
            self._exports_failed += 1
        return outcome

    def _get_uptime(self) -> str:
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        if minutes > 0:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"


# Global shutdown event for signal handlers
_shutdown_event: asyncio.Event | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None:
        _shutdown_event.get_loop().call_soon_threadsafe(_shutdown_event.set)


def _register_default_renderers(worker: ExportWorker) -> None:
    """Register one renderer per export type on a shared PDF generator."""
    # Deferred: WeasyPrint loads native libraries on import
    from exportledger.services.pdf import PDFGenerator
    from exportledger.services.renderers import default_renderers

    renderers = default_renderers(
        PDFGenerator(),
        required_evidence=worker.config.required_evidence,
    )
    for export_type, renderer in renderers.items():
        worker.register_renderer(export_type, renderer)


async def _async_main(settings: Settings, shutdown_event: asyncio.Event) -> None:
    from exportledger.db import close_engine, get_session_factory
    from exportledger.services.storage import ObjectStoreClient
    from exportledger.worker.scheduler import Scheduler, build_default_tasks, run_scheduler_loop

    config = WorkerConfig.from_settings(settings)
    session_factory = get_session_factory()
    storage = ObjectStoreClient.from_settings(settings.s3)

    worker = ExportWorker(config, session_factory, storage)
    _register_default_renderers(worker)
    scheduler = Scheduler(build_default_tasks(settings, session_factory, storage))

    tasks = [
        asyncio.create_task(worker.start()),
        asyncio.create_task(
            run_scheduler_loop(
                scheduler,
                check_interval=config.scheduler_interval,
                shutdown_event=shutdown_event,
            )
        ),
    ]

    try:
        await shutdown_event.wait()
        await worker.stop()
        try:
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=config.shutdown_timeout)
        except TimeoutError:
            logger.warning("Worker did not stop within timeout, forcing shutdown")
            for task in tasks:
                task.cancel()
    finally:
        await close_engine()


def run() -> NoReturn:
    """Run the worker process.

    Sets up logging, installs SIGTERM/SIGINT handlers, then runs the export
    loop and the scheduler until a signal arrives.
    """
    global _shutdown_event

    from exportledger.core.settings import configure_logging, get_settings, startup_summary

    settings = get_settings()
    configure_logging(settings)

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info(
        "Export worker process starting: %s",
        ", ".join(f"{key}={value}" for key, value in startup_summary(settings).items()),
    )

    async def _run_with_event() -> None:
        global _shutdown_event
        _shutdown_event = asyncio.Event()
        await _async_main(settings, _shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("Export worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
