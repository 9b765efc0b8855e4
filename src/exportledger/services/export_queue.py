"""Export job queue: enqueue, cancel and worker-side state transitions.

An export request is a row in the exports table. It advances through:

    queued -> preparing -> generating -> uploading -> ready
    generating/uploading -> queued   (retry, while failures remain)
    -> failed                        (retry budget spent)
    ready -> expired                 (retention only)
    queued/preparing -> canceled     (external actor only)

Claiming (queued -> preparing) lives in services.claims. This service
covers everything else. Methods flush but never commit; the caller owns
the transaction and, after committing an enqueue, fires the wake hook.

Usage:
    queue = ExportQueueService(session)
    result = await queue.enqueue(org_id, "ledger", filters={"time_range": "7d"})
    await session.commit()
    notify_export_enqueued()
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from exportledger.db.models.base import (
    ACTIVE_EXPORT_STATES,
    CANCELABLE_EXPORT_STATES,
    ExportState,
    ExportType,
)
from exportledger.db.models.exports import ExportJob

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

EXPORT_GENERATION_FAILED = "EXPORT_GENERATION_FAILED"

DEFAULT_MAX_FAILURES = 3

PROGRESS_GENERATING = 10
PROGRESS_UPLOADING = 80
PROGRESS_READY = 100

# Rows that block a duplicate request for the same org/type/work record
IN_PROGRESS_STATES = (ExportState.QUEUED, *ACTIVE_EXPORT_STATES)


class ExportQueueError(Exception):
    """Base exception for export queue operations."""


class ExportNotFoundError(ExportQueueError):
    """Raised when an export does not exist."""


class InvalidExportTypeError(ExportQueueError):
    """Raised when an export request names an unknown type or lacks required inputs."""


class InvalidStateTransitionError(ExportQueueError):
    """Raised when an export cannot move to the requested state."""

    def __init__(self, export_id: uuid.UUID, current: ExportState, target: ExportState) -> None:
        self.export_id = export_id
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move export {export_id} from {current.value} to {target.value}"
        )


@dataclass(frozen=True, slots=True)
class EnqueueResult:
    """Outcome of an enqueue request.

    Attributes:
        export: The new or existing export row.
        deduplicated: True when an existing row was returned instead of inserting.
    """

    export: ExportJob
    deduplicated: bool


# Wake hooks of export workers running in this process
_wake_listeners: list[Callable[[], None]] = []


def add_wake_listener(listener: Callable[[], None]) -> None:
    if listener not in _wake_listeners:
        _wake_listeners.append(listener)


def remove_wake_listener(listener: Callable[[], None]) -> None:
    if listener in _wake_listeners:
        _wake_listeners.remove(listener)


def notify_export_enqueued() -> None:
    """Wake local export workers so a just-committed export is claimed promptly.

    Call after the enqueue transaction commits. Workers in other processes
    still pick the row up on their next poll.
    """
    for listener in list(_wake_listeners):
        listener()


def parse_export_type(value: str | ExportType) -> ExportType:
    """Resolve an export type name.

    Raises:
        InvalidExportTypeError: If the name is not a known export type.
    """
    if isinstance(value, ExportType):
        return value
    try:
        return ExportType(value)
    except ValueError as e:
        valid = ", ".join(t.value for t in ExportType)
        raise InvalidExportTypeError(
            f"Invalid export type '{value}'. Expected one of: {valid}"
        ) from e


class ExportQueueService:
    """Persisted export requests and their state transitions.

    Example:
        queue = ExportQueueService(session)
        result = await queue.enqueue(
            org_id,
            ExportType.PROOF_PACK,
            work_record_id=record_id,
            created_by="user-1",
            idempotency_key="req-abc",
        )
        await session.commit()
    """

    def __init__(self, session: AsyncSession, *, max_failures: int = DEFAULT_MAX_FAILURES) -> None:
        """Initialize the export queue service.

        Args:
            session: SQLAlchemy async session for database operations.
            max_failures: Failure count at which an export is permanently failed.
        """
        self.session = session
        self.max_failures = max_failures

    async def enqueue(
        self,
        organization_id: uuid.UUID,
        export_type: str | ExportType,
        *,
        work_record_id: uuid.UUID | None = None,
        filters: dict[str, Any] | None = None,
        created_by: str | None = None,
        request_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> EnqueueResult:
        """Request an export, reusing an equivalent in-flight or keyed request.

        If the insert loses an idempotency-key race the session is rolled
        back and the winning row is returned, so enqueue should run in its
        own transaction.

        Raises:
            InvalidExportTypeError: If the type is unknown, or a proof pack
                has no work record.
            ExportQueueError: If the database operation fails.
        """
        resolved_type = parse_export_type(export_type)
        if resolved_type == ExportType.PROOF_PACK and work_record_id is None:
            raise InvalidExportTypeError("proof_pack exports require a work_record_id")

        try:
            existing = None
            # Only record-scoped exports are reused while in progress
            if work_record_id is not None:
                existing = await self._find_in_progress(
                    organization_id, resolved_type, work_record_id
                )
            if existing is not None:
                logger.info(
                    "Export already in progress: export_id=%s, org_id=%s, type=%s, state=%s",
                    existing.id,
                    organization_id,
                    resolved_type.value,
                    existing.state.value,
                )
                return EnqueueResult(export=existing, deduplicated=True)

            if idempotency_key:
                keyed = await self._find_by_idempotency_key(organization_id, idempotency_key)
                if keyed is not None:
                    logger.info(
                        "Export deduplicated by idempotency key: export_id=%s, org_id=%s",
                        keyed.id,
                        organization_id,
                    )
                    return EnqueueResult(export=keyed, deduplicated=True)

            job = ExportJob(
                id=uuid.uuid4(),
                organization_id=organization_id,
                export_type=resolved_type.value,
                work_record_id=work_record_id,
                filters=dict(filters or {}),
                state=ExportState.QUEUED,
                progress=0,
                failure_count=0,
                created_by=created_by,
                request_id=request_id,
                idempotency_key=idempotency_key,
            )

            self.session.add(job)
            try:
                await self.session.flush()
            except IntegrityError:
                # A concurrent request with the same key committed first
                await self.session.rollback()
                if not idempotency_key:
                    raise
                keyed = await self._find_by_idempotency_key(organization_id, idempotency_key)
                if keyed is None:
                    raise
                return EnqueueResult(export=keyed, deduplicated=True)

        except SQLAlchemyError as e:
            logger.error(
                "Failed to enqueue export: org_id=%s, type=%s, error=%s",
                organization_id,
                resolved_type.value,
                e,
            )
            raise ExportQueueError(f"Failed to enqueue export: {e}") from e

        logger.info(
            "Export enqueued: export_id=%s, org_id=%s, type=%s, work_record_id=%s, request_id=%s",
            job.id,
            organization_id,
            resolved_type.value,
            work_record_id,
            request_id,
        )
        return EnqueueResult(export=job, deduplicated=False)

    async def get(self, export_id: uuid.UUID) -> ExportJob | None:
        return await self.session.get(ExportJob, export_id)

    async def cancel(self, export_id: uuid.UUID) -> ExportJob:
        """Cancel an export that has not started rendering.

        Raises:
            ExportNotFoundError: If the export does not exist.
            InvalidStateTransitionError: If the export is past preparing.
        """
        job = await self._require(export_id)
        if job.state not in CANCELABLE_EXPORT_STATES:
            raise InvalidStateTransitionError(export_id, job.state, ExportState.CANCELED)

        job.state = ExportState.CANCELED
        await self.session.flush()

        logger.info("Export canceled: export_id=%s, org_id=%s", export_id, job.organization_id)
        return job

    async def active_count(self) -> int:
        """Exports currently claimed by a worker (preparing/generating/uploading)."""
        count = await self.session.scalar(
            select(func.count())
            .select_from(ExportJob)
            .where(ExportJob.state.in_(ACTIVE_EXPORT_STATES))
        )
        return count or 0

    async def mark_generating(self, export_id: uuid.UUID) -> ExportJob:
        return await self._advance(export_id, ExportState.GENERATING, PROGRESS_GENERATING)

    async def mark_uploading(self, export_id: uuid.UUID) -> ExportJob:
        return await self._advance(export_id, ExportState.UPLOADING, PROGRESS_UPLOADING)

    async def mark_ready(
        self,
        export_id: uuid.UUID,
        *,
        storage_path: str,
        manifest_path: str,
        manifest_hash: str,
        manifest: dict[str, Any],
    ) -> ExportJob:
        """Record the finished artifact and make it available.

        Raises:
            ExportNotFoundError: If the export does not exist.
            InvalidStateTransitionError: If the export is already ready.
        """
        job = await self._require(export_id)
        if job.state in (ExportState.READY, ExportState.EXPIRED):
            # Artifact fields are immutable once published
            raise InvalidStateTransitionError(export_id, job.state, ExportState.READY)
        self._warn_if_canceled(job, ExportState.READY)

        job.state = ExportState.READY
        job.progress = PROGRESS_READY
        job.storage_path = storage_path
        job.manifest_path = manifest_path
        job.manifest_hash = manifest_hash
        job.manifest = manifest
        job.completed_at = datetime.now(UTC)
        await self.session.flush()
        return job

    async def record_failure(
        self,
        export_id: uuid.UUID,
        *,
        error_message: str,
        failure_reason: str,
        error_id: str | None = None,
    ) -> ExportJob:
        """Count a failed attempt and requeue, or fail permanently.

        Returns:
            The updated export; its state is QUEUED when another attempt
            will be made and FAILED when the retry budget is spent.

        Raises:
            ExportNotFoundError: If the export does not exist.
        """
        job = await self._require(export_id)
        self._warn_if_canceled(job, ExportState.FAILED)

        failure_count = job.failure_count + 1
        exhausted = failure_count >= self.max_failures

        job.failure_count = failure_count
        job.state = ExportState.FAILED if exhausted else ExportState.QUEUED
        job.error_code = EXPORT_GENERATION_FAILED
        job.error_id = error_id or str(uuid.uuid4())
        job.error_message = error_message
        job.failure_reason = failure_reason
        if not exhausted:
            job.progress = 0
        await self.session.flush()

        if exhausted:
            logger.warning(
                "Export permanently failed: export_id=%s, failures=%d, reason=%s",
                export_id,
                failure_count,
                failure_reason,
            )
        else:
            logger.info(
                "Export requeued after failure: export_id=%s, failures=%d/%d",
                export_id,
                failure_count,
                self.max_failures,
            )
        return job

    async def _advance(self, export_id: uuid.UUID, state: ExportState, progress: int) -> ExportJob:
        job = await self._require(export_id)
        if job.state in (ExportState.READY, ExportState.EXPIRED, ExportState.FAILED):
            raise InvalidStateTransitionError(export_id, job.state, state)
        self._warn_if_canceled(job, state)

        job.state = state
        job.progress = progress
        await self.session.flush()
        return job

    @staticmethod
    def _warn_if_canceled(job: ExportJob, target: ExportState) -> None:
        # Cancellation is best-effort; the worker's write wins
        if job.state == ExportState.CANCELED:
            logger.warning(
                "Overwriting canceled export: export_id=%s, new_state=%s",
                job.id,
                target.value,
            )

    async def _require(self, export_id: uuid.UUID) -> ExportJob:
        job = await self.get(export_id)
        if job is None:
            raise ExportNotFoundError(f"Export not found: {export_id}")
        return job

    async def _find_in_progress(
        self,
        organization_id: uuid.UUID,
        export_type: ExportType,
        work_record_id: uuid.UUID,
    ) -> ExportJob | None:
        query = (
            select(ExportJob)
            .where(
                ExportJob.organization_id == organization_id,
                ExportJob.export_type == export_type.value,
                ExportJob.work_record_id == work_record_id,
                ExportJob.state.in_(IN_PROGRESS_STATES),
            )
            .order_by(ExportJob.created_at.desc())
            .limit(1)
        )

        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def _find_by_idempotency_key(
        self, organization_id: uuid.UUID, idempotency_key: str
    ) -> ExportJob | None:
        result = await self.session.execute(
            select(ExportJob).where(
                ExportJob.organization_id == organization_id,
                ExportJob.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()
