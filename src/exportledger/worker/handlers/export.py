"""Export job handler: render, upload and finalize one claimed export.

The handler runs after a claim has committed the row as preparing. Each
step uses its own short session so a failure never rolls back an earlier,
already-committed transition:

1. preparing -> generating (progress 10), ledger "started" event
2. render via the export type's renderer
3. generating -> uploading (progress 80), upload artifact and manifest
4. uploading -> ready (progress 100), ledger "completed" event

Any exception in steps 1-4 is recorded as a failed attempt in a fresh
session: the row returns to queued, or becomes failed once the retry
budget is spent, and a ledger "failed" event is written.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from exportledger.core.config import DEFAULT_LEDGER_SALT
from exportledger.db.models.base import ExportState
from exportledger.services.diagnostics import DEFAULT_REQUIRED_EVIDENCE, compute_failure_reason
from exportledger.services.export_queue import (
    DEFAULT_MAX_FAILURES,
    EXPORT_GENERATION_FAILED,
    ExportQueueService,
)
from exportledger.services.ledger import LedgerError, LedgerService
from exportledger.services.renderers import (
    RenderError,
    build_manifest,
    manifest_path_for,
    serialize_manifest,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from exportledger.db.models.exports import ExportJob
    from exportledger.services.renderers import Renderer
    from exportledger.services.storage import ObjectStoreClient

logger = logging.getLogger(__name__)

LEDGER_TARGET_TYPE = "export"


@dataclass(frozen=True, slots=True)
class ExportOutcome:
    """Result of processing one claimed export.

    Attributes:
        export_id: The export processed.
        state: Final state after this attempt (READY, QUEUED or FAILED).
        storage_path: Artifact key, when READY.
        manifest_path: Manifest key, when READY.
        manifest_hash: SHA-256 of the uploaded manifest, when READY.
        failure_count: Failures recorded so far.
        failure_reason: User-facing reason, when the attempt failed.
        error_id: Correlation id of the failed attempt.
    """

    export_id: uuid.UUID
    state: ExportState
    storage_path: str | None = None
    manifest_path: str | None = None
    manifest_hash: str | None = None
    failure_count: int = 0
    failure_reason: str | None = None
    error_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == ExportState.READY


@dataclass(frozen=True, slots=True)
class ExportHandlerOptions:
    """Knobs the export handler takes from worker configuration."""

    bucket: str = "exports"
    max_failures: int = DEFAULT_MAX_FAILURES
    required_evidence: int = DEFAULT_REQUIRED_EVIDENCE
    ledger_salt: str = DEFAULT_LEDGER_SALT


async def record_export_event(
    session_factory: async_sessionmaker[AsyncSession],
    job: ExportJob,
    phase: str,
    metadata: dict[str, Any],
    *,
    salt: str = DEFAULT_LEDGER_SALT,
) -> bool:
    """Append export.{type}.{phase} to the ledger in its own transaction.

    Returns:
        True if the event was written. Failures are logged, never raised.
    """
    event_name = f"export.{job.export_type}.{phase}"
    try:
        async with session_factory() as session:
            await LedgerService(session, salt=salt).append(
                organization_id=job.organization_id,
                actor_id=job.created_by,
                event_name=event_name,
                target_type=LEDGER_TARGET_TYPE,
                target_id=str(job.id),
                metadata={
                    "export_type": job.export_type,
                    "work_record_id": str(job.work_record_id) if job.work_record_id else None,
                    **metadata,
                },
            )
            await session.commit()
    except (LedgerError, SQLAlchemyError) as e:
        logger.warning(
            "Failed to write ledger event: export_id=%s, event=%s, error=%s",
            job.id,
            event_name,
            e,
        )
        return False
    return True


async def process_export(
    job: ExportJob,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    renderer: Renderer | None,
    storage: ObjectStoreClient,
    options: ExportHandlerOptions | None = None,
) -> ExportOutcome:
    """Drive one claimed export to ready, or record the failed attempt.

    Args:
        job: The export, already claimed (state preparing).
        session_factory: Factory for the short per-step sessions.
        renderer: Renderer for job.export_type (None records a failure).
        storage: Object store for the artifact and manifest.
        options: Bucket, retry budget and precondition settings.
    """
    options = options or ExportHandlerOptions()

    logger.info(
        "Processing export: export_id=%s, org_id=%s, type=%s, request_id=%s, failure_count=%d",
        job.id,
        job.organization_id,
        job.export_type,
        job.request_id,
        job.failure_count,
    )

    try:
        async with session_factory() as session:
            await ExportQueueService(session).mark_generating(job.id)
            await session.commit()

        await record_export_event(
            session_factory,
            job,
            "started",
            {"filters": job.filters},
            salt=options.ledger_salt,
        )

        if renderer is None:
            raise RenderError(f"Unsupported export type: {job.export_type}")

        async with session_factory() as session:
            result = await renderer(session, job.organization_id, job)

        async with session_factory() as session:
            await ExportQueueService(session).mark_uploading(job.id)
            await session.commit()

        storage.ensure_bucket(options.bucket)
        storage.put(
            options.bucket,
            result.storage_path,
            result.artifact.data,
            result.artifact.content_type,
            metadata={"export-id": str(job.id)},
        )

        manifest = build_manifest(job, result)
        manifest_bytes = serialize_manifest(manifest)
        manifest_hash = hashlib.sha256(manifest_bytes).hexdigest()
        manifest_path = manifest_path_for(result.storage_path)
        storage.put(
            options.bucket,
            manifest_path,
            manifest_bytes,
            "application/json",
            metadata={"export-id": str(job.id)},
        )

        async with session_factory() as session:
            await ExportQueueService(session).mark_ready(
                job.id,
                storage_path=result.storage_path,
                manifest_path=manifest_path,
                manifest_hash=manifest_hash,
                manifest=manifest,
            )
            await session.commit()

    except Exception as e:
        logger.exception(
            "Export attempt failed: export_id=%s, org_id=%s, type=%s, error=%s",
            job.id,
            job.organization_id,
            job.export_type,
            e,
        )
        return await _record_failure(job, e, session_factory=session_factory, options=options)

    await record_export_event(
        session_factory,
        job,
        "completed",
        {
            "storage_path": result.storage_path,
            "manifest_path": manifest_path,
            "manifest_hash": manifest_hash,
            "files": manifest["files"],
            "filters": job.filters,
        },
        salt=options.ledger_salt,
    )

    logger.info(
        "Export completed: export_id=%s, org_id=%s, type=%s, path=%s",
        job.id,
        job.organization_id,
        job.export_type,
        result.storage_path,
    )
    return ExportOutcome(
        export_id=job.id,
        state=ExportState.READY,
        storage_path=result.storage_path,
        manifest_path=manifest_path,
        manifest_hash=manifest_hash,
        failure_count=job.failure_count,
    )


async def _record_failure(
    job: ExportJob,
    error: Exception,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    options: ExportHandlerOptions,
) -> ExportOutcome:
    error_id = str(uuid.uuid4())
    error_message = str(error) or type(error).__name__

    async with session_factory() as session:
        failure_reason = await compute_failure_reason(
            session,
            job,
            error,
            required_evidence=options.required_evidence,
        )
        queue = ExportQueueService(session, max_failures=options.max_failures)
        updated = await queue.record_failure(
            job.id,
            error_message=error_message,
            failure_reason=failure_reason,
            error_id=error_id,
        )
        await session.commit()
        state = updated.state
        failure_count = updated.failure_count

    await record_export_event(
        session_factory,
        job,
        "failed",
        {
            "error_code": EXPORT_GENERATION_FAILED,
            "error_id": error_id,
            "failure_reason": failure_reason,
            "failure_count": failure_count,
            "state": state.value,
            "filters": job.filters,
        },
        salt=options.ledger_salt,
    )

    return ExportOutcome(
        export_id=job.id,
        state=state,
        failure_count=failure_count,
        failure_reason=failure_reason,
        error_id=error_id,
    )
