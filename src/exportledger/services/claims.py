"""Exactly-once claiming of queued exports.

Several worker processes poll the same exports table. Whichever backend is
in use, a queued row moves to preparing for exactly one claimant, and no
claim is made while max_concurrent exports are already active.

Backends:
- AtomicClaimBackend: one transaction serialized by an advisory lock,
  picking the oldest queued row with SELECT ... FOR UPDATE SKIP LOCKED.
  Requires PostgreSQL.
- OptimisticClaimBackend: reads the oldest queued row, then claims it with
  UPDATE ... WHERE id = ? AND state = 'queued'. Losing the race updates
  zero rows and the worker backs off until the next cycle. The concurrency
  cap is advisory under this backend (two workers can both pass the check).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from exportledger.core.config import ClaimBackendMode
from exportledger.db.models.base import ACTIVE_EXPORT_STATES, ExportState
from exportledger.db.models.exports import ExportJob

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# pg_advisory_xact_lock key shared by every export claimer
EXPORT_CLAIM_LOCK_KEY = 0x6578706F7274


class ClaimError(Exception):
    """Raised when the claim query itself fails."""


class AtomicClaimUnavailableError(ClaimError):
    """Raised when the atomic backend is required but the database cannot provide it."""


def dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


async def count_active_exports(session: AsyncSession) -> int:
    count = await session.scalar(
        select(func.count()).select_from(ExportJob).where(ExportJob.state.in_(ACTIVE_EXPORT_STATES))
    )
    return count or 0


class ClaimBackend(ABC):
    """Claims at most one queued export per call."""

    name: str = "abstract"

    @abstractmethod
    async def claim(self, session: AsyncSession, *, max_concurrent: int) -> ExportJob | None:
        """Move the oldest queued export to preparing and return it.

        The claim is committed before returning. Returns None when nothing
        is queued, the concurrency cap is reached, or another worker won.

        Raises:
            ClaimError: If the database rejects the claim query.
        """

    @abstractmethod
    def is_available(self, session: AsyncSession) -> bool:
        """Whether this backend works on the session's database."""


class AtomicClaimBackend(ClaimBackend):
    """Row-locking claim in a single serialized transaction."""

    name = "atomic"

    def is_available(self, session: AsyncSession) -> bool:
        return dialect_name(session) == "postgresql"

    async def claim(self, session: AsyncSession, *, max_concurrent: int) -> ExportJob | None:
        try:
            if dialect_name(session) == "postgresql":
                # Serializes the count-then-claim section across workers
                await session.execute(select(func.pg_advisory_xact_lock(EXPORT_CLAIM_LOCK_KEY)))

            active = await count_active_exports(session)
            if active >= max_concurrent:
                await session.rollback()
                logger.debug(
                    "Concurrency cap reached: active=%d, max_concurrent=%d",
                    active,
                    max_concurrent,
                )
                return None

            result = await session.execute(
                select(ExportJob)
                .where(ExportJob.state == ExportState.QUEUED)
                .order_by(ExportJob.created_at, ExportJob.id)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            job = result.scalar_one_or_none()
            if job is None:
                await session.rollback()
                return None

            job.state = ExportState.PREPARING
            job.started_at = datetime.now(UTC)
            await session.commit()

        except SQLAlchemyError as e:
            await session.rollback()
            logger.error("Atomic export claim failed: %s", e)
            raise ClaimError(f"Atomic export claim failed: {e}") from e

        logger.info("Claimed export: export_id=%s, backend=%s", job.id, self.name)
        return job


class OptimisticClaimBackend(ClaimBackend):
    """Conditional-update claim for databases without SKIP LOCKED."""

    name = "optimistic"

    def is_available(self, session: AsyncSession) -> bool:  # noqa: ARG002
        return True

    async def claim(self, session: AsyncSession, *, max_concurrent: int) -> ExportJob | None:
        try:
            active = await count_active_exports(session)
            if active >= max_concurrent:
                await session.rollback()
                return None

            candidate_id = await session.scalar(
                select(ExportJob.id)
                .where(ExportJob.state == ExportState.QUEUED)
                .order_by(ExportJob.created_at, ExportJob.id)
                .limit(1)
            )
            if candidate_id is None:
                await session.rollback()
                return None

            if not await self.try_claim(session, candidate_id):
                await session.rollback()
                logger.debug("Lost claim race: export_id=%s", candidate_id)
                return None

            await session.commit()
            job = await session.get(ExportJob, candidate_id, populate_existing=True)

        except SQLAlchemyError as e:
            await session.rollback()
            logger.error("Optimistic export claim failed: %s", e)
            raise ClaimError(f"Optimistic export claim failed: {e}") from e

        logger.info("Claimed export: export_id=%s, backend=%s", candidate_id, self.name)
        return job

    @staticmethod
    async def try_claim(session: AsyncSession, export_id: uuid.UUID) -> bool:
        """Conditionally move one export from queued to preparing.

        Returns:
            True if this call made the transition, False if the row was no
            longer queued. Does not commit.
        """
        now = datetime.now(UTC)
        result = await session.execute(
            update(ExportJob)
            .where(ExportJob.id == export_id, ExportJob.state == ExportState.QUEUED)
            .values(state=ExportState.PREPARING, started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def select_claim_backend(
    mode: ClaimBackendMode | str,
    require_atomic: bool,
    session: AsyncSession,
) -> ClaimBackend:
    """Resolve the configured claim strategy against the live database.

    - require_atomic or mode=atomic: the atomic backend, or an error
    - mode=optimistic: the optimistic backend
    - mode=auto: atomic when available, optimistic otherwise

    Raises:
        AtomicClaimUnavailableError: If the atomic backend is required but
            the database does not support it.
    """
    mode = ClaimBackendMode(mode)
    atomic = AtomicClaimBackend()

    if require_atomic or mode == ClaimBackendMode.ATOMIC:
        if mode == ClaimBackendMode.OPTIMISTIC or not atomic.is_available(session):
            msg = (
                "Atomic export claims are required but unavailable on "
                f"dialect '{dialect_name(session)}' (mode={mode.value})"
            )
            raise AtomicClaimUnavailableError(msg)
        return atomic

    if mode == ClaimBackendMode.OPTIMISTIC:
        return OptimisticClaimBackend()

    if atomic.is_available(session):
        return atomic

    logger.debug("Atomic claims unavailable on %s; using optimistic claims", dialect_name(session))
    return OptimisticClaimBackend()
