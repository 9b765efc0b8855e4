"""Export retention enforcement.

Runs hourly and reclaims object storage in three passes:

1. Expired artifacts: ready exports older than their organization's plan
   retention window (completed_at <= now - days) lose their artifact and
   manifest blobs and are marked expired. The row is kept.
2. Stale failures: failed and canceled exports created more than
   stale_grace_days ago lose any blobs and the row is deleted.
3. Orphaned blobs: not swept; the pass only logs.

Every row is handled in its own transaction. A row that fails is logged,
counted and skipped; the sweep carries on with the rest.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, select, update

from exportledger.core.config import DEFAULT_TIER_DAYS
from exportledger.db.models.base import ExportState
from exportledger.db.models.exports import ExportJob
from exportledger.db.models.records import Organization

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from exportledger.services.storage import ObjectStoreClient

logger = logging.getLogger(__name__)

DEFAULT_TIER = "starter"
STALE_GRACE_DAYS = 7
STALE_STATES = (ExportState.FAILED, ExportState.CANCELED)


@dataclass
class RetentionResult:
    """Counters from one retention sweep."""

    organizations: int = 0
    expired: int = 0
    purged: int = 0
    blobs_removed: int = 0
    errors: int = 0
    failed_export_ids: list[uuid.UUID] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "organizations": self.organizations,
            "expired": self.expired,
            "purged": self.purged,
            "blobs_removed": self.blobs_removed,
            "errors": self.errors,
        }


def retention_days_for(
    plan_tier: str | None,
    tier_days: dict[str, int] | None = None,
    default_tier: str = DEFAULT_TIER,
) -> int:
    """Retention window for a plan tier; unknown or missing tiers use default_tier."""
    tier_days = tier_days or DEFAULT_TIER_DAYS
    if plan_tier in tier_days:
        return tier_days[plan_tier]
    return tier_days.get(default_tier, DEFAULT_TIER_DAYS[DEFAULT_TIER])


async def enforce_export_retention(
    session: AsyncSession,
    storage: ObjectStoreClient,
    *,
    now: datetime | None = None,
    bucket: str = "exports",
    tier_days: dict[str, int] | None = None,
    default_tier: str = DEFAULT_TIER,
    stale_grace_days: int = STALE_GRACE_DAYS,
) -> RetentionResult:
    """Run all retention passes once.

    Args:
        session: Database session; committed once per processed row.
        storage: Object store holding export blobs.
        now: Reference time (default: current UTC time).
        bucket: Bucket the export blobs live in.
        tier_days: Plan tier to retention days.
        default_tier: Tier applied to organizations with an unknown plan.
        stale_grace_days: Age after which failed/canceled rows are purged.

    Returns:
        Counters for the sweep.
    """
    now = now or datetime.now(UTC)
    result = RetentionResult()

    await _expire_ready_exports(
        session,
        storage,
        result,
        now=now,
        bucket=bucket,
        tier_days=tier_days,
        default_tier=default_tier,
    )
    await _purge_stale_exports(
        session,
        storage,
        result,
        cutoff=now - timedelta(days=stale_grace_days),
        bucket=bucket,
    )
    sweep_orphaned_blobs(bucket)

    logger.info(
        "Retention sweep complete: organizations=%d, expired=%d, purged=%d, "
        "blobs_removed=%d, errors=%d",
        result.organizations,
        result.expired,
        result.purged,
        result.blobs_removed,
        result.errors,
    )
    return result


async def _expire_ready_exports(
    session: AsyncSession,
    storage: ObjectStoreClient,
    result: RetentionResult,
    *,
    now: datetime,
    bucket: str,
    tier_days: dict[str, int] | None,
    default_tier: str,
) -> None:
    orgs = (await session.execute(select(Organization.id, Organization.plan_tier))).all()
    result.organizations = len(orgs)

    for org_id, plan_tier in orgs:
        days = retention_days_for(plan_tier, tier_days, default_tier)
        cutoff = now - timedelta(days=days)

        expired = (
            await session.execute(
                select(ExportJob.id, ExportJob.storage_path, ExportJob.manifest_path).where(
                    ExportJob.organization_id == org_id,
                    ExportJob.state == ExportState.READY,
                    ExportJob.completed_at <= cutoff,
                )
            )
        ).all()
        if not expired:
            continue

        logger.info(
            "Expiring exports: org_id=%s, tier=%s, retention_days=%d, count=%d",
            org_id,
            plan_tier,
            days,
            len(expired),
        )

        for export_id, storage_path, manifest_path in expired:
            try:
                result.blobs_removed += storage.remove(
                    bucket, [p for p in (storage_path, manifest_path) if p]
                )
                await session.execute(
                    update(ExportJob)
                    .where(ExportJob.id == export_id, ExportJob.state == ExportState.READY)
                    .values(state=ExportState.EXPIRED, updated_at=datetime.now(UTC))
                )
                await session.commit()
                result.expired += 1
            except Exception as e:
                await session.rollback()
                result.errors += 1
                result.failed_export_ids.append(export_id)
                logger.error(
                    "Failed to expire export: export_id=%s, org_id=%s, error=%s",
                    export_id,
                    org_id,
                    e,
                )


async def _purge_stale_exports(
    session: AsyncSession,
    storage: ObjectStoreClient,
    result: RetentionResult,
    *,
    cutoff: datetime,
    bucket: str,
) -> None:
    stale = (
        await session.execute(
            select(
                ExportJob.id,
                ExportJob.organization_id,
                ExportJob.storage_path,
                ExportJob.manifest_path,
            ).where(
                ExportJob.state.in_(STALE_STATES),
                ExportJob.created_at < cutoff,
            )
        )
    ).all()
    if not stale:
        return

    logger.info("Purging failed/canceled exports: count=%d", len(stale))

    for export_id, org_id, storage_path, manifest_path in stale:
        try:
            result.blobs_removed += storage.remove(
                bucket, [p for p in (storage_path, manifest_path) if p]
            )
            await session.execute(delete(ExportJob).where(ExportJob.id == export_id))
            await session.commit()
            result.purged += 1
        except Exception as e:
            await session.rollback()
            result.errors += 1
            result.failed_export_ids.append(export_id)
            logger.error(
                "Failed to purge export: export_id=%s, org_id=%s, error=%s",
                export_id,
                org_id,
                e,
            )


def sweep_orphaned_blobs(bucket: str) -> int:
    """Blobs with no owning row are not reclaimed yet; this pass only logs."""
    logger.debug("Orphaned blob sweep skipped: bucket=%s", bucket)
    return 0


async def enforce_export_retention_task(
    session_factory: async_sessionmaker[AsyncSession],
    storage: ObjectStoreClient,
    *,
    bucket: str = "exports",
    tier_days: dict[str, int] | None = None,
    default_tier: str = DEFAULT_TIER,
    stale_grace_days: int = STALE_GRACE_DAYS,
) -> dict[str, int]:
    """Scheduler entry point for one retention sweep."""
    async with session_factory() as session:
        result = await enforce_export_retention(
            session,
            storage,
            bucket=bucket,
            tier_days=tier_days,
            default_tier=default_tier,
            stale_grace_days=stale_grace_days,
        )
    return result.as_dict()
