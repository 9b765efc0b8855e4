"""Daily ledger root computation.

Once a day, each organization's ledger events for the previous UTC day are
rolled up into a single root hash:

    root_hash = sha256("".join(sorted(event hashes)))

Roots are upserted by (organization, date), so recomputing a day is
harmless. Days without events get no root, and a day is only rolled up
once it is over: asking for today or a future date is an error.

The root is a digest over the day's hashes, not a Merkle tree; it proves
the set of events for a day has not changed, not the inclusion of a
single event.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from exportledger.db.models.ledger import AuditEvent, LedgerRoot
from exportledger.db.models.records import Organization

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


@dataclass(frozen=True, slots=True)
class RootResult:
    """A computed daily root for one organization."""

    organization_id: uuid.UUID
    root_date: date
    root_hash: str
    event_count: int
    first_event_id: uuid.UUID
    last_event_id: uuid.UUID
    first_seq: int
    last_seq: int


@dataclass(frozen=True, slots=True)
class RootVerification:
    """Comparison of a stored root against a fresh recomputation."""

    organization_id: uuid.UUID
    root_date: date
    valid: bool
    stored_hash: str | None
    computed_hash: str | None
    stored_count: int | None
    computed_count: int


def compute_root_hash(hashes: Iterable[str]) -> str:
    """Order-independent digest of a day's event hashes."""
    return hashlib.sha256("".join(sorted(hashes)).encode("utf-8")).hexdigest()


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """[start, end) of a UTC day."""
    start = datetime.combine(day, time.min, tzinfo=UTC)
    return start, start + timedelta(days=1)


def previous_utc_day(now: datetime | None = None) -> date:
    now = now or datetime.now(UTC)
    return (now.astimezone(UTC) - timedelta(days=1)).date()


def _check_closed_day(target_date: date, now: datetime | None) -> None:
    today = (now or datetime.now(UTC)).astimezone(UTC).date()
    if target_date >= today:
        msg = (
            f"Cannot compute ledger root for {target_date}: "
            f"the day has not ended (today is {today})"
        )
        raise ValueError(msg)


async def _day_events(
    session: AsyncSession, organization_id: uuid.UUID, target_date: date
) -> list[tuple[uuid.UUID, int, str]]:
    start, end = day_bounds(target_date)
    result = await session.execute(
        select(AuditEvent.id, AuditEvent.ledger_seq, AuditEvent.hash)
        .where(
            AuditEvent.organization_id == organization_id,
            AuditEvent.created_at >= start,
            AuditEvent.created_at < end,
        )
        .order_by(AuditEvent.ledger_seq)
    )
    return [(row.id, row.ledger_seq, row.hash) for row in result]


async def compute_org_root(
    session: AsyncSession,
    organization_id: uuid.UUID,
    target_date: date,
) -> RootResult | None:
    """Compute (without storing) one organization's root, or None for an empty day."""
    events = await _day_events(session, organization_id, target_date)
    if not events:
        return None

    first_id, first_seq, _ = events[0]
    last_id, last_seq, _ = events[-1]
    return RootResult(
        organization_id=organization_id,
        root_date=target_date,
        root_hash=compute_root_hash(h for _, _, h in events),
        event_count=len(events),
        first_event_id=first_id,
        last_event_id=last_id,
        first_seq=first_seq,
        last_seq=last_seq,
    )


async def upsert_root(session: AsyncSession, root: RootResult) -> None:
    """Insert or overwrite the stored root for (organization, date)."""
    values = {
        "root_hash": root.root_hash,
        "event_count": root.event_count,
        "first_event_id": root.first_event_id,
        "last_event_id": root.last_event_id,
        "first_seq": root.first_seq,
        "last_seq": root.last_seq,
        "computed_at": datetime.now(UTC),
    }

    insert = _UPSERT_DIALECTS.get(session.get_bind().dialect.name)
    if insert is not None:
        stmt = insert(LedgerRoot).values(
            id=uuid.uuid4(),
            organization_id=root.organization_id,
            date=root.root_date,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[LedgerRoot.organization_id, LedgerRoot.date],
            set_=values,
        )
        await session.execute(stmt)
        return

    existing = await session.scalar(
        select(LedgerRoot).where(
            LedgerRoot.organization_id == root.organization_id,
            LedgerRoot.date == root.root_date,
        )
    )
    if existing is None:
        session.add(
            LedgerRoot(organization_id=root.organization_id, date=root.root_date, **values)
        )
    else:
        for key, value in values.items():
            setattr(existing, key, value)
    await session.flush()


async def compute_ledger_roots(
    session: AsyncSession,
    *,
    target_date: date | None = None,
    now: datetime | None = None,
) -> list[RootResult]:
    """Compute and store the daily root for every organization.

    Each organization is committed separately; a failure is logged and
    rolled back without affecting the others.

    Args:
        session: Database session.
        target_date: Day to roll up (default: the previous UTC day).
        now: Current time, for tests.

    Returns:
        Roots written, one per organization with events that day.

    Raises:
        ValueError: If target_date is today or later.
    """
    target_date = target_date or previous_utc_day(now)
    _check_closed_day(target_date, now)

    org_ids = (await session.scalars(select(Organization.id).order_by(Organization.id))).all()
    await session.rollback()

    results: list[RootResult] = []
    for organization_id in org_ids:
        try:
            root = await compute_org_root(session, organization_id, target_date)
            if root is None:
                logger.debug(
                    "No ledger events: org_id=%s, date=%s", organization_id, target_date
                )
                await session.rollback()
                continue

            await upsert_root(session, root)
            await session.commit()
            results.append(root)

            logger.info(
                "Ledger root computed: org_id=%s, date=%s, events=%d, seq=%d..%d, root=%s",
                organization_id,
                target_date,
                root.event_count,
                root.first_seq,
                root.last_seq,
                root.root_hash[:16] + "...",
            )
        except Exception:
            await session.rollback()
            logger.exception(
                "Failed to compute ledger root: org_id=%s, date=%s", organization_id, target_date
            )

    logger.info(
        "Ledger roots complete: date=%s, organizations=%d, roots=%d",
        target_date,
        len(org_ids),
        len(results),
    )
    return results


async def verify_ledger_root(
    session: AsyncSession,
    organization_id: uuid.UUID,
    target_date: date,
) -> RootVerification:
    """Recompute a day's root and compare it with the stored one.

    A day with no events and no stored root is valid.
    """
    stored = await session.scalar(
        select(LedgerRoot).where(
            LedgerRoot.organization_id == organization_id,
            LedgerRoot.date == target_date,
        )
    )
    computed = await compute_org_root(session, organization_id, target_date)

    stored_hash = stored.root_hash if stored else None
    computed_hash = computed.root_hash if computed else None
    computed_count = computed.event_count if computed else 0
    valid = stored_hash == computed_hash and (
        stored is None or stored.event_count == computed_count
    )

    if not valid:
        logger.warning(
            "Ledger root mismatch: org_id=%s, date=%s, stored=%s, computed=%s",
            organization_id,
            target_date,
            stored_hash,
            computed_hash,
        )

    return RootVerification(
        organization_id=organization_id,
        root_date=target_date,
        valid=valid,
        stored_hash=stored_hash,
        computed_hash=computed_hash,
        stored_count=stored.event_count if stored else None,
        computed_count=computed_count,
    )


async def compute_ledger_roots_task(session_factory: async_sessionmaker[AsyncSession]) -> int:
    """Scheduler entry point: roll up the previous UTC day."""
    async with session_factory() as session:
        results = await compute_ledger_roots(session)
    return len(results)
