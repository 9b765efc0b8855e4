"""Tamper-evident audit ledger.

Every tenant action (including the export worker's own lifecycle
transitions) is appended as one immutable event. Events are chained per
organization: each carries the previous event's hash and a strictly
increasing ledger_seq, and its own hash covers a canonical JSON rendering of
its fields plus the previous hash and a deployment salt. This makes it
possible to detect:
- Event deletion (gap in ledger_seq)
- Event modification (hash mismatch)
- Event reordering (prev_hash mismatch)
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from exportledger.core.config import DEFAULT_LEDGER_SALT
from exportledger.db.models.base import EventCategory, EventOutcome, EventSeverity
from exportledger.db.models.ledger import AuditEvent
from exportledger.db.models.records import Organization

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Serialized metadata above this size is replaced by a truncation marker
MAX_METADATA_SIZE = 8000


class LedgerError(Exception):
    """Base exception for ledger operations."""


class LedgerWriteError(LedgerError):
    """Raised when an event could not be appended."""


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """Immutable view of an appended ledger event.

    Attributes:
        event_id: Unique identifier of the event.
        organization_id: Tenant the event belongs to.
        ledger_seq: Position in the tenant's chain (starts at 1).
        event_name: Dotted event name, e.g. "export.proof_pack.completed".
        actor_id: User or system actor, if any.
        target_type: Kind of object acted upon.
        target_id: Identifier of the object acted upon.
        category: Derived event category.
        outcome: Derived outcome.
        severity: Derived severity.
        metadata: Event context (bounded in size).
        prev_hash: Hash of the previous event in the chain (None for the first).
        hash: SHA-256 of this event's canonical form.
        created_at: When the event was recorded.
    """

    event_id: uuid.UUID
    organization_id: uuid.UUID
    ledger_seq: int
    event_name: str
    actor_id: str | None
    target_type: str
    target_id: str | None
    category: EventCategory
    outcome: EventOutcome
    severity: EventSeverity
    metadata: dict[str, Any]
    prev_hash: str | None
    hash: str
    created_at: datetime

    @classmethod
    def from_record(cls, record: AuditEvent) -> LedgerEntry:
        return cls(
            event_id=record.id,
            organization_id=record.organization_id,
            ledger_seq=record.ledger_seq,
            event_name=record.event_name,
            actor_id=record.actor_id,
            target_type=record.target_type,
            target_id=record.target_id,
            category=record.category,
            outcome=record.outcome,
            severity=record.severity,
            metadata=record.event_metadata,
            prev_hash=record.prev_hash,
            hash=record.hash,
            created_at=record.created_at,
        )


@dataclass(frozen=True, slots=True)
class ChainVerificationResult:
    """Result of verifying an organization's ledger chain.

    Attributes:
        valid: True if the chain is intact.
        checked_events: Number of events verified.
        first_seq: First ledger_seq in the verified range.
        last_seq: Last ledger_seq in the verified range.
        errors: Detected integrity violations.
    """

    valid: bool
    checked_events: int
    first_seq: int | None
    last_seq: int | None
    errors: list[str]


def classify_category(event_name: str) -> EventCategory:
    """Map an event name onto one of the three ledger categories."""
    if "auth." in event_name or "violation" in event_name or "policy." in event_name:
        return EventCategory.GOVERNANCE
    if "user_role_changed" in event_name:
        return EventCategory.GOVERNANCE
    if any(
        marker in event_name
        for marker in ("access.", "security.", "login", "team.", "account.")
    ):
        return EventCategory.ACCESS
    return EventCategory.OPERATIONS


def classify_outcome(event_name: str) -> EventOutcome:
    if any(marker in event_name for marker in ("violation", "blocked", "denied")):
        return EventOutcome.BLOCKED
    return EventOutcome.ALLOWED


def classify_severity(event_name: str) -> EventSeverity:
    if "violation" in event_name or "critical" in event_name:
        return EventSeverity.CRITICAL
    if any(marker in event_name for marker in ("flag", "change", "remove")):
        return EventSeverity.MATERIAL
    return EventSeverity.INFO


def bound_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    """Return metadata unchanged if small enough, else a truncation marker."""
    if not metadata:
        return {}
    serialized = json.dumps(metadata, sort_keys=True, default=str)
    if len(serialized) <= MAX_METADATA_SIZE:
        # Round-trip so stored and hashed values agree (UUIDs, datetimes -> str)
        return json.loads(serialized)
    return {"truncated": True, "original_size": len(serialized)}


def canonical_timestamp(value: datetime) -> str:
    """ISO-8601 UTC rendering used inside event hashes.

    Naive datetimes (as returned by databases without timezone support)
    are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def compute_event_hash(
    *,
    ledger_seq: int,
    organization_id: uuid.UUID | str,
    actor_id: str | None,
    event_name: str,
    target_type: str,
    target_id: str | None,
    metadata: dict[str, Any],
    created_at: datetime,
    prev_hash: str | None,
    salt: str = DEFAULT_LEDGER_SALT,
) -> str:
    """Compute an event hash without a service instance (for verification tools).

    hash = sha256(canonical_json + (prev_hash or "") + salt)

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    canonical = {
        "seq": ledger_seq,
        "org_id": str(organization_id),
        "actor_id": actor_id or "",
        "event": event_name,
        "target_type": target_type,
        "target_id": target_id or "",
        "created_at": canonical_timestamp(created_at),
        "metadata": metadata,
    }
    canonical_json = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
    hash_input = canonical_json + (prev_hash or "") + salt
    return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()


class LedgerService:
    """Append-only, per-organization hash-chained audit ledger.

    Example:
        ledger = LedgerService(session)
        entry = await ledger.append(
            organization_id=org_id,
            actor_id="user-123",
            event_name="export.proof_pack.started",
            target_type="export",
            target_id=str(export_id),
            metadata={"export_type": "proof_pack"},
        )
        await session.commit()

        result = await ledger.verify_chain(org_id)
    """

    def __init__(self, session: AsyncSession, *, salt: str = DEFAULT_LEDGER_SALT) -> None:
        """Initialize the ledger service.

        Args:
            session: SQLAlchemy async session for database operations.
            salt: Salt appended to every hash input.
        """
        self._session = session
        self._salt = salt

    async def append(
        self,
        organization_id: uuid.UUID,
        actor_id: str | None,
        event_name: str,
        target_type: str,
        target_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Append a new event to the organization's ledger.

        The sequence number and previous hash are read under a lock on the
        organization row, so concurrent appends for one tenant serialize and
        ledger_seq stays gapless. The caller commits.

        Returns:
            The appended entry.

        Raises:
            LedgerWriteError: If the event could not be written.
        """
        bounded = bound_metadata(metadata)
        created_at = datetime.now(UTC)

        try:
            next_seq, prev_hash = await self._next_seq_and_prev_hash(organization_id)

            event_hash = compute_event_hash(
                ledger_seq=next_seq,
                organization_id=organization_id,
                actor_id=actor_id,
                event_name=event_name,
                target_type=target_type,
                target_id=target_id,
                metadata=bounded,
                created_at=created_at,
                prev_hash=prev_hash,
                salt=self._salt,
            )

            record = AuditEvent(
                id=uuid.uuid4(),
                created_at=created_at,
                organization_id=organization_id,
                ledger_seq=next_seq,
                event_name=event_name,
                actor_id=actor_id,
                target_type=target_type,
                target_id=target_id,
                category=classify_category(event_name),
                outcome=classify_outcome(event_name),
                severity=classify_severity(event_name),
                event_metadata=bounded,
                prev_hash=prev_hash,
                hash=event_hash,
            )
            self._session.add(record)
            await self._session.flush()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to append ledger event: org_id=%s, event=%s, error=%s",
                organization_id,
                event_name,
                e,
            )
            raise LedgerWriteError(f"Failed to append ledger event {event_name}: {e}") from e

        logger.debug(
            "Ledger event appended: org_id=%s, seq=%d, event=%s",
            organization_id,
            next_seq,
            event_name,
        )
        return LedgerEntry.from_record(record)

    async def verify_chain(
        self,
        organization_id: uuid.UUID,
        *,
        start_seq: int | None = None,
        end_seq: int | None = None,
    ) -> ChainVerificationResult:
        """Verify the integrity of an organization's ledger chain.

        Checks that:
        1. ledger_seq values are contiguous
        2. Each event's hash matches its recomputed hash
        3. Each event's prev_hash matches the previous event's hash
        4. The first event (seq 1) has no prev_hash

        Returns:
            ChainVerificationResult with validity status and any errors found.
        """
        query = (
            select(AuditEvent)
            .where(AuditEvent.organization_id == organization_id)
            .order_by(AuditEvent.ledger_seq)
        )
        if start_seq is not None:
            query = query.where(AuditEvent.ledger_seq >= start_seq)
        if end_seq is not None:
            query = query.where(AuditEvent.ledger_seq <= end_seq)

        result = await self._session.execute(query)
        records = result.scalars().all()

        if not records:
            return ChainVerificationResult(
                valid=True, checked_events=0, first_seq=None, last_seq=None, errors=[]
            )

        errors: list[str] = []
        prev_hash: str | None = None
        expected_seq: int | None = None

        for record in records:
            if expected_seq is not None and record.ledger_seq != expected_seq:
                errors.append(
                    f"Sequence gap detected: expected {expected_seq}, found {record.ledger_seq}"
                )

            if record.ledger_seq == 1 and record.prev_hash is not None:
                errors.append(f"First event (seq=1) has prev_hash={record.prev_hash}")

            if prev_hash is not None and record.prev_hash != prev_hash:
                errors.append(
                    f"Chain break at seq={record.ledger_seq}: "
                    f"prev_hash={record.prev_hash}, expected {prev_hash}"
                )

            computed = compute_event_hash(
                ledger_seq=record.ledger_seq,
                organization_id=record.organization_id,
                actor_id=record.actor_id,
                event_name=record.event_name,
                target_type=record.target_type,
                target_id=record.target_id,
                metadata=record.event_metadata,
                created_at=record.created_at,
                prev_hash=record.prev_hash,
                salt=self._salt,
            )
            if computed != record.hash:
                errors.append(
                    f"Hash mismatch at seq={record.ledger_seq}: "
                    f"stored={record.hash}, computed={computed}"
                )

            prev_hash = record.hash
            expected_seq = record.ledger_seq + 1

        return ChainVerificationResult(
            valid=not errors,
            checked_events=len(records),
            first_seq=records[0].ledger_seq,
            last_seq=records[-1].ledger_seq,
            errors=errors,
        )

    async def get_events(
        self,
        organization_id: uuid.UUID,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        target_type: str | None = None,
        target_id: str | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[LedgerEntry]:
        """Events for one organization ordered by ledger_seq.

        Args:
            organization_id: Tenant to read.
            start: Inclusive lower bound on created_at.
            end: Exclusive upper bound on created_at.
            target_type: Optional target type filter.
            target_id: Optional target id filter.
            limit: Maximum number of events.
            newest_first: Order by descending ledger_seq, so a limit keeps
                the most recent events.
        """
        order = AuditEvent.ledger_seq.desc() if newest_first else AuditEvent.ledger_seq
        query = (
            select(AuditEvent)
            .where(AuditEvent.organization_id == organization_id)
            .order_by(order)
        )
        if start is not None:
            query = query.where(AuditEvent.created_at >= start)
        if end is not None:
            query = query.where(AuditEvent.created_at < end)
        if target_type is not None:
            query = query.where(AuditEvent.target_type == target_type)
        if target_id is not None:
            query = query.where(AuditEvent.target_id == target_id)
        if limit is not None:
            query = query.limit(limit)

        result = await self._session.execute(query)
        return [LedgerEntry.from_record(r) for r in result.scalars().all()]

    async def _next_seq_and_prev_hash(self, organization_id: uuid.UUID) -> tuple[int, str | None]:
        """Next ledger_seq and the chain head's hash for an organization.

        Locks the organization row FOR UPDATE first; the lock is held until
        the caller's transaction ends. If no events exist, returns (1, None).
        """
        await self._session.execute(
            select(Organization.id).where(Organization.id == organization_id).with_for_update()
        )

        query = (
            select(AuditEvent.ledger_seq, AuditEvent.hash)
            .where(AuditEvent.organization_id == organization_id)
            .order_by(AuditEvent.ledger_seq.desc())
            .limit(1)
        )
        result = await self._session.execute(query)
        latest = result.one_or_none()

        if latest is None:
            return (1, None)
        return (latest.ledger_seq + 1, latest.hash)
