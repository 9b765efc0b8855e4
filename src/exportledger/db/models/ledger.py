"""Audit ledger models: hash-chained events and daily roots."""

from __future__ import annotations

import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import Any

from sqlalchemy import BigInteger, Date, Enum, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from exportledger.db.models.base import (
    Base,
    EventCategory,
    EventOutcome,
    EventSeverity,
    JSONDocument,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_values,
)


class AuditEvent(Base):
    """Immutable, hash-chained record of one tenant action.

    ledger_seq is strictly increasing per organization and assigned in the
    same transaction as the insert. Rows are never updated or deleted.
    """

    __tablename__ = "audit_events"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    ledger_seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    event_name: Mapped[str] = mapped_column(String(200), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    target_type: Mapped[str] = mapped_column(String(100), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    category: Mapped[EventCategory] = mapped_column(
        Enum(EventCategory, name="event_category", values_callable=enum_values),
        nullable=False,
    )
    outcome: Mapped[EventOutcome] = mapped_column(
        Enum(EventOutcome, name="event_outcome", values_callable=enum_values),
        nullable=False,
    )
    severity: Mapped[EventSeverity] = mapped_column(
        Enum(EventSeverity, name="event_severity", values_callable=enum_values),
        nullable=False,
    )

    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONDocument, nullable=False, default=dict
    )

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        Index("uq_audit_events_org_seq", "organization_id", "ledger_seq", unique=True),
        Index("ix_audit_events_org_created", "organization_id", "created_at"),
        Index("ix_audit_events_event_name", "event_name"),
    )


class LedgerRoot(Base):
    """Digest of one organization's ledger events for one UTC day."""

    __tablename__ = "ledger_roots"

    id: Mapped[UUIDPrimaryKey]
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    root_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_event_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    last_event_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    first_seq: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_seq: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    computed_at: Mapped[TimestampTZ]

    __table_args__ = (
        Index("uq_ledger_roots_org_date", "organization_id", "date", unique=True),
    )
