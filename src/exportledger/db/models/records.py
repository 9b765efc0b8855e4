"""Tenant and work-record models read by the exporters.

These tables belong to the surrounding product. The export worker only
reads them: organizations for plan tiers, work records and their evidence
and mitigation items for rendering and precondition checks.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from exportledger.db.models.base import (
    Base,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)


class Organization(Base):
    """A tenant. Its plan tier selects the export retention window."""

    __tablename__ = "organizations"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_tier: Mapped[str | None] = mapped_column(String(50), nullable=True)


class WorkRecord(Base):
    """A unit of work ("job") that hazards, controls and evidence attach to."""

    __tablename__ = "work_records"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    job_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    location: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="draft")
    risk_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    start_date: Mapped[OptionalTimestampTZ]
    end_date: Mapped[OptionalTimestampTZ]

    deleted_at: Mapped[OptionalTimestampTZ]
    archived_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (Index("ix_work_records_org_created", "organization_id", "created_at"),)

    @property
    def is_exportable(self) -> bool:
        """Deleted and archived records are never exported in bulk."""
        return self.deleted_at is None and self.archived_at is None


class Evidence(Base):
    """An uploaded evidence item (usually a photo) for a work record."""

    __tablename__ = "evidence"

    id: Mapped[UUIDPrimaryKey]
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    work_record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("work_records.id", ondelete="CASCADE"),
        nullable=False,
    )
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    uploaded_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    captured_at: Mapped[OptionalTimestampTZ]
    created_at: Mapped[TimestampTZ]

    __table_args__ = (Index("ix_evidence_org_work_record", "organization_id", "work_record_id"),)


class MitigationItem(Base):
    """A hazard or a control on a work record.

    Rows with no hazard_id are hazards; rows pointing at a hazard are the
    controls that mitigate it.
    """

    __tablename__ = "mitigation_items"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    work_record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("work_records.id", ondelete="CASCADE"),
        nullable=False,
    )
    hazard_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("mitigation_items.id", ondelete="CASCADE"),
        nullable=True,
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[OptionalTimestampTZ]
    deleted_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index("ix_mitigation_items_org_work_record", "organization_id", "work_record_id"),
    )

    @property
    def is_hazard(self) -> bool:
        return self.hazard_id is None
