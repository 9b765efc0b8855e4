"""Export job model.

One row per requested export. The row is the only channel back to the
requester: state, progress, failure_reason and error_id are polled by the
product, and storage_path/manifest_path point at the finished artifact.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from exportledger.db.models.base import (
    Base,
    ExportState,
    JSONDocument,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_values,
    utcnow,
)


class ExportJob(Base):
    """Asynchronous export request advancing through the export state machine.

    Only the export worker mutates a row after insert, except for external
    cancellation and the retention worker's expiry/purge.
    """

    __tablename__ = "exports"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    work_record_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("work_records.id", ondelete="SET NULL"),
        nullable=True,
    )
    export_type: Mapped[str] = mapped_column(String(50), nullable=False)
    filters: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)

    state: Mapped[ExportState] = mapped_column(
        Enum(
            ExportState,
            name="export_state",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
        default=ExportState.QUEUED,
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    storage_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    manifest_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    manifest_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    manifest: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        CheckConstraint("progress >= 0 AND progress <= 100", name="progress_range"),
        # Claim query: oldest queued row first
        Index("ix_exports_state_created", "state", "created_at"),
        Index("ix_exports_org_state", "organization_id", "state"),
        Index("ix_exports_org_work_record", "organization_id", "work_record_id", "created_at"),
        Index(
            "uq_exports_org_idempotency_key",
            "organization_id",
            "idempotency_key",
            unique=True,
        ),
    )
