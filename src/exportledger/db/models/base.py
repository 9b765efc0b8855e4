"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Reusable column annotations for UUIDs, timestamps and JSON documents
- Enum types shared across models

Column types target PostgreSQL (native UUID, JSONB, timestamptz) and fall
back to portable equivalents on SQLite so the same models can be created
in an embedded database for tests.
"""

import enum
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any

from sqlalchemy import JSON, DateTime, MetaData, String, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONDocument = JSONB().with_variant(JSON(), "sqlite")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
]

UUIDForeignKey = Annotated[uuid.UUID, mapped_column(Uuid(as_uuid=True))]

# Set from Python so every dialect stores the same instant the caller saw
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now()),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

JSONObject = Annotated[dict[str, Any], mapped_column(JSONDocument, default=dict)]
OptionalJSONObject = Annotated[dict[str, Any] | None, mapped_column(JSONDocument, nullable=True)]

ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]


class Base(DeclarativeBase):
    """Declarative base for all exportledger models."""

    metadata = metadata
    registry = type_registry


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum values (not member names) in the database."""
    return [member.value for member in enum_cls]


# =============================================================================
# Common Enums
# =============================================================================


class ExportState(enum.Enum):
    """Lifecycle state of an export job.

    Values:
        QUEUED: Waiting to be claimed (new or scheduled for retry)
        PREPARING: Claimed by a worker
        GENERATING: Renderer running
        UPLOADING: Artifact and manifest being written to object storage
        READY: Artifact available for download
        FAILED: Retry budget exhausted
        CANCELED: Canceled by an external actor
        EXPIRED: Artifact reclaimed by retention
    """

    QUEUED = "queued"
    PREPARING = "preparing"
    GENERATING = "generating"
    UPLOADING = "uploading"
    READY = "ready"
    FAILED = "failed"
    CANCELED = "canceled"
    EXPIRED = "expired"


# States that count against the per-deployment concurrency cap
ACTIVE_EXPORT_STATES = (
    ExportState.PREPARING,
    ExportState.GENERATING,
    ExportState.UPLOADING,
)

# States an external actor may cancel from
CANCELABLE_EXPORT_STATES = (ExportState.QUEUED, ExportState.PREPARING)


class ExportType(str, enum.Enum):
    """Kinds of export artifacts the worker can render."""

    PROOF_PACK = "proof_pack"
    LEDGER = "ledger"
    EXECUTIVE_BRIEF = "executive_brief"
    BULK_JOBS = "bulk_jobs"


class EventCategory(enum.Enum):
    """Ledger event category derived from the event name."""

    GOVERNANCE = "governance"
    OPERATIONS = "operations"
    ACCESS = "access"


class EventOutcome(enum.Enum):
    """Whether the recorded action was allowed or blocked."""

    ALLOWED = "allowed"
    BLOCKED = "blocked"


class EventSeverity(enum.Enum):
    """Ledger event severity derived from the event name."""

    INFO = "info"
    MATERIAL = "material"
    CRITICAL = "critical"
