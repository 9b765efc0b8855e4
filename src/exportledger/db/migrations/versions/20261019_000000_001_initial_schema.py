"""Initial schema: tenants, work records, audit ledger and exports.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates:
- organizations, work_records, evidence, mitigation_items
- audit_events (per-organization hash chain) and ledger_roots
- exports with the export_state enum
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

EXPORT_STATES = (
    "queued",
    "preparing",
    "generating",
    "uploading",
    "ready",
    "failed",
    "canceled",
    "expired",
)


def _uuid_pk(name: str = "id") -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    """Apply migration: create all exportledger tables."""
    op.create_table(
        "organizations",
        _uuid_pk(),
        _timestamp("created_at"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("plan_tier", sa.String(50), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_organizations"),
    )

    op.create_table(
        "work_records",
        _uuid_pk(),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "organizations.id",
                name="fk_work_records_organization_id_organizations",
                ondelete="CASCADE",
            ),
            nullable=False,
        ),
        sa.Column("client_name", sa.String(255), nullable=False),
        sa.Column("job_type", sa.String(100), nullable=True),
        sa.Column("location", sa.String(500), nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="draft"),
        sa.Column("risk_score", sa.Integer(), nullable=True),
        sa.Column("risk_level", sa.String(20), nullable=True),
        sa.Column("owner_name", sa.String(255), nullable=True),
        _timestamp("start_date", nullable=True),
        _timestamp("end_date", nullable=True),
        _timestamp("deleted_at", nullable=True),
        _timestamp("archived_at", nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_work_records"),
    )
    op.create_index(
        "ix_work_records_org_created", "work_records", ["organization_id", "created_at"]
    )

    op.create_table(
        "evidence",
        _uuid_pk(),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "organizations.id",
                name="fk_evidence_organization_id_organizations",
                ondelete="CASCADE",
            ),
            nullable=False,
        ),
        sa.Column(
            "work_record_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "work_records.id",
                name="fk_evidence_work_record_id_work_records",
                ondelete="CASCADE",
            ),
            nullable=False,
        ),
        sa.Column("file_name", sa.String(500), nullable=False),
        sa.Column("content_type", sa.String(100), nullable=True),
        sa.Column("sha256", sa.String(64), nullable=True),
        sa.Column("uploaded_by", sa.String(255), nullable=True),
        _timestamp("captured_at", nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id", name="pk_evidence"),
    )
    op.create_index(
        "ix_evidence_org_work_record", "evidence", ["organization_id", "work_record_id"]
    )

    op.create_table(
        "mitigation_items",
        _uuid_pk(),
        _timestamp("created_at"),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "organizations.id",
                name="fk_mitigation_items_organization_id_organizations",
                ondelete="CASCADE",
            ),
            nullable=False,
        ),
        sa.Column(
            "work_record_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "work_records.id",
                name="fk_mitigation_items_work_record_id_work_records",
                ondelete="CASCADE",
            ),
            nullable=False,
        ),
        sa.Column(
            "hazard_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "mitigation_items.id",
                name="fk_mitigation_items_hazard_id_mitigation_items",
                ondelete="CASCADE",
            ),
            nullable=True,
        ),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("completed_at", nullable=True),
        _timestamp("deleted_at", nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_mitigation_items"),
    )
    op.create_index(
        "ix_mitigation_items_org_work_record",
        "mitigation_items",
        ["organization_id", "work_record_id"],
    )

    event_category = postgresql.ENUM(
        "governance", "operations", "access", name="event_category", create_type=False
    )
    event_outcome = postgresql.ENUM("allowed", "blocked", name="event_outcome", create_type=False)
    event_severity = postgresql.ENUM(
        "info", "material", "critical", name="event_severity", create_type=False
    )
    export_state = postgresql.ENUM(*EXPORT_STATES, name="export_state", create_type=False)
    for enum_type in (event_category, event_outcome, event_severity, export_state):
        enum_type.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "audit_events",
        _uuid_pk(),
        _timestamp("created_at"),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "organizations.id",
                name="fk_audit_events_organization_id_organizations",
                ondelete="CASCADE",
            ),
            nullable=False,
        ),
        sa.Column("ledger_seq", sa.BigInteger(), nullable=False),
        sa.Column("event_name", sa.String(200), nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=True),
        sa.Column("target_type", sa.String(100), nullable=False),
        sa.Column("target_id", sa.String(255), nullable=True),
        sa.Column("category", event_category, nullable=False),
        sa.Column("outcome", event_outcome, nullable=False),
        sa.Column("severity", event_severity, nullable=False),
        sa.Column(
            "metadata",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("prev_hash", sa.String(64), nullable=True),
        sa.Column("hash", sa.String(64), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_audit_events"),
    )
    op.create_index(
        "uq_audit_events_org_seq",
        "audit_events",
        ["organization_id", "ledger_seq"],
        unique=True,
    )
    op.create_index(
        "ix_audit_events_org_created", "audit_events", ["organization_id", "created_at"]
    )
    op.create_index("ix_audit_events_event_name", "audit_events", ["event_name"])

    # Ledger rows are append-only
    op.execute(
        """
        CREATE OR REPLACE FUNCTION audit_events_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'audit_events rows are immutable';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER audit_events_no_update_delete
        BEFORE UPDATE OR DELETE ON audit_events
        FOR EACH ROW EXECUTE FUNCTION audit_events_immutable();
        """
    )

    op.create_table(
        "ledger_roots",
        _uuid_pk(),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "organizations.id",
                name="fk_ledger_roots_organization_id_organizations",
                ondelete="CASCADE",
            ),
            nullable=False,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("root_hash", sa.String(64), nullable=False),
        sa.Column("event_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("first_event_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("last_event_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("first_seq", sa.BigInteger(), nullable=True),
        sa.Column("last_seq", sa.BigInteger(), nullable=True),
        _timestamp("computed_at"),
        sa.PrimaryKeyConstraint("id", name="pk_ledger_roots"),
    )
    op.create_index(
        "uq_ledger_roots_org_date",
        "ledger_roots",
        ["organization_id", "date"],
        unique=True,
    )

    op.create_table(
        "exports",
        _uuid_pk(),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "organizations.id",
                name="fk_exports_organization_id_organizations",
                ondelete="CASCADE",
            ),
            nullable=False,
        ),
        sa.Column(
            "work_record_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "work_records.id",
                name="fk_exports_work_record_id_work_records",
                ondelete="SET NULL",
            ),
            nullable=True,
        ),
        sa.Column("export_type", sa.String(50), nullable=False),
        sa.Column(
            "filters",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("state", export_state, nullable=False, server_default="queued"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_code", sa.String(100), nullable=True),
        sa.Column("error_id", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("storage_path", sa.String(1000), nullable=True),
        sa.Column("manifest_path", sa.String(1000), nullable=True),
        sa.Column("manifest_hash", sa.String(64), nullable=True),
        sa.Column("manifest", postgresql.JSONB(), nullable=True),
        sa.Column("created_by", sa.String(255), nullable=True),
        sa.Column("request_id", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        _timestamp("started_at", nullable=True),
        _timestamp("completed_at", nullable=True),
        sa.CheckConstraint(
            "progress >= 0 AND progress <= 100", name="ck_exports_progress_range"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_exports"),
    )
    op.create_index("ix_exports_state_created", "exports", ["state", "created_at"])
    op.create_index("ix_exports_org_state", "exports", ["organization_id", "state"])
    op.create_index(
        "ix_exports_org_work_record",
        "exports",
        ["organization_id", "work_record_id", "created_at"],
    )
    op.create_index(
        "uq_exports_org_idempotency_key",
        "exports",
        ["organization_id", "idempotency_key"],
        unique=True,
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
    )


def downgrade() -> None:
    """Revert migration: drop all exportledger tables."""
    op.drop_table("exports")
    op.drop_table("ledger_roots")
    op.execute("DROP TRIGGER IF EXISTS audit_events_no_update_delete ON audit_events")
    op.execute("DROP FUNCTION IF EXISTS audit_events_immutable()")
    op.drop_table("audit_events")
    op.drop_table("mitigation_items")
    op.drop_table("evidence")
    op.drop_table("work_records")
    op.drop_table("organizations")
    for enum_name in ("export_state", "event_severity", "event_outcome", "event_category"):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
