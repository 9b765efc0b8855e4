"""SQLAlchemy ORM models for exportledger.

This package contains all database models organized by domain:
- base: Common metadata, column types and enums
- records: Organizations, work records, evidence and mitigation items
- ledger: Hash-chained audit events and daily ledger roots
- exports: Export jobs
"""

from exportledger.db.models.base import Base, ExportState, ExportType, metadata
from exportledger.db.models.exports import ExportJob
from exportledger.db.models.ledger import AuditEvent, LedgerRoot
from exportledger.db.models.records import Evidence, MitigationItem, Organization, WorkRecord

__all__ = [
    "AuditEvent",
    "Base",
    "Evidence",
    "ExportJob",
    "ExportState",
    "ExportType",
    "LedgerRoot",
    "MitigationItem",
    "Organization",
    "WorkRecord",
    "metadata",
]
