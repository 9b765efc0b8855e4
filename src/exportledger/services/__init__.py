"""exportledger service layer.

- LedgerService: per-tenant hash-chained audit ledger
- ExportQueueService: export state machine and enqueue with dedupe
- ClaimBackend: exactly-once claiming of queued exports
- ObjectStoreClient: S3-compatible storage for artifacts and manifests
- PDFGenerator: HTML-to-PDF rendering with WeasyPrint (import from
  exportledger.services.pdf)
- Renderers: one per export type, producing files, artifact and manifest
"""

from exportledger.services.claims import (
    AtomicClaimBackend,
    ClaimBackend,
    OptimisticClaimBackend,
    select_claim_backend,
)
from exportledger.services.export_queue import ExportQueueService, notify_export_enqueued
from exportledger.services.ledger import LedgerService
from exportledger.services.storage import ObjectStoreClient

__all__ = [
    "AtomicClaimBackend",
    "ClaimBackend",
    "ExportQueueService",
    "LedgerService",
    "ObjectStoreClient",
    "OptimisticClaimBackend",
    "notify_export_enqueued",
    "select_claim_backend",
]
