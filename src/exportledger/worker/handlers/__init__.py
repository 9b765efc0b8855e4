"""Worker handlers.

- export: render, upload and finalize one claimed export
- ledger_root: daily per-organization ledger root hashes
- retention: expire old artifacts and purge stale failed exports
"""

from exportledger.worker.handlers.export import process_export
from exportledger.worker.handlers.ledger_root import compute_ledger_roots, verify_ledger_root
from exportledger.worker.handlers.retention import enforce_export_retention

__all__ = [
    "compute_ledger_roots",
    "enforce_export_retention",
    "process_export",
    "verify_ledger_root",
]
