"""Export worker service.

Background process for asynchronous exports:
- Claims queued exports and renders proof packs, ledger exports,
  executive briefs and bulk work-record exports
- Uploads artifacts and manifests to object storage
- Computes daily ledger roots
- Enforces export retention per plan tier

Usage:
    # Run as module
    python -m exportledger.worker

    # Or via the console script
    exportledger-worker
"""

from exportledger.worker.main import ExportWorker, WorkerConfig, run

__all__ = ["ExportWorker", "WorkerConfig", "run"]
