"""exportledger - compliance export worker and tamper-evident audit ledger.

Generates proof packs, ledger exports, executive briefs and bulk work-record
exports asynchronously, and keeps a per-tenant hash-chained audit ledger
rolled up into daily root digests.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
