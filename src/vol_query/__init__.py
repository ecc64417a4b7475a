"""VOL query service: ledger ingestion and snapshot-consistent queries."""

__version__ = "0.1.0"
