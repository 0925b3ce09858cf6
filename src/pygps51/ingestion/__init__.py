"""Ingestion layer.

Adapters that pull data from GPS51 (positions, vendor trips) or from the
store (position history) and write normalized records back: the position
ingest cycle, track history backfill, trip sync, local trip derivation and
coordinate reconciliation.
"""

__all__: list[str] = []
