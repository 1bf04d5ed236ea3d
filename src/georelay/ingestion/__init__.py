"""Ingestion layer.

This package contains adapters that receive raw broker messages and emit
canonical badge and geofence-event records.
"""

__all__: list[str] = []
