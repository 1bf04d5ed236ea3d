"""State/store layer.

This package is the single source of truth for how bus messages received by
a viewer are merged into its bounded badge, geofence, event and
notification state.
"""
