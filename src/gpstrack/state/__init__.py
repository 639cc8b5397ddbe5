"""State/store layer.

This package is the single source of truth for the current world state:
the latest fix and bounded trail of every device, fed by HTTP and MQTT
ingestion.
"""
