"""Ingestion layer.

This package contains the adapters that receive position reports from
devices (HTTP, MQTT) and turn them into normalized :class:`PositionRecord`
objects for the state store.
"""

__all__: list[str] = []
