"""Normalized ingestion events.

All ingestion paths (HTTP, MQTT) convert their inputs into
:class:`IngestionEvent`; only the state store is allowed to merge them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from gpstrack.models.position import PositionRecord


class IngestionSource(StrEnum):
    HTTP = "http"
    MQTT = "mqtt"


class IngestionEvent(BaseModel):
    """An accepted record plus where and when it entered the pipeline."""

    model_config = ConfigDict(frozen=True)

    record: PositionRecord
    source: IngestionSource
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def device_id(self) -> str:
        return self.record.device_id
