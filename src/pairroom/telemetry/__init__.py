"""Spans and metrics for room, sync and call operations."""

from pairroom.telemetry.base import (
    Attr,
    RecordingTelemetryProvider,
    Span,
    SpanKind,
    TelemetryProvider,
)
from pairroom.telemetry.config import TelemetryConfig, resolve_provider
from pairroom.telemetry.console import ConsoleTelemetryProvider
from pairroom.telemetry.filtered import FilteredTelemetryProvider
from pairroom.telemetry.mock import MockTelemetryProvider
from pairroom.telemetry.noop import NoopTelemetryProvider

__all__ = [
    "Attr",
    "ConsoleTelemetryProvider",
    "FilteredTelemetryProvider",
    "MockTelemetryProvider",
    "NoopTelemetryProvider",
    "RecordingTelemetryProvider",
    "Span",
    "SpanKind",
    "TelemetryConfig",
    "TelemetryProvider",
    "resolve_provider",
]
