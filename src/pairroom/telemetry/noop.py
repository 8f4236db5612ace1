"""Default provider: discards everything."""

from __future__ import annotations

from typing import Any

from pairroom.telemetry.base import SpanKind, TelemetryProvider


class NoopTelemetryProvider(TelemetryProvider):
    @property
    def name(self) -> str:
        return "noop"

    def start_span(self, kind: SpanKind, name: str, **_: Any) -> str:
        return ""

    def end_span(self, span_id: str, **_: Any) -> None:
        return None

    def set_attribute(self, span_id: str, key: str, value: Any) -> None:
        return None

    def record_metric(self, name: str, value: float, **_: Any) -> None:
        return None
