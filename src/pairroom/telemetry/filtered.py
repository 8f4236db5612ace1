"""Provider wrapper that drops spans of disabled kinds."""

from __future__ import annotations

from typing import Any

from pairroom.telemetry.base import SpanKind, TelemetryProvider

_DROPPED = ""


class FilteredTelemetryProvider(TelemetryProvider):
    """Forwards only spans whose kind is in *enabled*; metrics always pass."""

    def __init__(self, inner: TelemetryProvider, enabled: set[SpanKind]) -> None:
        self._inner = inner
        self._enabled = set(enabled)

    @property
    def name(self) -> str:
        return f"filtered:{self._inner.name}"

    def start_span(
        self,
        kind: SpanKind,
        name: str,
        *,
        parent_id: str | None = None,
        attributes: dict[str, Any] | None = None,
        room_code: str | None = None,
    ) -> str:
        if kind not in self._enabled:
            return _DROPPED
        return self._inner.start_span(
            kind, name, parent_id=parent_id, attributes=attributes, room_code=room_code
        )

    def end_span(
        self,
        span_id: str,
        *,
        status: str = "ok",
        error_message: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        if span_id == _DROPPED:
            return
        self._inner.end_span(
            span_id, status=status, error_message=error_message, attributes=attributes
        )

    def set_attribute(self, span_id: str, key: str, value: Any) -> None:
        if span_id != _DROPPED:
            self._inner.set_attribute(span_id, key, value)

    def record_metric(
        self,
        name: str,
        value: float,
        *,
        unit: str = "",
        attributes: dict[str, Any] | None = None,
    ) -> None:
        self._inner.record_metric(name, value, unit=unit, attributes=attributes)

    def close(self) -> None:
        self._inner.close()

    def reset(self) -> None:
        self._inner.reset()
