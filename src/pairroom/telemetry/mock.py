"""In-memory telemetry provider for assertions in tests."""

from __future__ import annotations

from typing import Any

from pairroom.telemetry.base import RecordingTelemetryProvider, Span, SpanKind


class MockTelemetryProvider(RecordingTelemetryProvider):
    """Collects finished spans and metrics.

    Example::

        telemetry = MockTelemetryProvider()
        kit = PairRoom(backend, telemetry=telemetry)
        await kit.create_room()
        assert telemetry.get_spans(SpanKind.ROOM_CREATE)
    """

    def __init__(self) -> None:
        super().__init__()
        self.spans: list[Span] = []
        self.metrics: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return "mock"

    def _on_span_end(self, span: Span) -> None:
        self.spans.append(span)

    def get_spans(self, kind: SpanKind) -> list[Span]:
        return [s for s in self.spans if s.kind == kind]

    def get_active_spans(self) -> list[Span]:
        return self.open_spans

    def record_metric(
        self,
        name: str,
        value: float,
        *,
        unit: str = "",
        attributes: dict[str, Any] | None = None,
    ) -> None:
        self.metrics.append(
            {"name": name, "value": value, "unit": unit, "attributes": dict(attributes or {})}
        )

    def get_metrics(self, name: str) -> list[dict[str, Any]]:
        return [m for m in self.metrics if m["name"] == name]

    def reset(self) -> None:
        super().reset()
        self.spans.clear()
        self.metrics.clear()
