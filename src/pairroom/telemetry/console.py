"""Telemetry provider that writes one log line per finished span or metric."""

from __future__ import annotations

import logging
from typing import Any

from pairroom.telemetry.base import RecordingTelemetryProvider, Span

logger = logging.getLogger("pairroom.telemetry")


def _suffix(attributes: dict[str, Any]) -> str:
    if not attributes:
        return ""
    return " [" + ", ".join(f"{k}={v}" for k, v in attributes.items()) + "]"


class ConsoleTelemetryProvider(RecordingTelemetryProvider):
    """Logs to ``pairroom.telemetry``; useful while developing a client.

    Example::

        logging.basicConfig(level=logging.INFO)
        kit = PairRoom(backend, telemetry=ConsoleTelemetryProvider())
    """

    def __init__(self, *, level: int = logging.INFO) -> None:
        super().__init__()
        self._level = level

    @property
    def name(self) -> str:
        return "console"

    def _on_span_end(self, span: Span) -> None:
        where = f" room={span.room_code}" if span.room_code else ""
        line = f"{span.name}{where} {span.duration_ms or 0.0:.1f}ms{_suffix(span.attributes)}"
        if span.status == "error":
            logger.log(self._level, "[SPAN ERROR] %s error=%s", line, span.error_message)
        else:
            logger.log(self._level, "[SPAN] %s", line)

    def record_metric(
        self,
        name: str,
        value: float,
        *,
        unit: str = "",
        attributes: dict[str, Any] | None = None,
    ) -> None:
        unit_part = f" {unit}" if unit else ""
        logger.log(
            self._level, "[METRIC] %s = %.2f%s%s", name, value, unit_part, _suffix(attributes or {})
        )

    def close(self) -> None:
        if self.open_spans:
            logger.warning(
                "ConsoleTelemetryProvider closed with %d open spans", len(self.open_spans)
            )
        self.reset()
