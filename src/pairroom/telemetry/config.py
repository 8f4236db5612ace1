"""Telemetry configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pairroom.telemetry.base import SpanKind, TelemetryProvider


@dataclass
class TelemetryConfig:
    """Configuration for telemetry collection.

    Attributes:
        provider: The telemetry provider to use. Defaults to
            ``NoopTelemetryProvider`` if not set.
        enabled_spans: If set, only these span kinds are recorded.
            ``None`` means all span kinds are enabled.
    """

    provider: TelemetryProvider | None = None
    enabled_spans: set[SpanKind] | None = None
    metadata: dict[str, str] = field(default_factory=dict)


def resolve_provider(telemetry: TelemetryConfig | TelemetryProvider | None) -> TelemetryProvider:
    """Return a concrete provider for any accepted ``telemetry=`` argument."""
    from pairroom.telemetry.base import TelemetryProvider
    from pairroom.telemetry.filtered import FilteredTelemetryProvider
    from pairroom.telemetry.noop import NoopTelemetryProvider

    if isinstance(telemetry, TelemetryProvider):
        return telemetry
    if isinstance(telemetry, TelemetryConfig):
        provider = telemetry.provider or NoopTelemetryProvider()
        if telemetry.enabled_spans is not None:
            return FilteredTelemetryProvider(provider, telemetry.enabled_spans)
        return provider
    return NoopTelemetryProvider()
