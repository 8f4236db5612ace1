"""Telemetry provider interface and the span record shared by providers."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class SpanKind(StrEnum):
    """Operations PairRoom traces."""

    ROOM_CREATE = "room.create"
    ROOM_JOIN = "room.join"
    ROOM_LEAVE = "room.leave"
    ROOM_SWEEP = "room.sweep"
    SYNC_HISTORY = "sync.history"
    SYNC_POLL = "sync.poll"
    CALL_NEGOTIATE = "call.negotiate"


class Attr:
    """Attribute keys attached to PairRoom spans."""

    ROOM_CODE = "room.code"
    USER_ID = "user.id"
    ROLE = "room.role"
    EXPIRED_COUNT = "room.expired_count"
    BACKEND_TYPE = "backend.type"
    MESSAGE_COUNT = "sync.message_count"
    CALL_ID = "call.id"
    CALL_KIND = "call.kind"
    CALL_DIRECTION = "call.direction"
    CALL_END_STATE = "call.end_state"


@dataclass
class Span:
    """One traced operation, from ``start_span`` to ``end_span``."""

    kind: SpanKind
    name: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    parent_id: str | None = None
    room_code: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    status: str = "ok"
    error_message: str | None = None

    @property
    def duration_ms(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    def finish(
        self, status: str, error_message: str | None, attributes: dict[str, Any] | None
    ) -> None:
        self.end_time = datetime.now(UTC)
        self.status = status
        self.error_message = error_message
        self.attributes.update(attributes or {})


class TelemetryProvider(ABC):
    """Receives spans and metrics from the registry, sync engine and signaling.

    Span ids are opaque strings; a provider that does not track spans may
    return the same id for every span.
    """

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def start_span(
        self,
        kind: SpanKind,
        name: str,
        *,
        parent_id: str | None = None,
        attributes: dict[str, Any] | None = None,
        room_code: str | None = None,
    ) -> str:
        """Open a span and return its id."""

    @abstractmethod
    def end_span(
        self,
        span_id: str,
        *,
        status: str = "ok",
        error_message: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        """Close the span *span_id*. Unknown ids are ignored."""

    @abstractmethod
    def set_attribute(self, span_id: str, key: str, value: Any) -> None: ...

    @abstractmethod
    def record_metric(
        self,
        name: str,
        value: float,
        *,
        unit: str = "",
        attributes: dict[str, Any] | None = None,
    ) -> None: ...

    def close(self) -> None:  # noqa: B027
        """Flush and release the provider. Called by ``PairRoom.close``."""

    def reset(self) -> None:  # noqa: B027
        """Forget recorded state."""

    @contextmanager
    def span(self, kind: SpanKind, name: str, **kwargs: Any) -> Generator[str, None, None]:
        """Run a block inside a span; an escaping exception marks it ``error``."""
        span_id = self.start_span(kind, name, **kwargs)
        try:
            yield span_id
        except BaseException as exc:
            self.end_span(span_id, status="error", error_message=str(exc) or type(exc).__name__)
            raise
        self.end_span(span_id)


class RecordingTelemetryProvider(TelemetryProvider):
    """Keeps open spans as :class:`Span` records and hands finished ones to
    :meth:`_on_span_end`."""

    def __init__(self) -> None:
        self._open: dict[str, Span] = {}

    def start_span(
        self,
        kind: SpanKind,
        name: str,
        *,
        parent_id: str | None = None,
        attributes: dict[str, Any] | None = None,
        room_code: str | None = None,
    ) -> str:
        span = Span(
            kind,
            name,
            parent_id=parent_id,
            room_code=room_code,
            attributes=dict(attributes or {}),
        )
        self._open[span.id] = span
        return span.id

    def end_span(
        self,
        span_id: str,
        *,
        status: str = "ok",
        error_message: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        span = self._open.pop(span_id, None)
        if span is not None:
            span.finish(status, error_message, attributes)
            self._on_span_end(span)

    def set_attribute(self, span_id: str, key: str, value: Any) -> None:
        span = self._open.get(span_id)
        if span is not None:
            span.attributes[key] = value

    @property
    def open_spans(self) -> list[Span]:
        return list(self._open.values())

    @abstractmethod
    def _on_span_end(self, span: Span) -> None: ...

    def reset(self) -> None:
        self._open.clear()
