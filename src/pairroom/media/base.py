"""Media capture abstractions: tracks, streams and the media source."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from uuid import uuid4

from pairroom.models.enums import TrackKind

logger = logging.getLogger("pairroom.media")

EndedCallback = Callable[["MediaTrack"], None]


class MediaTrack:
    """A single captured audio or video track.

    Subclasses wrap a platform track and override :meth:`_release`. The
    ``on_ended`` callbacks fire exactly once, either when the track is
    stopped locally or when the platform ends it (e.g. the user revokes
    screen sharing from the operating system).
    """

    def __init__(self, kind: TrackKind, *, label: str = "", track_id: str | None = None) -> None:
        self.kind = kind
        self.label = label
        self.id = track_id or uuid4().hex
        self._enabled = True
        self._ended = False
        self._ended_callbacks: list[EndedCallback] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = value

    @property
    def ended(self) -> bool:
        return self._ended

    def on_ended(self, callback: EndedCallback) -> None:
        """Register *callback* for the track's termination."""
        if self._ended:
            callback(self)
            return
        self._ended_callbacks.append(callback)

    def stop(self) -> None:
        """Release the capture device. Idempotent."""
        if self._ended:
            return
        self._release()
        self._mark_ended()

    def _release(self) -> None:  # noqa: B027
        """Free the platform resource behind the track."""

    def _mark_ended(self) -> None:
        self._ended = True
        callbacks, self._ended_callbacks = self._ended_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Track ended callback failed for %s track %s", self.kind, self.id)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, label={self.label!r})"


class MediaStream:
    """A group of tracks acquired together."""

    def __init__(self, tracks: list[MediaTrack], *, stream_id: str | None = None) -> None:
        self.id = stream_id or uuid4().hex
        self.tracks = list(tracks)

    def get_track(self, kind: TrackKind) -> MediaTrack | None:
        for track in self.tracks:
            if track.kind == kind:
                return track
        return None

    @property
    def kinds(self) -> set[TrackKind]:
        return {t.kind for t in self.tracks}

    @property
    def active(self) -> bool:
        return any(not t.ended for t in self.tracks)

    def stop(self) -> None:
        """Stop every track. Idempotent."""
        for track in self.tracks:
            track.stop()


class MediaSource(ABC):
    """Access to camera, microphone and screen capture."""

    @abstractmethod
    async def acquire(self, *, audio: bool = True, video: bool = True) -> MediaStream:
        """Open the requested devices.

        Raises ``MediaAccessDeniedError`` if permission is refused or no
        device is available.
        """
        ...

    @abstractmethod
    async def acquire_display(self) -> MediaStream:
        """Start a screen capture. Raises ``MediaAccessDeniedError`` on refusal."""
        ...
