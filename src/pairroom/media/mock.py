"""Mock media source for tests and headless development."""

from __future__ import annotations

import asyncio

from pairroom.core.errors import MediaAccessDeniedError
from pairroom.media.base import MediaSource, MediaStream, MediaTrack
from pairroom.models.enums import TrackKind


class MockMediaTrack(MediaTrack):
    """In-memory track that records whether it was released."""

    def __init__(self, kind: TrackKind, *, label: str = "") -> None:
        super().__init__(kind, label=label)
        self.released = False

    def _release(self) -> None:
        self.released = True

    def end_externally(self) -> None:
        """Simulate the platform ending the track (device unplugged, sharing revoked)."""
        if not self.ended:
            self._mark_ended()


class MockMediaSource(MediaSource):
    """Hands out :class:`MockMediaTrack` streams.

    Args:
        deny: Refuse camera/microphone access.
        deny_display: Refuse screen capture.
        delay: Seconds to wait before answering, to exercise timeouts.
    """

    def __init__(
        self,
        *,
        deny: bool = False,
        deny_display: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.deny = deny
        self.deny_display = deny_display
        self.delay = delay
        self.acquired: list[MediaStream] = []

    async def acquire(self, *, audio: bool = True, video: bool = True) -> MediaStream:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.deny:
            raise MediaAccessDeniedError("camera/microphone permission denied")
        tracks: list[MediaTrack] = []
        if audio:
            tracks.append(MockMediaTrack(TrackKind.AUDIO, label="mock-microphone"))
        if video:
            tracks.append(MockMediaTrack(TrackKind.VIDEO, label="mock-camera"))
        stream = MediaStream(tracks)
        self.acquired.append(stream)
        return stream

    async def acquire_display(self) -> MediaStream:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.deny_display:
            raise MediaAccessDeniedError(
                "screen capture permission denied",
                user_message="Screen sharing permission was denied.",
            )
        stream = MediaStream([MockMediaTrack(TrackKind.VIDEO, label="mock-screen")])
        self.acquired.append(stream)
        return stream

    @property
    def live_streams(self) -> list[MediaStream]:
        """Streams with at least one track still capturing."""
        return [s for s in self.acquired if s.active]
