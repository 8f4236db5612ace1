"""Media capture and peer connection collaborators."""

from pairroom.media.base import MediaSource, MediaStream, MediaTrack
from pairroom.media.mock import MockMediaSource, MockMediaTrack
from pairroom.media.peer import (
    MockPeerConnection,
    PeerConnection,
    PeerConnectionFactory,
    SessionDescription,
)

__all__ = [
    "MediaSource",
    "MediaStream",
    "MediaTrack",
    "MockMediaSource",
    "MockMediaTrack",
    "MockPeerConnection",
    "PeerConnection",
    "PeerConnectionFactory",
    "SessionDescription",
]
