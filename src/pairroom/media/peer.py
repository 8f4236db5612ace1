"""Peer connection abstraction driven by the call signaling state machine."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, Literal

from pairroom.media.base import MediaTrack
from pairroom.models.enums import TrackKind

logger = logging.getLogger("pairroom.media.peer")

IceCandidateCallback = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]
TrackCallback = Callable[[MediaTrack], Coroutine[Any, Any, None]]
ConnectionStateCallback = Callable[[str], Coroutine[Any, Any, None]]


@dataclass(frozen=True)
class SessionDescription:
    """An SDP offer or answer."""

    type: Literal["offer", "answer"]
    sdp: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionDescription:
        kind = data.get("type")
        sdp = data.get("sdp")
        if kind not in ("offer", "answer") or not isinstance(sdp, str) or not sdp:
            raise ValueError(f"malformed session description: {data!r}")
        return cls(type=kind, sdp=sdp)


class PeerConnection(ABC):
    """The WebRTC transport for one call attempt.

    Mirrors the subset of ``RTCPeerConnection`` the call state machine needs.
    Callbacks are coroutine functions registered before negotiation starts.
    """

    def __init__(self) -> None:
        self._ice_callback: IceCandidateCallback | None = None
        self._track_callback: TrackCallback | None = None
        self._state_callback: ConnectionStateCallback | None = None

    def on_ice_candidate(self, callback: IceCandidateCallback) -> None:
        self._ice_callback = callback

    def on_track(self, callback: TrackCallback) -> None:
        self._track_callback = callback

    def on_connection_state_change(self, callback: ConnectionStateCallback) -> None:
        self._state_callback = callback

    @property
    @abstractmethod
    def remote_description(self) -> SessionDescription | None:
        """The applied remote description, or ``None`` before it is set."""
        ...

    @abstractmethod
    def add_track(self, track: MediaTrack) -> None:
        """Start sending *track*."""
        ...

    @abstractmethod
    async def replace_track(self, kind: TrackKind, track: MediaTrack) -> None:
        """Swap the outgoing track of *kind* without renegotiating."""
        ...

    @abstractmethod
    async def create_offer(self) -> SessionDescription: ...

    @abstractmethod
    async def create_answer(self) -> SessionDescription: ...

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None: ...

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None: ...

    @abstractmethod
    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        """Apply a remote ICE candidate. Only valid after the remote description."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Tear down the transport. Synchronous and idempotent."""
        ...


PeerConnectionFactory = Callable[[list[dict[str, str]]], PeerConnection]


class MockPeerConnection(PeerConnection):
    """Scripted peer connection for tests and development.

    SDP strings have the shape ``mock-sdp:<type>:<kinds>`` where ``<kinds>``
    lists the media kinds the sender offers. Applying a remote description
    fires ``on_track`` once per remote kind, and setting the local
    description emits *ice_candidate_count* candidates.
    """

    def __init__(
        self,
        ice_servers: list[dict[str, str]] | None = None,
        *,
        ice_candidate_count: int = 2,
    ) -> None:
        super().__init__()
        self.ice_servers = list(ice_servers or [])
        self.ice_candidate_count = ice_candidate_count
        self.senders: dict[TrackKind, MediaTrack] = {}
        self.local: SessionDescription | None = None
        self._remote: SessionDescription | None = None
        self.added_candidates: list[dict[str, Any]] = []
        self.replaced: list[tuple[TrackKind, MediaTrack]] = []
        self.closed = False

    @property
    def remote_description(self) -> SessionDescription | None:
        return self._remote

    def add_track(self, track: MediaTrack) -> None:
        self.senders[track.kind] = track

    async def replace_track(self, kind: TrackKind, track: MediaTrack) -> None:
        if kind not in self.senders:
            raise ValueError(f"no {kind} sender to replace")
        self.senders[kind] = track
        self.replaced.append((kind, track))

    def _sdp(self, kind: str) -> str:
        kinds = ",".join(sorted(k.value for k in self.senders))
        return f"mock-sdp:{kind}:{kinds}"

    async def create_offer(self) -> SessionDescription:
        return SessionDescription(type="offer", sdp=self._sdp("offer"))

    async def create_answer(self) -> SessionDescription:
        if self._remote is None or self._remote.type != "offer":
            raise RuntimeError("InvalidStateError: no remote offer to answer")
        return SessionDescription(type="answer", sdp=self._sdp("answer"))

    async def set_local_description(self, description: SessionDescription) -> None:
        self.local = description
        if self._ice_callback is None:
            return
        for index in range(self.ice_candidate_count):
            await self._ice_callback(
                {
                    "candidate": (
                        f"candidate:{index} 1 udp 2122260223 10.0.0.{index + 1} 5000 typ host"
                    ),
                    "sdpMid": "0",
                    "sdpMLineIndex": 0,
                }
            )

    async def set_remote_description(self, description: SessionDescription) -> None:
        parts = description.sdp.split(":")
        if len(parts) != 3 or parts[0] != "mock-sdp":
            raise ValueError(f"unparseable SDP: {description.sdp!r}")
        self._remote = description
        if self._track_callback is None:
            return
        for kind in filter(None, parts[2].split(",")):
            await self._track_callback(MediaTrack(TrackKind(kind), label="remote"))

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        if self._remote is None:
            raise RuntimeError("InvalidStateError: remote description not set")
        self.added_candidates.append(candidate)

    async def simulate_connection_state(self, state: str) -> None:
        """Deliver a connection state change (e.g. ``"failed"``)."""
        if self._state_callback is not None:
            await self._state_callback(state)

    def close(self) -> None:
        self.closed = True
