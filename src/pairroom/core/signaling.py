"""Call signaling state machine driving WebRTC negotiation over room messages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from contextlib import ExitStack
from datetime import UTC, datetime, timedelta
from typing import Any

from pairroom.config import PairRoomConfig
from pairroom.core.errors import (
    CallStateError,
    MediaAccessDeniedError,
    PairRoomError,
    PairRoomTimeoutError,
    SignalingError,
)
from pairroom.media.base import MediaSource, MediaStream, MediaTrack
from pairroom.media.peer import PeerConnection, PeerConnectionFactory, SessionDescription
from pairroom.models.call import CallSession
from pairroom.models.enums import CallDirection, CallKind, CallState, SignalType, TrackKind
from pairroom.models.message import Message, SignalMetadata
from pairroom.telemetry.base import Attr, SpanKind, TelemetryProvider
from pairroom.telemetry.config import TelemetryConfig, resolve_provider

logger = logging.getLogger("pairroom.signaling")

__all__ = ["CallSignaling", "SignalSender", "CallCallback"]

SignalSender = Callable[[SignalMetadata], Coroutine[Any, Any, None]]
CallCallback = Callable[[CallSession], Coroutine[Any, Any, None]]

END_HANGUP = "hangup"
END_DECLINED = "declined"
END_BUSY = "busy"
END_FAILED = "failed"
END_MEDIA_UNAVAILABLE = "media-unavailable"


class CallSignaling:
    """State machine for one participant's calls in a room.

    ``idle -> negotiating -> active -> ended`` with ``failed`` as the second
    terminal state. Signals arrive as room messages through
    :meth:`handle_signal` and leave through the *send_signal* coroutine.

    Local media and the peer connection of the current attempt live on an
    :class:`~contextlib.ExitStack`; ending the call in any way closes it, so
    devices are released synchronously.
    """

    def __init__(
        self,
        local_id: str,
        send_signal: SignalSender,
        media_source: MediaSource,
        peer_factory: PeerConnectionFactory,
        config: PairRoomConfig | None = None,
        *,
        on_state_change: CallCallback | None = None,
        on_incoming_call: CallCallback | None = None,
        telemetry: TelemetryConfig | TelemetryProvider | None = None,
    ) -> None:
        self._local_id = local_id
        self._send = send_signal
        self._media = media_source
        self._peer_factory = peer_factory
        self._config = config or PairRoomConfig()
        self._on_state_change = on_state_change
        self._on_incoming_call = on_incoming_call
        self._telemetry = resolve_provider(telemetry)

        self._call: CallSession | None = None
        self._stack: ExitStack | None = None
        self._peer: PeerConnection | None = None
        self._local_stream: MediaStream | None = None
        self._screen_stream: MediaStream | None = None
        self._remote_tracks: list[MediaTrack] = []
        self._remote_offer: SessionDescription | None = None
        self._outgoing_ice: list[dict[str, Any]] | None = None
        self._closed_call_ids: set[str] = set()
        self._watchdog: asyncio.Task[None] | None = None
        self._span_id: str | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    # -- Introspection --

    @property
    def call(self) -> CallSession | None:
        """The current or most recent call attempt."""
        return self._call

    @property
    def state(self) -> CallState:
        return self._call.state if self._call is not None else CallState.IDLE

    @property
    def busy(self) -> bool:
        return self.state in (CallState.NEGOTIATING, CallState.ACTIVE)

    @property
    def local_stream(self) -> MediaStream | None:
        return self._local_stream

    @property
    def remote_tracks(self) -> list[MediaTrack]:
        return list(self._remote_tracks)

    # -- Outgoing call --

    async def start_call(self, kind: CallKind = CallKind.VIDEO) -> CallSession:
        """Acquire media and send an offer.

        Raises:
            CallStateError: A call is already negotiating or active.
            MediaAccessDeniedError: Devices were refused; the state returns
                to ``idle``.
            PairRoomTimeoutError: Devices did not answer within
                ``media_timeout``; the state returns to ``idle``.
        """
        if self.busy:
            raise CallStateError(f"Cannot start a call while {self.state}")
        call = CallSession(kind=kind, direction=CallDirection.OUTGOING)
        self._begin(call)
        await self._notify(call)

        try:
            stream = await self._acquire(kind)
        except (MediaAccessDeniedError, PairRoomTimeoutError):
            self._abandon(call)
            await self._notify(call)
            raise
        if self._call is not call or call.state.is_finished:
            stream.stop()
            return call

        peer = self._open(call, stream)
        try:
            offer = await peer.create_offer()
            await peer.set_local_description(offer)
            await self._send_signal(call, SignalType.OFFER, offer.to_dict())
            await self._flush_outgoing_ice(call)
        except PairRoomError as exc:
            await self._fail(call, exc)
            raise
        except Exception as exc:
            await self._fail(call, SignalingError(f"offer failed: {exc}"))
            raise SignalingError(f"offer failed: {exc}") from exc
        return call

    # -- Incoming call --

    async def accept_call(self) -> CallSession:
        """Answer the pending incoming offer."""
        call = self._call
        if (
            call is None
            or call.direction != CallDirection.INCOMING
            or call.state != CallState.NEGOTIATING
            or self._peer is not None
            or self._remote_offer is None
        ):
            raise CallStateError("There is no incoming call to accept")
        offer = self._remote_offer
        self._remote_offer = None

        try:
            stream = await self._acquire(call.kind)
        except (MediaAccessDeniedError, PairRoomTimeoutError):
            self._release(call)
            call.end_reason = END_MEDIA_UNAVAILABLE
            self._closed_call_ids.add(call.call_id)
            self._abandon(call)
            await self._notify(call)
            await self._send_end(call, END_MEDIA_UNAVAILABLE)
            raise
        if self._call is not call or call.state.is_finished:
            stream.stop()
            return call

        peer = self._open(call, stream)
        try:
            await self._apply_remote(call, peer, offer)
            answer = await peer.create_answer()
            await peer.set_local_description(answer)
            await self._send_signal(call, SignalType.ANSWER, answer.to_dict())
            await self._flush_outgoing_ice(call)
        except PairRoomError as exc:
            await self._fail(call, exc)
            raise
        except Exception as exc:
            await self._fail(call, SignalingError(f"answer failed: {exc}"))
            raise SignalingError(f"answer failed: {exc}") from exc
        return call

    async def decline_call(self) -> None:
        """Refuse the pending incoming offer."""
        call = self._call
        if (
            call is None
            or call.direction != CallDirection.INCOMING
            or call.state != CallState.NEGOTIATING
            or self._peer is not None
        ):
            raise CallStateError("There is no incoming call to decline")
        self._remote_offer = None
        self._finish(call, CallState.ENDED, reason=END_DECLINED)
        await self._notify(call)
        await self._send_end(call, END_DECLINED)

    # -- Hang up --

    async def hang_up(self) -> None:
        """End the current call from any state; a no-op when there is none."""
        call = self._call
        if call is None or call.state.is_finished or call.state == CallState.IDLE:
            return
        self._finish(call, CallState.ENDED, reason=END_HANGUP)
        await self._notify(call)
        await self._send_end(call, END_HANGUP)

    # -- Media controls --

    async def replace_track(self, kind: TrackKind, track: MediaTrack) -> None:
        """Swap the outgoing track of *kind* without renegotiation."""
        call, peer = self._require_active()
        await peer.replace_track(kind, track)
        await self._send_signal(
            call, SignalType.TRACK_REPLACE, {"kind": kind.value, "source": "custom"}
        )

    async def start_screen_share(self) -> None:
        """Replace the camera track with a screen capture."""
        call, peer = self._require_active()
        if call.kind != CallKind.VIDEO:
            raise CallStateError("Screen sharing needs a video call")
        if call.screen_sharing:
            return
        display = await self._acquire_display()
        if self._call is not call or call.state != CallState.ACTIVE or self._stack is None:
            display.stop()
            return
        track = display.get_track(TrackKind.VIDEO)
        if track is None:
            display.stop()
            raise MediaAccessDeniedError("display capture returned no video track")
        self._stack.callback(display.stop)
        self._screen_stream = display
        call_id = call.call_id
        track.on_ended(lambda ended: self._on_display_ended(call_id, ended))
        await peer.replace_track(TrackKind.VIDEO, track)
        call.screen_sharing = True
        logger.info("Screen sharing started in call %s", call_id)
        await self._send_signal(
            call, SignalType.TRACK_REPLACE, {"kind": TrackKind.VIDEO.value, "source": "screen"}
        )
        await self._notify(call)

    async def stop_screen_share(self) -> None:
        """Return to the camera track."""
        call, _ = self._require_active()
        if not call.screen_sharing:
            return
        await self._revert_to_camera(call.call_id)

    def toggle_mute(self) -> bool:
        """Flip the microphone. Returns ``True`` when now muted."""
        call = self._require_media()
        track = self._local_stream.get_track(TrackKind.AUDIO) if self._local_stream else None
        if track is None:
            raise CallStateError("This call has no microphone track")
        track.enabled = not track.enabled
        call.muted = not track.enabled
        self._schedule_notify(call)
        return call.muted

    def toggle_camera(self) -> bool:
        """Flip the camera. Returns ``True`` when the camera is now on."""
        call = self._require_media()
        track = self._local_stream.get_track(TrackKind.VIDEO) if self._local_stream else None
        if track is None:
            raise CallStateError("This call has no camera track")
        track.enabled = not track.enabled
        call.camera_enabled = track.enabled
        self._schedule_notify(call)
        return call.camera_enabled

    # -- Inbound signals --

    async def handle_signal(self, message: Message) -> None:
        """Feed one signal message from the room log into the state machine."""
        signal = message.signal
        if signal is None:
            return
        if message.sender_id == self._local_id:
            return
        if signal.call_id in self._closed_call_ids:
            logger.debug("Ignoring %s for closed call %s", signal.signal_type, signal.call_id)
            return

        if signal.signal_type == SignalType.OFFER:
            await self._on_offer(message, signal)
            return

        call = self._call
        if call is None or call.call_id != signal.call_id or call.state.is_finished:
            logger.debug("Ignoring %s for unknown call %s", signal.signal_type, signal.call_id)
            return

        match signal.signal_type:
            case SignalType.ANSWER:
                await self._on_answer(call, signal)
            case SignalType.ICE_CANDIDATE:
                await self._on_remote_ice(call, signal)
            case SignalType.CALL_END:
                reason = str(signal.payload.get("reason") or "remote-hangup")
                logger.info("Call %s ended by peer (%s)", call.call_id, reason)
                self._finish(call, CallState.ENDED, reason=reason)
                await self._notify(call)
            case SignalType.TRACK_REPLACE:
                call.remote_screen_sharing = signal.payload.get("source") == "screen"
                await self._notify(call)

    async def _on_offer(self, message: Message, signal: SignalMetadata) -> None:
        age = datetime.now(UTC) - message.timestamp
        if age > timedelta(seconds=self._config.call_timeout):
            logger.debug(
                "Ignoring stale offer %s (%.0fs old)", signal.call_id, age.total_seconds()
            )
            return
        current = self._call
        if self.busy and current is not None:
            if current.call_id == signal.call_id:
                return
            logger.info("Rejecting call %s while busy with %s", signal.call_id, current.call_id)
            self._closed_call_ids.add(signal.call_id)
            await self._safe_send(
                SignalMetadata(
                    signal_type=SignalType.CALL_END,
                    call_id=signal.call_id,
                    payload={"reason": END_BUSY},
                )
            )
            return

        call = CallSession(
            kind=signal.call_kind or CallKind.VIDEO,
            direction=CallDirection.INCOMING,
            call_id=signal.call_id,
            peer_id=message.sender_id,
        )
        self._begin(call)
        try:
            self._remote_offer = SessionDescription.from_dict(signal.payload)
        except ValueError as exc:
            await self._fail(call, SignalingError(f"malformed offer: {exc}"))
            return
        logger.info("Incoming %s call %s from %s", call.kind, call.call_id, call.peer_id)
        await self._notify(call)
        if self._on_incoming_call is not None:
            try:
                await self._on_incoming_call(call)
            except Exception:
                logger.exception("Incoming call handler failed")

    async def _on_answer(self, call: CallSession, signal: SignalMetadata) -> None:
        peer = self._peer
        if (
            call.direction != CallDirection.OUTGOING
            or call.remote_description_set
            or peer is None
            or peer.remote_description is not None
        ):
            await self._fail(call, SignalingError("answer without a pending offer"))
            return
        try:
            answer = SessionDescription.from_dict(signal.payload)
        except ValueError as exc:
            await self._fail(call, SignalingError(f"malformed answer: {exc}"))
            return
        try:
            await self._apply_remote(call, peer, answer)
        except PairRoomError as exc:
            await self._fail(call, exc)
        except Exception as exc:
            await self._fail(call, SignalingError(f"could not apply answer: {exc}"))

    async def _on_remote_ice(self, call: CallSession, signal: SignalMetadata) -> None:
        candidate = dict(signal.payload)
        if not candidate.get("candidate"):
            await self._fail(call, SignalingError("ICE candidate without a candidate line"))
            return
        peer = self._peer
        if peer is None or not call.remote_description_set:
            call.pending_ice_candidates.append(candidate)
            return
        try:
            await peer.add_ice_candidate(candidate)
        except Exception as exc:
            await self._fail(call, SignalingError(f"could not add ICE candidate: {exc}"))

    # -- Internals --

    def _begin(self, call: CallSession) -> None:
        self._call = call
        self._remote_tracks = []
        self._outgoing_ice = []
        self._span_id = self._telemetry.start_span(
            SpanKind.CALL_NEGOTIATE,
            "signaling.negotiate",
            attributes={
                Attr.CALL_ID: call.call_id,
                Attr.CALL_KIND: call.kind.value,
                Attr.CALL_DIRECTION: call.direction.value,
            },
        )
        self._watchdog = asyncio.get_running_loop().create_task(
            self._watch_negotiation(call), name=f"pairroom-call-watchdog:{call.call_id}"
        )

    def _abandon(self, call: CallSession) -> None:
        """Return to idle after a failed media acquisition."""
        self._cancel_watchdog()
        call.state = CallState.IDLE
        call.ended_at = datetime.now(UTC)
        self._closed_call_ids.add(call.call_id)
        self._end_span("idle")

    def _open(self, call: CallSession, stream: MediaStream) -> PeerConnection:
        stack = ExitStack()
        stack.callback(stream.stop)
        peer = self._peer_factory(list(self._config.ice_servers))
        stack.callback(peer.close)
        call_id = call.call_id
        peer.on_ice_candidate(lambda c: self._on_local_ice(call_id, c))
        peer.on_track(lambda t: self._on_remote_track(call_id, t))
        peer.on_connection_state_change(lambda s: self._on_connection_state(call_id, s))
        for track in stream.tracks:
            peer.add_track(track)
        self._stack = stack
        self._peer = peer
        self._local_stream = stream
        call.local_track_kinds = set(stream.kinds)
        call.muted = False
        call.camera_enabled = TrackKind.VIDEO in stream.kinds
        return peer

    async def _apply_remote(
        self, call: CallSession, peer: PeerConnection, description: SessionDescription
    ) -> None:
        await peer.set_remote_description(description)
        call.remote_description_set = True
        while call.pending_ice_candidates and not call.state.is_finished:
            candidate = call.pending_ice_candidates.pop(0)
            await peer.add_ice_candidate(candidate)

    async def _acquire(self, kind: CallKind) -> MediaStream:
        try:
            async with asyncio.timeout(self._config.media_timeout):
                return await self._media.acquire(audio=True, video=kind == CallKind.VIDEO)
        except TimeoutError as exc:
            raise PairRoomTimeoutError(
                f"media acquisition exceeded {self._config.media_timeout}s",
                user_message="Camera or microphone did not respond.",
            ) from exc

    async def _acquire_display(self) -> MediaStream:
        try:
            async with asyncio.timeout(self._config.media_timeout):
                return await self._media.acquire_display()
        except TimeoutError as exc:
            raise PairRoomTimeoutError(
                f"display capture exceeded {self._config.media_timeout}s"
            ) from exc

    async def _on_local_ice(self, call_id: str, candidate: dict[str, Any]) -> None:
        call = self._call
        if call is None or call.call_id != call_id or call.state.is_finished:
            return
        if self._outgoing_ice is not None:
            self._outgoing_ice.append(candidate)
            return
        await self._safe_send(
            SignalMetadata(
                signal_type=SignalType.ICE_CANDIDATE,
                call_id=call_id,
                call_kind=call.kind,
                payload=candidate,
            )
        )

    async def _flush_outgoing_ice(self, call: CallSession) -> None:
        queued, self._outgoing_ice = self._outgoing_ice or [], None
        for candidate in queued:
            await self._send_signal(call, SignalType.ICE_CANDIDATE, candidate)

    async def _on_remote_track(self, call_id: str, track: MediaTrack) -> None:
        call = self._call
        if call is None or call.call_id != call_id or call.state.is_finished:
            return
        self._remote_tracks.append(track)
        call.remote_track_kinds.add(track.kind)
        if call.state == CallState.NEGOTIATING and call.media_path_ready:
            call.state = CallState.ACTIVE
            call.connected_at = datetime.now(UTC)
            self._cancel_watchdog()
            self._end_span("ok")
            logger.info("Call %s active", call.call_id)
            await self._notify(call)

    async def _on_connection_state(self, call_id: str, state: str) -> None:
        call = self._call
        if call is None or call.call_id != call_id or call.state.is_finished:
            return
        logger.debug("Call %s connection state %s", call_id, state)
        if state == "failed":
            await self._fail(call, SignalingError("peer connection failed"))

    def _on_display_ended(self, call_id: str, track: MediaTrack) -> None:
        screen = self._screen_stream
        if screen is None or track not in screen.tracks:
            return
        call = self._call
        if call is None or call.call_id != call_id or call.state.is_finished:
            return
        logger.info("Screen capture ended externally in call %s", call_id)
        self._spawn(self._revert_to_camera(call_id))

    async def _revert_to_camera(self, call_id: str) -> None:
        call = self._call
        peer = self._peer
        if call is None or call.call_id != call_id or not call.screen_sharing or peer is None:
            return
        screen, self._screen_stream = self._screen_stream, None
        call.screen_sharing = False
        camera = self._local_stream.get_track(TrackKind.VIDEO) if self._local_stream else None
        if camera is not None:
            await peer.replace_track(TrackKind.VIDEO, camera)
        if screen is not None:
            screen.stop()
        await self._send_signal(
            call, SignalType.TRACK_REPLACE, {"kind": TrackKind.VIDEO.value, "source": "camera"}
        )
        await self._notify(call)

    async def _watch_negotiation(self, call: CallSession) -> None:
        await asyncio.sleep(self._config.call_timeout)
        if self._call is call and call.state == CallState.NEGOTIATING:
            self._watchdog = None
            await self._fail(
                call,
                PairRoomTimeoutError(
                    f"call {call.call_id} not connected within {self._config.call_timeout}s",
                    user_message="The call could not be connected in time.",
                ),
            )

    async def _fail(self, call: CallSession, error: PairRoomError) -> None:
        if call.state.is_finished:
            return
        logger.warning("Call %s failed: %s", call.call_id, error)
        self._finish(call, CallState.FAILED, reason=END_FAILED, failure=error)
        await self._notify(call)
        await self._send_end(call, END_FAILED)

    def _finish(
        self,
        call: CallSession,
        state: CallState,
        *,
        reason: str | None = None,
        failure: Exception | None = None,
    ) -> None:
        if call.state.is_finished:
            return
        self._release(call)
        call.state = state
        call.ended_at = datetime.now(UTC)
        call.end_reason = reason
        call.failure = failure
        self._closed_call_ids.add(call.call_id)
        self._end_span("ok" if state == CallState.ENDED else "error", failure)

    def _release(self, call: CallSession) -> None:
        self._cancel_watchdog()
        self._screen_stream = None
        stack, self._stack = self._stack, None
        self._peer = None
        self._local_stream = None
        self._remote_offer = None
        self._outgoing_ice = None
        call.pending_ice_candidates.clear()
        call.screen_sharing = False
        if stack is not None:
            stack.close()

    def _cancel_watchdog(self) -> None:
        watchdog, self._watchdog = self._watchdog, None
        if watchdog is not None and watchdog is not asyncio.current_task() and not watchdog.done():
            watchdog.cancel()

    def _end_span(self, status: str, error: Exception | None = None) -> None:
        span_id, self._span_id = self._span_id, None
        if span_id is None:
            return
        call = self._call
        attributes = {Attr.CALL_END_STATE: call.state.value} if call is not None else None
        self._telemetry.end_span(
            span_id,
            status=status,
            error_message=str(error) if error is not None else None,
            attributes=attributes,
        )

    def _require_active(self) -> tuple[CallSession, PeerConnection]:
        call = self._call
        if call is None or call.state != CallState.ACTIVE or self._peer is None:
            raise CallStateError(f"No active call (state: {self.state})")
        return call, self._peer

    def _require_media(self) -> CallSession:
        call = self._call
        if call is None or call.state.is_finished or self._local_stream is None:
            raise CallStateError("No call with local media")
        return call

    async def _send_signal(
        self, call: CallSession, signal_type: SignalType, payload: dict[str, Any]
    ) -> None:
        await self._send(
            SignalMetadata(
                signal_type=signal_type, call_id=call.call_id, call_kind=call.kind, payload=payload
            )
        )

    async def _send_end(self, call: CallSession, reason: str) -> None:
        await self._safe_send(
            SignalMetadata(
                signal_type=SignalType.CALL_END,
                call_id=call.call_id,
                call_kind=call.kind,
                payload={"reason": reason},
            )
        )

    async def _safe_send(self, signal: SignalMetadata) -> None:
        try:
            await self._send(signal)
        except PairRoomError as exc:
            logger.warning(
                "Could not send %s for call %s: %s", signal.signal_type, signal.call_id, exc
            )

    async def _notify(self, call: CallSession) -> None:
        if self._on_state_change is None:
            return
        try:
            await self._on_state_change(call)
        except Exception:
            logger.exception("Call state handler failed", extra={"call_id": call.call_id})

    def _schedule_notify(self, call: CallSession) -> None:
        if self._on_state_change is not None:
            self._spawn(self._notify(call))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def close(self) -> None:
        """Release media and the peer connection without notifying anyone."""
        call = self._call
        if call is not None and not call.state.is_finished and call.state != CallState.IDLE:
            self._finish(call, CallState.ENDED, reason=END_HANGUP)
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
