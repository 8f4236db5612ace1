"""Video call between the two participants of a room.

Uses the mock media source and peer connection, so no camera or network is
needed. Call signals travel through the room's message stream and are never
shown as chat messages.

Run with:
    uv run python examples/video_call.py
"""

from __future__ import annotations

import asyncio
import logging

from pairroom import (
    CallKind,
    CallState,
    ConsoleTelemetryProvider,
    InMemoryBackend,
    MockMediaSource,
    PairRoom,
    SessionEvent,
)

logging.basicConfig(level=logging.INFO, format="%(name)s | %(message)s")


async def wait_for(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


async def main() -> None:
    backend = InMemoryBackend()
    alice = PairRoom(backend, user_id="alice", telemetry=ConsoleTelemetryProvider())
    bob = PairRoom(backend, user_id="bob", media_source=MockMediaSource())

    @bob.on("incoming_call")
    async def ring(event: SessionEvent) -> None:
        print(f"  [bob] incoming {event.data['kind']} call from {event.data['from']}")
        await bob.accept_call()

    @alice.on("call_state_changed")
    async def track(event: SessionEvent) -> None:
        print(f"  [alice] call {event.data['call_id'][:8]} -> {event.data['state']}")

    room = await alice.create_room()
    await bob.join_room(room.code)
    await wait_for(lambda: alice.peer_id == "bob")

    # --- Place the call --------------------------------------------------
    await alice.start_call(CallKind.VIDEO)
    await wait_for(lambda: alice.call_state == CallState.ACTIVE)
    print(f"Call active on both sides: {bob.call_state == CallState.ACTIVE}")

    # --- In-call controls ------------------------------------------------
    print(f"Alice muted: {alice.toggle_mute()}")
    print(f"Alice camera on: {alice.toggle_camera()}")
    await bob.start_screen_share()
    await wait_for(lambda: alice.call is not None and alice.call.remote_screen_sharing)
    print("Bob is sharing the screen")
    await bob.stop_screen_share()

    # --- Hang up ---------------------------------------------------------
    await alice.hang_up()
    await wait_for(lambda: bob.call_state == CallState.ENDED)
    print(f"Call ended: {bob.call.end_reason if bob.call else None}")

    await alice.close()
    await bob.close()


if __name__ == "__main__":
    asyncio.run(main())
