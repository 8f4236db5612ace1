"""PairRoom quickstart: one user creates a room, another joins with the code.

Both sessions share an in-memory backend so the whole exchange runs in a
single process.

Run with:
    uv run python examples/two_party_chat.py
"""

from __future__ import annotations

import asyncio
import logging

from pairroom import (
    InMemoryBackend,
    PairRoom,
    PairRoomConfig,
    RoomFullError,
    SessionEvent,
)

logging.basicConfig(level=logging.INFO, format="%(name)s | %(message)s")


async def main() -> None:
    # --- Setup -----------------------------------------------------------
    backend = InMemoryBackend()
    config = PairRoomConfig(poll_interval=0.5)

    alice = PairRoom(backend, config=config, user_id="alice", display_name="Alice")
    bob = PairRoom(backend, config=config, user_id="bob", display_name="Bob")

    def printer(name: str):
        async def show(event: SessionEvent) -> None:
            message = event.data["message"]
            who = "me" if event.data["own"] else message.sender_id
            print(f"  [{name}] {who}: {message.content}")

        return show

    alice.on("message_received")(printer("alice"))
    bob.on("message_received")(printer("bob"))

    @alice.on("participant_joined")
    async def greet(event: SessionEvent) -> None:
        print(f"  [alice] {event.data['user_id']} joined")

    @alice.on("participant_left")
    async def farewell(event: SessionEvent) -> None:
        print(f"  [alice] {event.data['user_id']} left")

    # --- Create and share the code ---------------------------------------
    room = await alice.create_room()
    print(f"Alice created room {room.code}")

    # Bob types the code the way people do: lowercase, with spaces.
    check = await bob.check_code(f"  {room.code.lower()} ")
    print(f"Code check: passed={check.passed} failed_step={check.failed_step}")

    await bob.join_room(room.code.lower())
    print(f"Bob joined as {bob.role}")

    # --- Chat ------------------------------------------------------------
    await alice.send_message("Hi Bob, glad you made it!")
    await bob.send_message("Hey Alice!")
    await bob.send_file(b"%PDF-1.7 ...", "notes.pdf", "application/pdf")
    await asyncio.sleep(0.2)

    # --- A third party is turned away ------------------------------------
    carol = PairRoom(backend, config=config, user_id="carol")
    try:
        await carol.join_room(room.code)
    except RoomFullError as exc:
        print(f"Carol could not join: {exc.user_message}")

    # --- Leave -----------------------------------------------------------
    await bob.leave_room()
    await asyncio.sleep(0.2)
    reopened = await alice.registry.find_room(room.code)
    if reopened is not None:
        print(f"Room status after Bob left: {reopened.status}")

    for kit in (alice, bob, carol):
        await kit.close()


if __name__ == "__main__":
    asyncio.run(main())
