"""Backend services: document store, push channel and blob storage."""

from pairroom.backend.base import (
    BackendAction,
    BackendEvent,
    BackendService,
    BlobInfo,
    messages_topic,
    room_topic,
)
from pairroom.backend.memory import InMemoryBackend

__all__ = [
    "BackendAction",
    "BackendEvent",
    "BackendService",
    "BlobInfo",
    "InMemoryBackend",
    "messages_topic",
    "room_topic",
]
