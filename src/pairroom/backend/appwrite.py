"""Appwrite backend - documents over REST, push over the realtime websocket."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from pydantic import BaseModel, Field, SecretStr, field_validator

from pairroom.backend.base import (
    BackendAction,
    BackendCallback,
    BackendEvent,
    BackendService,
    BlobInfo,
    ErrorCallback,
    Unsubscribe,
    messages_topic,
    room_topic,
)
from pairroom.core.errors import (
    BackendUnavailableError,
    DuplicateCodeError,
    PushUnavailableError,
    RoomFullError,
    RoomNotFoundError,
)
from pairroom.models.enums import MessageType, RoomStatus

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger("pairroom.backend.appwrite")

__all__ = ["AppwriteBackend", "AppwriteConfig"]


class AppwriteConfig(BaseModel):
    """Appwrite project and collection identifiers."""

    endpoint: str = "https://cloud.appwrite.io/v1"
    project_id: str
    database_id: str
    rooms_collection: str = "chat_rooms"
    messages_collection: str = "messages"
    claims_collection: str = "room_claims"
    bucket_id: str = "attachments"
    api_key: SecretStr | None = None
    timeout: float = 10.0
    # Must stay below half of PairRoomConfig.push_stall_timeout.
    ping_interval: float = Field(default=5.0, gt=0)

    @field_validator("endpoint")
    @classmethod
    def _validate_endpoint(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("endpoint must be an http(s) URL")
        return v

    @property
    def realtime_url(self) -> str:
        scheme, rest = self.endpoint.split("://", 1)
        ws_scheme = "wss" if scheme == "https" else "ws"
        return f"{ws_scheme}://{rest}/realtime"


class AppwriteBackend(BackendService):
    """BackendService on an Appwrite database, storage bucket and realtime API.

    Expected collections:

    * rooms: ``code``, ``creator_id``, ``joiner_id``, ``status``,
      ``closed_at``;
    * messages: ``room_code``, ``sender_id``, ``type``, ``content``,
      ``metadata`` (JSON string);
    * claims: ``room_id``, ``joiner_id``.

    The joiner slot is claimed by creating the claim document
    ``join-<room id>``. Appwrite rejects a second document with the same id
    (HTTP 409), so of two racing joins exactly one wins. Message ids are the
    documents' ``$sequence``, which increases but may skip values.
    """

    def __init__(self, config: AppwriteConfig) -> None:
        try:
            import httpx as _httpx
        except ImportError as exc:
            raise ImportError(
                "httpx is required for AppwriteBackend. "
                "Install it with: pip install pairroom[appwrite]"
            ) from exc
        self._config = config
        self._httpx = _httpx
        headers = {"X-Appwrite-Project": config.project_id}
        if config.api_key is not None:
            headers["X-Appwrite-Key"] = config.api_key.get_secret_value()
        self._client: httpx.AsyncClient = _httpx.AsyncClient(
            base_url=config.endpoint,
            headers=headers,
            timeout=config.timeout,
        )
        self._realtime_tasks: set[asyncio.Task[None]] = set()

    @property
    def name(self) -> str:
        return "appwrite"

    @property
    def heartbeat_interval(self) -> float:
        return self._config.ping_interval

    # -- HTTP helpers --

    def _documents(self, collection: str, document_id: str | None = None) -> str:
        path = f"/databases/{self._config.database_id}/collections/{collection}/documents"
        return f"{path}/{document_id}" if document_id else path

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | list[tuple[str, str]] | None = None,
        files: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(
                method, path, json=json_body, params=params, files=files, data=data
            )
        except self._httpx.TimeoutException as exc:
            raise BackendUnavailableError(f"Appwrite {method} {path} timed out") from exc
        except self._httpx.HTTPError as exc:
            raise BackendUnavailableError(f"Appwrite {method} {path} failed: {exc}") from exc
        if resp.status_code >= 500 or resp.status_code in (401, 403, 429):
            raise BackendUnavailableError(
                f"Appwrite {method} {path} returned {resp.status_code}: {_error_text(resp)}"
            )
        return resp

    def _check(self, resp: httpx.Response, what: str) -> dict[str, Any]:
        if resp.status_code == 404:
            raise RoomNotFoundError(f"{what} not found")
        if resp.status_code >= 400:
            raise BackendUnavailableError(
                f"{what} failed with {resp.status_code}: {_error_text(resp)}"
            )
        body: dict[str, Any] = resp.json()
        return body

    async def _list(
        self, collection: str, queries: Iterable[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        params = [("queries[]", json.dumps(q, separators=(",", ":"))) for q in queries]
        resp = await self._request("GET", self._documents(collection), params=params)
        documents: list[dict[str, Any]] = self._check(resp, f"list {collection}")["documents"]
        return documents

    # -- Room records --

    async def create_room_record(self, code: str, creator_id: str) -> dict[str, Any]:
        if await self.find_room_record(code) is not None:
            raise DuplicateCodeError(f"Room code {code} is already active")
        resp = await self._request(
            "POST",
            self._documents(self._config.rooms_collection),
            json_body={
                "documentId": "unique()",
                "data": {
                    "code": code,
                    "creator_id": creator_id,
                    "joiner_id": None,
                    "status": RoomStatus.OPEN.value,
                    "closed_at": None,
                },
            },
        )
        return _room_record(self._check(resp, "create room"))

    async def find_room_record(self, code: str) -> dict[str, Any] | None:
        documents = await self._list(
            self._config.rooms_collection,
            [
                _query("equal", "code", [code]),
                _query("equal", "status", [RoomStatus.OPEN.value, RoomStatus.FULL.value]),
                _query("limit", values=[1]),
            ],
        )
        return _room_record(documents[0]) if documents else None

    async def _get_room(self, room_id: str) -> dict[str, Any]:
        resp = await self._request("GET", self._documents(self._config.rooms_collection, room_id))
        return _room_record(self._check(resp, f"room {room_id}"))

    async def _patch_room(self, room_id: str, data: dict[str, Any]) -> dict[str, Any]:
        resp = await self._request(
            "PATCH",
            self._documents(self._config.rooms_collection, room_id),
            json_body={"data": data},
        )
        return _room_record(self._check(resp, f"update room {room_id}"))

    async def update_joiner_slot(self, room_id: str, joiner_id: str) -> dict[str, Any]:
        record = await self._get_room(room_id)
        if not RoomStatus(record["status"]).is_active:
            raise RoomNotFoundError(f"Room {record['code']} is {record['status']}")
        if record["joiner_id"] == joiner_id:
            return record
        if record["joiner_id"] is not None:
            raise RoomFullError(f"Room {record['code']} joiner slot is taken")

        claim_id = f"join-{room_id}"
        resp = await self._request(
            "POST",
            self._documents(self._config.claims_collection),
            json_body={
                "documentId": claim_id,
                "data": {"room_id": room_id, "joiner_id": joiner_id},
            },
        )
        if resp.status_code == 409:
            existing = await self._request(
                "GET", self._documents(self._config.claims_collection, claim_id)
            )
            holder = self._check(existing, f"claim {claim_id}").get("joiner_id")
            if holder != joiner_id:
                raise RoomFullError(f"Room {record['code']} was claimed by {holder}")
        else:
            self._check(resp, f"claim {claim_id}")
        return await self._patch_room(
            room_id, {"joiner_id": joiner_id, "status": RoomStatus.FULL.value}
        )

    async def clear_joiner_slot(self, room_id: str) -> dict[str, Any]:
        resp = await self._request(
            "DELETE", self._documents(self._config.claims_collection, f"join-{room_id}")
        )
        if resp.status_code not in (204, 404):
            self._check(resp, f"release claim for {room_id}")
        return await self._patch_room(
            room_id, {"joiner_id": None, "status": RoomStatus.OPEN.value}
        )

    async def update_room_status(self, room_id: str, status: RoomStatus) -> dict[str, Any]:
        data: dict[str, Any] = {"status": status.value}
        if not status.is_active:
            data["closed_at"] = datetime.now(UTC).isoformat()
        return await self._patch_room(room_id, data)

    async def delete_room_record(self, room_id: str) -> bool:
        try:
            record = await self._get_room(room_id)
        except RoomNotFoundError:
            return False
        for message in await self._list(
            self._config.messages_collection,
            [_query("equal", "room_code", [record["code"]]), _query("limit", values=[5000])],
        ):
            await self._request(
                "DELETE", self._documents(self._config.messages_collection, message["$id"])
            )
        await self._request(
            "DELETE", self._documents(self._config.claims_collection, f"join-{room_id}")
        )
        resp = await self._request(
            "DELETE", self._documents(self._config.rooms_collection, room_id)
        )
        return resp.status_code != 404

    async def list_room_records(
        self, statuses: set[RoomStatus] | None = None
    ) -> list[dict[str, Any]]:
        queries = [_query("limit", values=[5000])]
        if statuses:
            queries.append(_query("equal", "status", sorted(s.value for s in statuses)))
        return [_room_record(d) for d in await self._list(self._config.rooms_collection, queries)]

    # -- Messages --

    async def append_message(
        self,
        room_code: str,
        sender_id: str,
        type: MessageType,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        resp = await self._request(
            "POST",
            self._documents(self._config.messages_collection),
            json_body={
                "documentId": "unique()",
                "data": {
                    "room_code": room_code,
                    "sender_id": sender_id,
                    "type": MessageType(type).value,
                    "content": content,
                    "metadata": json.dumps(metadata) if metadata else None,
                },
            },
        )
        return _message_record(self._check(resp, "append message"))

    async def list_messages(
        self, room_code: str, since_id: int | None = None, limit: int | None = None
    ) -> list[dict[str, Any]]:
        queries = [_query("equal", "room_code", [room_code])]
        newest_first = since_id is None and limit is not None
        if since_id is not None:
            queries.append(_query("greaterThan", "$sequence", [since_id]))
        queries.append(_query("orderDesc" if newest_first else "orderAsc", "$sequence"))
        queries.append(_query("limit", values=[limit or 5000]))
        records = [
            _message_record(d)
            for d in await self._list(self._config.messages_collection, queries)
        ]
        if newest_first:
            records.reverse()
        return records

    # -- Push --

    async def subscribe(
        self,
        topic: str,
        callback: BackendCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        try:
            import websockets
        except ImportError as exc:
            raise PushUnavailableError(
                "websockets is required for Appwrite realtime. "
                "Install it with: pip install pairroom[appwrite]"
            ) from exc

        kind, _, code = topic.partition(".")
        collection = (
            self._config.rooms_collection if kind == "rooms" else self._config.messages_collection
        )
        channel = f"databases.{self._config.database_id}.collections.{collection}.documents"
        query = urlencode([("project", self._config.project_id), ("channels[]", channel)])
        url = f"{self._config.realtime_url}?{query}"
        try:
            ws = await websockets.connect(url, open_timeout=self._config.timeout)
        except (OSError, TimeoutError, websockets.WebSocketException) as exc:
            raise BackendUnavailableError(f"Appwrite realtime connect failed: {exc}") from exc

        task = asyncio.get_running_loop().create_task(
            self._receive(ws, topic, code, callback, on_error),
            name=f"pairroom-appwrite-realtime:{topic}",
        )
        self._realtime_tasks.add(task)
        task.add_done_callback(self._realtime_tasks.discard)

        def unsubscribe() -> None:
            if not task.done():
                task.cancel()

        return unsubscribe

    async def _receive(
        self,
        ws: Any,
        topic: str,
        code: str,
        callback: BackendCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        field = "code" if topic == room_topic(code) else "room_code"
        is_messages = topic == messages_topic(code)
        try:
            while True:
                try:
                    raw = await asyncio.wait_for(ws.recv(), timeout=self._config.ping_interval)
                except TimeoutError:
                    await ws.send(json.dumps({"type": "ping"}))
                    continue
                event = _parse_realtime(raw, topic, field, code, is_messages)
                if event is None:
                    continue
                try:
                    await callback(event)
                except Exception:
                    logger.exception("Error in realtime callback for topic %s", topic)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Appwrite realtime for %s lost: %s", topic, exc)
            if on_error is not None:
                await on_error(BackendUnavailableError(f"realtime connection lost: {exc}"))
        finally:
            with contextlib.suppress(Exception):
                await ws.close()

    # -- Blobs --

    async def upload_blob(self, data: bytes, filename: str, content_type: str) -> BlobInfo:
        resp = await self._request(
            "POST",
            f"/storage/buckets/{self._config.bucket_id}/files",
            data={"fileId": "unique()"},
            files={"file": (filename, data, content_type)},
        )
        body = self._check(resp, "upload blob")
        blob_id = body["$id"]
        return BlobInfo(
            id=blob_id,
            url=self._view_url(blob_id),
            size=int(body.get("sizeOriginal", len(data))),
            content_type=body.get("mimeType", content_type),
        )

    async def get_blob_url(self, blob_id: str) -> str:
        return self._view_url(blob_id)

    def _view_url(self, blob_id: str) -> str:
        return (
            f"{self._config.endpoint}/storage/buckets/{self._config.bucket_id}"
            f"/files/{blob_id}/view?project={self._config.project_id}"
        )

    async def close(self) -> None:
        for task in list(self._realtime_tasks):
            task.cancel()
        self._realtime_tasks.clear()
        await self._client.aclose()


def _query(
    method: str, attribute: str | None = None, values: list[Any] | None = None
) -> dict[str, Any]:
    query: dict[str, Any] = {"method": method}
    if attribute is not None:
        query["attribute"] = attribute
    if values is not None:
        query["values"] = values
    return query


def _error_text(resp: httpx.Response) -> str:
    try:
        return str(resp.json().get("message", resp.text))
    except ValueError:
        return resp.text


def _room_record(doc: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": doc["$id"],
        "code": doc["code"],
        "creator_id": doc["creator_id"],
        "joiner_id": doc.get("joiner_id"),
        "status": doc.get("status", RoomStatus.OPEN.value),
        "created_at": doc.get("$createdAt"),
        "closed_at": doc.get("closed_at"),
    }


def _message_record(doc: dict[str, Any]) -> dict[str, Any]:
    metadata = doc.get("metadata")
    if isinstance(metadata, str):
        metadata = json.loads(metadata) if metadata else None
    return {
        "id": int(doc["$sequence"]),
        "room_code": doc["room_code"],
        "sender_id": doc["sender_id"],
        "type": doc.get("type", MessageType.TEXT.value),
        "content": doc.get("content") or "",
        "timestamp": doc["$createdAt"],
        "metadata": metadata,
    }


_ACTIONS = {
    "create": BackendAction.CREATE,
    "update": BackendAction.UPDATE,
    "delete": BackendAction.DELETE,
}


def _parse_realtime(
    raw: str | bytes, topic: str, field: str, code: str, is_messages: bool
) -> BackendEvent | None:
    """Map one realtime frame to a BackendEvent for *topic*, or ``None``."""
    try:
        frame = json.loads(raw)
    except ValueError:
        logger.debug("Ignoring non-JSON realtime frame")
        return None
    frame_type = frame.get("type")
    if frame_type in ("connected", "pong"):
        return BackendEvent(topic=topic, action=BackendAction.HEARTBEAT)
    if frame_type == "error":
        raise PushUnavailableError(f"realtime error: {frame.get('data')}")
    if frame_type != "event":
        return None
    data = frame.get("data") or {}
    payload = data.get("payload") or {}
    if payload.get(field) != code:
        return None
    action = None
    for name in data.get("events", []):
        action = _ACTIONS.get(str(name).rsplit(".", 1)[-1])
        if action is not None:
            break
    if action is None:
        return None
    record = _message_record(payload) if is_messages else _room_record(payload)
    return BackendEvent(topic=topic, action=action, payload=record)
