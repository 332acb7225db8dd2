"""Messaging backend contract and its mautrix implementation."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

import aiohttp
from loguru import logger
from mautrix.client import Client
from mautrix.errors import MatrixError
from mautrix.types import ContentURI, EventType, FilterID, RoomID, SyncToken, UserID
from yarl import URL

from typit.errors import BackendError, ConfigurationError
from typit.events import SyncBatch, parse_sync_response
from typit.session import Credentials

T = TypeVar("T")

_TRANSIENT_ERRORS = (MatrixError, aiohttp.ClientError, TimeoutError)


class MessagingBackend(Protocol):
    """Async contract the bot needs from a Matrix client."""

    @property
    def user_id(self) -> str: ...

    async def login(self, username: str, password: str, device_name: str) -> Credentials: ...

    async def restore(self, credentials: Credentials) -> None: ...

    async def sync_once(self, cursor: str | None, sync_filter: dict[str, Any], timeout_ms: int) -> SyncBatch: ...

    async def send_message(self, room_id: str, content: dict[str, Any]) -> str: ...

    async def upload_media(self, data: bytes, mimetype: str, filename: str | None = None) -> str: ...

    async def join_room(self, room_id: str) -> None: ...

    async def close(self) -> None: ...


def validate_homeserver(homeserver: str) -> URL:
    """Return the homeserver URL or raise :class:`ConfigurationError`."""
    if not homeserver:
        raise ConfigurationError("homeserver is not configured (set TYPIT_HOMESERVER)")
    try:
        url = URL(homeserver)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid homeserver URL {homeserver!r}: {exc}") from exc
    if url.scheme not in {"http", "https"} or not url.host:
        raise ConfigurationError(f"invalid homeserver URL {homeserver!r}: expected http(s)://host")
    return url


class MautrixBackend:
    """Backend adapter over :class:`mautrix.client.Client`."""

    def __init__(self, client: Client) -> None:
        self._client = client

    @classmethod
    async def connect(cls, homeserver: str) -> MautrixBackend:
        """Build a client and check that the homeserver answers."""
        url = validate_homeserver(homeserver)
        client = Client(base_url=url)
        backend = cls(client)
        try:
            await client.versions()
        except _TRANSIENT_ERRORS as exc:
            await backend.close()
            raise ConfigurationError(f"error checking the homeserver {url}: {exc}") from exc
        logger.info("backend.connected homeserver={}", url)
        return backend

    @property
    def user_id(self) -> str:
        return str(self._client.mxid)

    async def login(self, username: str, password: str, device_name: str) -> Credentials:
        response = await self._call(
            "login",
            lambda: self._client.login(
                identifier=username,
                password=password,
                device_name=device_name,
                store_access_token=True,
            ),
        )
        return Credentials(
            user_id=str(response.user_id),
            device_id=str(response.device_id),
            access_token=response.access_token,
        )

    async def restore(self, credentials: Credentials) -> None:
        self._client.mxid = UserID(credentials.user_id)
        self._client.device_id = credentials.device_id
        self._client.api.token = credentials.access_token
        whoami = await self._call("whoami", self._client.whoami)
        if str(whoami.user_id) != credentials.user_id:
            raise ConfigurationError(
                f"session record belongs to {credentials.user_id}, homeserver reports {whoami.user_id}"
            )

    async def sync_once(self, cursor: str | None, sync_filter: dict[str, Any], timeout_ms: int) -> SyncBatch:
        # Inline filter definitions are accepted where a filter id is expected.
        inline_filter = FilterID(json.dumps(sync_filter, separators=(",", ":")))
        raw = await self._call(
            "sync",
            lambda: self._client.sync(
                since=SyncToken(cursor) if cursor else None,
                timeout=timeout_ms,
                filter_id=inline_filter,
            ),
        )
        return parse_sync_response(raw)

    async def send_message(self, room_id: str, content: dict[str, Any]) -> str:
        event_id = await self._call(
            "send",
            lambda: self._client.send_message_event(RoomID(room_id), EventType.ROOM_MESSAGE, content),
        )
        return str(event_id)

    async def upload_media(self, data: bytes, mimetype: str, filename: str | None = None) -> str:
        uri: ContentURI = await self._call(
            "upload",
            lambda: self._client.upload_media(data, mime_type=mimetype, filename=filename, size=len(data)),
        )
        return str(uri)

    async def join_room(self, room_id: str) -> None:
        await self._call("join", lambda: self._client.join_room_by_id(RoomID(room_id)))

    async def close(self) -> None:
        session = getattr(self._client.api, "session", None)
        if session is not None and not session.closed:
            await session.close()

    @staticmethod
    async def _call(operation: str, request: Callable[[], Awaitable[T]]) -> T:
        try:
            return await request()
        except _TRANSIENT_ERRORS as exc:
            raise BackendError(f"{operation} failed: {exc}") from exc
