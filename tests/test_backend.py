from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any

import aiohttp
import pytest

from typit.backend import MautrixBackend, validate_homeserver
from typit.errors import BackendError, ConfigurationError
from typit.session import Credentials


class FakeClient:
    def __init__(self) -> None:
        self.mxid = ""
        self.device_id = ""
        self.api = SimpleNamespace(token="", session=None)
        self.sync_kwargs: list[dict[str, Any]] = []
        self.sent: list[tuple[str, Any, dict[str, Any]]] = []
        self.fail_with: Exception | None = None
        self.whoami_user = "@typit:example.org"

    async def sync(self, **kwargs: Any) -> dict[str, Any]:
        self.sync_kwargs.append(kwargs)
        if self.fail_with is not None:
            raise self.fail_with
        return {"next_batch": "s2", "rooms": {}}

    async def send_message_event(self, room_id: str, event_type: Any, content: dict[str, Any]) -> str:
        self.sent.append((room_id, event_type, content))
        return "$sent"

    async def upload_media(self, data: bytes, **kwargs: Any) -> str:
        return "mxc://example.org/abc"

    async def join_room_by_id(self, room_id: str) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        return room_id

    async def whoami(self) -> Any:
        return SimpleNamespace(user_id=self.whoami_user, device_id="DEVICE")

    async def login(self, **kwargs: Any) -> Any:
        return SimpleNamespace(user_id="@typit:example.org", device_id="NEWDEVICE", access_token="fresh")


@pytest.mark.parametrize("homeserver", ["", "matrix.example.org", "ftp://example.org", "https://"])
def test_validate_homeserver_rejects_bad_addresses(homeserver: str) -> None:
    with pytest.raises(ConfigurationError):
        validate_homeserver(homeserver)


def test_validate_homeserver_accepts_https() -> None:
    assert str(validate_homeserver("https://matrix.example.org")) == "https://matrix.example.org"


@pytest.mark.asyncio
async def test_sync_once_sends_inline_filter_and_cursor() -> None:
    client = FakeClient()
    backend = MautrixBackend(client)  # type: ignore[arg-type]

    batch = await backend.sync_once("s1", {"room": {"state": {"lazy_load_members": True}}}, 1000)

    assert batch.next_cursor == "s2"
    (kwargs,) = client.sync_kwargs
    assert kwargs["since"] == "s1"
    assert kwargs["timeout"] == 1000
    assert json.loads(kwargs["filter_id"]) == {"room": {"state": {"lazy_load_members": True}}}


@pytest.mark.asyncio
async def test_sync_once_without_cursor_omits_since() -> None:
    client = FakeClient()
    backend = MautrixBackend(client)  # type: ignore[arg-type]

    await backend.sync_once(None, {}, 1000)

    assert client.sync_kwargs[0]["since"] is None


@pytest.mark.asyncio
async def test_transport_errors_become_backend_errors() -> None:
    client = FakeClient()
    client.fail_with = aiohttp.ClientConnectionError("connection reset")
    backend = MautrixBackend(client)  # type: ignore[arg-type]

    with pytest.raises(BackendError, match="sync failed"):
        await backend.sync_once(None, {}, 1000)
    with pytest.raises(BackendError, match="join failed"):
        await backend.join_room("!room:example.org")


@pytest.mark.asyncio
async def test_send_message_and_upload() -> None:
    client = FakeClient()
    backend = MautrixBackend(client)  # type: ignore[arg-type]

    event_id = await backend.send_message("!room:example.org", {"msgtype": "m.text", "body": "hi"})
    uri = await backend.upload_media(b"png", "image/png", "typst.png")

    assert event_id == "$sent"
    assert uri == "mxc://example.org/abc"
    assert client.sent[0][0] == "!room:example.org"
    assert client.sent[0][2] == {"msgtype": "m.text", "body": "hi"}


@pytest.mark.asyncio
async def test_restore_sets_token_and_checks_identity() -> None:
    client = FakeClient()
    backend = MautrixBackend(client)  # type: ignore[arg-type]
    credentials = Credentials(user_id="@typit:example.org", device_id="DEVICE", access_token="token")  # noqa: S106

    await backend.restore(credentials)

    assert backend.user_id == "@typit:example.org"
    assert client.api.token == "token"  # noqa: S105

    client.whoami_user = "@other:example.org"
    with pytest.raises(ConfigurationError, match="session record belongs to"):
        await backend.restore(credentials)


@pytest.mark.asyncio
async def test_login_returns_credentials() -> None:
    backend = MautrixBackend(FakeClient())  # type: ignore[arg-type]

    credentials = await backend.login("typit", "pw", "typit")

    expected = Credentials(user_id="@typit:example.org", device_id="NEWDEVICE", access_token="fresh")  # noqa: S106
    assert credentials == expected
