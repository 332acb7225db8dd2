from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from tests.fakes import NOW, FakeBackend
from typit.events import Membership, TextMessage


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def make_message() -> Callable[..., TextMessage]:
    def _make(body: str = ",typ $x^2$", **overrides: Any) -> TextMessage:
        fields: dict[str, Any] = {
            "room_id": "!room:example.org",
            "event_id": "$event",
            "sender": "@alice:example.org",
            "body": body,
            "msgtype": "m.text",
            "origin_server_ts": NOW,
            "room_membership": Membership.JOIN,
        }
        fields.update(overrides)
        return TextMessage(**fields)

    return _make
