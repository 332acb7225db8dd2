from __future__ import annotations

from datetime import UTC, datetime

import pytest

from typit.errors import BackendError
from typit.events import Membership, MembershipChange, OtherEvent, TextMessage, parse_sync_response


def _message(event_id: str, body: str, **content: object) -> dict[str, object]:
    return {
        "type": "m.room.message",
        "event_id": event_id,
        "sender": "@alice:example.org",
        "origin_server_ts": 1_700_000_000_000,
        "content": {"msgtype": "m.text", "body": body, **content},
    }


def test_parse_joined_room_timeline_in_order() -> None:
    raw = {
        "next_batch": "s2",
        "rooms": {
            "join": {
                "!a:example.org": {
                    "timeline": {
                        "events": [
                            _message("$1", ",typ one"),
                            {"type": "m.reaction", "event_id": "$2", "content": {}},
                            _message("$3", "two"),
                        ]
                    }
                }
            }
        },
    }

    batch = parse_sync_response(raw)

    assert batch.next_cursor == "s2"
    assert batch.events == [
        TextMessage(
            room_id="!a:example.org",
            event_id="$1",
            sender="@alice:example.org",
            body=",typ one",
            msgtype="m.text",
            origin_server_ts=datetime.fromtimestamp(1_700_000_000, UTC),
        ),
        OtherEvent(room_id="!a:example.org", event_type="m.reaction"),
        TextMessage(
            room_id="!a:example.org",
            event_id="$3",
            sender="@alice:example.org",
            body="two",
            msgtype="m.text",
            origin_server_ts=datetime.fromtimestamp(1_700_000_000, UTC),
        ),
    ]


def test_parse_thread_root_and_left_room() -> None:
    threaded = _message("$t", ",typ x", **{"m.relates_to": {"rel_type": "m.thread", "event_id": "$root"}})
    raw = {"next_batch": "s3", "rooms": {"leave": {"!gone:example.org": {"timeline": {"events": [threaded]}}}}}

    (event,) = parse_sync_response(raw).events

    assert isinstance(event, TextMessage)
    assert event.thread_root == "$root"
    assert event.room_membership is Membership.LEAVE


def test_parse_invite_stripped_state() -> None:
    raw = {
        "next_batch": "s4",
        "rooms": {
            "invite": {
                "!new:example.org": {
                    "invite_state": {
                        "events": [
                            {"type": "m.room.name", "state_key": "", "content": {"name": "Math"}},
                            {
                                "type": "m.room.member",
                                "state_key": "@typit:example.org",
                                "sender": "@alice:example.org",
                                "content": {"membership": "invite"},
                            },
                        ]
                    }
                }
            }
        },
    }

    assert parse_sync_response(raw).events == [
        MembershipChange(
            room_id="!new:example.org",
            sender="@alice:example.org",
            target="@typit:example.org",
            membership=Membership.INVITE,
        )
    ]


def test_parse_skips_malformed_events() -> None:
    redacted = {"type": "m.room.message", "event_id": "$r", "sender": "@a:b", "origin_server_ts": 1, "content": {}}
    raw = {
        "next_batch": "s5",
        "rooms": {
            "join": {
                "!a:example.org": {"timeline": {"events": [redacted, "garbage", {"content": {}}]}},
                "!b:example.org": "garbage",
            }
        },
    }

    assert parse_sync_response(raw).events == []


def test_parse_requires_next_batch() -> None:
    with pytest.raises(BackendError, match="next_batch"):
        parse_sync_response({"rooms": {}})


def _member(target: str, membership: str) -> dict[str, object]:
    return {
        "type": "m.room.member",
        "event_id": f"${membership}",
        "sender": "@alice:example.org",
        "state_key": target,
        "origin_server_ts": 1_700_000_000_000,
        "content": {"membership": membership},
    }


def test_timeline_member_events_are_not_membership_changes() -> None:
    history = [_member("@typit:example.org", state) for state in ("invite", "join", "leave")]
    raw = {
        "next_batch": "s6",
        "rooms": {
            "join": {"!here:example.org": {"timeline": {"events": [_member("@typit:example.org", "invite")]}}},
            "leave": {"!kicked:example.org": {"timeline": {"events": history}}},
        },
    }

    events = parse_sync_response(raw).events

    assert not any(isinstance(event, MembershipChange) for event in events)
    assert events[0] == OtherEvent(room_id="!here:example.org", event_type="m.room.member")
