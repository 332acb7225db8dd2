"""Inbound event models and sync response parsing."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, TypeAlias

from loguru import logger

from typit.errors import BackendError

LAZY_LOADING_FILTER: dict[str, Any] = {"room": {"state": {"lazy_load_members": True}}}


class Membership(StrEnum):
    INVITE = "invite"
    JOIN = "join"
    LEAVE = "leave"
    BAN = "ban"
    KNOCK = "knock"


@dataclass(frozen=True)
class TextMessage:
    """An ``m.room.message`` event from a room timeline."""

    room_id: str
    event_id: str
    sender: str
    body: str
    msgtype: str
    origin_server_ts: datetime
    room_membership: Membership = Membership.JOIN
    thread_root: str | None = None


@dataclass(frozen=True)
class MembershipChange:
    """An ``m.room.member`` event, from a timeline or an invite's stripped state."""

    room_id: str
    sender: str
    target: str
    membership: Membership


@dataclass(frozen=True)
class OtherEvent:
    room_id: str
    event_type: str


InboundEvent: TypeAlias = TextMessage | MembershipChange | OtherEvent


@dataclass(frozen=True)
class SyncBatch:
    """One sync response reduced to the events the bot cares about."""

    next_cursor: str
    events: list[InboundEvent] = field(default_factory=list)


def parse_sync_response(raw: Mapping[str, Any]) -> SyncBatch:
    """Convert a raw ``/sync`` response into a :class:`SyncBatch`.

    Rooms are walked in the order joined, left, invited; events keep their
    timeline order inside each room. Membership changes are only taken from
    the stripped state of invited rooms: a timeline member event describes past
    membership, not the room's current state.
    """
    next_cursor = raw.get("next_batch")
    if not isinstance(next_cursor, str) or not next_cursor:
        raise BackendError("sync response has no next_batch")

    rooms = raw.get("rooms") or {}
    events: list[InboundEvent] = []
    for section, membership in (("join", Membership.JOIN), ("leave", Membership.LEAVE)):
        for room_id, room in _items(rooms.get(section)):
            timeline = room.get("timeline") or {}
            for event in timeline.get("events") or ():
                parsed = _parse_timeline_event(room_id, event, membership)
                if parsed is not None:
                    events.append(parsed)
    for room_id, room in _items(rooms.get("invite")):
        invite_state = room.get("invite_state") or {}
        for event in invite_state.get("events") or ():
            if isinstance(event, Mapping) and event.get("type") == "m.room.member":
                parsed = _parse_member_event(room_id, event)
                if parsed is not None:
                    events.append(parsed)
    return SyncBatch(next_cursor=next_cursor, events=events)


def _items(section: Any) -> Iterator[tuple[str, Mapping[str, Any]]]:
    if not isinstance(section, Mapping):
        return
    for room_id, room in section.items():
        if isinstance(room, Mapping):
            yield str(room_id), room


def _parse_timeline_event(room_id: str, event: Any, membership: Membership) -> InboundEvent | None:
    if not isinstance(event, Mapping):
        return None
    event_type = event.get("type")
    if not isinstance(event_type, str):
        return None
    if event_type == "m.room.message":
        return _parse_message(room_id, event, membership)
    return OtherEvent(room_id=room_id, event_type=event_type)


def _parse_message(room_id: str, event: Mapping[str, Any], membership: Membership) -> TextMessage | None:
    content = event.get("content")
    event_id = event.get("event_id")
    sender = event.get("sender")
    timestamp = event.get("origin_server_ts")
    if not isinstance(content, Mapping) or not isinstance(event_id, str) or not isinstance(sender, str):
        return None
    if not isinstance(timestamp, int):
        return None
    body = content.get("body")
    msgtype = content.get("msgtype")
    if not isinstance(body, str) or not isinstance(msgtype, str):
        # Redacted or malformed
        return None
    return TextMessage(
        room_id=room_id,
        event_id=event_id,
        sender=sender,
        body=body,
        msgtype=msgtype,
        origin_server_ts=datetime.fromtimestamp(timestamp / 1000, UTC),
        room_membership=membership,
        thread_root=_thread_root(content),
    )


def _thread_root(content: Mapping[str, Any]) -> str | None:
    relates_to = content.get("m.relates_to")
    if not isinstance(relates_to, Mapping) or relates_to.get("rel_type") != "m.thread":
        return None
    root = relates_to.get("event_id")
    return root if isinstance(root, str) else None


def _parse_member_event(room_id: str, event: Mapping[str, Any]) -> MembershipChange | None:
    content = event.get("content")
    target = event.get("state_key")
    if not isinstance(content, Mapping) or not isinstance(target, str):
        return None
    try:
        membership = Membership(content.get("membership"))
    except ValueError:
        logger.debug("events.member.unknown room_id={} membership={}", room_id, content.get("membership"))
        return None
    return MembershipChange(
        room_id=room_id,
        sender=str(event.get("sender", "")),
        target=target,
        membership=membership,
    )
