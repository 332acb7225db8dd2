"""Reply payloads and their ``m.room.message`` content."""

from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Any, TypeAlias, assert_never

from typit.events import TextMessage

HTML_FORMAT = "org.matrix.custom.html"


@dataclass(frozen=True)
class PlainText:
    body: str


@dataclass(frozen=True)
class FormattedError:
    """Compiler diagnostics, raw for plain clients and as a code block for rich ones."""

    raw: str
    html: str


@dataclass(frozen=True)
class ImageReply:
    content_uri: str
    width: int
    height: int
    size: int
    mimetype: str = "image/png"
    filename: str = "typst.png"


ReplyPayload: TypeAlias = PlainText | FormattedError | ImageReply


def format_error(raw: str) -> FormattedError:
    escaped = html.escape(raw, quote=True)
    return FormattedError(raw=raw, html=f'<pre><code class="language-typst">{escaped}</code></pre>')


def build_reply_content(payload: ReplyPayload, to: TextMessage) -> dict[str, Any]:
    """Build the event content replying to ``to``, mentioning its sender.

    A message sent inside a thread gets its reply in the same thread.
    """
    content: dict[str, Any]
    match payload:
        case PlainText(body=body):
            content = {"msgtype": "m.text", "body": body}
        case FormattedError(raw=raw, html=formatted):
            content = {
                "msgtype": "m.text",
                "body": raw,
                "format": HTML_FORMAT,
                "formatted_body": formatted,
            }
        case ImageReply():
            content = {
                "msgtype": "m.image",
                "body": payload.filename,
                "url": payload.content_uri,
                "info": {
                    "w": payload.width,
                    "h": payload.height,
                    "size": payload.size,
                    "mimetype": payload.mimetype,
                },
            }
        case _:
            assert_never(payload)

    content["m.relates_to"] = _reply_relation(to)
    content["m.mentions"] = {"user_ids": [to.sender]}
    return content


def _reply_relation(to: TextMessage) -> dict[str, Any]:
    relation: dict[str, Any] = {"m.in_reply_to": {"event_id": to.event_id}}
    if to.thread_root is not None:
        relation.update(rel_type="m.thread", event_id=to.thread_root, is_falling_back=False)
    return relation
