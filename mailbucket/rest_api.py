"""Handlers and routes of the mailbox REST API, version 1.

Handlers use ``ctx.manager``, which offers ``mailbox_for_address``,
``get_metadata``, ``get_message``, ``mark_seen``, ``purge_messages``,
``source_reader`` and ``remove_message``; missing items raise
:class:`~mailbucket.web.NotExistError`.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, Sequence

from urllib.parse import unquote

from .model import MessageAttachmentV1, MessageBodyV1, MessageHeaderV1, MessageV1
from .web import Context, NotExistError, Response, render_json, run_handler

log = logging.getLogger(__name__)

Handler = Callable[[Context], Response]

_B_SPECIALS = set("\"#$%&'(),.:;<>@[]^`{|}~")


def _printable(ch: str) -> bool:
    return " " <= ch <= "~" or ch == "\t"


def _q_char(byte: int) -> str:
    if byte == 0x20:
        return "_"
    if 0x20 < byte <= 0x7E and chr(byte) not in "=?_":
        return chr(byte)
    return f"={byte:02X}"


def _format_address(address: Any) -> str:
    if address is None:
        return ""
    spec = f"<{address.addr_spec}>"
    name = address.display_name
    if not name:
        return spec
    if all(_printable(ch) for ch in name):
        escaped = name.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}" {spec}'
    raw = name.encode("utf-8")
    if any(ch in _B_SPECIALS for ch in name):
        word = "=?utf-8?b?" + base64.b64encode(raw).decode("ascii") + "?="
    else:
        word = "=?utf-8?q?" + "".join(_q_char(b) for b in raw) + "?="
    return f"{word} {spec}"


def _format_addresses(addresses: Optional[Sequence[Any]]) -> list[str]:
    return [_format_address(address) for address in addresses or []]


def _quoted(text: str) -> str:
    return json.dumps(text)


def _not_found() -> Response:
    return Response(
        status=404,
        headers={
            "Content-Type": "text/plain; charset=utf-8",
            "X-Content-Type-Options": "nosniff",
        },
        body=b"404 page not found\n",
    )


def _header(name: str, msg: Any) -> MessageHeaderV1:
    return MessageHeaderV1(
        mailbox=name,
        id=msg.id,
        from_=_format_address(msg.from_),
        to=_format_addresses(msg.to),
        subject=msg.subject,
        date=msg.date,
        posix_millis=msg.date.posix_millis(),
        size=msg.size,
        seen=msg.seen,
    )


def mailbox_list_v1(ctx: Context) -> Response:
    """List the messages of a mailbox."""
    name = ctx.manager.mailbox_for_address(ctx.vars["name"])
    try:
        messages = ctx.manager.get_metadata(name)
    except Exception as exc:
        raise RuntimeError(f"failed to get messages for {name}: {exc}") from exc
    return render_json([_header(name, msg) for msg in messages])


def mailbox_show_v1(ctx: Context) -> Response:
    """Show one message with body, headers and attachments."""
    id = ctx.vars["id"]
    name = ctx.manager.mailbox_for_address(ctx.vars["name"])
    try:
        msg = ctx.manager.get_message(name, id)
    except NotExistError:
        msg = None
    except Exception as exc:
        raise RuntimeError(f"failed to get message {_quoted(id)}: {exc}") from exc
    if msg is None:
        return _not_found()

    attachments = []
    for index, part in enumerate(msg.attachments()):
        link = (
            f"http://{ctx.host}/serve/mailbox/{name}/{id}/attach/{index}/{part.filename}"
        )
        attachments.append(
            MessageAttachmentV1(
                filename=part.filename,
                content_type=part.content_type,
                download_link=link,
                view_link=link,
                md5=hashlib.md5(part.content or b"").hexdigest(),
            )
        )
    header = _header(name, msg)
    return render_json(
        MessageV1(
            **{f: getattr(header, f) for f in header.__dataclass_fields__},
            header=msg.header(),
            body=MessageBodyV1(text=msg.text(), html=msg.html()),
            attachments=attachments,
        )
    )


def mailbox_mark_seen_v1(ctx: Context) -> Response:
    """Mark a message as read when the JSON body says ``seen``."""
    id = ctx.vars["id"]
    name = ctx.manager.mailbox_for_address(ctx.vars["name"])
    try:
        text = ctx.body.decode("utf-8")
        data, _ = json.JSONDecoder().raw_decode(text.lstrip())
        update = MessageHeaderV1.from_json(data) if data is not None else MessageHeaderV1()
    except (ValueError, TypeError) as exc:
        raise ValueError(f"failed to decode JSON: {exc}") from exc
    if update.seen:
        try:
            ctx.manager.mark_seen(name, id)
        except NotExistError:
            return _not_found()
        except Exception as exc:
            raise RuntimeError(f"failed to mark {_quoted(id)} seen: {exc}") from exc
    return render_json("OK")


def mailbox_purge_v1(ctx: Context) -> Response:
    """Delete every message in a mailbox."""
    name = ctx.manager.mailbox_for_address(ctx.vars["name"])
    try:
        ctx.manager.purge_messages(name)
    except Exception as exc:
        raise RuntimeError(f"mailbox {_quoted(name)} purge failed: {exc}") from exc
    return render_json("OK")


def mailbox_source_v1(ctx: Context) -> Response:
    """Return the raw source of a message as plain text."""
    id = ctx.vars["id"]
    name = ctx.manager.mailbox_for_address(ctx.vars["name"])
    try:
        source = ctx.manager.source_reader(name, id)
    except NotExistError:
        source = None
    except Exception as exc:
        raise RuntimeError(f"failed to read source of {_quoted(id)}: {exc}") from exc
    if source is None:
        return _not_found()
    if isinstance(source, (bytes, bytearray)):
        content = bytes(source)
    else:
        try:
            content = source.read()
        finally:
            source.close()
    return Response(status=200, headers={"Content-Type": "text/plain"}, body=content)


def mailbox_delete_v1(ctx: Context) -> Response:
    """Delete one message."""
    id = ctx.vars["id"]
    name = ctx.manager.mailbox_for_address(ctx.vars["name"])
    try:
        ctx.manager.remove_message(name, id)
    except NotExistError:
        return _not_found()
    except Exception as exc:
        raise RuntimeError(f"failed to remove {_quoted(id)}: {exc}") from exc
    return render_json("OK")


@dataclass(frozen=True)
class Route:
    """A method and path template bound to a handler; ``{var}`` matches one segment."""

    method: str
    pattern: str
    name: str
    handler: Handler

    def _match(self, segments: list[str]) -> Optional[dict[str, str]]:
        parts = self.pattern.split("/")
        if len(parts) != len(segments):
            return None
        variables: dict[str, str] = {}
        for part, segment in zip(parts, segments):
            if part.startswith("{") and part.endswith("}"):
                if not segment:
                    return None
                variables[part[1:-1]] = segment
            elif part != segment:
                return None
        return variables


def setup_routes() -> list[Route]:
    """The routes of the REST API, in matching order."""
    return [
        Route("GET", "/api/v1/mailbox/{name}", "MailboxListV1", mailbox_list_v1),
        Route("DELETE", "/api/v1/mailbox/{name}", "MailboxPurgeV1", mailbox_purge_v1),
        Route("GET", "/api/v1/mailbox/{name}/{id}", "MailboxShowV1", mailbox_show_v1),
        Route(
            "PATCH", "/api/v1/mailbox/{name}/{id}", "MailboxMarkSeenV1", mailbox_mark_seen_v1
        ),
        Route(
            "DELETE", "/api/v1/mailbox/{name}/{id}", "MailboxDeleteV1", mailbox_delete_v1
        ),
        Route(
            "GET", "/api/v1/mailbox/{name}/{id}/source", "MailboxSourceV1", mailbox_source_v1
        ),
    ]


def dispatch(routes: Sequence[Route], method: str, path: str, ctx: Context) -> Response:
    """Route a request to its handler; 404 for unknown paths, 405 for wrong methods."""
    path = path.split("?", 1)[0]
    segments = [unquote(segment) for segment in path.split("/")]
    method = method.upper()
    path_matched = False
    for route in routes:
        variables = route._match(segments)
        if variables is None:
            continue
        if route.method != method:
            path_matched = True
            continue
        return run_handler(route.handler, replace(ctx, vars=variables))
    if path_matched:
        log.warning("Method not allowed for URI path: %s %s", method, path)
        return Response(status=405)
    log.warning("No route matches URI path: %s %s", method, path)
    return Response(status=404)