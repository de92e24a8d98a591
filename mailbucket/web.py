"""HTTP plumbing shared by the web interface and the REST API."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence, Union
from urllib.parse import quote

log = logging.getLogger(__name__)


class NotExistError(LookupError):
    """The requested mailbox or message does not exist."""


@dataclass
class Response:
    """A complete HTTP response produced by a handler."""

    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class Context:
    """Everything a request handler needs: route variables, services and request data."""

    vars: dict[str, str] = field(default_factory=dict)
    manager: Any = None
    msg_hub: Any = None
    host: str = "localhost"
    body: bytes = b""
    is_json: bool = False


_NOT_SPACE_OR_PAREN = r"[^\t\n\f\r ()<>]"
_BALANCED = (
    r"\((?:" + _NOT_SPACE_OR_PAREN + r"|\(" + _NOT_SPACE_OR_PAREN + r"+\))*\)"
)
_URL_RE = re.compile(
    r"\b(?:[a-z][\w-]+:(?:/{1,3}|[a-z0-9%])|www\d{0,3}[.]|[a-z0-9.\-]+[.][a-z]{2,4}/)"
    r"(?:" + _NOT_SPACE_OR_PAREN + "|" + _BALANCED + r")+"
    r"(?:" + _BALANCED + r"|[^\t\n\f\r `!()\[\]{};:'\".,<>?«»“”‘’])",
    re.IGNORECASE | re.ASCII,
)
_LINE_BREAK = re.compile(r"\r\n|\r|\n")
_HTML_ESCAPES = str.maketrans(
    {"<": "&lt;", ">": "&gt;", "&": "&amp;", "'": "&#39;", '"': "&#34;"}
)
_JSON_HTML_ESCAPES = str.maketrans(
    {
        "<": "\\u003c",
        ">": "\\u003e",
        "&": "\\u0026",
        "\u2028": "\\u2028",
        "\u2029": "\\u2029",
    }
)


def text_to_html(text: str) -> str:
    """Escape plain text and dress it up for HTML display: links and line breaks."""
    text = text.translate(_HTML_ESCAPES)
    text = _URL_RE.sub(lambda match: wrap_url(match.group(0)), text)
    return _LINE_BREAK.sub("<br/>\n", text)


def wrap_url(url: str) -> str:
    """Wrap an anchor tag around an already escaped URL."""
    unescaped = url.replace("&amp;", "&")
    return f'<a href="{unescaped}" target="_blank">{url}</a>'


def _plain(data: Any) -> Any:
    to_json = getattr(data, "to_json", None)
    if callable(to_json):
        return to_json()
    if isinstance(data, (list, tuple)):
        return [_plain(item) for item in data]
    if isinstance(data, dict):
        return {key: _plain(value) for key, value in data.items()}
    return data


def _encode_json(data: Any) -> str:
    text = json.dumps(
        _plain(data), ensure_ascii=False, separators=(",", ":"), allow_nan=False
    )
    # HTML-sensitive characters only ever occur inside JSON strings.
    return text.translate(_JSON_HTML_ESCAPES)


def render_json(data: Any) -> Response:
    """Build a JSON response with headers that prevent caching."""
    return Response(
        status=200,
        headers={"Content-Type": "application/json; charset=utf-8", "Expires": "-1"},
        body=(_encode_json(data) + "\n").encode("utf-8"),
    )


def header_match(
    headers: Mapping[str, Union[str, Sequence[str]]], name: str, value: str
) -> bool:
    """True when the named request header has the given value, ignoring case."""
    wanted_name = name.lower()
    wanted_value = value.lower()
    for header_name, values in headers.items():
        if header_name.lower() != wanted_name:
            continue
        if isinstance(values, str):
            values = [values]
        if any(wanted_value == candidate.lower() for candidate in values):
            return True
    return False


def app_config_cookie(base_path: str, monitor_visible: bool) -> str:
    """The Set-Cookie value that passes UI configuration to the single page app."""
    payload = _encode_json({"base-path": base_path, "monitor-visible": monitor_visible})
    return f"app-config={quote(payload, safe='$&+:=@')}; Path=/"


def _error_response(message: str, status: int) -> Response:
    return Response(
        status=status,
        headers={
            "Content-Type": "text/plain; charset=utf-8",
            "X-Content-Type-Options": "nosniff",
        },
        body=(message + "\n").encode("utf-8"),
    )


def run_handler(handler: Callable[[Context], Response], context: Context) -> Response:
    """Run a handler, turning any error it raises into a 500 response."""
    try:
        return handler(context)
    except Exception as exc:
        log.error("Error handling request: %s", exc)
        return _error_response(str(exc), 500)