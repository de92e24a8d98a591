"""HTTP client for the mailbox REST API, version 1."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote_plus, urlsplit, urlunsplit

import requests

from .model import MessageHeaderV1, MessageV1

DEFAULT_TIMEOUT = 30.0


class ApiError(Exception):
    """The server answered with an unexpected HTTP status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


def _status_line(response: requests.Response) -> str:
    return f"{response.status_code} {response.reason or ''}".rstrip()


def _expect_ok(response: requests.Response) -> None:
    if response.status_code != 200:
        raise ApiError(
            f"unexpected HTTP response status {response.status_code}: "
            f"{_status_line(response)}",
            response.status_code,
        )


def _mailbox_uri(name: str, *rest: str) -> str:
    return "/api/v1/mailbox/" + quote_plus(name) + "".join("/" + part for part in rest)


class RestClient:
    """Sends requests relative to a base URL through a requests session."""

    def __init__(self, base_url: str, session: Any, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.base_url = base_url
        self._base = urlsplit(base_url)
        self.session = session
        self.timeout = timeout

    def _url(self, uri: str) -> str:
        path = self._base.path.rstrip("/") + "/" + uri.lstrip("/")
        return urlunsplit(
            (self._base.scheme, self._base.netloc, path, self._base.query, self._base.fragment)
        )

    def do(self, method: str, uri: str, body: bytes | None = None) -> requests.Response:
        """Perform a request and return the response, whatever its status."""
        return self.session.request(method, self._url(uri), data=body, timeout=self.timeout)

    def do_json(self, method: str, uri: str) -> Any:
        """Perform a request and decode its JSON body; ``None`` for an empty body."""
        with self.do(method, uri) as response:
            if response.status_code != 200:
                raise ApiError(
                    f'{method} for "{uri}", unexpected {response.status_code}: '
                    f"{_status_line(response)}",
                    response.status_code,
                )
            if not response.content.strip():
                return None
            return response.json()


class Client(RestClient):
    """Client for the REST API of a mail server, e.g. ``http://localhost:9000``.

    ``transport`` is an optional requests adapter used for every request.
    """

    def __init__(
        self, base_url: str, transport: Any = None, timeout: float = DEFAULT_TIMEOUT
    ) -> None:
        session = requests.Session()
        if transport is not None:
            session.mount("http://", transport)
            session.mount("https://", transport)
        super().__init__(base_url, session, timeout)

    def list_mailbox(self, name: str) -> list[MessageHeader]:
        """Return the headers of the messages in a mailbox."""
        data = self.do_json("GET", _mailbox_uri(name))
        if data is None:
            return []
        if not isinstance(data, list):
            raise ValueError("mailbox listing must be a JSON array")
        headers = [MessageHeader.from_json(item) for item in data]
        for header in headers:
            header.client = self
        return headers

    def get_message(self, name: str, id: str) -> Message:
        """Return a message with its content."""
        data = self.do_json("GET", _mailbox_uri(name, id))
        message = Message.from_json(data if data is not None else {})
        message.client = self
        return message

    def mark_seen(self, name: str, id: str) -> None:
        """Mark a message as read."""
        self.do_json("PATCH", _mailbox_uri(name, id))

    def get_message_source(self, name: str, id: str) -> bytes:
        """Return the raw source of a message."""
        with self.do("GET", _mailbox_uri(name, id, "source")) as response:
            _expect_ok(response)
            return response.content

    def delete_message(self, name: str, id: str) -> None:
        """Delete one message."""
        with self.do("DELETE", _mailbox_uri(name, id)) as response:
            _expect_ok(response)

    def purge_mailbox(self, name: str) -> None:
        """Delete every message in a mailbox."""
        with self.do("DELETE", _mailbox_uri(name)) as response:
            _expect_ok(response)


def _bound(client: Client | None) -> Client:
    if client is None:
        raise RuntimeError("message is not bound to a client")
    return client


@dataclass
class MessageHeader(MessageHeaderV1):
    """A message header that can fetch or delete its message."""

    client: Client | None = field(default=None, repr=False, compare=False)

    def get_message(self) -> Message:
        return _bound(self.client).get_message(self.mailbox, self.id)

    def get_source(self) -> bytes:
        return _bound(self.client).get_message_source(self.mailbox, self.id)

    def delete(self) -> None:
        _bound(self.client).delete_message(self.mailbox, self.id)


@dataclass
class Message(MessageV1):
    """A full message that can fetch its source or delete itself."""

    client: Client | None = field(default=None, repr=False, compare=False)

    def get_source(self) -> bytes:
        return _bound(self.client).get_message_source(self.mailbox, self.id)

    def delete(self) -> None:
        _bound(self.client).delete_message(self.mailbox, self.id)