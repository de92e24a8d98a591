# mailbucket

A toolkit for testing software that sends e-mail. It provides:

- `mailbucket.pop3` and `mailbucket.pop3_server`: a threaded POP3 server that
  serves the messages of a mail store you supply, with optional STLS or
  forced TLS;
- `mailbucket.rest_api`: request handlers and a small router for a JSON REST
  API that lists, shows, marks seen, returns the source of, deletes and purges
  messages;
- `mailbucket.web`: the shared request/response plumbing (`Context`,
  `Response`, `render_json`, `run_handler`) plus `text_to_html`;
- `mailbucket.monitor`: listeners that turn stored and deleted messages into
  queued events for live views;
- `mailbucket.client`: an HTTP client for the REST API, built on `requests`;
- `mailbucket.model`: the JSON shapes used by all of the above.

## Installation

```
pip install mailbucket
```

To run the test suite, install the test extra and run pytest:

```
pip install "mailbucket[test]"
pytest
```

## REST client

```python
from mailbucket.client import Client, ApiError

client = Client("http://localhost:9000")

headers = client.list_mailbox("user1")
for header in headers:
    print(header.id, header.subject)

message = headers[0].get_message()
print(message.from_)
print(message.body.text)

source = headers[0].get_source()   # raw message as bytes
headers[1].delete()

client.mark_seen("user1", headers[0].id)
client.purge_mailbox("user1")
```

Methods: `list_mailbox`, `get_message`, `mark_seen`, `get_message_source`,
`delete_message` and `purge_mailbox`. The `MessageHeader` objects returned by
`list_mailbox` offer `get_message()`, `get_source()` and `delete()`; a
`Message` offers `get_source()` and `delete()`.

Any response other than 200 raises `ApiError`, whose `status_code` holds the
HTTP status. `Client(base_url, transport=None, timeout=30.0)` accepts a
`requests` transport adapter, which is mounted for both `http://` and
`https://`. A base URL with a path, such as `http://localhost:9000/mail`, is
kept as a prefix of every request.

## JSON model

`mailbucket.model` defines `MessageHeaderV1`, `MessageV1`, `MessageBodyV1`,
`MessageAttachmentV1`, `MessageIDV2` and `MonitorEventV2`. Each has
`to_json()`, which returns plain dicts with the API's key names
(`posix-millis`, `content-type`, ...). The v1 types also have
`from_json(data)`; missing or `null` fields take their defaults.

Dates are `Timestamp` values: `Timestamp.from_rfc3339(text)` keeps up to
nanosecond precision and the original UTC offset, `to_rfc3339()` writes them
back (trailing zeros of the fraction dropped, `Z` for UTC) and
`posix_millis()` gives milliseconds since the epoch. Timestamps compare equal
when they denote the same instant.

## POP3 server

The store is any object with `get_messages(mailbox)` and
`remove_message(mailbox, id)`. Each message it returns needs `id` and `size`
attributes and a `source()` method returning a readable binary file.

```python
import io
from dataclasses import dataclass

from mailbucket.pop3 import Pop3Config
from mailbucket.pop3_server import Server


@dataclass
class StoredMessage:
    id: str
    raw: bytes

    @property
    def size(self):
        return len(self.raw)

    def source(self):
        return io.BytesIO(self.raw)


class MemoryStore:
    def __init__(self):
        self.boxes = {
            "user1": [StoredMessage("0001", b"From: sender@example.com\r\n\r\nHello\r\n")]
        }

    def get_messages(self, mailbox):
        return list(self.boxes.get(mailbox, []))

    def remove_message(self, mailbox, id):
        self.boxes[mailbox] = [m for m in self.boxes.get(mailbox, []) if m.id != id]


config = Pop3Config(addr="127.0.0.1:1100", domain="mail.example.com")
server = Server(config, MemoryStore())
server.start(lambda: print("ready", server.address))
...
server.stop()    # stop accepting connections
server.drain()   # wait for open sessions to finish
```

`Pop3Config` fields: `addr` (default `0.0.0.0:1100`), `domain`, `timeout`
(seconds, default 600), `debug` (print the traffic to stdout), `tls_enabled`,
`tls_cert`, `tls_priv_key` and `force_tls`. With `tls_enabled` the
certificate and key are loaded at construction, and a failure raises
`ValueError` rather than falling back to plain text. With `force_tls` each
connection starts with a TLS handshake; otherwise `STLS` is offered in the
`CAPA` list.

If the listener cannot be started, or accepting fails for good, the error is
put on the queue returned by `server.notify()`.

Supported commands: `USER`, `PASS`, `APOP`, `STAT`, `LIST`, `UIDL`, `RETR`,
`TOP`, `DELE`, `RSET`, `NOOP`, `CAPA`, `STLS` and `QUIT`. Any user name and
password are accepted. Deletions are carried out only when the client ends the
session with `QUIT`. A single session can also be driven directly with
`mailbucket.pop3.Session(config, store, session_id, conn, ...).run()` over a
connected socket; `parse_cmd(line)` splits a command line.

## REST API handlers

The handlers work on a `Context` and return a `Response`; they do not open a
socket themselves. `dispatch` picks the route, filling `ctx.vars` from the
path, and returns 404 for unknown paths and 405 for a wrong method. Errors
raised by a handler become a 500 response through `run_handler`.

```python
from mailbucket.rest_api import dispatch, setup_routes
from mailbucket.web import Context

routes = setup_routes()
ctx = Context(manager=my_manager, host="localhost")
response = dispatch(routes, "GET", "/api/v1/mailbox/user1", ctx)
print(response.status, response.headers, response.body)
```

Routes:

| Method | Path | Handler |
| --- | --- | --- |
| GET | `/api/v1/mailbox/{name}` | `mailbox_list_v1` |
| DELETE | `/api/v1/mailbox/{name}` | `mailbox_purge_v1` |
| GET | `/api/v1/mailbox/{name}/{id}` | `mailbox_show_v1` |
| PATCH | `/api/v1/mailbox/{name}/{id}` | `mailbox_mark_seen_v1` (body `{"seen": true}`) |
| DELETE | `/api/v1/mailbox/{name}/{id}` | `mailbox_delete_v1` |
| GET | `/api/v1/mailbox/{name}/{id}/source` | `mailbox_source_v1` |

The manager in `ctx.manager` supplies `mailbox_for_address`, `get_metadata`,
`get_message`, `mark_seen`, `purge_messages`, `source_reader` and
`remove_message`, and raises `mailbucket.web.NotExistError` for a missing
message, which the handlers answer with 404. Message metadata needs `id`,
`from_` and `to` (objects with `addr_spec` and `display_name`, such as
`email.headerregistry.Address`), `subject`, `date` (a `Timestamp`), `size` and
`seen`; a full message also needs `attachments()`, `header()`, `text()` and
`html()`.

`mailbucket.web` further offers `text_to_html` (escapes text, links URLs,
turns line breaks into `<br/>`), `wrap_url`, `header_match` and
`app_config_cookie`.

## Monitor listeners

`MessageListenerV1(hub, mailbox="")` and `MessageListenerV2(hub, mailbox="")`
register themselves with a hub through `hub.add_listener` and unregister on
`close()` (or on leaving a `with` block). The hub calls `receive(msg)` for
stored messages and `delete(mailbox, id)` for removed ones; an empty mailbox
name watches every mailbox. `events()` yields queued items, blocking for more,
until the listener is closed. Version 1 yields `MessageHeaderV1` values and
ignores deletions; version 2 yields `MonitorEventV2` values with the variants
`message-stored` and `message-deleted`. At most 100 events are held; further
calls to `receive` or `delete` wait for room.

## What this package does not do

- It has no SMTP server: messages reach the store by whatever means you use.
- It has no mail storage of its own, no message manager and no message hub;
  the POP3 server, the REST handlers and the monitor listeners work against
  objects you supply.
- It has no HTTP or WebSocket server and no web user interface: the REST
  handlers are called through `dispatch`, and the monitor listeners only
  produce events for you to deliver.
- It has no command-line program and reads no configuration files.