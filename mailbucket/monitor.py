"""Listeners that feed newly stored and deleted messages to monitor clients.

A listener registers itself with a message hub, which must offer
``add_listener`` and ``remove_listener``. The hub calls ``receive`` for every
stored message and ``delete`` for every removed one. A client consumes the
queued events through ``events()`` until the listener is closed.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any, Iterator

from .model import MessageHeaderV1, MessageIDV2, MonitorEventV2
from .rest_api import _format_address, _format_addresses

QUEUE_SIZE = 100


def metadata_to_header(msg: Any) -> MessageHeaderV1:
    """Build the JSON header for a stored message's metadata."""
    return MessageHeaderV1(
        mailbox=msg.mailbox,
        id=msg.id,
        from_=_format_address(msg.from_),
        to=_format_addresses(msg.to),
        subject=msg.subject,
        date=msg.date,
        posix_millis=msg.date.posix_millis(),
        size=msg.size,
    )


class _MessageListener:
    """A bounded event queue registered with a hub; ``mailbox=""`` watches all."""

    def __init__(self, hub: Any, mailbox: str = "") -> None:
        self.hub = hub
        self.mailbox = mailbox
        self._queue: deque[Any] = deque()
        self._closed = False
        self._cond = threading.Condition()
        hub.add_listener(self)

    @property
    def closed(self) -> bool:
        return self._closed

    def _watches(self, mailbox: str) -> bool:
        return not self.mailbox or self.mailbox == mailbox

    def _enqueue(self, item: Any) -> None:
        with self._cond:
            while len(self._queue) >= QUEUE_SIZE and not self._closed:
                self._cond.wait()
            if self._closed:
                return
            self._queue.append(item)
            self._cond.notify_all()

    def close(self) -> None:
        """Unregister from the hub and end the event stream; safe to repeat."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        self.hub.remove_listener(self)

    def events(self) -> Iterator[Any]:
        """Yield queued events, blocking for more, until the listener is closed."""
        while True:
            with self._cond:
                while not self._queue and not self._closed:
                    self._cond.wait()
                if not self._queue:
                    return
                item = self._queue.popleft()
                self._cond.notify_all()
            yield item

    def __enter__(self) -> _MessageListener:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class MessageListenerV1(_MessageListener):
    """Queues the header of each stored message; deletions are ignored."""

    def __init__(self, hub: Any, mailbox: str = "") -> None:
        super().__init__(hub, mailbox)

    def receive(self, msg: Any) -> None:
        if self._watches(msg.mailbox):
            self._enqueue(metadata_to_header(msg))

    def delete(self, mailbox: str, id: str) -> None:
        """Deletions are not reported by this version of the feed."""

    def close(self) -> None:
        super().close()

    def events(self) -> Iterator[MessageHeaderV1]:
        return super().events()


class MessageListenerV2(_MessageListener):
    """Queues ``message-stored`` and ``message-deleted`` monitor events."""

    def __init__(self, hub: Any, mailbox: str = "") -> None:
        super().__init__(hub, mailbox)

    def receive(self, msg: Any) -> None:
        if self._watches(msg.mailbox):
            self._enqueue(
                MonitorEventV2(variant="message-stored", header=metadata_to_header(msg))
            )

    def delete(self, mailbox: str, id: str) -> None:
        if self._watches(mailbox):
            self._enqueue(
                MonitorEventV2(
                    variant="message-deleted",
                    identifier=MessageIDV2(mailbox=mailbox, id=id),
                )
            )

    def close(self) -> None:
        super().close()

    def events(self) -> Iterator[MonitorEventV2]:
        return super().events()