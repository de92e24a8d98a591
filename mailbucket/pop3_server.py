"""The POP3 listener: accepts connections and runs a session for each."""

from __future__ import annotations

import errno
import logging
import os
import queue
import socket
import ssl
import threading
import time
from typing import Any, Callable, Optional

from .pop3 import Pop3Config, Session

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2
_MIN_RETRY_DELAY = 0.005
_MAX_RETRY_DELAY = 1.0
_TEMPORARY_ACCEPT_ERRORS = frozenset(
    {errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM, errno.ECONNABORTED}
)


def _load_tls(config: Pop3Config) -> ssl.SSLContext:
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(config.tls_cert, config.tls_priv_key)
    except (OSError, ValueError) as exc:
        log.error("Failed loading X509 KeyPair: %s", exc)
        # Never fall back to plain text when TLS was asked for.
        raise ValueError(f"failed to configure TLS; {exc}") from exc
    log.debug("TLS config available")
    return context


def _resolve(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    if not port.isdigit() or int(port) > 65535:
        raise ValueError(f"invalid port in address {addr!r}")
    infos = socket.getaddrinfo(
        host or "0.0.0.0", int(port), socket.AF_INET, socket.SOCK_STREAM
    )
    return infos[0][4][:2]


class Server:
    """A POP3 server bound to ``config.addr`` serving mail from ``store``.

    ``start`` returns once the listener is up; fatal errors are reported
    through the queue returned by ``notify``.
    """

    def __init__(self, config: Pop3Config, store: Any) -> None:
        self.config = config
        self.store = store
        self.tls_context: Optional[ssl.SSLContext] = (
            _load_tls(config) if config.tls_enabled else None
        )
        self._notify: queue.Queue[BaseException] = queue.Queue(maxsize=1)
        self._listener: Optional[socket.socket] = None
        self._serve_thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._active = 0
        self._idle = threading.Condition()

    @property
    def address(self) -> Optional[tuple[str, int]]:
        """The bound host and port, once started."""
        if self._listener is None:
            return None
        return self._listener.getsockname()[:2]

    def _fail(self, exc: BaseException) -> None:
        try:
            self._notify.put_nowait(exc)
        except queue.Full:
            pass

    def start(self, ready_func: Optional[Callable[[], None]] = None) -> None:
        """Bind the listener, begin accepting and call ``ready_func``."""
        try:
            address = _resolve(self.config.addr)
            listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                if os.name == "posix":
                    listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                listener.bind(address)
                listener.listen()
                listener.settimeout(_POLL_INTERVAL)
            except OSError:
                listener.close()
                raise
        except (OSError, ValueError) as exc:
            log.error("Failed to start tcp4 listener: %s", exc)
            self._fail(exc)
            return
        self._listener = listener
        self._stopping.clear()
        log.info("POP3 listening on tcp4 %s:%s", *listener.getsockname()[:2])
        self._serve_thread = threading.Thread(
            target=self._serve, args=(listener,), name="pop3-accept", daemon=True
        )
        self._serve_thread.start()
        if ready_func is not None:
            ready_func()

    def stop(self) -> None:
        """Stop accepting connections; running sessions go on until drained."""
        self._stopping.set()
        listener, self._listener = self._listener, None
        if listener is not None:
            log.debug("POP3 shutdown requested, connections will be drained")
            try:
                listener.close()
            except OSError as exc:
                log.error("Failed to close POP3 listener: %s", exc)
        if self._serve_thread is not None:
            self._serve_thread.join()
            self._serve_thread = None

    def drain(self) -> None:
        """Block until every active session has finished."""
        log.debug("waiting for connections to complete.")
        with self._idle:
            while self._active:
                self._idle.wait()
        log.debug("POP3 connections have drained")

    def notify(self) -> queue.Queue[BaseException]:
        """The queue on which a fatal server error is reported."""
        return self._notify

    def _serve(self, listener: socket.socket) -> None:
        session_id = 0
        delay = 0.0
        while not self._stopping.is_set():
            try:
                conn, peer = listener.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._stopping.is_set():
                    return
                if exc.errno in _TEMPORARY_ACCEPT_ERRORS:
                    delay = min(max(delay * 2, _MIN_RETRY_DELAY), _MAX_RETRY_DELAY)
                    log.error("POP3 accept error %s; retrying in %ss", exc, delay)
                    time.sleep(delay)
                    continue
                self._fail(exc)
                return
            delay = 0.0
            session_id += 1
            with self._idle:
                self._active += 1
            threading.Thread(
                target=self._run_session,
                args=(session_id, conn, peer),
                name=f"pop3-session-{session_id}",
                daemon=True,
            ).start()

    def _run_session(self, session_id: int, conn: socket.socket, peer: Any) -> None:
        try:
            conn.settimeout(None)
            Session(
                self.config, self.store, session_id, conn, peer[0], self.tls_context
            ).run()
        except Exception:
            log.exception("POP3 session %d failed", session_id)
        finally:
            with self._idle:
                self._active -= 1
                self._idle.notify_all()