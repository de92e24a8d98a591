"""POP3 protocol sessions over a connected socket.

The store offers ``get_messages(mailbox)`` and ``remove_message(mailbox, id)``.
A stored message has ``id`` and ``size`` attributes and a ``source()`` method
that returns a readable binary file holding the raw message.
"""

from __future__ import annotations

import enum
import logging
import os
import re
import ssl
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

log = logging.getLogger(__name__)

COMMANDS = frozenset(
    {
        "QUIT", "STAT", "LIST", "RETR", "DELE", "NOOP", "RSET",
        "TOP", "UIDL", "USER", "PASS", "APOP", "CAPA", "STLS",
    }
)

_INT = re.compile(r"[+-]?[0-9]+")
_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1
_RETR_FAILED = "-ERR Failed to RETR that message, internal error"


class State(enum.Enum):
    """The mode of the POP3 state machine."""

    AUTHORIZATION = "AUTHORIZATION"
    TRANSACTION = "TRANSACTION"
    QUIT = "QUIT"

    def __str__(self) -> str:
        return self.value


@dataclass
class Pop3Config:
    """Settings of the POP3 service; ``timeout`` is in seconds."""

    addr: str = "0.0.0.0:1100"
    domain: str = "inbucket"
    timeout: float = 600.0
    debug: bool = False
    tls_enabled: bool = False
    tls_cert: str = ""
    tls_priv_key: str = ""
    force_tls: bool = False


def parse_cmd(line: str) -> tuple[str, list[str]]:
    """Split a command line into an upper-cased command and its arguments."""
    line = line.rstrip("\r\n")
    if not line:
        return "", []
    words = line.split(" ")
    return words[0].upper(), words[1:]


def _parse_int32(text: str) -> Optional[int]:
    if not _INT.fullmatch(text):
        return None
    value = int(text)
    if not _INT32_MIN <= value <= _INT32_MAX:
        return None
    return value


def _source_lines(reader: Any) -> Iterator[str]:
    """Yield the lines of a message source, line endings removed, dot-stuffed."""
    for raw in reader:
        if raw.endswith(b"\n"):
            raw = raw[:-1]
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        line = raw.decode("utf-8", "surrogateescape")
        if line.startswith("."):
            line = "." + line
        yield line


class Session:
    """One POP3 conversation with a client over ``conn``."""

    def __init__(
        self,
        config: Pop3Config,
        store: Any,
        session_id: int,
        conn: Any,
        remote_host: str = "",
        tls_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.id = session_id
        self.remote_host = remote_host
        self.tls_context = tls_context
        self.state = State.AUTHORIZATION
        self.send_error: Optional[BaseException] = None
        self.user = ""
        self.messages: list[Any] = []
        self.retain: list[bool] = []
        self.msg_count = 0
        self.tls_active = False
        self._conn = conn
        self._reader: Any = None
        self._log = logging.LoggerAdapter(
            log, {"session": session_id, "remote": remote_host}
        )

    def __repr__(self) -> str:
        return f"Session(id={self.id}, state={self.state})"

    def run(self) -> None:
        """Greet the client and serve commands until QUIT, EOF or an error."""
        self._log.info("Starting POP3 session")
        try:
            if self.config.force_tls and self.tls_context is not None:
                try:
                    self._start_tls()
                except OSError as exc:
                    self._log.warning("TLS handshake failed: %s", exc)
                    return
            self._send(
                f"+OK Inbucket POP3 server ready <{os.getpid()}."
                f"{int(time.time())}@{self.config.domain}>"
            )
            while self.state is not State.QUIT and self.send_error is None:
                try:
                    line = self._read_line()
                except TimeoutError as exc:
                    self._log.warning("Connection error: %s", exc)
                    self._send("-ERR Idle timeout, bye bye")
                    break
                except OSError as exc:
                    self._log.warning("Connection error: %s", exc)
                    self._send("-ERR Connection error, sorry")
                    break
                if line is None:
                    if self.state is State.AUTHORIZATION:
                        self._log.info("Client closed connection (state %s)", self.state)
                    else:
                        self._log.warning("Got EOF while in state %s", self.state)
                    break
                if not self.handle_line(line):
                    break
            if self.send_error is not None:
                self._log.warning("Network send error: %s", self.send_error)
            self._log.info("Closing connection")
        finally:
            self._close()

    def handle_line(self, line: str) -> bool:
        """Act on one command line; False when the session cannot go on."""
        cmd, args = parse_cmd(line)
        if cmd == "CAPA":
            self._send("+OK Capability list follows")
            for capability in ("TOP", "USER", "UIDL", "IMPLEMENTATION Inbucket"):
                self._send(capability)
            if self.tls_context is not None and not self.tls_active and not self.config.force_tls:
                self._send("STLS")
            self._send(".")
            return True
        if not cmd:
            self._send("-ERR Speak up")
            return True
        if cmd not in COMMANDS:
            self._send(f"-ERR Syntax error, {cmd} command unrecognized")
            self._log.warning("Unrecognized command: %s", cmd)
            return True
        if self.state is State.AUTHORIZATION:
            self._authorization(cmd, args)
            return True
        if self.state is State.TRANSACTION:
            self._transaction(cmd, args)
            return True
        self._log.error("Session entered unexpected state %s", self.state)
        return False

    # AUTHORIZATION state

    def _authorization(self, cmd: str, args: list[str]) -> None:
        if cmd == "QUIT":
            self._send("+OK Goodnight and good luck")
            self._enter_state(State.QUIT)
        elif cmd == "STLS":
            self._stls(cmd)
        elif cmd == "USER":
            if args:
                self.user = args[0]
                self._send(f"+OK Hello {self.user}, welcome to Inbucket")
            else:
                self._send("-ERR Missing username argument")
        elif cmd == "PASS":
            if not self.user:
                self._out_of_sequence(cmd)
            else:
                self._open_mailbox()
        elif cmd == "APOP":
            if len(args) != 2:
                self._log.warning("Expected two arguments for APOP")
                self._send("-ERR APOP requires two arguments")
                return
            self.user = args[0]
            self._open_mailbox()
        else:
            self._out_of_sequence(cmd)

    def _stls(self, cmd: str) -> None:
        if not self.config.tls_enabled or self.config.force_tls or self.tls_context is None:
            self._send("-ERR TLS unavailable on the server")
            return
        if self.tls_active:
            self._send("-ERR A TLS session already agreed upon.")
            return
        self._send("+OK Begin TLS Negotiation")
        try:
            self._start_tls()
        except OSError as exc:
            self._log.error("TLS handshake failed %s", exc)
            self._out_of_sequence(cmd)

    def _open_mailbox(self) -> None:
        self._load_mailbox()
        self._send(f"+OK Found {self.msg_count} messages for {self.user}")
        self._enter_state(State.TRANSACTION)

    # TRANSACTION state

    def _transaction(self, cmd: str, args: list[str]) -> None:
        handlers: dict[str, Callable[[list[str]], None]] = {
            "STAT": self._stat,
            "LIST": lambda a: self._listing("LIST", a, lambda msg: msg.size),
            "UIDL": lambda a: self._listing("UIDL", a, lambda msg: msg.id),
            "DELE": self._dele,
            "RETR": self._retr,
            "TOP": self._top,
            "QUIT": self._quit,
            "NOOP": lambda a: self._send("+OK I have successfully done nothing"),
            "RSET": self._rset,
        }
        handler = handlers.get(cmd)
        if handler is None:
            self._out_of_sequence(cmd)
        else:
            handler(args)

    def _message_number(self, cmd: str, arg: str, label: Optional[str] = None) -> Optional[int]:
        label = label or cmd
        number = _parse_int32(arg)
        if number is None:
            self._send(f"-ERR {cmd} command requires an integer argument")
            return None
        if number < 1:
            self._send(f"-ERR {label} argument must be greater than 0")
            return None
        if number > len(self.messages):
            self._send(f"-ERR {label} argument must not exceed the number of messages")
            return None
        return number

    def _stat(self, args: list[str]) -> None:
        if args:
            self._send("-ERR STAT command must have no arguments")
            return
        kept = [msg for msg, keep in zip(self.messages, self.retain) if keep]
        self._send(f"+OK {len(kept)} {sum(msg.size for msg in kept)}")

    def _listing(self, cmd: str, args: list[str], value: Callable[[Any], Any]) -> None:
        if len(args) > 1:
            self._send(f"-ERR {cmd} command must have zero or one argument")
            return
        if args:
            number = self._message_number(cmd, args[0])
            if number is None:
                return
            if not self.retain[number - 1]:
                self._log.warning("Client tried to %s a message it had deleted", cmd)
                self._send(f"-ERR You deleted message {number}")
                return
            self._send(f"+OK {number} {value(self.messages[number - 1])}")
            return
        self._send(f"+OK Listing {self.msg_count} messages")
        for number, (msg, keep) in enumerate(zip(self.messages, self.retain), start=1):
            if keep:
                self._send(f"{number} {value(msg)}")
        self._send(".")

    def _dele(self, args: list[str]) -> None:
        if len(args) != 1:
            self._send("-ERR DELE command requires a single argument")
            return
        number = self._message_number("DELE", args[0])
        if number is None:
            return
        if self.retain[number - 1]:
            self.retain[number - 1] = False
            self.msg_count -= 1
            self._send(f"+OK Deleted message {number}")
        else:
            self._send(f"-ERR Message {number} has already been deleted")

    def _retr(self, args: list[str]) -> None:
        if len(args) != 1:
            self._send("-ERR RETR command requires a single argument")
            return
        number = self._message_number("RETR", args[0])
        if number is None:
            return
        msg = self.messages[number - 1]
        self._send(f"+OK {msg.size} bytes follows")
        self._send_source(msg)

    def _top(self, args: list[str]) -> None:
        if len(args) != 2:
            self._send("-ERR TOP command requires two arguments")
            return
        number = self._message_number("TOP", args[0], "TOP first")
        if number is None:
            return
        lines = _parse_int32(args[1])
        if lines is None:
            self._send("-ERR TOP command requires an integer argument")
            return
        if lines < 0:
            self._send("-ERR TOP second argument must be non-negative")
            return
        self._send("+OK Top of message follows")
        self._send_source(self.messages[number - 1], lines)

    def _quit(self, args: list[str]) -> None:
        self._send("+OK We will process your deletes")
        self._process_deletes()
        self._enter_state(State.QUIT)

    def _rset(self, args: list[str]) -> None:
        self._retain_all()
        self._send("+OK Session reset")

    # Helpers

    def _send_source(self, msg: Any, body_lines: Optional[int] = None) -> None:
        """Send a message's lines, or its header plus ``body_lines`` body lines."""
        try:
            reader = msg.source()
        except Exception as exc:
            self._log.error("Failed to read message: %s", exc)
            self._send(_RETR_FAILED)
            return
        failed = False
        try:
            in_body = False
            remaining = body_lines
            for line in _source_lines(reader):
                if remaining is not None:
                    if in_body:
                        if remaining < 1:
                            break
                        remaining -= 1
                    elif line == "":
                        in_body = True
                self._send(line)
        except Exception as exc:
            self._log.error("Failed to read message: %s", exc)
            failed = True
        finally:
            try:
                reader.close()
            except Exception as exc:
                self._log.error("Failed to close message: %s", exc)
        self._send(".")
        if failed:
            self._send(_RETR_FAILED)

    def _load_mailbox(self) -> None:
        try:
            self.messages = list(self.store.get_messages(self.user))
        except Exception as exc:
            self._log.error("Failed to load messages for %s: %s", self.user, exc)
            self.messages = []
        self._retain_all()

    def _retain_all(self) -> None:
        self.retain = [True] * len(self.messages)
        self.msg_count = len(self.messages)

    def _process_deletes(self) -> None:
        for msg, keep in zip(self.messages, self.retain):
            if keep:
                continue
            try:
                self.store.remove_message(self.user, msg.id)
            except Exception as exc:
                self._log.warning("Error deleting message %s: %s", msg.id, exc)

    def _enter_state(self, state: State) -> None:
        self.state = state
        self._log.debug("Entering state %s", state)

    def _out_of_sequence(self, cmd: str) -> None:
        self._send(f"-ERR Command {cmd} is out of sequence")
        self._log.warning("Wasn't expecting %s here", cmd)

    def _timeout(self) -> Optional[float]:
        return self.config.timeout if self.config.timeout > 0 else None

    def _start_tls(self) -> None:
        assert self.tls_context is not None
        self._close_reader()
        self._conn.settimeout(self._timeout())
        self._conn = self.tls_context.wrap_socket(self._conn, server_side=True)
        self.tls_active = True

    def _send(self, msg: str) -> None:
        try:
            self._conn.settimeout(self._timeout())
            self._conn.sendall((msg + "\r\n").encode("utf-8", "surrogateescape"))
        except OSError as exc:
            self.send_error = exc
            self._log.warning("Failed to send: %r", msg)
            return
        if self.config.debug:
            print(f"{self.id:04d} > {msg}")

    def _read_line(self) -> Optional[str]:
        """Read one line including its newline; None at end of input."""
        if self._reader is None:
            self._reader = self._conn.makefile("rb")
        self._conn.settimeout(self._timeout())
        raw = self._reader.readline()
        if not raw.endswith(b"\n"):
            return None
        line = raw.decode("utf-8", "surrogateescape")
        if self.config.debug:
            print(f"{self.id:04d}   {line.rstrip(chr(13) + chr(10))}")
        return line

    def _close_reader(self) -> None:
        if self._reader is not None:
            try:
                self._reader.close()
            except OSError:
                pass
            self._reader = None

    def _close(self) -> None:
        self._close_reader()
        try:
            self._conn.close()
        except OSError as exc:
            self._log.warning("Closing connection: %s", exc)