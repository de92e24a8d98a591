"""JSON models exchanged by the mailbox REST API and the monitor feed."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?"
    r"(?:([Zz])|([+-])(\d{2}):(\d{2}))\Z"
)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_NANOS_PER_SECOND = 1_000_000_000
_NANOS_PER_MILLI = 1_000_000


@dataclass(frozen=True)
class Timestamp:
    """An instant with nanosecond precision and a fixed UTC offset.

    ``moment`` carries the whole seconds and the zone; ``nanosecond`` the
    fraction of the second. Equality compares instants, not zones.
    """

    moment: datetime
    nanosecond: int = 0

    def __post_init__(self) -> None:
        if self.moment.tzinfo is None or self.moment.utcoffset() is None:
            raise ValueError("timestamp needs a timezone-aware datetime")
        if self.moment.microsecond:
            raise ValueError("sub-second precision belongs in nanosecond")
        if not 0 <= self.nanosecond < _NANOS_PER_SECOND:
            raise ValueError(f"nanosecond out of range: {self.nanosecond}")

    @classmethod
    def from_rfc3339(cls, text: str) -> Timestamp:
        """Parse an RFC 3339 timestamp with an optional fraction of any length."""
        match = _RFC3339.match(text)
        if match is None:
            raise ValueError(f"invalid RFC 3339 timestamp: {text!r}")
        (year, month, day, hour, minute, second,
         fraction, zulu, sign, off_hours, off_minutes) = match.groups()
        if zulu:
            tz = timezone.utc
        else:
            offset = timedelta(hours=int(off_hours), minutes=int(off_minutes))
            tz = timezone(-offset if sign == "-" else offset)
        moment = datetime(
            int(year), int(month), int(day),
            int(hour), int(minute), int(second), tzinfo=tz,
        )
        nanos = int((fraction or "0")[:9].ljust(9, "0"))
        return cls(moment, nanos)

    def to_rfc3339(self) -> str:
        """Format with trailing zeros of the fraction dropped and ``Z`` for UTC."""
        m = self.moment
        text = (
            f"{m.year:04d}-{m.month:02d}-{m.day:02d}"
            f"T{m.hour:02d}:{m.minute:02d}:{m.second:02d}"
        )
        if self.nanosecond:
            text += "." + f"{self.nanosecond:09d}".rstrip("0")
        offset_minutes = int(m.utcoffset().total_seconds()) // 60
        if offset_minutes == 0:
            return text + "Z"
        sign = "-" if offset_minutes < 0 else "+"
        hours, minutes = divmod(abs(offset_minutes), 60)
        return f"{text}{sign}{hours:02d}:{minutes:02d}"

    def posix_millis(self) -> int:
        """Milliseconds since the Unix epoch, truncated toward zero."""
        delta = self.moment - _EPOCH
        nanos = (delta.days * 86400 + delta.seconds) * _NANOS_PER_SECOND + self.nanosecond
        millis = abs(nanos) // _NANOS_PER_MILLI
        return millis if nanos >= 0 else -millis


def _zero_time() -> Timestamp:
    return Timestamp(datetime(1, 1, 1, tzinfo=timezone.utc))


def _require_object(data: Any, what: str) -> dict:
    if not isinstance(data, dict):
        raise ValueError(f"{what} must be a JSON object")
    return data


def _value(data: dict, key: str, default: Any) -> Any:
    value = data.get(key)
    return default if value is None else value


def _parse_time(value: Any) -> Timestamp:
    if value is None:
        return _zero_time()
    return Timestamp.from_rfc3339(value)


def _header_fields(data: Any, what: str) -> dict[str, Any]:
    data = _require_object(data, what)
    return {
        "mailbox": _value(data, "mailbox", ""),
        "id": _value(data, "id", ""),
        "from_": _value(data, "from", ""),
        "to": list(_value(data, "to", [])),
        "subject": _value(data, "subject", ""),
        "date": _parse_time(data.get("date")),
        "posix_millis": int(_value(data, "posix-millis", 0)),
        "size": int(_value(data, "size", 0)),
        "seen": bool(_value(data, "seen", False)),
    }


@dataclass
class MessageHeaderV1:
    """The basic header data of a stored message."""

    mailbox: str = ""
    id: str = ""
    from_: str = ""
    to: list[str] = field(default_factory=list)
    subject: str = ""
    date: Timestamp = field(default_factory=_zero_time)
    posix_millis: int = 0
    size: int = 0
    seen: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "mailbox": self.mailbox,
            "id": self.id,
            "from": self.from_,
            "to": list(self.to),
            "subject": self.subject,
            "date": self.date.to_rfc3339(),
            "posix-millis": self.posix_millis,
            "size": self.size,
            "seen": self.seen,
        }

    @classmethod
    def from_json(cls, data: Any) -> MessageHeaderV1:
        return cls(**_header_fields(data, "message header"))


@dataclass
class MessageBodyV1:
    """The text and HTML versions of a message body."""

    text: str = ""
    html: str = ""

    def to_json(self) -> dict[str, Any]:
        return {"text": self.text, "html": self.html}

    @classmethod
    def from_json(cls, data: Any) -> MessageBodyV1:
        data = _require_object(data, "message body")
        return cls(text=_value(data, "text", ""), html=_value(data, "html", ""))


@dataclass
class MessageAttachmentV1:
    """Information about one MIME attachment."""

    filename: str = ""
    content_type: str = ""
    download_link: str = ""
    view_link: str = ""
    md5: str = ""

    def to_json(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "content-type": self.content_type,
            "download-link": self.download_link,
            "view-link": self.view_link,
            "md5": self.md5,
        }

    @classmethod
    def from_json(cls, data: Any) -> MessageAttachmentV1:
        data = _require_object(data, "attachment")
        return cls(
            filename=_value(data, "filename", ""),
            content_type=_value(data, "content-type", ""),
            download_link=_value(data, "download-link", ""),
            view_link=_value(data, "view-link", ""),
            md5=_value(data, "md5", ""),
        )


@dataclass
class MessageV1(MessageHeaderV1):
    """Header data plus body, raw headers and attachments."""

    body: MessageBodyV1 | None = None
    header: dict[str, list[str]] = field(default_factory=dict)
    attachments: list[MessageAttachmentV1] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        return {
            **super().to_json(),
            "body": self.body.to_json() if self.body is not None else None,
            "header": {name: list(values) for name, values in self.header.items()},
            "attachments": [attachment.to_json() for attachment in self.attachments],
        }

    @classmethod
    def from_json(cls, data: Any) -> MessageV1:
        fields = _header_fields(data, "message")
        body = data.get("body")
        header = _require_object(_value(data, "header", {}), "message header map")
        return cls(
            **fields,
            body=MessageBodyV1.from_json(body) if body is not None else None,
            header={name: list(values or []) for name, values in header.items()},
            attachments=[
                MessageAttachmentV1.from_json(item)
                for item in _value(data, "attachments", [])
            ],
        )


@dataclass
class MessageIDV2:
    """Uniquely identifies a message."""

    mailbox: str
    id: str

    def to_json(self) -> dict[str, Any]:
        return {"mailbox": self.mailbox, "id": self.id}


@dataclass
class MonitorEventV2:
    """An event for the mailbox and monitor views.

    ``variant`` is ``message-stored`` or ``message-deleted``.
    """

    variant: str
    identifier: MessageIDV2 | None = None
    header: MessageHeaderV1 | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "variant": self.variant,
            "identifier": self.identifier.to_json() if self.identifier is not None else None,
            "header": self.header.to_json() if self.header is not None else None,
        }