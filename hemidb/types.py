"""Column value types shared by the database layers, with JSON and SQL conversions."""

from __future__ import annotations

import binascii
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

JsonText = Union[str, bytes, bytearray, memoryview]

# Called with (table, action, new payload, old payload).
NotificationCallback = Callable[[str, str, Any, Any], None]

_BYTES_PREFIX = '"\\\\x'
_TIMESTAMP_RE = re.compile(
    r'"([0-9]{4})-([0-9]{2})-([0-9]{2})T([0-9]{2}):([0-9]{2}):([0-9]{2})'
    r'(?:[.,]([0-9]+))?"'
)
_DECIMAL_RE = re.compile(r"[+-]?[0-9]+")
_BASE0_RE = re.compile(r"([+-]?)([0-9A-Za-z_]+)")
_OCTAL_RE = re.compile(r"0[0-7]+")


class DatabaseError(Exception):
    """Base class for errors reported by the database layer."""


class NotFoundError(DatabaseError):
    """A requested row does not exist."""


class DuplicateError(DatabaseError):
    """A row violates a uniqueness or integrity constraint."""


class ValidationError(DatabaseError):
    """A value was rejected by a database check constraint."""


def _text(data: JsonText) -> str:
    if isinstance(data, str):
        return data
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data).decode("utf-8")
    raise TypeError(f"expected JSON text, got {type(data).__name__}")


# --- byte arrays (BYTEA) ---------------------------------------------------


def bytes_to_json(value: Optional[bytes]) -> str:
    """Encode bytes as a quoted, escape-prefixed hexadecimal JSON string."""
    if value is None:
        return "null"
    return f'{_BYTES_PREFIX}{bytes(value).hex()}"'


def bytes_from_json(data: JsonText) -> Optional[bytes]:
    """Decode a quoted ``\\\\x`` prefixed hexadecimal JSON string."""
    text = _text(data)
    if text == "null":
        return None
    if not text.startswith(_BYTES_PREFIX) or not text.endswith('"') or len(text) < 5:
        raise ValueError("byte array does not have escape prefix")
    try:
        return binascii.unhexlify(text[4:-1])
    except ValueError as exc:
        raise ValueError(f"invalid hexadecimal byte array: {exc}") from exc


def scan_bytes(value: Any) -> Optional[bytes]:
    """Convert a database column value into an owned copy of its bytes."""
    if value is None:
        return None
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise TypeError(f"not a byte array ({type(value).__name__})")
    return bytes(value)


def bytes_value(value: Optional[bytes]) -> Optional[bytes]:
    """Convert bytes into a value suitable for a database parameter."""
    if value is None:
        return None
    return bytes(value)


# --- big integers (NUMERIC) ------------------------------------------------


def bigint_to_json(value: Optional[int]) -> str:
    """Encode an integer as a JSON number, or null."""
    if value is None:
        return "null"
    return str(value)


def bigint_from_json(data: JsonText) -> Optional[int]:
    """Decode a JSON number (with optional base prefix) into an integer."""
    text = _text(data)
    if text == "null":
        return None
    match = _BASE0_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"cannot unmarshal {text!r} into a big integer")
    sign, digits = match.groups()
    try:
        if _OCTAL_RE.fullmatch(digits):
            magnitude = int(digits, 8)
            return -magnitude if sign == "-" else magnitude
        return int(text, 0)
    except ValueError as exc:
        raise ValueError(f"cannot unmarshal {text!r} into a big integer") from exc


def scan_bigint(value: Any) -> Optional[int]:
    """Convert a NUMERIC column value, delivered as decimal bytes, to an integer."""
    if value is None:
        return None
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise TypeError(f"not a byte array ({type(value).__name__})")
    text = bytes(value).decode("latin-1")
    if not _DECIMAL_RE.fullmatch(text):
        raise ValueError(f"failed to convert {text!r} to BigInt")
    return int(text, 10)


def bigint_value(value: Optional[int]) -> Optional[str]:
    """Convert an integer into its decimal text for a database parameter."""
    if value is None:
        return None
    return str(value)


# --- timestamps (TIMESTAMP) ------------------------------------------------


def _fraction(microsecond: int) -> str:
    if not microsecond:
        return ""
    return "." + f"{microsecond:06d}".rstrip("0")


def _wall_clock(value: datetime) -> str:
    return (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
        f"{_fraction(value.microsecond)}"
    )


def timestamp_to_json(value: Optional[datetime]) -> str:
    """Encode a timestamp as a quoted JSON string without zone, or null."""
    if value is None:
        return "null"
    return f'"{_wall_clock(value)}"'


def timestamp_from_json(data: JsonText) -> Optional[datetime]:
    """Decode a quoted JSON timestamp; the result is in UTC."""
    text = _text(data)
    if text == "null":
        return None
    match = _TIMESTAMP_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"cannot parse {text!r} as a timestamp")
    year, month, day, hour, minute, second, frac = match.groups()
    microsecond = int((frac or "0")[:6].ljust(6, "0"))
    try:
        return datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second),
            microsecond, tzinfo=timezone.utc,
        )
    except ValueError as exc:
        raise ValueError(f"cannot parse {text!r} as a timestamp: {exc}") from exc


def scan_timestamp(value: Any) -> Optional[datetime]:
    """Convert a TIMESTAMP column value into a datetime."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        raise TypeError(f"not a time ({type(value).__name__})")
    return value


def timestamp_value(value: Optional[datetime]) -> Optional[str]:
    """Format a timestamp as RFC 3339 text for a database parameter."""
    if value is None:
        return None
    offset = value.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        zone = "Z"
    else:
        total = int(offset.total_seconds())
        sign = "-" if total < 0 else "+"
        hours, rest = divmod(abs(total), 3600)
        zone = f"{sign}{hours:02d}:{rest // 60:02d}"
    return _wall_clock(value) + zone


# --- time zones --------------------------------------------------------------


def _atoi(text: str) -> Optional[int]:
    if not _DECIMAL_RE.fullmatch(text):
        return None
    return int(text)


@dataclass(frozen=True, eq=False)
class TimeZone:
    """A UTC offset that encodes to and decodes from a ``+/-hh:mm`` string."""

    hour: int = 0
    minute: int = 0
    valid: bool = False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TimeZone):
            return NotImplemented
        return (self.hour, self.minute) == (other.hour, other.minute)

    def __hash__(self) -> int:
        return hash((self.hour, self.minute))

    def __str__(self) -> str:
        return f"{self.hour:+03d}:{self.minute:02d}"

    @classmethod
    def parse(cls, text: str) -> "TimeZone":
        """Parse a ``+hh:mm`` or ``-hh:mm`` string."""
        if len(text) != len("+10:00"):
            raise ValueError(f"{text!r} has invalid length")
        if text[0] not in "+-":
            raise ValueError(f"invalid prefix {text[0]!r} (not +/-)")
        if text[3] != ":":
            raise ValueError(f"invalid separator {text[3]!r} (not :)")
        hour = _atoi(text[0:3])
        if hour is None or not -12 <= hour <= 14:
            raise ValueError(f"invalid hour {text[0:3]!r}")
        minute = _atoi(text[4:6])
        if minute is None or not 0 <= minute <= 59:
            raise ValueError(f"invalid minute {text[4:6]!r}")
        return cls(hour, minute, True)

    def to_json(self) -> str:
        """Encode as a quoted JSON string, or null when unset."""
        if not self.valid:
            return "null"
        return f'"{self}"'

    @classmethod
    def from_json(cls, data: JsonText) -> "TimeZone":
        """Decode from a quoted JSON string or null."""
        text = _text(data)
        if text.startswith('"') and text.endswith('"'):
            text = text[1:-1]
        if text == "null":
            return cls()
        try:
            return cls.parse(text)
        except ValueError as exc:
            raise ValueError(f"invalid timezone: {exc}") from exc

    @classmethod
    def scan(cls, value: Any) -> "TimeZone":
        """Convert a database column value into a time zone."""
        if value is None:
            return cls()
        if not isinstance(value, str):
            raise TypeError(f"not a string ({type(value).__name__})")
        try:
            return cls.parse(value)
        except ValueError as exc:
            raise ValueError(f"invalid timezone: {exc}") from exc

    def value(self) -> Optional[str]:
        """Convert into a value suitable for a database parameter."""
        if not self.valid:
            return None
        return str(self)