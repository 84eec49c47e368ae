"""
Reset records and reset file decoding.

A reset record is either *external* (decoded from a ``passwordreset*.json`` file
written by the identity service) or *internal* (generated in-process by an
administrator action). The two shapes are separate frozen dataclasses: an
internal record already carries the resolved user ID, an external record must
have its user resolved by name before dispatch.

Key Invariants:
    - Records are immutable once constructed.
    - A record is actionable only while its expiry is strictly in the future.
    - Decoding never produces an internal record, whatever the file claims.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Tuple, Type, Union

try:
    import orjson
except ImportError:
    orjson = None  # type: ignore

if orjson:
    JSON_DECODE_EXCEPTIONS: Tuple[Type[Exception], ...] = (json.JSONDecodeError, orjson.JSONDecodeError)
    json_loads = orjson.loads
else:
    JSON_DECODE_EXCEPTIONS = (json.JSONDecodeError,)
    json_loads = json.loads

__all__ = [
    "ExternalReset",
    "InternalReset",
    "ResetRecord",
    "ResetDecodeError",
    "decode_reset_file",
    "parse_expiry",
]

ORIGIN_EXTERNAL = "external"
ORIGIN_INTERNAL = "internal"

# Older datetime.fromisoformat only accepts exactly 3 or 6 fractional digits.
_FRACTION_RE = re.compile(r"\.(\d+)")


class ResetDecodeError(ValueError):
    """Raised when a reset file cannot be turned into a reset record."""


@dataclass(frozen=True)
class ExternalReset:
    """A reset request read from a file written by the identity service.

    Attributes:
        pin (str): Short-lived secret identifying the reset request.
        username (str): Login name of the target user. Resolved to an ID before dispatch.
        expiry (datetime): Timezone-aware instant after which the reset is void.
    """

    pin: str
    username: str
    expiry: datetime

    @property
    def origin(self) -> str:
        return ORIGIN_EXTERNAL

    def is_actionable(self, now: datetime) -> bool:
        """Return True if the record has not expired at ``now``."""
        return self.expiry > now


@dataclass(frozen=True)
class InternalReset:
    """A reset generated in-process for an already-known user.

    Attributes:
        pin (str): Short-lived secret identifying the reset request.
        username (str): Display name of the target user.
        user_id (str): ID of the target user, resolved at creation time.
        expiry (datetime): Timezone-aware instant after which the reset is void.
    """

    pin: str
    username: str
    user_id: str
    expiry: datetime

    @property
    def origin(self) -> str:
        return ORIGIN_INTERNAL

    def is_actionable(self, now: datetime) -> bool:
        """Return True if the record has not expired at ``now``."""
        return self.expiry > now


ResetRecord = Union[ExternalReset, InternalReset]


def parse_expiry(value: Any) -> datetime:
    """Parse an ``ExpirationDate`` value into a timezone-aware datetime.

    Accepts ISO 8601 / RFC 3339 strings with a ``Z`` suffix or a numeric offset.
    Naive timestamps are taken as UTC.

    Args:
        value (Any): The raw JSON value.

    Returns:
        datetime: The parsed, timezone-aware timestamp.

    Raises:
        ResetDecodeError: If the value is missing, not a string, or not a timestamp.

    Example:
        >>> parse_expiry("2024-05-01T10:00:00.1234567Z")
        datetime.datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=datetime.timezone.utc)
    """
    if not isinstance(value, str) or not value.strip():
        raise ResetDecodeError("ExpirationDate must be a non-empty string")
    ts_str = value.strip()
    ts_str = ts_str[:-1] + "+00:00" if ts_str.endswith(("Z", "z")) else ts_str
    ts_str = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), ts_str)
    try:
        parsed = datetime.fromisoformat(ts_str)
    except ValueError as e:
        raise ResetDecodeError(f"Invalid ExpirationDate {value!r}: {e}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def decode_reset_file(data: bytes) -> ExternalReset:
    """Decode the contents of a reset file.

    Expected content::

        {
            "Pin": "a1b2c3",
            "UserName": "alice",
            "ExpirationDate": "2024-05-01T10:00:00.0000000Z",
            "Internal": false
        }

    Args:
        data (bytes): Raw file contents. A UTF-8 BOM is tolerated.

    Returns:
        ExternalReset: The decoded record.

    Raises:
        ResetDecodeError: If the JSON is malformed, the root is not an object, or
            ``Pin``, ``UserName`` or ``ExpirationDate`` is missing or empty.
    """
    if data.startswith(b"\xef\xbb\xbf"):
        data = data[3:]
    try:
        payload = json_loads(data)
    except JSON_DECODE_EXCEPTIONS as e:
        raise ResetDecodeError(f"Malformed JSON: {e}") from e
    except (UnicodeDecodeError, RecursionError) as e:
        raise ResetDecodeError(f"Unreadable JSON: {e}") from e

    if not isinstance(payload, dict):
        raise ResetDecodeError("JSON root is not an object")

    pin = payload.get("Pin")
    if not isinstance(pin, str) or not pin:
        raise ResetDecodeError("Pin is missing or empty")

    username = payload.get("UserName")
    if not isinstance(username, str) or not username.strip():
        raise ResetDecodeError("UserName is missing or empty")

    expiry = parse_expiry(payload.get("ExpirationDate"))

    return ExternalReset(pin=pin, username=username, expiry=expiry)
