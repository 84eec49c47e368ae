"""Tests for reset records and reset file decoding."""

from __future__ import annotations

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from pwr_watcher.records import (
    ExternalReset,
    InternalReset,
    ResetDecodeError,
    decode_reset_file,
    parse_expiry,
)

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_decode_identity_service_file() -> None:
    data = (
        b'{"Pin": "abc123", "UserName": "alice", '
        b'"ExpirationDate": "2024-05-01T12:30:00.1234567Z", "Internal": false}'
    )
    record = decode_reset_file(data)

    assert record == ExternalReset(
        pin="abc123",
        username="alice",
        expiry=datetime(2024, 5, 1, 12, 30, 0, 123456, tzinfo=timezone.utc),
    )
    assert record.origin == "external"


def test_decode_with_bom_and_offset() -> None:
    data = b'\xef\xbb\xbf{"Pin": "p", "UserName": "bob", "ExpirationDate": "2024-05-01T14:00:00+02:00"}'
    record = decode_reset_file(data)
    assert record.expiry == datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_internal_flag_in_file_is_ignored() -> None:
    data = b'{"Pin": "p", "UserName": "bob", "ExpirationDate": "2024-05-01T12:00:00Z", "Internal": true}'
    record = decode_reset_file(data)
    assert isinstance(record, ExternalReset)


@pytest.mark.parametrize(
    "data,fragment",
    [
        (b"{ invalid json", "Malformed JSON"),
        (b"[]", "not an object"),
        (b'{"Pin": "", "UserName": "a", "ExpirationDate": "2024-05-01T12:00:00Z"}', "Pin"),
        (b'{"UserName": "a", "ExpirationDate": "2024-05-01T12:00:00Z"}', "Pin"),
        (b'{"Pin": 5, "UserName": "a", "ExpirationDate": "2024-05-01T12:00:00Z"}', "Pin"),
        (b'{"Pin": "p", "UserName": "  ", "ExpirationDate": "2024-05-01T12:00:00Z"}', "UserName"),
        (b'{"Pin": "p", "UserName": "a"}', "ExpirationDate"),
        (b'{"Pin": "p", "UserName": "a", "ExpirationDate": "tomorrow"}', "ExpirationDate"),
    ],
    ids=["Invalid Syntax", "List Root", "Empty Pin", "Missing Pin", "Numeric Pin",
         "Blank UserName", "Missing Expiry", "Bad Expiry"],
)
def test_decode_rejects_invalid_files(data: bytes, fragment: str) -> None:
    with pytest.raises(ResetDecodeError, match=fragment):
        decode_reset_file(data)


def test_decode_error_is_value_error() -> None:
    assert issubclass(ResetDecodeError, ValueError)


def test_parse_expiry_naive_is_utc() -> None:
    assert parse_expiry("2024-05-01T12:00:00") == NOW


def test_actionable_only_strictly_before_expiry() -> None:
    record = ExternalReset(pin="p", username="a", expiry=NOW)
    assert not record.is_actionable(NOW)
    assert not record.is_actionable(NOW + timedelta(seconds=1))
    assert record.is_actionable(NOW - timedelta(seconds=1))


def test_internal_record_carries_user_id() -> None:
    record = InternalReset(pin="p", username="alice", user_id="u1", expiry=NOW)
    assert record.origin == "internal"
    assert record.user_id == "u1"


def test_records_are_immutable() -> None:
    record = ExternalReset(pin="p", username="a", expiry=NOW)
    with pytest.raises(dataclasses.FrozenInstanceError):
        record.pin = "other"  # type: ignore[misc]


@pytest.mark.parametrize(
    "value,expected",
    [
        ("2024-05-01T12:00:00Z", datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)),
        ("2024-05-01T12:00:00.1Z", datetime(2024, 5, 1, 12, 0, 0, 100000, tzinfo=timezone.utc)),
        ("2024-05-01T12:00:00.12Z", datetime(2024, 5, 1, 12, 0, 0, 120000, tzinfo=timezone.utc)),
        ("2024-05-01T12:00:00.12345Z", datetime(2024, 5, 1, 12, 0, 0, 123450, tzinfo=timezone.utc)),
        ("2024-05-01T12:00:00.1234567Z", datetime(2024, 5, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)),
        ("2024-05-01T12:00:00.12+00:00", datetime(2024, 5, 1, 12, 0, 0, 120000, tzinfo=timezone.utc)),
        ("2024-05-01T12:00:00.1234567+00:00", datetime(2024, 5, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)),
    ],
    ids=["No Fraction", "1 Digit", "2 Digits", "5 Digits", "7 Digits Z", "2 Digits Offset", "7 Digits Offset"],
)
def test_parse_expiry_identity_service_shapes(value: str, expected: datetime) -> None:
    assert parse_expiry(value) == expected


def test_decode_keeps_username_unchanged() -> None:
    data = b'{"Pin": "p", "UserName": " alice ", "ExpirationDate": "2024-05-01T12:00:00.12Z"}'
    assert decode_reset_file(data).username == " alice "
