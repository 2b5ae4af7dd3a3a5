from __future__ import annotations

import json

import pytest

from ipns_tables.errors import DECODE_ERROR, MALFORMED_PAYLOAD, TablesError
from ipns_tables.models import Table, VersionRecord
from ipns_tables.validation import decode_table, parse_record, parse_records


@pytest.mark.parametrize("data", ["", "   ", "[]"])
def test_parse_records_empty_payloads(data: str) -> None:
    assert parse_records(data) == []


def test_parse_records_builds_records() -> None:
    data = json.dumps([{"version": 1, "hash": "h1", "fileSize": 10}, {"version": 2, "hash": "h2"}])

    records = parse_records(data)

    assert [record.hash for record in records] == ["h1", "h2"]
    assert records[0].file_size == 10


@pytest.mark.parametrize(
    "data",
    [
        "{not json",
        json.dumps({"version": 1}),
        json.dumps([1, 2, 3]),
        json.dumps([{"version": "one"}]),
        json.dumps([{"fileSize": -5}]),
        json.dumps([{"createdAt": "not a timestamp"}]),
    ],
)
def test_parse_records_rejects_malformed(data: str) -> None:
    with pytest.raises(TablesError) as exc:
        parse_records(data)

    assert exc.value.code == MALFORMED_PAYLOAD


def test_parse_record_accepts_json_string_and_mapping() -> None:
    from_string = parse_record('{"hash": "h1", "fileName": "a.iso"}')
    from_mapping = parse_record({"hash": "h1", "fileName": "a.iso"})

    assert from_string == from_mapping


def test_parse_record_rejects_non_object() -> None:
    with pytest.raises(TablesError) as exc:
        parse_record("[1]")

    assert exc.value.code == MALFORMED_PAYLOAD


def test_decode_table_round_trip() -> None:
    table = Table.new("movies", "Movies", "desc")
    table.set_records([VersionRecord(version=1, hash="h1")])

    decoded = decode_table(table.encode())

    assert decoded.id == "movies"
    assert decoded.name == "Movies"
    assert decoded.records == table.records
    assert decoded.created_at == table.created_at


@pytest.mark.parametrize(
    "blob",
    [
        b"\xff\xfe",
        b"not json",
        json.dumps({"name": "missing id"}).encode(),
        json.dumps(
            {"id": "t", "createdAt": "2024-01-01T00:00:00Z", "updatedAt": "2024-01-01T00:00:00Z", "data": "{"}
        ).encode(),
        json.dumps({"id": "t", "createdAt": "bad", "updatedAt": "bad"}).encode(),
    ],
)
def test_decode_table_rejects_unusable_blobs(blob: bytes) -> None:
    with pytest.raises(TablesError) as exc:
        decode_table(blob)

    assert exc.value.code == DECODE_ERROR
