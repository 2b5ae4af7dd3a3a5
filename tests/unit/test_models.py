from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from ipns_tables import models


def test_version_record_round_trips_wire_keys_and_extras() -> None:
    payload = {
        "version": 3,
        "hash": "abc123",
        "magnetLink": "magnet:?xt=urn:btih:abc123",
        "fileName": "movie.mkv",
        "fileSize": 1024,
        "description": "third cut",
        "createdAt": "2024-05-01T10:00:00Z",
        "uploader": "alice",
    }

    record = models.VersionRecord.from_dict(payload)

    assert record.version == 3
    assert record.magnet_link == "magnet:?xt=urn:btih:abc123"
    assert record.created_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert record.extra == {"uploader": "alice"}
    wire = record.to_dict()
    assert wire["fileName"] == "movie.mkv"
    assert wire["uploader"] == "alice"
    assert wire["createdAt"] == "2024-05-01T10:00:00+00:00"


def test_version_record_omits_missing_created_at() -> None:
    record = models.VersionRecord(version=1, hash="h1")

    assert "createdAt" not in record.to_dict()


def test_matches_requires_every_criterion() -> None:
    record = models.VersionRecord(version=2, hash="h2", file_name="a.iso")

    assert record.matches({"hash": "h2"})
    assert record.matches({"hash": "h2", "fileName": "a.iso"})
    assert not record.matches({"hash": "h2", "fileName": "b.iso"})
    assert not record.matches({"unknown": "value"})
    assert not record.matches({})


def test_parse_timestamp_accepts_nanoseconds() -> None:
    parsed = models.parse_timestamp("2024-01-02T03:04:05.123456789Z")

    assert parsed == datetime(2024, 1, 2, 3, 4, 5, 123456, tzinfo=timezone.utc)


def test_parse_timestamp_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        models.parse_timestamp("yesterday")
    with pytest.raises(ValueError):
        models.parse_timestamp("")


def test_render_records_is_indented_json_array() -> None:
    records = [models.VersionRecord(version=1, hash="h1"), models.VersionRecord(version=2, hash="h2")]

    rendered = models.render_records(records)

    assert rendered.startswith("[\n  {")
    assert [item["hash"] for item in json.loads(rendered)] == ["h1", "h2"]
    assert models.render_records([]) == "[]"


def test_table_touch_never_moves_backwards() -> None:
    table = models.Table.new("movies", "movies")
    future = table.updated_at + timedelta(hours=1)
    table.updated_at = future

    table.touch()

    assert table.updated_at == future


def test_table_encode_uses_snapshot_keys() -> None:
    table = models.Table.new("movies", "Movies", "favourites")
    table.set_records([models.VersionRecord(version=1, hash="h1")])

    payload = json.loads(table.encode().decode("utf-8"))

    assert set(payload) == {"id", "name", "description", "data", "createdAt", "updatedAt"}
    assert json.loads(payload["data"])[0]["hash"] == "h1"


def test_copy_is_independent() -> None:
    table = models.Table.new("movies", "movies")
    table.set_records([models.VersionRecord(version=1, hash="h1")])

    clone = table.copy()
    clone.records.append(models.VersionRecord(version=2, hash="h2"))

    assert len(table.records) == 1


def test_describe_versions_format() -> None:
    assert models.describe_versions("movies", 3) == 'Torrent versions for "movies" - 3 version(s)'


@pytest.mark.parametrize(
    ("description", "expected"),
    [
        ('Torrent versions for "Ubuntu ISO" - 2 version(s)', "Ubuntu ISO"),
        ("Torrent versions for nothing quoted", "fallback"),
        ('My "quoted" description', "fallback"),
        ("", "fallback"),
    ],
)
def test_base_name_from_description(description: str, expected: str) -> None:
    assert models.base_name_from_description(description, "fallback") == expected
