"""Domain models for tables and their version records."""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

DESCRIPTION_PREFIX = "Torrent versions for"
EMPTY_DATA = "[]"

_RECORD_FIELDS: tuple[tuple[str, str], ...] = (
    ("version", "version"),
    ("hash", "hash"),
    ("magnet_link", "magnetLink"),
    ("file_name", "fileName"),
    ("file_size", "fileSize"),
    ("description", "description"),
    ("created_at", "createdAt"),
)
_RECORD_KEYS = {wire for _, wire in _RECORD_FIELDS}
_QUOTED_NAME = re.compile(r'"([^"]+)"')
_FRACTION = re.compile(r"\.(\d{6})\d+")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp, accepting ``Z`` and nanosecond precision."""

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda match: "." + match.group(1), text)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True)
class VersionRecord:
    """One immutable entry in a table's record sequence."""

    version: int = 0
    hash: str = ""
    magnet_link: str = ""
    file_name: str = ""
    file_size: int = 0
    description: str = ""
    created_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "version": self.version,
            "hash": self.hash,
            "magnetLink": self.magnet_link,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "description": self.description,
        }
        if self.created_at is not None:
            payload["createdAt"] = format_timestamp(self.created_at)
        for key, value in self.extra.items():
            payload.setdefault(key, value)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "VersionRecord":
        created_raw = payload.get("createdAt")
        return cls(
            version=int(payload.get("version") or 0),
            hash=str(payload.get("hash") or ""),
            magnet_link=str(payload.get("magnetLink") or ""),
            file_name=str(payload.get("fileName") or ""),
            file_size=int(payload.get("fileSize") or 0),
            description=str(payload.get("description") or ""),
            created_at=parse_timestamp(created_raw) if created_raw else None,
            extra={key: value for key, value in payload.items() if key not in _RECORD_KEYS},
        )

    def matches(self, criteria: Mapping[str, Any]) -> bool:
        """Return True when every key in ``criteria`` equals the record's wire value."""

        if not criteria:
            return False
        payload = self.to_dict()
        for key, expected in criteria.items():
            if key not in payload or payload[key] != expected:
                return False
        return True


def render_records(records: Iterable[VersionRecord]) -> str:
    """Serialize records into the canonical table body (indented JSON array)."""

    items = [record.to_dict() for record in records]
    if not items:
        return EMPTY_DATA
    return json.dumps(items, indent=2, ensure_ascii=False)


@dataclass(slots=True)
class Table:
    """In-memory table state; ``data`` is always the rendering of ``records``."""

    id: str
    name: str
    description: str = ""
    records: list[VersionRecord] = field(default_factory=list)
    data: str = EMPTY_DATA
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def new(cls, table_id: str, name: str, description: str = "") -> "Table":
        now = utc_now()
        return cls(id=table_id, name=name, description=description, created_at=now, updated_at=now)

    def copy(self) -> "Table":
        return copy.deepcopy(self)

    def set_records(self, records: list[VersionRecord], *, data: str | None = None) -> None:
        self.records = records
        self.data = data if data is not None else render_records(records)

    def touch(self) -> None:
        now = utc_now()
        if now > self.updated_at:
            self.updated_at = now

    def latest_record(self) -> VersionRecord | None:
        if not self.records:
            return None
        return self.records[-1]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "data": self.data,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }

    def encode(self) -> bytes:
        return json.dumps(self.to_dict(), ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], records: list[VersionRecord]) -> "Table":
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name") or ""),
            description=str(payload.get("description") or ""),
            records=records,
            data=str(payload.get("data") or EMPTY_DATA),
            created_at=parse_timestamp(payload["createdAt"]),
            updated_at=parse_timestamp(payload["updatedAt"]),
        )


def describe_versions(base_name: str, count: int) -> str:
    return f'{DESCRIPTION_PREFIX} "{base_name}" - {count} version(s)'


def base_name_from_description(description: str, fallback: str) -> str:
    """Recover the quoted base name from a generated description.

    Only descriptions carrying :data:`DESCRIPTION_PREFIX` are inspected; any
    other description yields ``fallback``.
    """

    if DESCRIPTION_PREFIX not in description:
        return fallback
    match = _QUOTED_NAME.search(description)
    if match is None:
        return fallback
    return match.group(1)
