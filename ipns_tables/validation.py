"""Parsing and validation of table payloads and stored snapshots."""

from __future__ import annotations

import json
from typing import Any, Mapping

from jsonschema import exceptions as jsonschema_exceptions, validators as jsonschema_validators

from .errors import DECODE_ERROR, MALFORMED_PAYLOAD, TablesError
from .models import EMPTY_DATA, Table, VersionRecord

__all__ = [
    "RECORD_SCHEMA",
    "RECORDS_SCHEMA",
    "SNAPSHOT_SCHEMA",
    "decode_table",
    "parse_record",
    "parse_records",
]

RECORD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "version": {"type": "integer", "minimum": 0},
        "hash": {"type": "string"},
        "magnetLink": {"type": "string"},
        "fileName": {"type": "string"},
        "fileSize": {"type": "integer", "minimum": 0},
        "description": {"type": "string"},
        "createdAt": {"type": "string", "minLength": 1},
    },
    "additionalProperties": True,
}

RECORDS_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": RECORD_SCHEMA,
}

SNAPSHOT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "description": {"type": "string"},
        "data": {"type": "string"},
        "createdAt": {"type": "string", "minLength": 1},
        "updatedAt": {"type": "string", "minLength": 1},
    },
    "required": ["id", "createdAt", "updatedAt"],
}

_RECORD_VALIDATOR = jsonschema_validators.validator_for(RECORD_SCHEMA)(RECORD_SCHEMA)
_RECORDS_VALIDATOR = jsonschema_validators.validator_for(RECORDS_SCHEMA)(RECORDS_SCHEMA)
_SNAPSHOT_VALIDATOR = jsonschema_validators.validator_for(SNAPSHOT_SCHEMA)(SNAPSHOT_SCHEMA)


def parse_records(data: str) -> list[VersionRecord]:
    """Parse a serialized record list, raising ``MALFORMED_PAYLOAD`` on any defect."""

    if not isinstance(data, str):
        raise TablesError(MALFORMED_PAYLOAD, "Table data must be a JSON string")
    if not data.strip() or data.strip() == EMPTY_DATA:
        return []
    try:
        items = json.loads(data)
    except json.JSONDecodeError as exc:
        raise TablesError(MALFORMED_PAYLOAD, f"Table data is not valid JSON: {exc.msg}") from exc
    _validate(_RECORDS_VALIDATOR, items, code=MALFORMED_PAYLOAD, context="Table data")
    try:
        return [VersionRecord.from_dict(item) for item in items]
    except (TypeError, ValueError) as exc:
        raise TablesError(MALFORMED_PAYLOAD, f"Table data contains an invalid record: {exc}") from exc


def parse_record(payload: Any) -> VersionRecord:
    """Build a single record from a request payload (object or JSON string)."""

    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise TablesError(MALFORMED_PAYLOAD, f"Record is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, Mapping):
        raise TablesError(MALFORMED_PAYLOAD, "Record must be a JSON object")
    _validate(_RECORD_VALIDATOR, dict(payload), code=MALFORMED_PAYLOAD, context="Record")
    try:
        return VersionRecord.from_dict(payload)
    except (TypeError, ValueError) as exc:
        raise TablesError(MALFORMED_PAYLOAD, f"Record is invalid: {exc}") from exc


def decode_table(blob: bytes) -> Table:
    """Deserialize a stored snapshot, raising ``DECODE_ERROR`` when it is unusable."""

    try:
        payload = json.loads(blob.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TablesError(DECODE_ERROR, "Snapshot is not valid UTF-8 JSON") from exc
    _validate(_SNAPSHOT_VALIDATOR, payload, code=DECODE_ERROR, context="Snapshot")
    try:
        records = parse_records(str(payload.get("data") or EMPTY_DATA))
    except TablesError as exc:
        raise TablesError(DECODE_ERROR, f"Snapshot records are invalid: {exc.message}") from exc
    try:
        return Table.from_dict(payload, records)
    except (KeyError, TypeError, ValueError) as exc:
        raise TablesError(DECODE_ERROR, f"Snapshot fields are invalid: {exc}") from exc


def _validate(validator: Any, instance: Any, *, code: str, context: str) -> None:
    try:
        validator.validate(instance)
    except jsonschema_exceptions.ValidationError as exc:
        location = "/".join(str(part) for part in exc.absolute_path)
        where = f" at '{location}'" if location else ""
        raise TablesError(code, f"{context} failed validation{where}: {exc.message}") from exc
