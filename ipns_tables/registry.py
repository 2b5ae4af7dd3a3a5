"""Durable local index of known tables, used to rebuild controllers on restart."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

from .errors import CONFIG_ERROR, TablesError
from .logging import get_logger

logger = get_logger(__name__)


class RegistryError(TablesError):
    """Raised when the registry file cannot be read or written."""


@dataclass(frozen=True, slots=True)
class RegistryEntry:
    id: str
    name: str
    key_name: str
    ipns_name: str

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "keyName": self.key_name,
            "ipnsName": self.ipns_name,
        }

    @classmethod
    def from_dict(cls, table_id: str, payload: Mapping[str, Any]) -> "RegistryEntry":
        entry_id = str(payload.get("id") or table_id)
        return cls(
            id=entry_id,
            name=str(payload.get("name") or entry_id),
            key_name=str(payload.get("keyName") or entry_id),
            ipns_name=str(payload.get("ipnsName") or ""),
        )


class Registry:
    """Single JSON file holding every table's naming binding.

    The file is always read whole and rewritten whole; writes go through a
    temporary sibling and ``os.replace`` so readers never see a partial file.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, RegistryEntry]:
        if not self._path.exists():
            logger.info("registry.missing", extra={"context": {"path": str(self._path)}})
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RegistryError(
                CONFIG_ERROR,
                f"Registry file is not valid JSON: {self._path}",
                details={"path": str(self._path)},
            ) from exc
        except OSError as exc:
            raise RegistryError(CONFIG_ERROR, f"Unable to read registry file {self._path}: {exc}") from exc

        tables = payload.get("tables") if isinstance(payload, dict) else None
        if tables is None:
            return {}
        if not isinstance(tables, dict):
            raise RegistryError(CONFIG_ERROR, "Registry 'tables' must be a JSON object", details={"path": str(self._path)})

        entries: dict[str, RegistryEntry] = {}
        for table_id, item in tables.items():
            if not isinstance(item, dict):
                logger.warning("registry.entry.skipped", extra={"context": {"table_id": table_id}})
                continue
            entry = RegistryEntry.from_dict(str(table_id), item)
            entries[entry.id] = entry
        return entries

    def save(self, entries: Iterable[RegistryEntry]) -> None:
        payload = {"tables": {entry.id: entry.to_dict() for entry in sorted(entries, key=lambda item: item.id)}}
        temp_path = self._path.with_name(f"{self._path.name}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, ensure_ascii=False)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self._path)
        except OSError as exc:
            raise RegistryError(CONFIG_ERROR, f"Unable to write registry file {self._path}: {exc}") from exc
