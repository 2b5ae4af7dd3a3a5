"""Process-wide map of table controllers and the registry that survives restarts."""

from __future__ import annotations

from concurrent.futures import Future
from datetime import timedelta
from threading import RLock
from typing import Any, Mapping

from . import metrics
from .background import BackgroundPersister
from .errors import CONFLICT, NOT_FOUND, VALIDATION_ERROR, TablesError
from .ipfs import ContentStore, NameService
from .logging import get_logger
from .models import VersionRecord
from .registry import Registry, RegistryEntry
from .storage import DEFAULT_RESOLVE_TIMEOUT, StorageError, TableStorage

LOGGER = get_logger(__name__)


class TableDirectory:
    """Owns every :class:`TableStorage` and keeps the registry file current.

    The directory lock only guards the id map. Network calls (key generation,
    store, publish, resolve) run outside it, under the per-table lock.
    """

    def __init__(
        self,
        registry: Registry,
        *,
        content_store: ContentStore,
        name_service: NameService,
        persister: BackgroundPersister | None = None,
        resolve_timeout: timedelta = DEFAULT_RESOLVE_TIMEOUT,
        publish_timeout: timedelta | None = None,
    ) -> None:
        self._registry = registry
        self._content_store = content_store
        self._name_service = name_service
        self._persister = persister
        self._resolve_timeout = resolve_timeout
        self._publish_timeout = publish_timeout
        self._lock = RLock()
        self._tables: dict[str, TableStorage] = {}
        self._reserved: set[str] = set()
        self._registry_unreadable = False

    @property
    def registry(self) -> Registry:
        return self._registry

    def __len__(self) -> int:
        with self._lock:
            return len(self._tables)

    def __contains__(self, table_id: object) -> bool:
        with self._lock:
            return table_id in self._tables

    def dirty_count(self) -> int:
        with self._lock:
            tables = list(self._tables.values())
        return sum(1 for storage in tables if storage.is_dirty)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover(self) -> list[str]:
        """Rebuild a controller for every registry entry and try to load its snapshot.

        Returns the ids whose snapshot could not be loaded; those controllers
        are kept with an empty table so later mutations can re-publish.
        """

        try:
            entries = self._registry.load()
        except TablesError:
            self._registry_unreadable = True
            raise
        failed: list[str] = []
        for entry in entries.values():
            storage = TableStorage.from_registry_entry(entry, **self._storage_options())
            try:
                storage.load()
            except TablesError as exc:
                failed.append(entry.id)
                LOGGER.warning(
                    "directory.recover.load_failed",
                    extra={"context": {"table_id": entry.id, "code": exc.code, "error": exc.message}},
                )
            else:
                metrics.record_operation("load")
            with self._lock:
                self._tables[entry.id] = storage
        LOGGER.info(
            "directory.recovered",
            extra={"context": {"tables": len(entries), "failed": failed, "path": str(self._registry.path)}},
        )
        return failed

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, table_id: str) -> TableStorage:
        with self._lock:
            storage = self._tables.get(table_id)
        if storage is None:
            raise StorageError(NOT_FOUND, f"Table {table_id} not found", details={"table_id": table_id})
        return storage

    def read(self, table_id: str, *, refresh: bool = False) -> TableStorage:
        """Return the controller for ``table_id``, reloading it from IPNS when ``refresh`` is set.

        A refresh failure propagates; callers asked for the published state.
        """

        storage = self.get(table_id)
        if refresh:
            storage.load()
            metrics.record_operation("load")
        return storage

    def list_tables(self, *, refresh: bool = False) -> list[TableStorage]:
        with self._lock:
            tables = sorted(self._tables.values(), key=lambda item: item.table_id)
        if refresh:
            for storage in tables:
                try:
                    storage.load()
                except TablesError as exc:
                    LOGGER.warning(
                        "directory.refresh.failed",
                        extra={"context": {"table_id": storage.table_id, "code": exc.code, "error": exc.message}},
                    )
                else:
                    metrics.record_operation("load")
        return tables

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, name: str, description: str = "", data: str | None = None) -> tuple[TableStorage, str]:
        """Create a table whose id (and key name) is ``name``; returns the controller and first digest."""

        table_id = (name or "").strip()
        if not table_id:
            raise StorageError(VALIDATION_ERROR, "Table name must be a non-empty string")

        with self._lock:
            if table_id in self._reserved or self._name_taken(table_id):
                raise StorageError(CONFLICT, f"Table {table_id} already exists", details={"name": table_id})
            self._reserved.add(table_id)

        try:
            storage = TableStorage(table_id, table_id, description or "", **self._storage_options())
            digest = storage.create(data)
            with self._lock:
                self._tables[table_id] = storage
        finally:
            with self._lock:
                self._reserved.discard(table_id)

        LOGGER.info(
            "directory.table.created",
            extra={"context": {"table_id": table_id, "digest": digest, "ipns_name": storage.ipns_name}},
        )
        self.flush_registry()
        return storage, digest

    def update(
        self,
        table_id: str,
        name: str | None = None,
        description: str | None = None,
        data: str | None = None,
    ) -> TableStorage:
        storage = self.get(table_id)
        storage.update(name=name, description=description, data=data)
        self.flush_registry()
        return storage

    def append(self, table_id: str, record: VersionRecord) -> VersionRecord:
        appended = self.get(table_id).append_record(record)
        self.flush_registry()
        return appended

    def fast_append(self, table_id: str, record: VersionRecord) -> tuple[VersionRecord, Future | None]:
        """Append in memory and hand persistence to the background pool."""

        storage = self.get(table_id)
        appended = storage.fast_append_record(record)
        future = self._persister.submit(storage) if self._persister is not None else None
        if future is None:
            LOGGER.warning("directory.fast_append.unscheduled", extra={"context": {"table_id": table_id}})
        self.flush_registry()
        return appended, future

    def remove(
        self,
        table_id: str,
        *,
        index: int | None = None,
        match: Mapping[str, Any] | None = None,
    ) -> VersionRecord:
        removed = self.get(table_id).remove_record(index=index, match=match)
        self.flush_registry()
        return removed

    def delete(self, table_id: str) -> None:
        """Forget a table; its snapshots and key are left on the IPFS node.

        The controller is retired so a background persist still queued for it
        cannot publish under a key a re-created table will adopt.
        """

        with self._lock:
            storage = self._tables.pop(table_id, None)
            if storage is not None:
                self._reserved.add(table_id)
        if storage is None:
            raise StorageError(NOT_FOUND, f"Table {table_id} not found", details={"table_id": table_id})
        # The id stays reserved until retire() has waited out any publish in flight.
        try:
            storage.retire()
        finally:
            with self._lock:
                self._reserved.discard(table_id)
        LOGGER.info("directory.table.deleted", extra={"context": {"table_id": table_id}})
        self.flush_registry()

    # ------------------------------------------------------------------
    # Persistence of the index
    # ------------------------------------------------------------------

    def registry_entries(self) -> list[RegistryEntry]:
        with self._lock:
            tables = list(self._tables.values())
        return [storage.registry_entry() for storage in tables]

    def flush_registry(self) -> bool:
        """Rewrite the registry file; failures are logged and counted, never raised."""

        with self._lock:
            entries = self.registry_entries()
            try:
                self._registry.save(entries)
            except TablesError as exc:
                metrics.record_persist("registry_write_failed")
                LOGGER.warning(
                    "registry.write.failed",
                    extra={"context": {"path": str(self._registry.path), "error": exc.message}},
                )
                return False
        return True

    def close(self, *, wait: bool = True, timeout: timedelta | None = None) -> None:
        """Drain or discard background persistence, then flush the registry.

        A registry that could not be read at recovery is left untouched.
        """

        if self._persister is not None:
            self._stop_persister(wait=wait, timeout=timeout)
        if not self._registry_unreadable:
            self.flush_registry()

    def _stop_persister(self, *, wait: bool, timeout: timedelta | None) -> None:
        drained = wait and self._persister.drain(timeout)
        if wait and not drained:
            LOGGER.warning(
                "directory.close.drain_timeout",
                extra={"context": {"pending": self._persister.pending()}},
            )
        self._persister.shutdown(wait=drained, discard_pending=not drained)

    def _name_taken(self, name: str) -> bool:
        if name in self._tables:
            return True
        return any(storage.snapshot().name == name for storage in self._tables.values())

    def _storage_options(self) -> dict[str, Any]:
        return {
            "content_store": self._content_store,
            "name_service": self._name_service,
            "resolve_timeout": self._resolve_timeout,
            "publish_timeout": self._publish_timeout,
        }
