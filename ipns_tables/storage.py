"""Per-table storage controller.

A :class:`TableStorage` owns one table, its IPNS key, and the protocol that
keeps three things in step: the in-memory table (authoritative), immutable
snapshots in the Content Store, and the IPNS pointer to the newest snapshot.

Synchronous mutations store a snapshot before the new state is committed and
then publish best-effort. The fast path only touches memory; a later
:meth:`TableStorage.background_persist` stores and publishes the result.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from enum import Enum
from functools import wraps
from threading import RLock
from typing import Any, Mapping

from . import metrics
from .errors import (
    DECODE_ERROR,
    INDEX_OUT_OF_RANGE,
    NO_NAME_POINTER,
    RECORD_NOT_FOUND,
    VALIDATION_ERROR,
    TablesError,
)
from .ipfs import ContentStore, NameService
from .logging import get_logger
from .models import Table, VersionRecord, base_name_from_description, describe_versions, utc_now
from .registry import RegistryEntry
from .validation import decode_table, parse_records

logger = get_logger(__name__)

DEFAULT_RESOLVE_TIMEOUT = timedelta(seconds=10)


class StorageError(TablesError):
    """Raised when a table operation fails."""


class PublishPolicy(str, Enum):
    """What to do when an IPNS publish fails."""

    PROPAGATE = "propagate"
    LOG = "log"


class KeyState(str, Enum):
    NO_KEY = "no_key"
    KEY_ENSURED = "key_ensured"
    PUBLISHED = "published"


def synchronized(method):
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class TableStorage:
    """Controller for a single table backed by IPFS snapshots and an IPNS name."""

    def __init__(
        self,
        table_id: str,
        name: str,
        description: str = "",
        *,
        content_store: ContentStore,
        name_service: NameService,
        key_name: str | None = None,
        ipns_name: str | None = None,
        resolve_timeout: timedelta = DEFAULT_RESOLVE_TIMEOUT,
        publish_timeout: timedelta | None = None,
    ) -> None:
        self._lock = RLock()
        self._content_store = content_store
        self._name_service = name_service
        self._resolve_timeout = resolve_timeout
        self._publish_timeout = publish_timeout

        self._table = Table.new(table_id, name, description)
        self._view = self._table.copy()

        self._key_name = key_name or table_id
        self._ipns_name = ipns_name or ""
        self._key_state = KeyState.KEY_ENSURED if self._ipns_name else KeyState.NO_KEY
        self._published_digest: str | None = None

        # _revision counts committed in-memory states; _published_revision is
        # the newest of those whose snapshot has been published.
        self._revision = 0
        self._published_revision = 0
        self._retired = False

    @classmethod
    def from_registry_entry(cls, entry: RegistryEntry, **kwargs: Any) -> "TableStorage":
        return cls(
            entry.id,
            entry.name,
            "",
            key_name=entry.key_name,
            ipns_name=entry.ipns_name or None,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Read-only accessors (no lock: they read immutable views or plain fields)
    # ------------------------------------------------------------------

    @property
    def table_id(self) -> str:
        return self._view.id

    @property
    def key_name(self) -> str:
        return self._key_name

    @property
    def ipns_name(self) -> str:
        return self._ipns_name

    @property
    def key_state(self) -> KeyState:
        return self._key_state

    @property
    def published_digest(self) -> str | None:
        return self._published_digest

    @property
    def is_dirty(self) -> bool:
        return self._published_revision < self._revision

    @property
    def retired(self) -> bool:
        return self._retired

    @synchronized
    def retire(self) -> None:
        """Detach the controller from its key; pending background persists become no-ops.

        A table created later under the same name adopts the same key, so a
        retired controller must never publish again.
        """

        self._retired = True
        logger.info("table.retired", extra={"context": {"table_id": self._table.id, "dirty": self.is_dirty}})

    def snapshot(self) -> Table:
        """Return a copy of the cached table without any network I/O."""

        return self._view.copy()

    def registry_entry(self) -> RegistryEntry:
        view = self._view
        return RegistryEntry(id=view.id, name=view.name, key_name=self._key_name, ipns_name=self._ipns_name)

    # ------------------------------------------------------------------
    # Synchronous (authoritative) operations
    # ------------------------------------------------------------------

    @synchronized
    def create(self, data: str | None = None) -> str:
        """Ensure the naming key, store the initial snapshot and publish it best-effort."""

        candidate = self._table.copy()
        if data:
            self._apply_payload(candidate, parse_records(data))
        self._ensure_key()
        return self._commit(candidate, publish_policy=PublishPolicy.LOG)

    @synchronized
    def update(self, name: str | None = None, description: str | None = None, data: str | None = None) -> str | None:
        """Apply the provided fields atomically and persist.

        Returns the new snapshot digest, or ``None`` when nothing was provided.
        """

        records = parse_records(data) if data else None
        if not name and not description and records is None:
            return None

        candidate = self._table.copy()
        if name:
            candidate.name = name
        if description:
            candidate.description = description
        if records is not None:
            self._apply_payload(candidate, records)
        candidate.touch()
        return self._commit(candidate, publish_policy=PublishPolicy.LOG)

    @synchronized
    def append_record(self, record: VersionRecord) -> VersionRecord:
        candidate = self._table.copy()
        appended = _number_record(record, len(candidate.records))
        candidate.set_records(candidate.records + [appended])
        candidate.touch()
        self._commit(candidate, publish_policy=PublishPolicy.LOG)
        return appended

    @synchronized
    def remove_record(self, index: int | None = None, match: Mapping[str, Any] | None = None) -> VersionRecord:
        if (index is None) == (match is None):
            raise StorageError(VALIDATION_ERROR, "Provide exactly one of index or match")

        records = self._table.records
        if index is not None:
            if not 0 <= index < len(records):
                raise StorageError(
                    INDEX_OUT_OF_RANGE,
                    f"Index {index} is outside [0, {len(records)}) for table {self._table.id}",
                    details={"index": index, "length": len(records)},
                )
            position = index
        else:
            position = next((i for i, record in enumerate(records) if record.matches(match or {})), None)
            if position is None:
                raise StorageError(
                    RECORD_NOT_FOUND,
                    f"No record in table {self._table.id} matches {dict(match or {})}",
                )

        candidate = self._table.copy()
        remaining = list(candidate.records)
        removed = remaining.pop(position)
        candidate.set_records(remaining)
        candidate.touch()
        self._commit(candidate, publish_policy=PublishPolicy.LOG)
        return removed

    @synchronized
    def persist(self, policy: PublishPolicy = PublishPolicy.PROPAGATE) -> str:
        """Store the current state and publish it, honouring ``policy`` for publish failures."""

        digest = self._content_store.put(self._table.encode())
        self._publish(digest, self._revision, policy=policy)
        return digest

    @synchronized
    def load(self) -> None:
        """Replace the in-memory table with the snapshot the IPNS name resolves to."""

        if not self._ipns_name:
            raise StorageError(NO_NAME_POINTER, f"Table {self._table.id} has no IPNS name to resolve")

        digest = self._name_service.resolve(self._ipns_name, self._resolve_timeout)
        blob = self._content_store.get(digest)
        table = decode_table(blob)
        if table.id != self._table.id:
            raise StorageError(
                DECODE_ERROR,
                f"Snapshot {digest} belongs to table {table.id}, expected {self._table.id}",
                details={"digest": digest},
            )
        if self.is_dirty:
            logger.warning(
                "table.load.discarded_unpublished",
                extra={"context": {"table_id": table.id, "revision": self._revision}},
            )

        self._table = table
        self._revision += 1
        self._published_revision = self._revision
        self._published_digest = digest
        self._key_state = KeyState.PUBLISHED
        self._view = table.copy()
        logger.info("table.loaded", extra={"context": {"table_id": table.id, "digest": digest, "records": len(table.records)}})

    # ------------------------------------------------------------------
    # Fast path
    # ------------------------------------------------------------------

    @synchronized
    def fast_update(self, data: str) -> None:
        """Replace the records in memory only; the snapshot goes stale until a background persist."""

        self._apply_fast(parse_records(data))

    @synchronized
    def fast_append_record(self, record: VersionRecord) -> VersionRecord:
        appended = _number_record(record, len(self._table.records))
        self._apply_fast(self._table.records + [appended])
        return appended

    def background_persist(self, policy: PublishPolicy = PublishPolicy.PROPAGATE) -> str | None:
        """Store and publish the current in-memory state.

        The lock is held while the snapshot is taken and while the pointer is
        published, but not during the Content Store upload. A persist whose
        revision has already been overtaken by a published one skips its
        publish. A retired controller stores and publishes nothing and
        returns ``None``.
        """

        with self._lock:
            if self._retired:
                return None
            revision = self._revision
            if revision <= self._published_revision and self._published_digest is not None:
                return self._published_digest
            blob = self._table.encode()
            table_id = self._table.id

        try:
            digest = self._content_store.put(blob)
        except TablesError as exc:
            if policy is PublishPolicy.PROPAGATE:
                raise
            logger.warning(
                "table.store.failed",
                extra={"context": {"table_id": table_id, "code": exc.code, "error": exc.message}},
            )
            return None

        with self._lock:
            if self._retired:
                logger.info(
                    "table.persist.retired",
                    extra={"context": {"table_id": table_id, "revision": revision, "digest": digest}},
                )
                return None
            if self._published_revision >= revision and self._published_digest is not None:
                logger.info(
                    "table.persist.superseded",
                    extra={"context": {"table_id": table_id, "revision": revision, "digest": digest}},
                )
                return digest
            self._publish(digest, revision, policy=policy)
        return digest

    # ------------------------------------------------------------------
    # Internal helpers (callers hold the lock)
    # ------------------------------------------------------------------

    def _ensure_key(self) -> None:
        if self._key_state is not KeyState.NO_KEY:
            return
        for key in self._name_service.list_keys():
            if key.name == self._key_name:
                self._ipns_name = key.key_id
                self._key_state = KeyState.KEY_ENSURED
                logger.info("table.key.adopted", extra={"context": {"key_name": self._key_name, "ipns_name": key.key_id}})
                return
        self._ipns_name = self._name_service.generate_key(self._key_name)
        self._key_state = KeyState.KEY_ENSURED
        logger.info("table.key.generated", extra={"context": {"key_name": self._key_name, "ipns_name": self._ipns_name}})

    def _commit(self, candidate: Table, *, publish_policy: PublishPolicy) -> str:
        digest = self._content_store.put(candidate.encode())
        self._table = candidate
        self._revision += 1
        self._view = candidate.copy()
        self._publish(digest, self._revision, policy=publish_policy)
        return digest

    def _publish(self, digest: str, revision: int, *, policy: PublishPolicy) -> bool:
        context = {"table_id": self._table.id, "key_name": self._key_name, "digest": digest}
        try:
            self._ensure_key()
            self._name_service.publish(self._key_name, digest, timeout=self._publish_timeout)
        except TablesError as exc:
            metrics.record_persist("publish_failed")
            if policy is PublishPolicy.PROPAGATE:
                raise
            logger.warning("table.publish.failed", extra={"context": {**context, "code": exc.code, "error": exc.message}})
            return False

        self._published_digest = digest
        self._published_revision = max(self._published_revision, revision)
        self._key_state = KeyState.PUBLISHED
        metrics.record_persist("published")
        logger.info("table.persist.published", extra={"context": {**context, "ipns_name": self._ipns_name}})
        return True

    def _apply_fast(self, records: list[VersionRecord]) -> None:
        table = self._table
        table.set_records(records)
        table.description = describe_versions(table.name, len(records))
        table.touch()
        self._revision += 1
        self._view = table.copy()
        logger.info("table.fast_update", extra={"context": {"table_id": table.id, "records": len(records)}})

    @staticmethod
    def _apply_payload(candidate: Table, records: list[VersionRecord]) -> None:
        candidate.set_records(records)
        if len(records) > 1:
            base_name = base_name_from_description(candidate.description, candidate.name)
            candidate.description = describe_versions(base_name, len(records))


def _number_record(record: VersionRecord, count_before: int) -> VersionRecord:
    return replace(record, version=count_before + 1, created_at=utc_now(), extra=dict(record.extra))
