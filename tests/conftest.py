from __future__ import annotations

import hashlib
import threading
from datetime import timedelta
from pathlib import Path
from typing import Callable

import pytest

from ipns_tables import metrics
from ipns_tables.background import BackgroundPersister
from ipns_tables.directory import TableDirectory
from ipns_tables.errors import NO_NAME_POINTER, RESOLUTION_TIMEOUT, UPSTREAM_UNAVAILABLE
from ipns_tables.ipfs import IpfsError, NameKey
from ipns_tables.registry import Registry
from ipns_tables.storage import TableStorage


class FakeContentStore:
    """In-memory content-addressed store keyed by a sha256-derived digest."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.put_calls = 0
        self.fail_put = False
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        with self._lock:
            self.put_calls += 1
            if self.fail_put:
                raise IpfsError(UPSTREAM_UNAVAILABLE, "IPFS add failed: connection refused")
            digest = "Qm" + hashlib.sha256(data).hexdigest()[:44]
            self.blobs[digest] = bytes(data)
            return digest

    def get(self, digest: str) -> bytes:
        with self._lock:
            try:
                return self.blobs[digest]
            except KeyError:
                raise IpfsError(UPSTREAM_UNAVAILABLE, f"IPFS cat failed: {digest} not found") from None


class FakeNameService:
    """In-memory IPNS: keys map to ids, ids map to the last published digest."""

    def __init__(self) -> None:
        self.keys: dict[str, str] = {}
        self.pointers: dict[str, str] = {}
        self.generated: list[str] = []
        self.published: list[tuple[str, str]] = []
        self.resolve_timeouts: list[timedelta] = []
        self.fail_publish = False
        self.fail_keys = False
        self.resolve_times_out = False
        self._lock = threading.Lock()

    def list_keys(self) -> list[NameKey]:
        with self._lock:
            if self.fail_keys:
                raise IpfsError(UPSTREAM_UNAVAILABLE, "IPFS key/list failed")
            return [NameKey(name=name, key_id=key_id) for name, key_id in self.keys.items()]

    def generate_key(self, name: str) -> str:
        with self._lock:
            if self.fail_keys:
                raise IpfsError(UPSTREAM_UNAVAILABLE, "IPFS key/gen failed")
            key_id = "k51" + hashlib.sha256(name.encode("utf-8")).hexdigest()[:40]
            self.keys[name] = key_id
            self.generated.append(name)
            return key_id

    def publish(self, key_name: str, digest: str, timeout: timedelta | None = None) -> None:
        with self._lock:
            if self.fail_publish:
                raise IpfsError(UPSTREAM_UNAVAILABLE, "IPFS name/publish failed: context deadline exceeded")
            key_id = self.keys.get(key_name)
            if key_id is None:
                raise IpfsError(UPSTREAM_UNAVAILABLE, f"IPFS name/publish failed: no key named {key_name}")
            self.pointers[key_id] = digest
            self.published.append((key_name, digest))

    def resolve(self, ipns_name: str, timeout: timedelta) -> str:
        with self._lock:
            self.resolve_timeouts.append(timeout)
            if self.resolve_times_out:
                raise IpfsError(RESOLUTION_TIMEOUT, f"Resolving {ipns_name} exceeded {timeout.total_seconds():g}s")
            digest = self.pointers.get(ipns_name)
            if digest is None:
                raise IpfsError(NO_NAME_POINTER, f"No IPNS record has been published for {ipns_name}")
            return digest


@pytest.fixture()
def content_store() -> FakeContentStore:
    return FakeContentStore()


@pytest.fixture()
def name_service() -> FakeNameService:
    return FakeNameService()


@pytest.fixture()
def make_storage(content_store: FakeContentStore, name_service: FakeNameService) -> Callable[..., TableStorage]:
    def _factory(table_id: str = "movies", *, description: str = "", **kwargs) -> TableStorage:
        return TableStorage(
            table_id,
            kwargs.pop("name", table_id),
            description,
            content_store=content_store,
            name_service=name_service,
            **kwargs,
        )

    return _factory


@pytest.fixture()
def registry_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "tables_registry.json"


@pytest.fixture()
def make_directory(
    registry_path: Path,
    content_store: FakeContentStore,
    name_service: FakeNameService,
) -> Callable[..., TableDirectory]:
    created: list[TableDirectory] = []

    def _factory(*, workers: int = 2, persister: BackgroundPersister | None = None) -> TableDirectory:
        directory = TableDirectory(
            Registry(registry_path),
            content_store=content_store,
            name_service=name_service,
            persister=persister or BackgroundPersister(workers),
            resolve_timeout=timedelta(seconds=10),
        )
        created.append(directory)
        return directory

    yield _factory

    for directory in created:
        directory.close(wait=True, timeout=timedelta(seconds=5))


@pytest.fixture()
def metrics_registry() -> metrics.MetricsRegistry:
    registry = metrics.MetricsRegistry()
    metrics.install_registry(registry)
    yield registry
    metrics.install_registry(None)
