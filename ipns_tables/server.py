"""FastMCP server entrypoint for the IPNS tables service."""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from functools import wraps
from typing import Any, Callable, Mapping

from fastmcp import FastMCP

from . import metrics
from .background import BackgroundPersister
from .config import Config, load_config
from .directory import TableDirectory
from .errors import CONFIG_ERROR, INTERNAL_ERROR, VALIDATION_ERROR, TablesError
from .ipfs import KuboClient
from .logging import configure_logging, get_logger
from .registry import Registry
from .storage import TableStorage
from .transports import run_stdio
from .validation import parse_record

LOGGER = get_logger(__name__)
SERVER = FastMCP(name="ipns-tables")


@dataclass(slots=True)
class AppState:
    config: Config
    directory: TableDirectory
    client: KuboClient | None = None


APP_STATE: AppState | None = None


class ShutdownManager:
    """Track active tool requests so shutdown can drain gracefully."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._condition = threading.Condition(self._lock)
        self._active_requests = 0
        self._shutdown_requested = False
        self._deadline: float | None = None
        self._timeout = timedelta(seconds=5)

    def configure(self, timeout: timedelta) -> None:
        """Reset state for a new application lifecycle."""

        if timeout.total_seconds() < 0:
            timeout = timedelta(seconds=0)
        with self._condition:
            self._timeout = timeout
            self._active_requests = 0
            self._shutdown_requested = False
            self._deadline = None

    def try_enter(self) -> Callable[[], None] | None:
        """Register a request; returns a release callback, or None once shutdown started."""

        with self._condition:
            if self._shutdown_requested:
                return None
            self._active_requests += 1

        def release() -> None:
            with self._condition:
                if self._active_requests > 0:
                    self._active_requests -= 1
                    self._condition.notify_all()

        return release

    def request_shutdown(self, timeout: timedelta | None = None) -> None:
        with self._condition:
            if self._shutdown_requested:
                return
            effective_timeout = timeout if timeout is not None else self._timeout
            if effective_timeout.total_seconds() < 0:
                effective_timeout = timedelta(seconds=0)
            self._shutdown_requested = True
            self._deadline = time.monotonic() + effective_timeout.total_seconds()
            self._condition.notify_all()

    def wait_for_drain(self) -> bool:
        """Wait for active requests to finish until the shutdown deadline."""

        with self._condition:
            while self._active_requests > 0:
                deadline = self._deadline
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    self._condition.wait(timeout=remaining)
                else:
                    self._condition.wait()
            return True

    @property
    def active_requests(self) -> int:
        with self._condition:
            return self._active_requests


_SHUTDOWN_MANAGER = ShutdownManager()


def initialize_app(config: Config, *, directory: TableDirectory | None = None) -> None:
    """Build the directory, recover tables from the registry and install metrics.

    ``directory`` lets callers supply one wired to other Content Store and
    Name Service implementations; by default a :class:`KuboClient` is used.
    """

    global APP_STATE
    _SHUTDOWN_MANAGER.configure(config.shutdown_timeout)
    metrics.install_registry(metrics.MetricsRegistry())
    client: KuboClient | None = None
    if directory is None:
        client = KuboClient(config.ipfs_api_url, timeout=config.request_timeout)
        directory = TableDirectory(
            Registry(config.registry_file),
            content_store=client,
            name_service=client,
            persister=BackgroundPersister(config.background_workers),
            resolve_timeout=config.resolve_timeout,
            publish_timeout=config.publish_timeout,
        )
    try:
        directory.recover()
    except TablesError:
        directory.close(wait=False)
        if client is not None:
            client.close()
        metrics.install_registry(None)
        raise
    APP_STATE = AppState(config=config, directory=directory, client=client)


def shutdown_app() -> None:
    """Drain requests and background persistence, then clear application state."""

    global APP_STATE
    if APP_STATE is None:
        return
    config = APP_STATE.config
    _SHUTDOWN_MANAGER.request_shutdown(config.shutdown_timeout)
    if not _SHUTDOWN_MANAGER.wait_for_drain():
        LOGGER.warning(
            "shutdown.timeout",
            extra={
                "context": {
                    "active_requests": _SHUTDOWN_MANAGER.active_requests,
                    "timeout_seconds": config.shutdown_timeout.total_seconds(),
                }
            },
        )
    APP_STATE.directory.close(wait=True, timeout=config.shutdown_timeout)
    if APP_STATE.client is not None:
        APP_STATE.client.close()
    metrics.install_registry(None)
    APP_STATE = None


def get_directory() -> TableDirectory:
    if APP_STATE is None:
        raise TablesError(CONFIG_ERROR, "Server is not initialised")
    return APP_STATE.directory


def success(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {"ok": True, **payload}


def failure(error: TablesError) -> dict[str, Any]:
    metrics.record_error(error.code)
    return {"ok": False, "error": error.to_dict()}


def _shutdown_protected(func):
    @wraps(func)
    async def wrapper(*args, **kwargs):
        release = _SHUTDOWN_MANAGER.try_enter()
        if release is None:
            return failure(TablesError(CONFIG_ERROR, "Server is shutting down"))
        try:
            return await func(*args, **kwargs)
        finally:
            release()

    return wrapper


def _tables_error_guard(func):
    """Convert TablesError exceptions into structured failure responses."""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except TablesError as exc:
            return failure(exc)
        except Exception as exc:  # pragma: no cover
            LOGGER.exception("Unhandled error in %s", func.__name__, exc_info=exc)
            return failure(TablesError(INTERNAL_ERROR, "Unexpected server error"))

    return wrapper


def _table_payload(storage: TableStorage, *, include_data: bool = True) -> dict[str, Any]:
    payload = storage.snapshot().to_dict()
    if not include_data:
        payload.pop("data", None)
    payload["ipns_name"] = storage.ipns_name
    payload["dirty"] = storage.is_dirty
    return payload


def _coerce_index(index: Any) -> int | None:
    if index is None:
        return None
    if isinstance(index, bool):
        raise TablesError(VALIDATION_ERROR, "Index must be an integer")
    try:
        return int(index)
    except (TypeError, ValueError) as exc:
        raise TablesError(VALIDATION_ERROR, "Index must be an integer") from exc


@_tables_error_guard
@_shutdown_protected
async def _tables_create_impl(name: str, description: str = "", data: str | None = None) -> dict[str, Any]:
    directory = get_directory()
    storage, digest = await asyncio.to_thread(directory.create, name, description, data)
    metrics.record_operation("create")
    return success({"table": _table_payload(storage), "hash": digest})


@_tables_error_guard
@_shutdown_protected
async def _tables_list_impl(refresh: bool = False) -> dict[str, Any]:
    directory = get_directory()
    tables = await asyncio.to_thread(directory.list_tables, refresh=bool(refresh))
    metrics.record_operation("list")
    items = [_table_payload(storage, include_data=False) for storage in tables]
    return success({"tables": items, "count": len(items), "cached": not refresh})


@_tables_error_guard
@_shutdown_protected
async def _tables_read_impl(table_id: str, refresh: bool = False) -> dict[str, Any]:
    directory = get_directory()
    storage = await asyncio.to_thread(directory.read, table_id, refresh=bool(refresh))
    metrics.record_operation("read")
    return success({"table": _table_payload(storage)})


@_tables_error_guard
@_shutdown_protected
async def _tables_update_impl(
    table_id: str,
    name: str | None = None,
    description: str | None = None,
    data: str | None = None,
) -> dict[str, Any]:
    directory = get_directory()
    storage = await asyncio.to_thread(directory.update, table_id, name, description, data)
    metrics.record_operation("update")
    return success({"table": _table_payload(storage)})


@_tables_error_guard
@_shutdown_protected
async def _tables_append_impl(table_id: str, record: dict[str, Any] | str) -> dict[str, Any]:
    directory = get_directory()
    parsed = parse_record(record)
    appended, future = await asyncio.to_thread(directory.fast_append, table_id, parsed)
    metrics.record_operation("append")
    storage = directory.get(table_id)
    return success(
        {
            "table_id": table_id,
            "record": appended.to_dict(),
            "total_records": len(storage.snapshot().records),
            "background_save": future is not None,
        }
    )


@_tables_error_guard
@_shutdown_protected
async def _tables_append_sync_impl(table_id: str, record: dict[str, Any] | str) -> dict[str, Any]:
    directory = get_directory()
    parsed = parse_record(record)
    appended = await asyncio.to_thread(directory.append, table_id, parsed)
    metrics.record_operation("append")
    storage = directory.get(table_id)
    return success(
        {
            "table_id": table_id,
            "record": appended.to_dict(),
            "total_records": len(storage.snapshot().records),
            "hash": storage.published_digest,
        }
    )


@_tables_error_guard
@_shutdown_protected
async def _tables_remove_impl(
    table_id: str,
    index: int | None = None,
    match: dict[str, Any] | None = None,
) -> dict[str, Any]:
    directory = get_directory()
    if match is not None and not isinstance(match, Mapping):
        raise TablesError(VALIDATION_ERROR, "match must be an object")
    removed = await asyncio.to_thread(
        directory.remove,
        table_id,
        index=_coerce_index(index),
        match=dict(match) if match is not None else None,
    )
    metrics.record_operation("remove")
    return success({"table_id": table_id, "removed": removed.to_dict()})


@_tables_error_guard
@_shutdown_protected
async def _tables_delete_impl(table_id: str) -> dict[str, Any]:
    directory = get_directory()
    await asyncio.to_thread(directory.delete, table_id)
    metrics.record_operation("delete")
    return success({"table_id": table_id, "deleted": True})


@_tables_error_guard
async def _tables_metrics_impl() -> dict[str, Any]:
    registry = metrics.get_registry_optional()
    if registry is None:
        raise TablesError(CONFIG_ERROR, "Metrics are not available")
    directory = get_directory()
    body = metrics.format_prometheus(
        registry.snapshot(),
        tables_current=len(directory),
        dirty_tables=directory.dirty_count(),
    )
    return success({"content_type": "text/plain; version=0.0.4", "metrics": body})


tables_create = SERVER.tool(
    name="tables_create",
    description=(
        "Create a table backed by IPFS snapshots and an IPNS name.\n\n"
        "Parameters:\n"
        "- name: unique table name; it also becomes the table id and the IPFS key name.\n"
        "- description (optional): display description.\n"
        "- data (optional): JSON array of version records to start with."
    ),
)(_tables_create_impl)

tables_list = SERVER.tool(
    name="tables_list",
    description=(
        "List known tables without their records. Set refresh=true to reload each table from IPNS first; "
        "tables that fail to load are returned from cache."
    ),
)(_tables_list_impl)

tables_read = SERVER.tool(
    name="tables_read",
    description="Read a table by id from cache, or from its published IPNS snapshot when refresh=true",
)(_tables_read_impl)

tables_update = SERVER.tool(
    name="tables_update",
    description=(
        "Update a table's name, description and/or records (data is the full JSON array). "
        "The new state is stored in IPFS before it is committed; publishing the IPNS name is best-effort."
    ),
)(_tables_update_impl)

tables_append = SERVER.tool(
    name="tables_append",
    description=(
        "Append a version record and return immediately. The record is assigned the next version number; "
        "the IPFS snapshot and IPNS publish happen in the background."
    ),
)(_tables_append_impl)

tables_append_sync = SERVER.tool(
    name="tables_append_sync",
    description="Append a version record and wait until its snapshot is stored in IPFS",
)(_tables_append_sync_impl)

tables_remove = SERVER.tool(
    name="tables_remove",
    description=(
        "Remove one record, either by zero-based index or by the first record whose fields equal every "
        "key in match. Provide exactly one of index or match."
    ),
)(_tables_remove_impl)

tables_delete = SERVER.tool(
    name="tables_delete",
    description="Forget a table. Its snapshots and IPFS key stay on the node.",
)(_tables_delete_impl)

tables_metrics = SERVER.tool(
    name="tables_metrics",
    description="Return operation, error and persistence counters in Prometheus text format",
)(_tables_metrics_impl)


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for running the IPNS tables server."""

    config = load_config(argv)
    configure_logging(config.log_level)
    LOGGER.info(
        "Configuration loaded",
        extra={
            "context": {
                "registry_file": str(config.registry_file),
                "ipfs_api_url": config.ipfs_api_url,
                "background_workers": config.background_workers,
                "enable_stdio": config.enable_stdio,
            }
        },
    )

    try:
        initialize_app(config)
    except TablesError as exc:
        LOGGER.error(
            "Failed to initialize table directory",
            exc_info=exc,
            extra={"context": exc.details or {}},
        )
        raise SystemExit(1) from exc

    try:
        if config.enable_stdio:
            run_stdio(SERVER)
        else:
            LOGGER.info("Stdio transport disabled")
    finally:
        shutdown_app()


if __name__ == "__main__":  # pragma: no cover
    main()
