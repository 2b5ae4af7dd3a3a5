from __future__ import annotations

import threading
from concurrent.futures import ALL_COMPLETED, Future, ThreadPoolExecutor, wait as wait_futures
from datetime import timedelta
from typing import TYPE_CHECKING

from . import metrics
from .errors import TablesError
from .logging import get_logger

if TYPE_CHECKING:
    from .storage import TableStorage

LOGGER = get_logger(__name__)


class BackgroundPersister:
    """Bounded pool that stores and publishes tables changed on the fast path.

    A controller with a persist already queued (not yet started) is not queued
    a second time: the queued job reads the table state when it runs, so it
    also covers the later change. Jobs are keyed by controller, not by table
    id, because a deleted table and its re-created successor share an id.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max(max_workers, 1),
            thread_name_prefix="ipns-tables-persist",
        )
        self._lock = threading.Lock()
        self._queued: dict[TableStorage, Future] = {}
        self._active: set[Future] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        with self._lock:
            return len(self._active)

    def submit(self, storage: TableStorage) -> Future | None:
        table_id = storage.table_id
        with self._lock:
            if self._closed:
                LOGGER.warning("background.submit.rejected", extra={"context": {"table_id": table_id}})
                return None
            queued = self._queued.get(storage)
            if queued is not None:
                LOGGER.debug("background.submit.coalesced", extra={"context": {"table_id": table_id}})
                return queued
            future = self._executor.submit(self._run, storage)
            self._queued[storage] = future
            self._active.add(future)
        future.add_done_callback(self._forget)
        return future

    def drain(self, timeout: timedelta | None = None) -> bool:
        """Wait for submitted work; return False if some is still running after ``timeout``."""

        with self._lock:
            futures = set(self._active)
        if not futures:
            return True
        seconds = timeout.total_seconds() if timeout is not None else None
        _, not_done = wait_futures(futures, timeout=seconds, return_when=ALL_COMPLETED)
        return not not_done

    def shutdown(self, *, wait: bool = True, discard_pending: bool = False) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            discarded = len(self._queued) if discard_pending else 0
        if discarded:
            LOGGER.warning("background.shutdown.discarded", extra={"context": {"queued": discarded}})
        self._executor.shutdown(wait=wait, cancel_futures=discard_pending)
        LOGGER.info("background.shutdown", extra={"context": {"wait": wait, "discard_pending": discard_pending}})

    def _run(self, storage: TableStorage) -> str | None:
        table_id = storage.table_id
        with self._lock:
            self._queued.pop(storage, None)
        try:
            digest = storage.background_persist()
        except TablesError as exc:
            metrics.record_persist("background_failed")
            LOGGER.warning(
                "background.persist.failed",
                extra={"context": {"table_id": table_id, "code": exc.code, "error": exc.message}},
            )
            return None
        except Exception:  # pragma: no cover
            metrics.record_persist("background_failed")
            LOGGER.exception("Background persist failed for table %s", table_id)
            return None
        if storage.retired:
            metrics.record_persist("background_discarded")
            LOGGER.info("background.persist.discarded", extra={"context": {"table_id": table_id}})
            return None
        metrics.record_persist("background_published")
        LOGGER.info("background.persist.completed", extra={"context": {"table_id": table_id, "digest": digest}})
        return digest

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._active.discard(future)
            for storage, queued in list(self._queued.items()):
                if queued is future:
                    del self._queued[storage]
