from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from threading import RLock
from time import monotonic
from typing import Mapping

_DEFAULT_OPERATIONS = ("create", "read", "update", "append", "remove", "delete", "list", "load")
_DEFAULT_PERSIST_OUTCOMES = (
    "published",
    "publish_failed",
    "background_published",
    "background_failed",
    "background_discarded",
    "registry_write_failed",
)

_registry_lock = RLock()
_registry: "MetricsRegistry | None" = None


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable snapshot of the current metrics state."""

    operations: Mapping[str, int]
    errors: Mapping[str, int]
    persists: Mapping[str, int]
    uptime_seconds: float


class MetricsRegistry:
    """Thread-safe registry storing counters for Prometheus export."""

    __slots__ = ("_operations", "_errors", "_persists", "_lock", "_started_at")

    def __init__(self) -> None:
        self._operations: Counter[str] = Counter()
        self._errors: Counter[str] = Counter()
        self._persists: Counter[str] = Counter()
        self._lock = RLock()
        self._started_at = monotonic()

    def record_operation(self, name: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = name.strip().lower()
        if not key:
            return
        with self._lock:
            self._operations[key] += count

    def record_error(self, code: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = code.strip().upper()
        if not key:
            return
        with self._lock:
            self._errors[key] += count

    def record_persist(self, outcome: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = outcome.strip().lower() or "unknown"
        with self._lock:
            self._persists[key] += count

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            operations: dict[str, int] = {name: int(self._operations.get(name, 0)) for name in _DEFAULT_OPERATIONS}
            for name, value in self._operations.items():
                if name not in operations:
                    operations[name] = int(value)
            errors = {code: int(value) for code, value in self._errors.items()}
            persists: dict[str, int] = {outcome: int(self._persists.get(outcome, 0)) for outcome in _DEFAULT_PERSIST_OUTCOMES}
            for outcome, value in self._persists.items():
                if outcome not in persists:
                    persists[outcome] = int(value)
            uptime = max(monotonic() - self._started_at, 0.0)
        return MetricsSnapshot(operations=operations, errors=errors, persists=persists, uptime_seconds=uptime)

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()
            self._errors.clear()
            self._persists.clear()
            self._started_at = monotonic()


def install_registry(registry: MetricsRegistry | None) -> None:
    """Install the active metrics registry (or disable metrics when None)."""

    with _registry_lock:
        global _registry
        _registry = registry


def get_registry_optional() -> MetricsRegistry | None:
    with _registry_lock:
        return _registry


def record_operation(name: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_operation(name, count=count)


def record_error(code: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_error(code, count=count)


def record_persist(outcome: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_persist(outcome, count=count)


def format_prometheus(snapshot: MetricsSnapshot, *, tables_current: int, dirty_tables: int) -> str:
    """Render metrics using Prometheus exposition format (text, version 0.0.4)."""

    lines: list[str] = []

    lines.append("# HELP ipns_tables_ops_total Total operations executed by type.")
    lines.append("# TYPE ipns_tables_ops_total counter")
    for name in sorted(snapshot.operations):
        lines.append(f'ipns_tables_ops_total{{op="{name}"}} {snapshot.operations[name]}')

    lines.append("# HELP ipns_tables_errors_total Total errors returned, grouped by error code.")
    lines.append("# TYPE ipns_tables_errors_total counter")
    if snapshot.errors:
        for code in sorted(snapshot.errors):
            lines.append(f'ipns_tables_errors_total{{code="{code}"}} {snapshot.errors[code]}')
    else:
        lines.append('ipns_tables_errors_total{code="none"} 0')

    lines.append("# HELP ipns_tables_persists_total Persistence attempts grouped by outcome.")
    lines.append("# TYPE ipns_tables_persists_total counter")
    for outcome in sorted(snapshot.persists):
        lines.append(f'ipns_tables_persists_total{{outcome="{outcome}"}} {snapshot.persists[outcome]}')

    lines.append("# HELP ipns_tables_tables_current Tables currently held by the directory.")
    lines.append("# TYPE ipns_tables_tables_current gauge")
    lines.append(f"ipns_tables_tables_current {tables_current}")

    lines.append("# HELP ipns_tables_dirty_tables Tables whose latest state has not been published.")
    lines.append("# TYPE ipns_tables_dirty_tables gauge")
    lines.append(f"ipns_tables_dirty_tables {dirty_tables}")

    lines.append("# HELP ipns_tables_uptime_seconds Server uptime in seconds.")
    lines.append("# TYPE ipns_tables_uptime_seconds gauge")
    lines.append(f"ipns_tables_uptime_seconds {snapshot.uptime_seconds:.6f}")

    return "\n".join(lines) + "\n"
