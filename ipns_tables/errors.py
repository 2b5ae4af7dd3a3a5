"""Centralized error codes and helper utilities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

__all__ = [
    "NOT_FOUND",
    "CONFLICT",
    "MALFORMED_PAYLOAD",
    "INDEX_OUT_OF_RANGE",
    "RECORD_NOT_FOUND",
    "NO_NAME_POINTER",
    "RESOLUTION_TIMEOUT",
    "DECODE_ERROR",
    "UPSTREAM_UNAVAILABLE",
    "VALIDATION_ERROR",
    "CONFIG_ERROR",
    "INTERNAL_ERROR",
    "TablesError",
    "error_payload",
]

NOT_FOUND = "NOT_FOUND"
CONFLICT = "CONFLICT"
MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
INDEX_OUT_OF_RANGE = "INDEX_OUT_OF_RANGE"
RECORD_NOT_FOUND = "RECORD_NOT_FOUND"
NO_NAME_POINTER = "NO_NAME_POINTER"
RESOLUTION_TIMEOUT = "RESOLUTION_TIMEOUT"
DECODE_ERROR = "DECODE_ERROR"
UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
VALIDATION_ERROR = "VALIDATION_ERROR"
CONFIG_ERROR = "CONFIG_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(slots=True)
class TablesError(Exception):
    """Domain-specific exception carrying an error code and message."""

    code: str
    message: str
    details: Mapping[str, Any] | None = None

    def __str__(self) -> str:  # pragma: no cover - delegation to message
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return error_payload(self.code, self.message, details=self.details)


def error_payload(code: str, message: str, *, details: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Build a structured error payload used in tool responses."""

    payload: dict[str, Any] = {
        "code": code,
        "message": message,
    }
    if details:
        payload["details"] = dict(details)
    return payload
