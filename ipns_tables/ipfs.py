"""Content Store and Name Service adapters backed by the IPFS (Kubo) RPC API."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol, Sequence

import httpx

from .errors import NO_NAME_POINTER, RESOLUTION_TIMEOUT, UPSTREAM_UNAVAILABLE, TablesError
from .logging import get_logger

logger = get_logger(__name__)

_IPFS_PATH_PREFIX = "/ipfs/"
_DEADLINE_MARKERS = ("deadline exceeded", "context canceled")


class IpfsError(TablesError):
    """Raised when a Content Store or Name Service call fails."""


@dataclass(frozen=True, slots=True)
class NameKey:
    name: str
    key_id: str


class ContentStore(Protocol):
    def put(self, data: bytes) -> str: ...

    def get(self, digest: str) -> bytes: ...


class NameService(Protocol):
    def list_keys(self) -> Sequence[NameKey]: ...

    def generate_key(self, name: str) -> str: ...

    def publish(self, key_name: str, digest: str, timeout: timedelta | None = None) -> None: ...

    def resolve(self, ipns_name: str, timeout: timedelta) -> str: ...


def digest_from_path(path: str) -> str:
    """Strip the ``/ipfs/`` prefix from a resolved path."""

    value = path.strip()
    if value.startswith(_IPFS_PATH_PREFIX):
        value = value[len(_IPFS_PATH_PREFIX):]
    return value.strip("/")


def _format_timeout(timeout: timedelta) -> str:
    milliseconds = max(int(timeout.total_seconds() * 1000), 1)
    return f"{milliseconds}ms"


class KuboClient:
    """Talks to a Kubo daemon over ``/api/v0``; implements both store protocols.

    Kubo answers every RPC with ``POST``. Failed calls carry a JSON body with a
    ``Message`` field, which is surfaced in the raised :class:`IpfsError`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: timedelta = timedelta(seconds=30),
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=f"{self._base_url}/api/v0", timeout=timeout.total_seconds())

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # ------------------------------------------------------------------
    # Content Store
    # ------------------------------------------------------------------

    def put(self, data: bytes) -> str:
        payload = self._call(
            "add",
            params={"pin": "true", "cid-version": "0"},
            files={"file": ("table.json", data, "application/json")},
        ).json()
        digest = str(payload.get("Hash") or "")
        if not digest:
            raise IpfsError(UPSTREAM_UNAVAILABLE, "IPFS add returned no hash")
        logger.debug("ipfs.add", extra={"context": {"digest": digest, "bytes": len(data)}})
        return digest

    def get(self, digest: str) -> bytes:
        return self._call("cat", params={"arg": digest}).content

    # ------------------------------------------------------------------
    # Name Service
    # ------------------------------------------------------------------

    def list_keys(self) -> list[NameKey]:
        payload = self._call("key/list").json()
        keys: list[NameKey] = []
        for entry in payload.get("Keys") or []:
            name = str(entry.get("Name") or "")
            key_id = str(entry.get("Id") or "")
            if name and key_id:
                keys.append(NameKey(name=name, key_id=key_id))
        return keys

    def generate_key(self, name: str) -> str:
        payload = self._call("key/gen", params={"arg": name, "type": "ed25519"}).json()
        key_id = str(payload.get("Id") or "")
        if not key_id:
            raise IpfsError(UPSTREAM_UNAVAILABLE, f"IPFS key/gen returned no id for {name}")
        return key_id

    def publish(self, key_name: str, digest: str, timeout: timedelta | None = None) -> None:
        params: dict[str, Any] = {
            "arg": f"{_IPFS_PATH_PREFIX}{digest}",
            "key": key_name,
            "resolve": "false",
        }
        # Without an explicit bound the HTTP call waits as long as propagation takes.
        request_timeout: float | None = None
        if timeout is not None:
            params["timeout"] = _format_timeout(timeout)
            request_timeout = timeout.total_seconds() + 1
        self._call("name/publish", params=params, timeout=request_timeout)

    def resolve(self, ipns_name: str, timeout: timedelta) -> str:
        params = {"arg": ipns_name, "timeout": _format_timeout(timeout)}
        try:
            response = self._call("name/resolve", params=params, timeout=timeout.total_seconds() + 1)
        except IpfsError as exc:
            message = exc.message.lower()
            if any(marker in message for marker in _DEADLINE_MARKERS):
                raise IpfsError(
                    RESOLUTION_TIMEOUT,
                    f"Resolving {ipns_name} exceeded {timeout.total_seconds():g}s",
                    details={"ipns_name": ipns_name},
                ) from exc
            if "could not resolve" in message:
                raise IpfsError(
                    NO_NAME_POINTER,
                    f"No IPNS record has been published for {ipns_name}",
                    details={"ipns_name": ipns_name},
                ) from exc
            raise
        path = str(response.json().get("Path") or "")
        digest = digest_from_path(path)
        if not digest:
            raise IpfsError(UPSTREAM_UNAVAILABLE, f"IPNS resolution returned no path for {ipns_name}")
        return digest

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _call(self, endpoint: str, *, timeout: Any = httpx.USE_CLIENT_DEFAULT, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.post(f"/{endpoint}", timeout=timeout, **kwargs)
        except httpx.TimeoutException as exc:
            code = RESOLUTION_TIMEOUT if endpoint == "name/resolve" else UPSTREAM_UNAVAILABLE
            raise IpfsError(code, f"IPFS {endpoint} timed out", details={"endpoint": endpoint}) from exc
        except httpx.HTTPError as exc:
            raise IpfsError(
                UPSTREAM_UNAVAILABLE,
                f"IPFS {endpoint} request failed: {exc}",
                details={"endpoint": endpoint},
            ) from exc
        if response.status_code >= 400:
            raise IpfsError(
                UPSTREAM_UNAVAILABLE,
                f"IPFS {endpoint} failed: {_error_message(response)}",
                details={"endpoint": endpoint, "status": response.status_code},
            )
        return response


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or f"HTTP {response.status_code}"
    if isinstance(payload, dict) and payload.get("Message"):
        return str(payload["Message"])
    return f"HTTP {response.status_code}"
