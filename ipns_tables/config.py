"""Configuration loading utilities for the IPNS tables service."""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Sequence

ENV_PREFIX = "IPNS_TABLES_"

BOOL_TRUE = {"1", "true", "t", "yes", "y", "on"}
BOOL_FALSE = {"0", "false", "f", "no", "n", "off"}

DEFAULT_REGISTRY_FILE_NAME = "tables_registry.json"
DEFAULT_IPFS_API_URL = "http://127.0.0.1:5001"
DEFAULT_REQUEST_TIMEOUT = "30s"
DEFAULT_RESOLVE_TIMEOUT = "10s"
DEFAULT_BACKGROUND_WORKERS = 4
DEFAULT_SHUTDOWN_TIMEOUT = "5s"
DEFAULT_LOG_LEVEL = "INFO"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
T_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600}


def _default_registry_file() -> Path:
    """Return the default registry path under the current working directory."""

    return (Path.cwd() / DEFAULT_REGISTRY_FILE_NAME).resolve()


ENV_FIELD_MAP = {
    "config_file": f"{ENV_PREFIX}CONFIG_FILE",
    "registry_file": f"{ENV_PREFIX}REGISTRY_FILE",
    "ipfs_api_url": f"{ENV_PREFIX}IPFS_API_URL",
    "request_timeout": f"{ENV_PREFIX}REQUEST_TIMEOUT",
    "resolve_timeout": f"{ENV_PREFIX}RESOLVE_TIMEOUT",
    "publish_timeout": f"{ENV_PREFIX}PUBLISH_TIMEOUT",
    "background_workers": f"{ENV_PREFIX}BACKGROUND_WORKERS",
    "shutdown_timeout": f"{ENV_PREFIX}SHUTDOWN_TIMEOUT",
    "log_level": f"{ENV_PREFIX}LOG_LEVEL",
    "enable_stdio": f"{ENV_PREFIX}ENABLE_STDIO",
}

DEFAULT_VALUES: dict[str, Any] = {
    "config_file": None,
    "registry_file": None,
    "ipfs_api_url": DEFAULT_IPFS_API_URL,
    "request_timeout": DEFAULT_REQUEST_TIMEOUT,
    "resolve_timeout": DEFAULT_RESOLVE_TIMEOUT,
    "publish_timeout": None,
    "background_workers": DEFAULT_BACKGROUND_WORKERS,
    "shutdown_timeout": DEFAULT_SHUTDOWN_TIMEOUT,
    "log_level": DEFAULT_LOG_LEVEL,
    "enable_stdio": True,
}


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""


@dataclass(slots=True)
class Config:
    """Configuration model for the IPNS tables service."""

    registry_file: Path
    ipfs_api_url: str
    request_timeout: timedelta
    resolve_timeout: timedelta
    publish_timeout: timedelta | None
    background_workers: int
    shutdown_timeout: timedelta
    log_level: str
    enable_stdio: bool
    config_file: Path | None = None


def load_config(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from CLI arguments, environment variables, and optional file."""

    parser = _build_arg_parser()
    parsed = parser.parse_args(argv)
    cli_values = {k: v for k, v in vars(parsed).items() if v is not None}

    env_values = _extract_env_values(environ if environ is not None else os.environ)

    config_path_value = cli_values.get("config_file") or env_values.get("config_file")
    file_values = _load_config_file(config_path_value)

    merged: dict[str, Any] = {}
    _merge_layer(merged, DEFAULT_VALUES)
    _merge_layer(merged, file_values)
    _merge_layer(merged, env_values)
    _merge_layer(merged, cli_values)

    config = _normalize_values(merged, config_path_value)

    _maybe_write_config_file(config)
    return config


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ipns-tables",
        description="IPNS tables service configuration flags.",
        add_help=False,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("-h", "--help", action="help", help="Show this help message and exit.")
    parser.add_argument(
        "--config-file",
        dest="config_file",
        metavar="PATH",
        help="Path to a JSON configuration file. Default: none.",
    )
    parser.add_argument(
        "--registry-file",
        dest="registry_file",
        metavar="PATH",
        help=f"Table registry file (default: ./{DEFAULT_REGISTRY_FILE_NAME}).",
    )
    parser.add_argument(
        "--ipfs-api-url",
        dest="ipfs_api_url",
        metavar="URL",
        help=f"Base URL of the IPFS (Kubo) RPC API (default: {DEFAULT_IPFS_API_URL}).",
    )
    parser.add_argument(
        "--request-timeout",
        dest="request_timeout",
        metavar="DURATION",
        help=f"Timeout for IPFS add/cat/key calls (default: {DEFAULT_REQUEST_TIMEOUT}).",
    )
    parser.add_argument(
        "--resolve-timeout",
        dest="resolve_timeout",
        metavar="DURATION",
        help=f"Upper bound for IPNS name resolution during load (default: {DEFAULT_RESOLVE_TIMEOUT}).",
    )
    parser.add_argument(
        "--publish-timeout",
        dest="publish_timeout",
        metavar="DURATION",
        help="Optional timeout for IPNS publish calls (default: none).",
    )
    parser.add_argument(
        "--background-workers",
        dest="background_workers",
        metavar="INT",
        help=f"Worker threads for background persistence (default: {DEFAULT_BACKGROUND_WORKERS}).",
    )
    parser.add_argument("--shutdown-timeout", dest="shutdown_timeout", metavar="DURATION", help="Graceful shutdown timeout (default: 5s).")
    parser.add_argument("--log-level", dest="log_level", metavar="LEVEL", help=f"Log level (default: {DEFAULT_LOG_LEVEL}).")
    parser.add_argument(
        "--enable-stdio",
        dest="enable_stdio",
        metavar="BOOL",
        help="Serve the MCP stdio transport (default: true).",
    )
    return parser


def _extract_env_values(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for field, env_name in ENV_FIELD_MAP.items():
        if env_name in env:
            values[field] = env[env_name]
    return values


def _load_config_file(path_value: str | Path | None) -> dict[str, Any]:
    if not path_value:
        return {}
    path = _parse_path(path_value, field="config_file")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file is not valid JSON: {path}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a JSON object")
    result: dict[str, Any] = {k: v for k, v in data.items() if k in DEFAULT_VALUES}
    result["config_file"] = str(path)
    return result


def _merge_layer(base: MutableMapping[str, Any], overrides: Mapping[str, Any]) -> None:
    for key, value in overrides.items():
        if value is None:
            continue
        base[key] = value


def _normalize_values(values: Mapping[str, Any], config_path_value: str | Path | None) -> Config:
    registry_value = values.get("registry_file")
    registry_file = _parse_path(registry_value, field="registry_file") if registry_value else _default_registry_file()

    ipfs_api_url = str(values.get("ipfs_api_url", DEFAULT_IPFS_API_URL)).strip().rstrip("/")
    if not ipfs_api_url.startswith(("http://", "https://")):
        raise ConfigError("ipfs_api_url must be an http:// or https:// URL")

    request_timeout = _parse_duration(values.get("request_timeout", DEFAULT_REQUEST_TIMEOUT), default_unit="s", field="request_timeout")
    resolve_timeout = _parse_duration(values.get("resolve_timeout", DEFAULT_RESOLVE_TIMEOUT), default_unit="s", field="resolve_timeout")
    if resolve_timeout.total_seconds() <= 0:
        raise ConfigError("resolve_timeout must be greater than zero")
    publish_value = values.get("publish_timeout")
    publish_timeout = None
    if publish_value not in (None, ""):
        publish_timeout = _parse_duration(publish_value, default_unit="s", field="publish_timeout")

    background_workers = _parse_int(values.get("background_workers", DEFAULT_BACKGROUND_WORKERS), field="background_workers", minimum=1)
    shutdown_timeout = _parse_duration(values.get("shutdown_timeout", DEFAULT_SHUTDOWN_TIMEOUT), default_unit="s", field="shutdown_timeout")

    log_level = str(values.get("log_level", DEFAULT_LOG_LEVEL)).strip().upper()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")

    enable_stdio = _parse_bool(values.get("enable_stdio"), default=DEFAULT_VALUES["enable_stdio"])

    config_file_path = _parse_optional_path(config_path_value, field="config_file")

    return Config(
        registry_file=registry_file,
        ipfs_api_url=ipfs_api_url,
        request_timeout=request_timeout,
        resolve_timeout=resolve_timeout,
        publish_timeout=publish_timeout,
        background_workers=background_workers,
        shutdown_timeout=shutdown_timeout,
        log_level=log_level,
        enable_stdio=enable_stdio,
        config_file=config_file_path,
    )


def _maybe_write_config_file(config: Config) -> None:
    path = config.config_file
    if path is None:
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        return

    payload = _serialize_config(config)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


def _serialize_config(config: Config) -> dict[str, Any]:
    return {
        "config_file": str(config.config_file) if config.config_file else None,
        "registry_file": str(config.registry_file),
        "ipfs_api_url": config.ipfs_api_url,
        "request_timeout": _format_duration(config.request_timeout, preferred_unit="s"),
        "resolve_timeout": _format_duration(config.resolve_timeout, preferred_unit="s"),
        "publish_timeout": _format_duration(config.publish_timeout, preferred_unit="s") if config.publish_timeout else None,
        "background_workers": config.background_workers,
        "shutdown_timeout": _format_duration(config.shutdown_timeout, preferred_unit="s"),
        "log_level": config.log_level,
        "enable_stdio": config.enable_stdio,
    }


def _format_duration(duration: timedelta, *, preferred_unit: str) -> str:
    total_seconds = int(duration.total_seconds())
    factor = T_DURATION_UNITS.get(preferred_unit, 1)
    if factor and total_seconds % factor == 0:
        return f"{total_seconds // factor}{preferred_unit}"
    return f"{total_seconds}s"


def _parse_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in BOOL_TRUE:
            return True
        if lowered in BOOL_FALSE:
            return False
    raise ConfigError(f"Invalid boolean value: {value!r}")


def _parse_int(value: Any, *, field: str, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        if isinstance(value, (int, float)):
            int_value = int(value)
        else:
            int_value = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid integer for {field}: {value!r}") from exc

    if minimum is not None and int_value < minimum:
        raise ConfigError(f"{field} must be >= {minimum}")
    if maximum is not None and int_value > maximum:
        raise ConfigError(f"{field} must be <= {maximum}")
    return int_value


def _parse_duration(value: Any, *, default_unit: str, field: str) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration for {field}: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds < 0:
            raise ConfigError(f"{field} must be positive")
        return timedelta(seconds=seconds)
    if not isinstance(value, str):
        raise ConfigError(f"Invalid duration for {field}: {value!r}")

    stripped = value.strip()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")

    unit = default_unit
    suffix = stripped[-1]
    number_part = stripped
    if suffix.lower() in T_DURATION_UNITS:
        unit = suffix.lower()
        number_part = stripped[:-1]
    if not number_part or not number_part.isdigit():
        raise ConfigError(f"{field} must be a positive integer optionally suffixed with s, m, or h")
    seconds = int(number_part) * T_DURATION_UNITS[unit]
    return timedelta(seconds=seconds)


def _parse_path(value: Any, *, field: str) -> Path:
    if isinstance(value, Path):
        return value.expanduser().resolve()
    if not isinstance(value, str):
        raise ConfigError(f"Invalid path for {field}: {value!r}")
    stripped = value.strip()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")
    return Path(stripped).expanduser().resolve()


def _parse_optional_path(value: Any, *, field: str) -> Path | None:
    if value in (None, ""):
        return None
    return _parse_path(value, field=field)
