"""Configuration loading for the WiZ bulb registry."""

from __future__ import annotations

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional


CONFIG_ENV_PREFIX = "WIZ_REGISTRY_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1
WIZ_PORT = 38899


def _default_store_url() -> str:
    base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return f"sqlite:///{base / 'wiz-bulb-registry' / 'registry.sqlite3'}"


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    api_host: str = "0.0.0.0"
    api_port: int = 3000
    api_docs: bool = True
    store_url: str = _default_store_url()
    bulb_port: int = WIZ_PORT
    command_timeout: float = 1.0
    resolve_mac_on_add: bool = True
    resolve_mac_timeout: float = 0.5
    discovery_subnet: str = "192.168.1.0/24"
    discovery_timeout: float = 2.0
    discovery_broadcast: bool = True
    discovery_max_hosts: int = 1024
    refresh_enabled: bool = True
    refresh_interval: float = 45.0
    refresh_timeout: float = 1.0
    refresh_batch_size: int = 50
    refresh_backoff_base: float = 1.0
    refresh_backoff_factor: float = 2.0
    refresh_backoff_max: float = 30.0
    refresh_failure_threshold: int = 5
    refresh_failure_cooldown: float = 15.0
    log_format: str = "plain"
    log_level: str = "INFO"
    discovery_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        return {
            "config_version": self.config_version,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "api_docs": self.api_docs,
            "store_url": _mask_url_credentials(self.store_url),
            "bulb_port": self.bulb_port,
            "command_timeout": self.command_timeout,
            "resolve_mac_on_add": self.resolve_mac_on_add,
            "resolve_mac_timeout": self.resolve_mac_timeout,
            "discovery_subnet": self.discovery_subnet,
            "discovery_timeout": self.discovery_timeout,
            "discovery_broadcast": self.discovery_broadcast,
            "discovery_max_hosts": self.discovery_max_hosts,
            "refresh_enabled": self.refresh_enabled,
            "refresh_interval": self.refresh_interval,
            "refresh_timeout": self.refresh_timeout,
            "refresh_batch_size": self.refresh_batch_size,
            "refresh_backoff_base": self.refresh_backoff_base,
            "refresh_backoff_factor": self.refresh_backoff_factor,
            "refresh_backoff_max": self.refresh_backoff_max,
            "refresh_failure_threshold": self.refresh_failure_threshold,
            "refresh_failure_cooldown": self.refresh_failure_cooldown,
            "log_format": self.log_format,
            "log_level": self.log_level,
            "discovery_log_level": self.discovery_log_level,
            "api_log_level": self.api_log_level,
        }

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        file_config = _load_file_config(
            args.config
            or _coerce_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
            or None
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _mask_url_credentials(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if not sep or "@" not in rest.split("/", 1)[0]:
        return url
    host = rest.split("@", 1)[1]
    return f"{scheme}://***REDACTED***@{host}"


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_range("api_port", config.api_port, 1, 65535)
    _validate_range("bulb_port", config.bulb_port, 1, 65535)
    _validate_range("command_timeout", config.command_timeout, 0.05, 60.0)
    _validate_range("resolve_mac_timeout", config.resolve_mac_timeout, 0.05, 60.0)
    _validate_range("discovery_timeout", config.discovery_timeout, 0.05, 120.0)
    _validate_range("discovery_max_hosts", config.discovery_max_hosts, 1, 65536)
    _validate_range("refresh_interval", config.refresh_interval, 0.05, 86400.0)
    _validate_range("refresh_timeout", config.refresh_timeout, 0.05, 60.0)
    _validate_range("refresh_batch_size", config.refresh_batch_size, 1, 100000)
    _validate_range("refresh_backoff_base", config.refresh_backoff_base, 0.0, 300.0)
    _validate_range("refresh_backoff_factor", config.refresh_backoff_factor, 1.0, 10.0)
    _validate_range("refresh_backoff_max", config.refresh_backoff_max, 0.1, 3600.0)
    _validate_range("refresh_failure_threshold", config.refresh_failure_threshold, 1, 1000)
    _validate_range("refresh_failure_cooldown", config.refresh_failure_cooldown, 0.0, 3600.0)
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    if not config.store_url or "://" not in config.store_url:
        raise ValueError(f"store_url must be a URL; got {config.store_url!r}.")
    for field_name, value in (
        ("log_level", config.log_level),
        ("discovery_log_level", config.discovery_log_level),
        ("api_log_level", config.api_log_level),
    ):
        _validate_log_level_value(value, field_name)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the registry."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if value.upper() not in allowed:
        raise ValueError(f"{name} must be one of {sorted(allowed)}; got {value}.")


_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="wiz-registry",
        description="Run the WiZ bulb registry service.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--api-host", type=str, help="Interface for the HTTP API server.")
    parser.add_argument("--api-port", type=int, help="TCP port for the HTTP API server.")
    parser.add_argument(
        "--no-api-docs",
        action="store_true",
        help="Disable interactive API docs.",
    )
    parser.add_argument(
        "--store-url",
        type=str,
        help="Persistent store URL (e.g. sqlite:///registry.sqlite3).",
    )
    parser.add_argument("--bulb-port", type=int, help="UDP port bulbs listen on.")
    parser.add_argument(
        "--command-timeout",
        type=float,
        help="Seconds to wait for a bulb to acknowledge a command.",
    )
    parser.add_argument(
        "--no-resolve-mac",
        action="store_true",
        help="Do not probe new bulbs for their MAC address when adding them.",
    )
    parser.add_argument(
        "--discovery-subnet",
        type=str,
        help="Subnet scanned for bulbs (CIDR notation).",
    )
    parser.add_argument(
        "--discovery-timeout",
        type=float,
        help="Seconds to collect discovery replies.",
    )
    parser.add_argument(
        "--discovery-range",
        action="store_true",
        help="Probe every host in the subnet instead of broadcasting.",
    )
    parser.add_argument(
        "--discovery-max-hosts",
        type=int,
        help="Maximum hosts probed per scan in range mode.",
    )
    parser.add_argument(
        "--no-refresh",
        action="store_true",
        help="Disable the background state refresh task.",
    )
    parser.add_argument(
        "--refresh-interval",
        type=float,
        help="Seconds between background refresh cycles.",
    )
    parser.add_argument(
        "--refresh-timeout",
        type=float,
        help="Seconds to wait for each bulb during a refresh cycle.",
    )
    parser.add_argument(
        "--refresh-batch-size",
        type=int,
        help="Maximum number of bulbs refreshed per cycle.",
    )
    parser.add_argument(
        "--refresh-failure-threshold",
        type=int,
        help="Consecutive failed refresh cycles before refresh is paused.",
    )
    parser.add_argument(
        "--refresh-failure-cooldown",
        type=float,
        help="Seconds to pause refresh after repeated failed cycles.",
    )
    parser.add_argument(
        "--log-format",
        choices=["plain", "json"],
        help="Structured logging format.",
    )
    parser.add_argument("--log-level", choices=_LOG_LEVELS, help="Log verbosity level.")
    parser.add_argument(
        "--discovery-log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity for discovery.",
    )
    parser.add_argument(
        "--api-log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity for the API server.",
    )
    parser.add_argument(
        "--config-version",
        type=int,
        help="Version of the configuration schema being supplied.",
    )
    return parser.parse_args(args=cli_args)


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    flags = {"config", "no_api_docs", "no_resolve_mac", "discovery_range", "no_refresh"}
    mapping = {k: v for k, v in vars(args).items() if k not in flags and v is not None}
    if args.no_api_docs:
        mapping["api_docs"] = False
    if args.no_resolve_mac:
        mapping["resolve_mac_on_add"] = False
    if args.discovery_range:
        mapping["discovery_broadcast"] = False
    if args.no_refresh:
        mapping["refresh_enabled"] = False
    return mapping


_INT_FIELDS = {
    "api_port",
    "bulb_port",
    "discovery_max_hosts",
    "refresh_batch_size",
    "refresh_failure_threshold",
    "config_version",
}
_FLOAT_FIELDS = {
    "command_timeout",
    "resolve_mac_timeout",
    "discovery_timeout",
    "refresh_interval",
    "refresh_timeout",
    "refresh_backoff_base",
    "refresh_backoff_factor",
    "refresh_backoff_max",
    "refresh_failure_cooldown",
}
_BOOL_FIELDS = {"api_docs", "resolve_mac_on_add", "discovery_broadcast", "refresh_enabled"}


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in Config.__dataclass_fields__:
            raise ValueError(f"Unknown configuration key: {key}")
        if key in _INT_FIELDS:
            data[key] = int(value)
        elif key in _FLOAT_FIELDS:
            data[key] = float(value)
        elif key in _BOOL_FIELDS:
            data[key] = _coerce_bool(value)
        elif key == "log_format":
            data[key] = str(value).lower()
        elif key in {"log_level", "discovery_log_level", "api_log_level"}:
            data[key] = str(value).upper()
        else:
            data[key] = str(value)
    return replace(config, **data)


def _coerce_path(value: Any) -> Optional[Path]:
    if value is None:
        return None
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
