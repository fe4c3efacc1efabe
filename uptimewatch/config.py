"""Configuration loader with type-safe dataclasses."""

import json
import math
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Lower intervals hammer the monitored sites and fill the global history log
# with a single site's checks.
MIN_MONITOR_INTERVAL = 5

STORAGE_BACKENDS = ("json", "sqlite")

DEFAULT_HISTORY_CAP = 1000


def _is_http_url(url: str) -> bool:
    return url.startswith(("http://", "https://"))


@dataclass(frozen=True)
class SiteConfig:
    """Configuration for a single site to monitor."""

    url: str
    timeout: int | None = None  # seconds, falls back to monitor.timeout

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigError("Site URL cannot be empty")
        if not _is_http_url(self.url):
            raise ConfigError(f"Site URL must start with http:// or https://, got '{self.url}'")
        if self.timeout is not None and self.timeout < 1:
            raise ConfigError(f"Timeout must be at least 1 second for '{self.url}'")


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for the scheduler loop and the HTTP probe."""

    interval: int = 60  # seconds between check cycles
    timeout: int = 10  # seconds per request
    retry_attempts: int = 1  # extra attempts before reporting DOWN
    max_workers: int = 4
    user_agent: str = "uptimewatch/0.1"

    def __post_init__(self) -> None:
        if self.interval < MIN_MONITOR_INTERVAL:
            raise ConfigError(
                f"Monitor interval must be at least {MIN_MONITOR_INTERVAL} seconds (got {self.interval})"
            )
        if self.timeout < 1:
            raise ConfigError(f"Monitor timeout must be at least 1 second (got {self.timeout})")
        if self.retry_attempts < 0:
            raise ConfigError(f"Retry attempts must be non-negative (got {self.retry_attempts})")
        if self.max_workers < 1:
            raise ConfigError(f"Max workers must be at least 1 (got {self.max_workers})")
        if not self.user_agent:
            raise ConfigError("User-Agent cannot be empty")


NOTIFICATION_KINDS = ("initial", "routine", "status_change", "suppressed")


@dataclass(frozen=True)
class WebhookConfig:
    """Configuration for a single webhook sink."""

    url: str
    enabled: bool = True
    events: tuple[str, ...] = ("status_change",)

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigError("Webhook URL cannot be empty")
        if not _is_http_url(self.url):
            raise ConfigError(f"Webhook URL must start with http:// or https://, got '{self.url}'")
        if not self.events:
            raise ConfigError(f"Webhook '{self.url}' must subscribe to at least one event")
        unknown = [e for e in self.events if e not in NOTIFICATION_KINDS]
        if unknown:
            raise ConfigError(f"Unknown webhook events {unknown}. Must be one of: {NOTIFICATION_KINDS}")


def validate_rate_limit(burst: object, window_sec: object) -> None:
    """Validate token bucket parameters.

    Raises:
        ConfigError: If burst is not a positive integer or window_sec is not a positive finite number.
    """
    if isinstance(burst, bool) or not isinstance(burst, int) or burst <= 0:
        raise ConfigError(f"Alert burst must be a positive integer (got {burst!r})")
    if (
        isinstance(window_sec, bool)
        or not isinstance(window_sec, (int, float))
        or not math.isfinite(window_sec)
        or window_sec <= 0
    ):
        raise ConfigError(f"Alert window_sec must be a positive finite number (got {window_sec!r})")


@dataclass(frozen=True)
class AlertsConfig:
    """Configuration for alert rate limiting and delivery."""

    burst: int = 3
    window_sec: float = 300
    webhooks: list[WebhookConfig] = field(default_factory=list)

    def __post_init__(self) -> None:
        validate_rate_limit(self.burst, self.window_sec)
        if not isinstance(self.webhooks, list):
            raise ConfigError("Webhooks must be a list")


def _get_default_storage_path() -> str:
    """Get the default storage directory using the XDG data location."""
    return str(Path.home() / ".local" / "share" / "uptimewatch")


DEFAULT_STORAGE_PATH = _get_default_storage_path()


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for the persistence backend.

    For the json backend, path is a directory holding status.json,
    metrics.json and history.json. For sqlite it is the database file.
    """

    backend: str = "json"
    path: str = DEFAULT_STORAGE_PATH
    history_cap: int = DEFAULT_HISTORY_CAP
    timeout: float = 5.0  # seconds to wait for a storage lock

    def __post_init__(self) -> None:
        if self.backend not in STORAGE_BACKENDS:
            raise ConfigError(f"Invalid storage backend '{self.backend}'. Must be one of: {STORAGE_BACKENDS}")
        if not self.path:
            raise ConfigError("Storage path cannot be empty")
        if isinstance(self.history_cap, bool) or not isinstance(self.history_cap, int) or self.history_cap < 1:
            raise ConfigError(f"History cap must be a positive integer (got {self.history_cap!r})")
        if self.timeout <= 0:
            raise ConfigError(f"Storage timeout must be positive (got {self.timeout})")


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for the JSON API server."""

    enabled: bool = True
    port: int = 8080

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"API port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    sites: list[SiteConfig]
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    def __post_init__(self) -> None:
        if not self.sites:
            raise ConfigError("At least one site must be configured")
        urls = [site.url for site in self.sites]
        duplicates = {url for url in urls if urls.count(url) > 1}
        if duplicates:
            raise ConfigError(f"Duplicate site URLs found: {duplicates}")


def _parse_site_config(data: object, index: int) -> SiteConfig:
    """Parse a single site entry, either a bare URL or a mapping."""
    if isinstance(data, str):
        return SiteConfig(url=data)
    if not isinstance(data, dict):
        raise ConfigError(f"Site entry {index} must be a URL string or a dictionary")

    url = data.get("url")
    if url is None:
        raise ConfigError(f"Site entry {index} is missing 'url' field")

    timeout = data.get("timeout")
    return SiteConfig(
        url=str(url),
        timeout=int(timeout) if timeout is not None else None,
    )


def _parse_monitor_config(data: dict | None) -> MonitorConfig:
    """Parse monitor configuration section."""
    if data is None:
        return MonitorConfig()
    if not isinstance(data, dict):
        raise ConfigError("'monitor' section must be a dictionary")

    return MonitorConfig(
        interval=int(data.get("interval", 60)),
        timeout=int(data.get("timeout", 10)),
        retry_attempts=int(data.get("retry_attempts", 1)),
        max_workers=int(data.get("max_workers", 4)),
        user_agent=str(data.get("user_agent", "uptimewatch/0.1")),
    )


def _parse_webhook_config(data: dict, index: int) -> WebhookConfig:
    """Parse a single webhook configuration entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"Webhook entry {index} must be a dictionary")

    url = data.get("url")
    if url is None:
        raise ConfigError(f"Webhook entry {index} is missing 'url' field")

    events = data.get("events", ["status_change"])
    if not isinstance(events, list):
        raise ConfigError(f"Webhook entry {index} 'events' must be a list")

    return WebhookConfig(
        url=str(url),
        enabled=bool(data.get("enabled", True)),
        events=tuple(str(e) for e in events),
    )


def _parse_number(value: object, name: str) -> int | float:
    """Parse an int or float from YAML or environment values."""
    if isinstance(value, bool):
        raise ConfigError(f"'{name}' must be a number")
    if isinstance(value, (int, float)):
        return value
    try:
        text = str(value)
        return float(text) if "." in text else int(text)
    except ValueError:
        raise ConfigError(f"'{name}' must be a number, got {value!r}")


def _parse_alerts_config(data: dict | None) -> AlertsConfig:
    """Parse alerts configuration section."""
    if data is None:
        return AlertsConfig()
    if not isinstance(data, dict):
        raise ConfigError("'alerts' section must be a dictionary")

    webhooks_data = data.get("webhooks", [])
    if not isinstance(webhooks_data, list):
        raise ConfigError("'alerts.webhooks' must be a list")

    webhooks = [_parse_webhook_config(webhook_data, i) for i, webhook_data in enumerate(webhooks_data)]

    return AlertsConfig(
        burst=_parse_number(data.get("burst", 3), "alerts.burst"),
        window_sec=_parse_number(data.get("window_sec", 300), "alerts.window_sec"),
        webhooks=webhooks,
    )


def _parse_storage_config(data: dict | None) -> StorageConfig:
    """Parse storage configuration section."""
    if data is None:
        return StorageConfig()
    if not isinstance(data, dict):
        raise ConfigError("'storage' section must be a dictionary")

    return StorageConfig(
        backend=str(data.get("backend", "json")),
        path=str(data.get("path", DEFAULT_STORAGE_PATH)),
        history_cap=_parse_number(data.get("history_cap", DEFAULT_HISTORY_CAP), "storage.history_cap"),
        timeout=float(data.get("timeout", 5.0)),
    )


def _parse_api_config(data: dict | None) -> ApiConfig:
    """Parse API configuration section."""
    if data is None:
        return ApiConfig()
    if not isinstance(data, dict):
        raise ConfigError("'api' section must be a dictionary")

    return ApiConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 8080)),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - UPTIMEWATCH_SITES: JSON array of site URLs, replaces 'sites'
    - UPTIMEWATCH_MONITOR_INTERVAL: Override monitor.interval
    - UPTIMEWATCH_TIMEOUT: Override monitor.timeout
    - UPTIMEWATCH_RETRY_ATTEMPTS: Override monitor.retry_attempts
    - UPTIMEWATCH_ALERT_BURST: Override alerts.burst
    - UPTIMEWATCH_ALERT_WINDOW_SEC: Override alerts.window_sec
    - UPTIMEWATCH_STORAGE_BACKEND: Override storage.backend
    - UPTIMEWATCH_STORAGE_PATH: Override storage.path
    - UPTIMEWATCH_HISTORY_CAP: Override storage.history_cap
    - UPTIMEWATCH_API_PORT: Override api.port
    - UPTIMEWATCH_API_ENABLED: Override api.enabled (true/false)
    """
    for section in ("monitor", "alerts", "storage", "api"):
        if config_data.get(section) is None:
            config_data[section] = {}

    sites = os.environ.get("UPTIMEWATCH_SITES")
    if sites is not None:
        try:
            parsed = json.loads(sites)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid UPTIMEWATCH_SITES JSON format: {e}")
        if not isinstance(parsed, list):
            raise ConfigError("UPTIMEWATCH_SITES must be a JSON array of URLs")
        config_data["sites"] = parsed

    overrides = {
        "UPTIMEWATCH_MONITOR_INTERVAL": ("monitor", "interval"),
        "UPTIMEWATCH_TIMEOUT": ("monitor", "timeout"),
        "UPTIMEWATCH_RETRY_ATTEMPTS": ("monitor", "retry_attempts"),
        "UPTIMEWATCH_ALERT_BURST": ("alerts", "burst"),
        "UPTIMEWATCH_ALERT_WINDOW_SEC": ("alerts", "window_sec"),
        "UPTIMEWATCH_STORAGE_BACKEND": ("storage", "backend"),
        "UPTIMEWATCH_STORAGE_PATH": ("storage", "path"),
        "UPTIMEWATCH_HISTORY_CAP": ("storage", "history_cap"),
        "UPTIMEWATCH_API_PORT": ("api", "port"),
    }
    for env_name, (section, key) in overrides.items():
        value = os.environ.get(env_name)
        if value is not None:
            config_data[section][key] = value

    api_enabled = os.environ.get("UPTIMEWATCH_API_ENABLED")
    if api_enabled is not None:
        config_data["api"]["enabled"] = api_enabled.lower() in ("true", "1", "yes")

    return config_data


def parse_config(data: dict) -> Config:
    """Build a validated Config from already-loaded configuration data.

    Raises:
        ConfigError: If the configuration is invalid.
    """
    data = _apply_env_overrides(data)

    sites_data = data.get("sites")
    if sites_data is None:
        raise ConfigError("Configuration must contain a 'sites' section")
    if not isinstance(sites_data, list):
        raise ConfigError("'sites' must be a list")

    try:
        return Config(
            sites=[_parse_site_config(site, i) for i, site in enumerate(sites_data)],
            monitor=_parse_monitor_config(data.get("monitor")),
            alerts=_parse_alerts_config(data.get("alerts")),
            storage=_parse_storage_config(data.get("storage")),
            api=_parse_api_config(data.get("api")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")


def load_config(config_path: str | None) -> Config:
    """Load and validate configuration from a YAML file.

    When config_path is None, configuration comes from environment
    variables only (UPTIMEWATCH_SITES is then required).

    Args:
        config_path: Path to the YAML configuration file, or None.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    if config_path is None:
        return parse_config({})

    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    return parse_config(data)
