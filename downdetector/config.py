from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml

from downdetector.errors import ConfigError


LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECS = 30
DEFAULT_CHECK_INTERVAL_SECS = 300
DEFAULT_NOTIFY_TIMEOUT_SECS = 10
DEFAULT_QUEUE_SIZE = 100
DEFAULT_DRAIN_TIMEOUT_SECS = 5
MAX_CHECK_INTERVAL_SECS = 86400

ALLOWED_METHODS = ("GET", "HEAD")

DEFAULT_CONFIG_YAML = """
# downdetector configuration
config:
  timeout_secs: 30
  check_interval_secs: 300
  # Discord webhook to notify on DOWN/RECOVERED transitions (or set WEBHOOK_URL).
  webhook_url: null
  # Discord user id to mention in notifications (or set DISCORD_ID).
  discord_id: null

sites:
  urls:
    - https://www.google.com
""".lstrip()


@dataclass(frozen=True)
class MonitorTarget:
    url: str
    check_interval_seconds: float = DEFAULT_CHECK_INTERVAL_SECS
    timeout_seconds: float = DEFAULT_TIMEOUT_SECS
    method: str = "GET"


@dataclass(frozen=True)
class NotificationConfig:
    webhook_url: str | None = None
    mention_id: int | None = None
    timeout_seconds: float = DEFAULT_NOTIFY_TIMEOUT_SECS
    queue_size: int = DEFAULT_QUEUE_SIZE
    drain_timeout_seconds: float = DEFAULT_DRAIN_TIMEOUT_SECS


@dataclass(frozen=True)
class MonitorConfig:
    targets: tuple[MonitorTarget, ...]
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    down_after_failures: int = 1
    up_after_successes: int = 1


def default_config_path() -> Path:
    base = os.getenv("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "downdetector" / "config.yaml"


def find_config(path: Path | None = None) -> Path:
    """
    Resolve the config file to load.

    An explicit path must exist. Without one, the per-user default location is
    used and seeded with a starter config the first time.
    """
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return path

    config_path = default_config_path()
    if config_path.exists():
        return config_path

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
    LOGGER.warning("No config found; wrote default config to %s", config_path)
    return config_path


def load_config(path: Path | None = None) -> MonitorConfig:
    config_path = find_config(path)
    with open(config_path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Config YAML must be a mapping")
    return parse_config(data, env=os.environ)


def parse_config(data: dict[str, Any], *, env: Any = None) -> MonitorConfig:
    env = env if env is not None else {}
    options = data.get("config") or {}
    if not isinstance(options, dict):
        raise ConfigError("'config' must be a mapping")
    sites = data.get("sites") or {}
    if not isinstance(sites, dict):
        raise ConfigError("'sites' must be a mapping")

    timeout_secs = _validate_timeout(options.get("timeout_secs", DEFAULT_TIMEOUT_SECS))
    interval_secs = _validate_check_interval(options.get("check_interval_secs", DEFAULT_CHECK_INTERVAL_SECS))

    notification = NotificationConfig(
        webhook_url=_validate_webhook_url(env.get("WEBHOOK_URL") or options.get("webhook_url")),
        mention_id=_resolve_discord_id(env.get("DISCORD_ID"), options.get("discord_id")),
        timeout_seconds=_validate_timeout(
            options.get("notify_timeout_secs", DEFAULT_NOTIFY_TIMEOUT_SECS), field="notify_timeout_secs"
        ),
        queue_size=_positive_int(options.get("queue_size", DEFAULT_QUEUE_SIZE), field="queue_size"),
        drain_timeout_seconds=_validate_timeout(
            options.get("drain_timeout_secs", DEFAULT_DRAIN_TIMEOUT_SECS), field="drain_timeout_secs"
        ),
    )

    targets = _normalize_site_entries(
        sites.get("urls") or [],
        default_timeout=timeout_secs,
        default_interval=interval_secs,
    )

    return MonitorConfig(
        targets=tuple(targets),
        notification=notification,
        down_after_failures=_positive_int(options.get("down_after_failures", 1), field="down_after_failures"),
        up_after_successes=_positive_int(options.get("up_after_successes", 1), field="up_after_successes"),
    )


def _validate_timeout(value: Any, *, field: str = "timeout_secs") -> float:
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{field} must be a number, got {value!r}") from None
    if timeout <= 0:
        raise ConfigError(f"{field} must be > 0")
    return timeout


def _validate_check_interval(value: Any, *, field: str = "check_interval_secs") -> float:
    try:
        interval = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{field} must be a number, got {value!r}") from None
    if not 1 <= interval < MAX_CHECK_INTERVAL_SECS:
        raise ConfigError(f"{field} must be >= 1 and < {MAX_CHECK_INTERVAL_SECS}")
    return interval


def _positive_int(value: Any, *, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{field} must be a positive integer, got {value!r}")
    return value


def _validate_webhook_url(raw_url: Any) -> str | None:
    if raw_url is None:
        return None
    webhook_url = str(raw_url).strip()
    if not webhook_url:
        return None

    parts = urlsplit(webhook_url)
    if parts.scheme != "https" or parts.hostname != "discord.com" or not parts.path.startswith("/api/webhooks/"):
        raise ConfigError(
            "Webhook URL must be a valid Discord webhook starting with https://discord.com/api/webhooks/"
        )
    return webhook_url


def _resolve_discord_id(env_value: Any, raw_id: Any) -> int | None:
    if env_value is not None and str(env_value).strip():
        try:
            return int(str(env_value).strip())
        except ValueError:
            LOGGER.warning("Ignoring non-integer DISCORD_ID from environment")
    if raw_id is None:
        return None
    if isinstance(raw_id, bool):
        raise ConfigError("discord_id must be an integer")
    try:
        return int(raw_id)
    except (TypeError, ValueError):
        raise ConfigError(f"discord_id must be an integer, got {raw_id!r}") from None


def _validate_site_url(url: Any, *, where: str) -> str:
    s = str(url or "").strip()
    if not s:
        raise ConfigError(f"{where} is empty")
    parts = urlsplit(s)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ConfigError(f"Invalid URL: {s}")
    return s


def _normalize_site_entries(
    urls_cfg: Any,
    *,
    default_timeout: float,
    default_interval: float,
) -> list[MonitorTarget]:
    if not isinstance(urls_cfg, list):
        raise ConfigError("sites.urls must be a list")

    targets: list[MonitorTarget] = []
    for idx, entry in enumerate(urls_cfg):
        where = f"sites.urls[{idx}]"
        if isinstance(entry, str):
            targets.append(
                MonitorTarget(
                    url=_validate_site_url(entry, where=where),
                    check_interval_seconds=default_interval,
                    timeout_seconds=default_timeout,
                )
            )
            continue

        if not isinstance(entry, dict):
            raise ConfigError(f"{where} must be a string or mapping, got {type(entry).__name__}")

        method = str(entry.get("method") or "GET").strip().upper()
        if method not in ALLOWED_METHODS:
            raise ConfigError(f"{where}.method must be one of {ALLOWED_METHODS}")

        targets.append(
            MonitorTarget(
                url=_validate_site_url(entry.get("url"), where=f"{where}.url"),
                check_interval_seconds=_validate_check_interval(
                    entry.get("check_interval_secs", default_interval), field=f"{where}.check_interval_secs"
                ),
                timeout_seconds=_validate_timeout(
                    entry.get("timeout_secs", default_timeout), field=f"{where}.timeout_secs"
                ),
                method=method,
            )
        )

    seen: set[str] = set()
    for target in targets:
        if target.url in seen:
            raise ConfigError(f"Duplicate site entry: {target.url}")
        seen.add(target.url)

    return targets
