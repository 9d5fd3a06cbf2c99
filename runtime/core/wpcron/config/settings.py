"""Configuration loader for the cron runner.

Rules:
- Fail closed when config is missing or invalid.
- The raw document is checked against the bundled JSON Schema before any
  dataclass is built; defaults below apply only to keys the file omits.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from wpcron.config.schema_validator import SchemaValidator
from wpcron.errors import RunnerConfigError

DEFAULT_CONFIG_DIR = Path("/etc/wp-cron-runner")

_DENIED_USERS = (
    "root", "bin", "daemon", "sys", "sync", "games", "man", "lp", "mail", "news", "uucp",
    "proxy", "backup", "list", "irc", "gnats", "nobody", "messagebus", "syslog",
)
_DENIED_USER_PREFIXES = ("_", "systemd-")
_DISABLED_SHELLS = ("/sbin/nologin", "/bin/false", "/usr/sbin/nologin")
_KNOWN_SHELLS = ("/bin/bash", "/bin/sh", "/bin/dash", "/usr/bin/fish", "/bin/zsh")


@dataclass(frozen=True)
class RunnerSection:
    run_as: str
    registry_path: Path
    trusted_owner: str
    max_entries: int


@dataclass(frozen=True)
class SecurityConfig:
    allowed_roots: tuple[str, ...]
    denied_users: frozenset[str]
    denied_user_prefixes: tuple[str, ...]
    disabled_shells: frozenset[str]
    known_shells: frozenset[str]
    config_marker: str
    direct_entry: str


@dataclass(frozen=True)
class SchedulerConfig:
    max_parallel: int
    job_start_delay_seconds: float
    job_timeout_seconds: float
    throttle_backoff_seconds: float
    kill_grace_seconds: float


@dataclass(frozen=True)
class MonitorConfig:
    cpu_threshold_percent: float
    load_factor: float
    cpu_sample_seconds: float


@dataclass(frozen=True)
class HandlerConfig:
    sudo_bin: str
    php_bin: str
    wp_cli_bin: str


@dataclass(frozen=True)
class AggregatorConfig:
    alert_blocked_ratio: float


@dataclass(frozen=True)
class RunnerConfig:
    runner: RunnerSection
    security: SecurityConfig
    scheduler: SchedulerConfig
    monitor: MonitorConfig
    handler: HandlerConfig
    aggregator: AggregatorConfig
    config_dir: Path


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise RunnerConfigError(f"Missing required config file: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise RunnerConfigError(f"Failed to parse YAML: {path}: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise RunnerConfigError(f"Invalid YAML root object in config file: {path}")
    return data


def _resolve_path(base_dir: Path, raw: str) -> Path:
    p = Path(raw)
    if p.is_absolute():
        return p
    return (base_dir / p).resolve()


def build_runner_config(raw: dict[str, Any], *, config_dir: Path) -> RunnerConfig:
    """Build a RunnerConfig from an already schema-checked document."""
    runner_raw = raw.get("runner", {})
    security_raw = raw.get("security", {})
    scheduler_raw = raw.get("scheduler", {})
    monitor_raw = raw.get("monitor", {})
    handler_raw = raw.get("handler", {})
    aggregator_raw = raw.get("aggregator", {})

    runner = RunnerSection(
        run_as=str(runner_raw.get("run_as", "root")),
        registry_path=_resolve_path(config_dir, str(runner_raw.get("registry_path", "/etc/wordpress-sites.conf"))),
        trusted_owner=str(runner_raw.get("trusted_owner", "root")),
        max_entries=int(runner_raw.get("max_entries", 1000)),
    )

    security = SecurityConfig(
        allowed_roots=tuple(str(r).rstrip("/") or "/" for r in security_raw.get("allowed_roots", ["/var/www", "/home"])),
        denied_users=frozenset(map(str, security_raw.get("denied_users", _DENIED_USERS))),
        denied_user_prefixes=tuple(map(str, security_raw.get("denied_user_prefixes", _DENIED_USER_PREFIXES))),
        disabled_shells=frozenset(map(str, security_raw.get("disabled_shells", _DISABLED_SHELLS))),
        known_shells=frozenset(map(str, security_raw.get("known_shells", _KNOWN_SHELLS))),
        config_marker=str(security_raw.get("config_marker", "wp-config.php")),
        direct_entry=str(security_raw.get("direct_entry", "wp-cron.php")),
    )

    scheduler = SchedulerConfig(
        max_parallel=int(scheduler_raw.get("max_parallel", 5)),
        job_start_delay_seconds=float(scheduler_raw.get("job_start_delay_seconds", 0.5)),
        job_timeout_seconds=float(scheduler_raw.get("job_timeout_seconds", 300)),
        throttle_backoff_seconds=float(scheduler_raw.get("throttle_backoff_seconds", 5)),
        kill_grace_seconds=float(scheduler_raw.get("kill_grace_seconds", 5)),
    )

    monitor = MonitorConfig(
        cpu_threshold_percent=float(monitor_raw.get("cpu_threshold_percent", 80)),
        load_factor=float(monitor_raw.get("load_factor", 2)),
        cpu_sample_seconds=float(monitor_raw.get("cpu_sample_seconds", 0)),
    )

    handler = HandlerConfig(
        sudo_bin=str(handler_raw.get("sudo_bin", "/usr/bin/sudo")),
        php_bin=str(handler_raw.get("php_bin", "/bin/php8.2")),
        wp_cli_bin=str(handler_raw.get("wp_cli_bin", "/usr/local/bin/wp")),
    )

    aggregator = AggregatorConfig(alert_blocked_ratio=float(aggregator_raw.get("alert_blocked_ratio", 0.10)))

    return RunnerConfig(
        runner=runner,
        security=security,
        scheduler=scheduler,
        monitor=monitor,
        handler=handler,
        aggregator=aggregator,
        config_dir=config_dir,
    )


def load_runner_config(runner_config_path: Path, *, schema_validator: SchemaValidator | None = None) -> RunnerConfig:
    cfg_dir = runner_config_path.parent.resolve()
    raw = _load_yaml(runner_config_path)
    validator = schema_validator or SchemaValidator.load_bundled()
    validator.validate("RunnerConfig", raw)
    return build_runner_config(raw, config_dir=cfg_dir)


def default_config_paths() -> tuple[Path, Path]:
    runner_path = os.environ.get("WPCRON_RUNNER_CONFIG") or str(DEFAULT_CONFIG_DIR / "runner.yaml")
    logging_path = os.environ.get("WPCRON_LOGGING_CONFIG") or str(DEFAULT_CONFIG_DIR / "logging.yaml")
    return Path(runner_path), Path(logging_path)
