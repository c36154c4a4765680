"""TOML-based controller manager configuration.

Loads ~/.crunchplane/defaults.toml (global) and crunchplane.toml (project),
merges them, and builds a ``ManagerConfig``.

Example crunchplane.toml:

    [manager]
    machine_concurrency = 4
    watch_filter = "team-a"
    credentials_secret = "datacrunch-credentials"

    [logging]
    level = "DEBUG"
    file = "crunchplane.log"
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from crunchplane.core.exceptions import ConfigurationError
from crunchplane.observability.logging import LogConfig, level_number

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".crunchplane" / "defaults.toml"
PROJECT_CONFIG_NAME = "crunchplane.toml"

DEFAULT_CREDENTIALS_SECRET = "datacrunch-credentials"


@dataclass(frozen=True, slots=True)
class ManagerConfig:
    """Settings for the controller manager and its reconcilers.

    Attributes:
        requeue_delay: Seconds between polls of instances that are not ready yet.
        cluster_concurrency: Maximum concurrent DataCrunchCluster reconciles.
        machine_concurrency: Maximum concurrent DataCrunchMachine reconciles.
        sync_period: Seconds between full resyncs of every object.
        reconcile_timeout: Deadline for a single reconcile invocation.
        backoff_base: First retry delay after a failed reconcile.
        backoff_max: Upper bound of the retry delay.
        watch_filter: When set, only objects labelled
            ``cluster.x-k8s.io/watch-filter=<value>`` are reconciled.
        credentials_secret: Secret holding DataCrunch credentials, used when
            a DataCrunchCluster does not name one.
        request_timeout: Per-request timeout of the DataCrunch client.
        log: Logging configuration.
    """

    requeue_delay: float = 30.0
    cluster_concurrency: int = 10
    machine_concurrency: int = 10
    sync_period: float = 600.0
    reconcile_timeout: float = 120.0
    backoff_base: float = 1.0
    backoff_max: float = 300.0
    watch_filter: str | None = None
    credentials_secret: str = DEFAULT_CREDENTIALS_SECRET
    request_timeout: float = 30.0
    log: LogConfig = field(default_factory=LogConfig)

    def __post_init__(self) -> None:
        for name in ("cluster_concurrency", "machine_concurrency"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        for name in ("requeue_delay", "sync_period", "reconcile_timeout", "backoff_base", "request_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.backoff_max < self.backoff_base:
            raise ConfigurationError("backoff_max must not be smaller than backoff_base")
        if not self.credentials_secret:
            raise ConfigurationError("credentials_secret must not be empty")


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("manager", {})
    merged.setdefault("logging", {})
    return merged


def _check_keys(section: str, raw: RawConfig, cls: type) -> None:
    valid = {f.name for f in fields(cls)} - {"log"}
    unknown = sorted(set(raw) - valid)
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in [{section}]: {', '.join(unknown)}. "
            f"Valid: {', '.join(sorted(valid))}"
        )


def build_config(raw: RawConfig) -> ManagerConfig:
    """Build a ``ManagerConfig`` from merged raw TOML data."""
    unknown = sorted(set(raw) - {"manager", "logging"})
    if unknown:
        raise ConfigurationError(f"Unknown section(s): {', '.join(unknown)}")

    raw_manager = dict(raw.get("manager", {}))
    raw_logging = dict(raw.get("logging", {}))
    _check_keys("manager", raw_manager, ManagerConfig)
    _check_keys("logging", raw_logging, LogConfig)

    if "level" in raw_logging:
        try:
            level_number(raw_logging["level"])
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        raw_logging["level"] = raw_logging["level"].upper()

    return ManagerConfig(log=LogConfig(**raw_logging), **raw_manager)


def resolve_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> ManagerConfig:
    return build_config(load_config(project_dir=project_dir, global_path=global_path))


__all__ = [
    "DEFAULT_CREDENTIALS_SECRET",
    "GLOBAL_CONFIG_PATH",
    "PROJECT_CONFIG_NAME",
    "ManagerConfig",
    "build_config",
    "load_config",
    "resolve_config",
]
