"""Controller settings loaded from a YAML file."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_PATH = Path("/config/config.yaml")


@dataclass
class ControllerSettings:
    """Process-wide knobs for the reconcile loop."""
    namespace: str = ""
    workers: int = 4
    requeue_delay_seconds: float = 10.0
    watch_timeout_seconds: int = 300
    exec_timeout_seconds: float = 300.0
    cluster_domain: str = "cluster.local"
    log_level: str = "INFO"
    component: str = "pgbackrest-reconciler"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ControllerSettings":
        settings = cls(
            namespace=data.get("namespace") or "",
            workers=int(data.get("workers", 4)),
            requeue_delay_seconds=float(data.get("requeueDelaySeconds", 10)),
            watch_timeout_seconds=int(data.get("watchTimeoutSeconds", 300)),
            exec_timeout_seconds=float(data.get("execTimeoutSeconds", 300)),
            cluster_domain=data.get("clusterDomain", "cluster.local"),
            log_level=str(data.get("logLevel", "INFO")).upper(),
            component=data.get("component", "pgbackrest-reconciler"),
        )
        env_level = os.getenv("LOG_LEVEL")
        if env_level:
            settings.log_level = env_level.upper()
        env_namespace = os.getenv("WATCH_NAMESPACE")
        if env_namespace is not None:
            settings.namespace = env_namespace
        return settings


def resolve_config_path(cli_path: str | None) -> tuple[Path, bool]:
    """Resolve the config file path from CLI, env, or default.

    Returns:
        Tuple of (path, whether the path was named explicitly)
    """
    if cli_path:
        return Path(cli_path), True
    env_path = os.getenv("APP_CONFIG")
    if env_path:
        return Path(env_path), True
    return DEFAULT_CONFIG_PATH, False


def load_settings(cli_path: str | None) -> ControllerSettings:
    """Load settings, exiting with status 2 on an unusable config file.

    A missing default config file is not an error; defaults apply.
    """
    path, explicit = resolve_config_path(cli_path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except FileNotFoundError:
        if not explicit:
            return ControllerSettings.from_dict({})
        print(f"Config file not found: {path}", file=sys.stderr)
        sys.exit(2)
    except Exception as exc:
        print(f"Failed to read config {path}: {exc}", file=sys.stderr)
        sys.exit(2)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        print("Config root must be a mapping", file=sys.stderr)
        sys.exit(2)
    return ControllerSettings.from_dict(data)
