import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from dcaflow.application.config_models import DcaflowConfig


class ConfigLoadError(Exception):
    def __init__(self, message: str, *, path: Path | None = None, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path
        self.cause = cause

    def __str__(self) -> str:
        if self.path is None:
            return self.message
        return f"{self.message}: {self.path}"


# Environment variable -> config key path.
ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "DCAFLOW_TICK_INTERVAL": ("scheduler", "tick_interval"),
    "DCAFLOW_IDLE_LOG_THRESHOLD": ("scheduler", "idle_log_threshold"),
    "DCAFLOW_SUBMISSION_TIMEOUT": ("scheduler", "submission_timeout"),
    "DCAFLOW_EVENT_HISTORY_SIZE": ("events", "max_history"),
    "DCAFLOW_EVENT_CLEANUP_INTERVAL": ("events", "cleanup_interval"),
    "DCAFLOW_ARTIFACT_CLEANUP_INTERVAL": ("artifacts", "cleanup_interval"),
    "DCAFLOW_SESSION_TIMEOUT": ("sessions", "timeout"),
    "DCAFLOW_SESSION_CLEANUP_INTERVAL": ("sessions", "cleanup_interval"),
    "DCAFLOW_METRICS_HISTORY_SIZE": ("metrics", "max_history"),
    "DCAFLOW_METRICS_INTERVAL": ("metrics", "collection_interval"),
    "DCAFLOW_MAX_ALERTS": ("metrics", "max_alerts"),
    "DCAFLOW_MIN_LEGS": ("position_sizing", "min_legs"),
    "DCAFLOW_MAX_LEGS": ("position_sizing", "max_legs"),
    "DCAFLOW_MAX_SINGLE_LEG_PERCENT": ("position_sizing", "max_single_leg_percent"),
    "DCAFLOW_CONSERVATIVE_MAX_RISK": ("risk", "conservative", "max_risk_score"),
    "DCAFLOW_CONSERVATIVE_WARNING_RISK": ("risk", "conservative", "warning_threshold"),
    "DCAFLOW_MODERATE_MAX_RISK": ("risk", "moderate", "max_risk_score"),
    "DCAFLOW_MODERATE_WARNING_RISK": ("risk", "moderate", "warning_threshold"),
    "DCAFLOW_AGGRESSIVE_MAX_RISK": ("risk", "aggressive", "max_risk_score"),
    "DCAFLOW_AGGRESSIVE_WARNING_RISK": ("risk", "aggressive", "warning_threshold"),
    "DCAFLOW_API_TIMEOUT": ("api", "timeout"),
    "DCAFLOW_API_RETRIES": ("api", "retries"),
    "DCAFLOW_AGENT_ADDRESS": ("providers", "options", "submitter", "agent_address"),
}


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """
    Deep-merge mapping keys. For non-dict values, overlay wins.
    """
    merged: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k] = _deep_merge(merged[k], v)  # type: ignore[arg-type]
        else:
            merged[k] = v
    return merged


def _load_yaml_mapping(path: Path) -> dict[str, Any]:
    """
    Load YAML file and ensure root is a mapping.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except Exception as e:  # pragma: no cover
        raise ConfigLoadError("Failed to read config file", path=path, cause=e) from e

    try:
        data = yaml.safe_load(raw)
    except Exception as e:
        raise ConfigLoadError("Malformed YAML", path=path, cause=e) from e

    if data is None:
        return {}

    if not isinstance(data, dict):
        raise ConfigLoadError("YAML root must be a mapping", path=path)

    return data


def _env_overlay(environ: Mapping[str, str]) -> dict[str, Any]:
    overlay: dict[str, Any] = {}
    for name, key_path in ENV_OVERRIDES.items():
        value = environ.get(name)
        if value is None or value == "":
            continue
        node = overlay
        for key in key_path[:-1]:
            node = node.setdefault(key, {})
        node[key_path[-1]] = value
    return overlay


def load_config(
    *,
    project_root: Path | None = None,
    user_home: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> DcaflowConfig:
    """
    Load and merge config with precedence (highest wins):
    environment > project > user > defaults.

    Files:
      - user:    user_home/.dcaflow/config.yml
      - project: project_root/.dcaflow/config.yml

    Raises:
        ConfigLoadError: If a file is malformed or the merged config is invalid
    """
    project_root = project_root or Path.cwd()
    user_home = user_home or Path.home()
    environ = os.environ if environ is None else environ

    cfg: dict[str, Any] = {}
    cfg = _deep_merge(cfg, _load_yaml_mapping(user_home / ".dcaflow" / "config.yml"))
    project_path = project_root / ".dcaflow" / "config.yml"
    cfg = _deep_merge(cfg, _load_yaml_mapping(project_path))
    cfg = _deep_merge(cfg, _env_overlay(environ))

    try:
        return DcaflowConfig.model_validate(cfg)
    except ValidationError as e:
        raise ConfigLoadError(f"Invalid configuration ({e.error_count()} errors)", cause=e) from e
