"""YAML configuration loader.

Loads a single YAML file on top of the EngineConfig defaults. When no
YAML is provided, env vars (EngineConfig.from_env) work exactly as before.

Example YAML:
    agent:
      executable: gemini
      model: gemini-2.5-flash
      json_mode: false
      confirm_actions: true
      max_concurrency: 4

    timeouts:
      process_timeout_seconds: 60
      operation_timeout_seconds: 300
      approval_timeout_seconds: 120

    classifier:
      deny_list: [delete, remove, "rm ", drop, sudo]
      action_markers: ["Tool:", "Action:"]

    credentials:
      api_key_env: GEMINI_API_KEY
      adc_path: ~/.config/gcloud/application_default_credentials.json

    retry:
      upstream_max_retries: 2
      rate_limit_backoff_base_seconds: 5

    logging:
      log_level: DEBUG
      log_file: ~/.agentbridge/agentbridge.log
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    raise ValueError(f"expected a boolean, got {value!r}")


def _as_str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ValueError(f"expected a list, got {value!r}")
    return [str(v) for v in value]


def _as_str_map(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        raise ValueError(f"expected a mapping, got {value!r}")
    return {str(k): str(v) for k, v in value.items()}


def _as_optional_path(value: Any) -> str | None:
    if value in (None, ""):
        return None
    return os.path.expanduser(str(value))


def _as_optional_str(value: Any) -> str | None:
    if value in (None, ""):
        return None
    return str(value)


SECTIONS: dict[str, dict[str, Callable[[Any], Any]]] = {
    "agent": {
        "executable": str,
        "model": _as_optional_str,
        "json_mode": _as_bool,
        "interactive": _as_bool,
        "confirm_actions": _as_bool,
        "cwd": _as_optional_path,
        "max_concurrency": int,
    },
    "timeouts": {
        "process_timeout_seconds": float,
        "operation_timeout_seconds": float,
        "approval_timeout_seconds": float,
        "terminate_grace_seconds": float,
    },
    "classifier": {
        "deny_list": _as_str_list,
        "reasoning_markers": _as_str_list,
        "action_markers": _as_str_list,
        "confirmation_markers": _as_str_list,
        "max_json_buffer_bytes": int,
        "prompt_idle_seconds": float,
        "approval_response": str,
        "denial_response": str,
    },
    "credentials": {
        "credential_scopes": _as_str_list,
        "api_key_env": str,
        "credential_ttl_seconds": float,
        "adc_path": _as_optional_path,
        "session_timeout_seconds": float,
        "api_key_timeout_seconds": float,
        "adc_timeout_seconds": float,
        "consent_timeout_seconds": float,
        "credential_env_vars": _as_str_map,
        "correlation_env_var": str,
        "mode_env_var": str,
    },
    "retry": {
        "timeout_retries": int,
        "reauth_attempts": int,
        "upstream_max_retries": int,
        "upstream_backoff_base_seconds": float,
        "upstream_backoff_max_seconds": float,
        "rate_limit_max_retries": int,
        "rate_limit_backoff_base_seconds": float,
        "rate_limit_backoff_max_seconds": float,
    },
    "logging": {
        "log_level": lambda v: str(v).upper(),
        "log_file": _as_optional_path,
        "trace_file": _as_optional_path,
    },
}


def config_from_mapping(
    raw: dict[str, Any], base: EngineConfig | None = None,
) -> EngineConfig:
    """Apply a parsed YAML mapping on top of *base* (defaults if None)."""
    config = base or EngineConfig()
    for section_name, section in raw.items():
        converters = SECTIONS.get(section_name)
        if converters is None:
            logger.warning("yaml_config: unknown section '%s' ignored", section_name)
            continue
        if section is None:
            continue
        if not isinstance(section, dict):
            raise ValueError(f"section '{section_name}' must be a mapping")
        for key, value in section.items():
            convert = converters.get(key)
            if convert is None:
                logger.warning(
                    "yaml_config: unknown key '%s.%s' ignored", section_name, key,
                )
                continue
            try:
                setattr(config, key, convert(value))
            except (TypeError, ValueError) as exc:
                raise ValueError(
                    f"invalid value for '{section_name}.{key}': {exc}"
                ) from exc
    config.validate()
    return config


def load_yaml_config(
    path: str | Path, base: EngineConfig | None = None,
) -> EngineConfig:
    """Load and parse a YAML config file into an EngineConfig."""
    path = Path(path).expanduser()
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s", path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )
    return config_from_mapping(raw, base)
