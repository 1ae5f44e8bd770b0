"""YAML configuration loader.

Layers a single YAML file over the env-derived TetherConfig. Keys that
are absent from the file keep their env/default values.

Example YAML:
    engine:
      provider: codex
      working_dir: /srv/projects/app
      max_concurrent_queries: 2
      query_timeout_seconds: 300
      log_level: DEBUG

    thinking:
      keywords: [think, pensa]
      deep_keywords: [ultrathink, think hard]

    safety:
      allowed_paths: [/srv/projects, ~/notes]
      temp_paths: [/tmp/]

    persistence:
      session_file: ~/.tether/session.json
      save_debounce_seconds: 0.5

    mcp_servers:
      ask-user:
        command: python
        args: ["-m", "my_ask_user_server"]
"""
from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import TetherConfig

logger = logging.getLogger(__name__)

# YAML key -> TetherConfig field, per section
_ENGINE_KEYS = {
    "provider": "provider",
    "working_dir": "working_dir",
    "max_concurrent_queries": "max_concurrent_queries",
    "query_timeout_seconds": "query_timeout_seconds",
    "timeout_prompt_wait_seconds": "timeout_prompt_wait_seconds",
    "streaming_throttle_seconds": "streaming_throttle_seconds",
    "claude_cli_path": "claude_cli_path",
    "codex_command": "codex_command",
    "system_prompt": "system_prompt",
    "log_level": "log_level",
}
_THINKING_KEYS = {
    "keywords": "thinking_keywords",
    "deep_keywords": "thinking_deep_keywords",
    "budget": "thinking_budget",
    "deep_budget": "thinking_deep_budget",
}
_SAFETY_KEYS = {
    "allowed_paths": "allowed_paths",
    "temp_paths": "temp_paths",
}
_PERSISTENCE_KEYS = {
    "session_file": "session_file",
    "save_debounce_seconds": "save_debounce_seconds",
}


def _coerce(field_name: str, value: Any, current: Any) -> Any:
    """Coerce a YAML value to the type of the field it overrides."""
    if field_name in {"working_dir", "session_file"} and isinstance(value, str):
        return os.path.expanduser(value)
    if isinstance(current, list):
        if isinstance(value, str):
            value = [v.strip() for v in value.split(",") if v.strip()]
        items = [str(v) for v in (value or [])]
        if field_name.startswith("thinking"):
            items = [v.lower() for v in items]
        if field_name == "allowed_paths":
            items = [os.path.expanduser(v) for v in items]
        return items
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def _apply_section(
    overrides: dict[str, Any],
    base: TetherConfig,
    raw: dict[str, Any],
    section: str,
    mapping: dict[str, str],
) -> None:
    section_raw = raw.get(section) or {}
    if not isinstance(section_raw, dict):
        logger.warning(
            "load_yaml_config: section '%s' is not a mapping, ignoring", section
        )
        return
    for key, value in section_raw.items():
        field_name = mapping.get(key)
        if field_name is None:
            logger.warning(
                "load_yaml_config: unknown key '%s.%s', ignoring", section, key
            )
            continue
        overrides[field_name] = _coerce(
            field_name, value, getattr(base, field_name)
        )


def load_yaml_config(
    path: str | Path,
    base: TetherConfig | None = None,
) -> TetherConfig:
    """Load a YAML config file on top of *base* (default: from_env()).

    Raises FileNotFoundError / yaml.YAMLError so misconfiguration is
    loud at startup.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise yaml.YAMLError(f"{path}: top level must be a mapping")

    base = base or TetherConfig.from_env()
    overrides: dict[str, Any] = {}
    _apply_section(overrides, base, raw, "engine", _ENGINE_KEYS)
    _apply_section(overrides, base, raw, "thinking", _THINKING_KEYS)
    _apply_section(overrides, base, raw, "safety", _SAFETY_KEYS)
    _apply_section(overrides, base, raw, "persistence", _PERSISTENCE_KEYS)

    mcp_servers = raw.get("mcp_servers")
    if isinstance(mcp_servers, dict):
        overrides["mcp_servers"] = {**base.mcp_servers, **mcp_servers}

    logger.info(
        "Parsed YAML config %s, overrides: %s",
        path.name, ", ".join(sorted(overrides)) or "(none)",
    )
    return dataclasses.replace(base, **overrides)
