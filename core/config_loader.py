from __future__ import annotations

import json
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.config_defaults import default_config
from core.utils import REPO_ROOT

ENV_PREFIX = "AQ__"
ENV_SEPARATOR = "__"
CONFIG_PATH_ENV = "AQ_CONFIG_TOML"
AGENTS_PATH_ENV = "AQ_AGENTS_TOML"

# Sections whose child keys are user-chosen names and keep their case.
_NAMED_SECTIONS = ("agents",)


def _load_toml(path: Path) -> Dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _parse_env_value(raw: str) -> Any:
    value = (raw or "").strip()
    if value == "":
        return ""
    try:
        return json.loads(value)
    except ValueError:
        return value


def _env_path(env_key: str, prefix: str, separator: str) -> List[str]:
    parts = [p.strip() for p in env_key[len(prefix) :].split(separator) if p.strip()]
    path: List[str] = []
    for idx, part in enumerate(parts):
        if idx == 1 and path and path[0] in _NAMED_SECTIONS:
            # AQ__AGENTS__DeployBot__MODEL -> agents.DeployBot.model
            path.append(part)
        else:
            path.append(part.lower())
    return path


def _set_path(cfg: Dict[str, Any], path: List[str], value: Any) -> None:
    cursor = cfg
    for segment in path[:-1]:
        node = cursor.get(segment)
        if not isinstance(node, dict):
            node = {}
            cursor[segment] = node
        cursor = node
    cursor[path[-1]] = value


def apply_env_overrides(
    cfg: Dict[str, Any],
    *,
    prefix: str = ENV_PREFIX,
    separator: str = ENV_SEPARATOR,
) -> Dict[str, Any]:
    """Apply ``AQ__SECTION__KEY=<json-or-string>`` variables onto ``cfg`` in place."""
    for env_key, env_val in sorted(os.environ.items()):
        if not env_key.startswith(prefix):
            continue
        path = _env_path(env_key, prefix, separator)
        if path:
            _set_path(cfg, path, _parse_env_value(env_val))
    return cfg


def apply_legacy_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        cfg.setdefault("queue", {})["postgres_dsn"] = database_url
    nats_servers = os.environ.get("NATS_SERVERS")
    if nats_servers:
        servers = [s.strip() for s in nats_servers.split(",") if s.strip()]
        if servers:
            cfg.setdefault("nats", {})["servers"] = servers
    return cfg


def merge_agents_file(cfg: Dict[str, Any], path: Optional[Path]) -> Dict[str, Any]:
    """Merge a TOML file of ``[agent-name]`` tables into ``cfg["agents"]``.

    Agents defined inline in the main config win over the file.
    """
    if path is None or not path.exists():
        return cfg
    agents = cfg.get("agents")
    if not isinstance(agents, dict):
        agents = {}
        cfg["agents"] = agents
    for name, spec in _load_toml(path).items():
        if not isinstance(spec, dict):
            raise ValueError(f"agent {name!r} in {path} must be a table")
        agents.setdefault(name, spec)
    return cfg


def apply_defaults(cfg: Dict[str, Any], defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    def _deep_apply(target: Dict[str, Any], src: Dict[str, Any]) -> None:
        for key, value in (src or {}).items():
            if key not in target or target[key] is None:
                if isinstance(value, dict):
                    target[key] = {}
                    _deep_apply(target[key], value)
                else:
                    target[key] = value
                continue
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                _deep_apply(target[key], value)

    _deep_apply(cfg, defaults or {})
    return cfg


def _resolve_agents_path(cfg: Dict[str, Any], cfg_path: Path) -> Optional[Path]:
    raw = os.environ.get(AGENTS_PATH_ENV) or (cfg.get("dispatcher") or {}).get("agents_file")
    if not raw:
        return None
    path = Path(raw)
    return path if path.is_absolute() else cfg_path.parent / path


def _load_raw_config(
    path: Optional[Path] = None,
    *,
    env_prefix: str = ENV_PREFIX,
    env_separator: str = ENV_SEPARATOR,
) -> Dict[str, Any]:
    cfg: Dict[str, Any] = {}
    cfg_path = path or Path(os.environ.get(CONFIG_PATH_ENV) or (REPO_ROOT / "config.toml"))
    if cfg_path.exists():
        cfg = _load_toml(cfg_path)

    merge_agents_file(cfg, _resolve_agents_path(cfg, cfg_path))
    apply_legacy_env_overrides(cfg)
    apply_env_overrides(cfg, prefix=env_prefix, separator=env_separator)
    apply_defaults(cfg, default_config())
    return cfg
