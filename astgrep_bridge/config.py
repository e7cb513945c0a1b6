import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


_DEFAULT_CONFIG: Dict[str, Any] = {
    "enabled": {
        "ast_grep_search": True,
        "ast_grep_replace": True,
        "ast_grep_scan": True,
        "ast_grep_build_rule": True
    },
    "workspace": {
        "root": None,
        "max_depth": 10,
        "max_ancestor_hops": 5
    },
    "binary": {
        "path": None
    },
    "limits": {
        "max_file_size": 10 * 1024 * 1024,
        "max_files": 100000
    },
    "timeouts": {
        "search_ms": 30000,
        "replace_ms": 30000,
        "apply_ms": 60000,
        "scan_ms": 60000
    },
    "backups": {
        "dir": ".ast-grep-backups"
    },
    "rules": {
        "dir": ".tree-ast-grep/rules"
    }
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def coerce_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def coerce_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "y", "on"):
        return True
    if text in ("0", "false", "no", "n", "off"):
        return False
    return default


def _normalize_config_path(path: Path) -> Path:
    if path.exists() and path.is_file():
        return path
    if path.suffix:
        return path
    return path / "astgrep_bridge.json"


def _get_config_file_path(environ: Mapping[str, str]) -> Optional[Path]:
    env_path = environ.get("ASTGREP_BRIDGE_CONFIG")
    if env_path:
        return _normalize_config_path(Path(env_path).expanduser())
    return None


def _load_config_file(environ: Mapping[str, str]) -> Dict[str, Any]:
    path = _get_config_file_path(environ)
    if path and path.exists():
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Config file must hold a JSON object: {path}")
        return data
    return {}


def load_config(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Build the effective configuration.

    Defaults are merged with the optional JSON config file, then with the
    environment overrides (WORKSPACE_ROOT, AST_GREP_BINARY_PATH,
    MAX_FILE_SIZE, MAX_FILES, AST_GREP_TIMEOUT_MS).
    """
    env = os.environ if environ is None else environ
    config = _deep_merge(_DEFAULT_CONFIG, _load_config_file(env))

    workspace = config.setdefault("workspace", {})
    root_override = env.get("WORKSPACE_ROOT")
    if root_override:
        workspace["root"] = root_override
    workspace["max_depth"] = coerce_int(workspace.get("max_depth"), 10)
    workspace["max_ancestor_hops"] = coerce_int(workspace.get("max_ancestor_hops"), 5)

    binary = config.setdefault("binary", {})
    binary_override = env.get("AST_GREP_BINARY_PATH")
    if binary_override:
        binary["path"] = binary_override

    limits = config.setdefault("limits", {})
    limits["max_file_size"] = coerce_int(
        env.get("MAX_FILE_SIZE", limits.get("max_file_size")),
        _DEFAULT_CONFIG["limits"]["max_file_size"]
    )
    limits["max_files"] = coerce_int(
        env.get("MAX_FILES", limits.get("max_files")),
        _DEFAULT_CONFIG["limits"]["max_files"]
    )

    timeouts = config.setdefault("timeouts", {})
    timeout_override = env.get("AST_GREP_TIMEOUT_MS")
    for key, default in _DEFAULT_CONFIG["timeouts"].items():
        raw = timeout_override if timeout_override else timeouts.get(key)
        timeouts[key] = coerce_int(raw, default)

    return config


_CONFIG: Optional[Dict[str, Any]] = None


def get_config() -> Dict[str, Any]:
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG


def reset_config() -> None:
    """Drop the cached configuration (mainly for testing)"""
    global _CONFIG
    _CONFIG = None


def is_tool_enabled(name: str) -> bool:
    enabled = get_config().get("enabled", {})
    return bool(enabled.get(name, False))
