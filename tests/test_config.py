from __future__ import annotations

import json
from pathlib import Path

import pytest

from astgrep_bridge import config as config_module
from astgrep_bridge.config import coerce_bool, load_config


def test_defaults_without_environment() -> None:
    config = load_config({})

    assert config["limits"] == {"max_file_size": 10 * 1024 * 1024, "max_files": 100000}
    assert config["timeouts"]["apply_ms"] == 60000
    assert config["workspace"]["root"] is None
    assert all(config["enabled"].values())


def test_environment_overrides() -> None:
    config = load_config({
        "WORKSPACE_ROOT": "/repo",
        "AST_GREP_BINARY_PATH": "/opt/sg",
        "MAX_FILE_SIZE": "2048",
        "MAX_FILES": "not-a-number",
        "AST_GREP_TIMEOUT_MS": "5000",
    })

    assert config["workspace"]["root"] == "/repo"
    assert config["binary"]["path"] == "/opt/sg"
    assert config["limits"]["max_file_size"] == 2048
    assert config["limits"]["max_files"] == 100000
    assert set(config["timeouts"].values()) == {5000}


def test_overrides_do_not_leak_into_defaults() -> None:
    load_config({"WORKSPACE_ROOT": "/repo"})

    assert load_config({})["workspace"]["root"] is None


def test_config_file_is_merged(tmp_path: Path) -> None:
    (tmp_path / "astgrep_bridge.json").write_text(
        json.dumps({"enabled": {"ast_grep_replace": False}, "limits": {"max_files": 10}}),
        encoding="utf-8"
    )

    config = load_config({"ASTGREP_BRIDGE_CONFIG": str(tmp_path)})

    assert config["enabled"]["ast_grep_replace"] is False
    assert config["enabled"]["ast_grep_search"] is True
    assert config["limits"]["max_files"] == 10


def test_config_file_must_be_object(tmp_path: Path) -> None:
    path = tmp_path / "bad.json"
    path.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(ValueError):
        load_config({"ASTGREP_BRIDGE_CONFIG": str(path)})


def test_cached_config_and_tool_switches(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config_module, "_CONFIG", {"enabled": {"ast_grep_scan": False}})

    assert config_module.get_config() == {"enabled": {"ast_grep_scan": False}}
    assert config_module.is_tool_enabled("ast_grep_scan") is False
    assert config_module.is_tool_enabled("unknown_tool") is False


def test_coerce_bool() -> None:
    assert coerce_bool("yes", False) is True
    assert coerce_bool("off", True) is False
    assert coerce_bool("maybe", True) is True
