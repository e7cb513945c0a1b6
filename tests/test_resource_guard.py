from __future__ import annotations

from pathlib import Path

import pytest

from astgrep_bridge.errors import ResourceError
from astgrep_bridge.resource_guard import ResourceGuard


def _populate(base: Path, count: int) -> None:
    base.mkdir(parents=True, exist_ok=True)
    for index in range(count):
        (base / f"file{index}.js").write_text("x\n", encoding="utf-8")


def test_counts_files_and_bytes(project: Path) -> None:
    result = ResourceGuard().check_limits([project / "src"])

    assert result.ok
    assert result.file_count == 2
    assert result.total_bytes > 0
    assert result.errors == []


def test_too_many_files_is_rejected(tmp_path: Path) -> None:
    _populate(tmp_path / "many", 6)
    guard = ResourceGuard(max_files=5)

    result = guard.check_limits([tmp_path / "many"])

    assert not result.ok
    assert "Too many files" in result.errors[0]
    with pytest.raises(ResourceError) as excinfo:
        guard.enforce([tmp_path / "many"])
    assert excinfo.value.kind == "RESOURCE_ERROR"


def test_file_count_at_ceiling_is_allowed(tmp_path: Path) -> None:
    _populate(tmp_path / "exact", 5)

    assert ResourceGuard(max_files=5).enforce([tmp_path / "exact"]).file_count == 5


def test_large_files_only_warn(tmp_path: Path) -> None:
    big = tmp_path / "big.js"
    big.write_text("x" * 2048, encoding="utf-8")

    result = ResourceGuard(max_file_size=1024).check_limits([big])

    assert result.ok
    assert len(result.warnings) == 1
    assert "Large file" in result.warnings[0]


def test_missing_path_is_skipped_with_warning(tmp_path: Path) -> None:
    result = ResourceGuard().check_limits([tmp_path / "missing"])

    assert result.ok
    assert result.file_count == 0
    assert "not accessible" in result.warnings[0]


def test_hidden_and_ignored_directories_are_not_counted(tmp_path: Path) -> None:
    _populate(tmp_path / "src", 2)
    _populate(tmp_path / "node_modules" / "dep", 10)
    _populate(tmp_path / ".cache", 10)

    result = ResourceGuard(max_files=5).check_limits([tmp_path])

    assert result.ok
    assert result.file_count == 2


def test_walk_depth_is_bounded(tmp_path: Path) -> None:
    deep = tmp_path / "a" / "b" / "c"
    _populate(deep, 1)
    (tmp_path / "top.js").write_text("x\n", encoding="utf-8")

    result = ResourceGuard(max_depth=1).check_limits([tmp_path])

    assert result.file_count == 1
