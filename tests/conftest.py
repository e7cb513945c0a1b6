"""Shared fixtures: a small project tree and a fake engine runner."""
from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional, Tuple

import pytest

from astgrep_bridge.models import ExecutionOptions, ExecutionResult
from astgrep_bridge.pipeline import RequestPipeline
from astgrep_bridge.workspace import PathSandbox


class FakeRunner:
    """Stands in for ProcessRunner; records every invocation."""

    def __init__(self, stdout: str = "", stderr: str = "", returncode: int = 0, error: Optional[Exception] = None):
        self.result = ExecutionResult(stdout=stdout, stderr=stderr, returncode=returncode, duration_ms=7)
        self.error = error
        self.calls: List[Tuple[str, List[str], ExecutionOptions]] = []
        self.on_call = None

    async def run(self, executable: str, args: Any, options: ExecutionOptions) -> ExecutionResult:
        self.calls.append((executable, list(args), options))
        if self.on_call is not None:
            self.on_call(executable, list(args), options)
        if self.error is not None:
            raise self.error
        return self.result


class CountingResolver:
    def __init__(self, path: str = "/opt/bin/ast-grep"):
        self.path = path
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        return self.path


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "src" / "nested").mkdir(parents=True)
    (root / "package.json").write_text('{"name": "demo"}\n', encoding="utf-8")
    (root / "src" / "app.js").write_text(
        "const a = 1;\nconsole.log(a);\nvar x = 5;\nconsole.log('done');\n",
        encoding="utf-8"
    )
    (root / "src" / "nested" / "util.js").write_text("var y = 2;\n", encoding="utf-8")
    return root


@pytest.fixture()
def sandbox(project: Path, tmp_path: Path) -> PathSandbox:
    blocked = [project / ".git", tmp_path / "home" / ".ssh"]
    return PathSandbox(project, blocked_paths=[path.resolve() for path in blocked])


@pytest.fixture()
def make_pipeline(sandbox: PathSandbox):
    def factory(runner: FakeRunner, resolver: Optional[CountingResolver] = None) -> RequestPipeline:
        return RequestPipeline(sandbox, runner=runner, resolve_executable=resolver or CountingResolver())

    return factory
