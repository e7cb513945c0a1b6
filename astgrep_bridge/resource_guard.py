import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, List, Sequence

from .errors import ResourceError


logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024
DEFAULT_MAX_FILES = 100000
DEFAULT_IGNORE_DIRS = frozenset({"node_modules"})


@dataclass
class ResourceCheck:
    ok: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    file_count: int = 0
    total_bytes: int = 0


def _format_size(size: int) -> str:
    return f"{size / (1024 * 1024):.1f} MiB"


class ResourceGuard:
    """
    Estimate the scan cost of a set of paths before the engine is spawned.

    Oversized files only produce warnings; exceeding the file-count ceiling
    rejects the request. Unreadable entries are skipped with a warning.
    """

    def __init__(
        self,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        max_files: int = DEFAULT_MAX_FILES,
        max_depth: int = 10,
        ignore_dir_names: FrozenSet[str] = DEFAULT_IGNORE_DIRS
    ):
        self.max_file_size = max_file_size
        self.max_files = max_files
        self.max_depth = max_depth
        self.ignore_dir_names = ignore_dir_names

    def check_limits(self, paths: Sequence[Path]) -> ResourceCheck:
        result = ResourceCheck(ok=True)
        for raw in paths:
            path = Path(raw)
            try:
                is_file = path.is_file()
                is_dir = not is_file and path.is_dir()
            except OSError as exc:
                result.warnings.append(f"Cannot read {path}: {exc.strerror or exc}")
                continue
            if is_file:
                self._account_file(path, result)
            elif is_dir:
                self._walk(path, result)
            else:
                result.warnings.append(f"Path not accessible, skipped: {path}")
            if result.file_count > self.max_files:
                break

        if result.file_count > self.max_files:
            result.ok = False
            result.errors.append(
                f"Too many files to scan: more than {self.max_files} files under the requested paths. "
                "Use more specific paths or include globs."
            )
        return result

    def enforce(self, paths: Sequence[Path]) -> ResourceCheck:
        result = self.check_limits(paths)
        if not result.ok:
            raise ResourceError(result.errors[0], details=result.errors + result.warnings)
        return result

    def _walk(self, base: Path, result: ResourceCheck) -> None:
        def on_error(exc: OSError) -> None:
            result.warnings.append(f"Cannot read {exc.filename or base}: {exc.strerror or exc}")

        base_depth = len(base.parts)
        for dirpath, dirnames, filenames in os.walk(base, onerror=on_error):
            dir_path = Path(dirpath)
            depth = len(dir_path.parts) - base_depth
            if depth >= self.max_depth:
                dirnames[:] = []
            else:
                dirnames[:] = [
                    name
                    for name in dirnames
                    if not name.startswith(".") and name not in self.ignore_dir_names
                ]
            for filename in filenames:
                self._account_file(dir_path / filename, result)
                if result.file_count > self.max_files:
                    return

    def _account_file(self, path: Path, result: ResourceCheck) -> None:
        try:
            size = path.stat().st_size
        except OSError as exc:
            result.warnings.append(f"Cannot stat {path}: {exc.strerror or exc}")
            return
        result.file_count += 1
        result.total_bytes += size
        if size > self.max_file_size:
            result.warnings.append(
                f"Large file ({_format_size(size)}) may slow the scan: {path}"
            )
