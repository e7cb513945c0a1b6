import fnmatch
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple


logger = logging.getLogger(__name__)

DEFAULT_BACKUP_DIR = ".ast-grep-backups"
_SKIP_DIR_NAMES = {"node_modules"}


@dataclass
class BackupReport:
    directory: Optional[Path] = None
    copied: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)


def backup_timestamp(now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    return stamp.replace(":", "-").replace(".", "-").replace("+", "-")


def _glob_matches(relative: str, pattern: str) -> bool:
    pattern = pattern.lstrip("!")
    if fnmatch.fnmatch(relative, pattern):
        return True
    # Slash-free globs such as *.min.js apply to the file name at any depth.
    return "/" not in pattern and fnmatch.fnmatch(relative.rsplit("/", 1)[-1], pattern)


def is_selected(relative: str, include: Optional[Sequence[str]] = None, exclude: Optional[Sequence[str]] = None) -> bool:
    """Apply the request include/exclude globs to a root-relative posix path."""
    if include and not any(_glob_matches(relative, pattern) for pattern in include):
        return False
    return not any(_glob_matches(relative, pattern) for pattern in exclude or [])


def _iter_target_files(target: Path, backup_root: Path) -> Iterator[Path]:
    if target.is_file():
        yield target
        return
    for dirpath, dirnames, filenames in os.walk(target):
        dir_path = Path(dirpath)
        dirnames[:] = [
            name
            for name in dirnames
            if not name.startswith(".") and name not in _SKIP_DIR_NAMES and dir_path / name != backup_root
        ]
        for filename in filenames:
            yield dir_path / filename


def create_backup(
    root: Path,
    targets: Sequence[Path],
    backup_dir_name: str = DEFAULT_BACKUP_DIR,
    now: Optional[datetime] = None,
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None
) -> BackupReport:
    """
    Copy every target file into <root>/<backup_dir_name>/<timestamp>/<relative path>.

    Files found by expanding a directory target are filtered by the same
    include/exclude globs the engine receives; a file named directly is
    always copied.

    Failures are recorded and logged; they never raise.
    """
    backup_root = root / backup_dir_name
    directory = backup_root / backup_timestamp(now)
    report = BackupReport(directory=directory)

    pending: List[Tuple[Path, Path]] = []
    for target in targets:
        try:
            if not Path(target).exists():
                report.failures.append(f"{target}: not found")
                continue
            expanded = not Path(target).is_file()
            for source in _iter_target_files(Path(target), backup_root):
                try:
                    relative = source.relative_to(root)
                except ValueError:
                    report.failures.append(f"{source}: outside workspace root")
                    continue
                if expanded and not is_selected(relative.as_posix(), include, exclude):
                    continue
                pending.append((source, directory / relative))
        except OSError as exc:
            report.failures.append(f"{target}: {exc}")

    for source, destination in pending:
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, destination)
            report.copied.append(source.relative_to(root).as_posix())
        except OSError as exc:
            report.failures.append(f"{source}: {exc}")

    for failure in report.failures:
        logger.warning("Backup failed for %s", failure)
    if report.copied:
        logger.info("Backed up %d file(s) to %s", len(report.copied), directory)
    return report
