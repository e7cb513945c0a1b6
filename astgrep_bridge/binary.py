import logging
import os
import shutil
import subprocess
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from .config import get_config
from .errors import BinaryError


logger = logging.getLogger(__name__)

_EXECUTABLE_NAMES = ("ast-grep", "sg")
_VERSION_TIMEOUT_SEC = 5


def _probe(executable: str) -> bool:
    try:
        completed = subprocess.run(
            [executable, "--version"],
            capture_output=True,
            text=True,
            timeout=_VERSION_TIMEOUT_SEC
        )
    except (OSError, subprocess.SubprocessError):
        return False
    output = (completed.stdout or "") + (completed.stderr or "")
    return completed.returncode == 0 and "ast-grep" in output.lower()


def _candidates(root: Optional[Path]) -> List[str]:
    candidates: List[str] = []
    if root is not None:
        bundled = root / "tools" / "ast-grep" / ("ast-grep.exe" if os.name == "nt" else "ast-grep")
        if bundled.exists():
            candidates.append(str(bundled))
    for name in _EXECUTABLE_NAMES:
        found = shutil.which(name)
        if found and found not in candidates:
            candidates.append(found)
    return candidates


def find_executable(custom_path: Optional[str] = None, root: Optional[Path] = None) -> str:
    """
    Locate a working ast-grep executable.

    A custom path must exist and answer ``--version``; otherwise a bundled copy
    under ``<root>/tools/ast-grep`` and then ``ast-grep`` / ``sg`` on PATH are tried.
    """
    if custom_path:
        path = Path(custom_path).expanduser()
        if not path.exists():
            raise BinaryError(f"Custom ast-grep binary not found: {path}")
        if not _probe(str(path)):
            raise BinaryError(f"Custom ast-grep binary does not respond to --version: {path}")
        return str(path.resolve())

    for candidate in _candidates(root):
        if _probe(candidate):
            logger.info("Using ast-grep executable %s", candidate)
            return candidate
    raise BinaryError("ast-grep executable not found on PATH.")


@lru_cache(maxsize=1)
def resolve_executable() -> str:
    """Resolve the engine once per process lifetime."""
    config = get_config()
    custom_path = config.get("binary", {}).get("path")
    root = config.get("workspace", {}).get("root")
    return find_executable(custom_path, Path(root) if root else Path.cwd())
