"""
Workspace root detection and path sandboxing.

Root detection is a pure function over directory listings: callers inject
``list_dir`` so the ancestor walk can be exercised without real fixtures.
The blocked-path list is an explicit value built once and handed to the
sandbox, never read from the environment at import time.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .errors import SecurityError


logger = logging.getLogger(__name__)

ListDir = Callable[[Path], FrozenSet[str]]

# Version control and primary manifests.
TIER1_INDICATORS = (".git", ".hg", ".svn", "package.json", "pyproject.toml", "Cargo.toml", "go.mod")
# Secondary build tool manifests.
TIER2_INDICATORS = (
    "composer.json",
    "Gemfile",
    "Makefile",
    "pom.xml",
    "build.gradle",
    "build.gradle.kts",
    "setup.py",
    "setup.cfg",
    "CMakeLists.txt",
    "deno.json",
    "tsconfig.json"
)
# Weak signals, only used when nothing stronger qualifies.
TIER3_INDICATORS = ("README.md", "README", ".vscode", ".idea", ".editorconfig")

SOURCE_DIR_NAMES = frozenset({
    "src", "lib", "app", "source", "pkg", "cmd", "internal", "packages", "components", "scripts", "tests", "test"
})
SOURCE_EXTENSIONS = frozenset({
    ".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".py", ".rs", ".go", ".java", ".kt", ".rb",
    ".php", ".c", ".h", ".cc", ".cpp", ".hpp", ".cs", ".swift", ".scala", ".lua", ".html", ".css"
})

DEFAULT_MAX_DEPTH = 10
DEFAULT_MAX_ANCESTOR_HOPS = 5

_POSIX_SYSTEM_DIRS = ("/etc", "/bin", "/sbin", "/usr", "/lib", "/lib64", "/boot", "/sys", "/proc", "/dev")
_WINDOWS_SYSTEM_DIRS = ("C:\\Windows", "C:\\Program Files", "C:\\Program Files (x86)")
_HOME_CREDENTIAL_DIRS = (".ssh", ".aws", ".gnupg", ".azure", ".kube", ".docker", ".config/gcloud")
_ROOT_RELATIVE_BLOCKED = (".git", "node_modules/.bin")


def list_dir_entries(path: Path) -> FrozenSet[str]:
    try:
        return frozenset(os.listdir(path))
    except OSError:
        return frozenset()


def _canonical(path: Path) -> Optional[Path]:
    try:
        return Path(os.path.abspath(path.expanduser())).resolve()
    except (OSError, RuntimeError, ValueError):
        return None


def has_source_structure(entries: Iterable[str]) -> bool:
    for name in entries:
        if name in SOURCE_DIR_NAMES:
            return True
        suffix = os.path.splitext(name)[1].lower()
        if suffix in SOURCE_EXTENSIONS:
            return True
    return False


def indicator_tier(entries: FrozenSet[str]) -> Optional[int]:
    if any(name in entries for name in TIER1_INDICATORS):
        return 1
    if any(name in entries for name in TIER2_INDICATORS):
        return 2
    if any(name in entries for name in TIER3_INDICATORS):
        return 3
    return None


def candidate_directories(start: Path, max_hops: int) -> List[Path]:
    candidates = [start]
    current = start
    for _ in range(max(0, max_hops)):
        parent = current.parent
        if parent == current:
            break
        candidates.append(parent)
        current = parent
    return candidates


def detect_root(
    start: Path,
    list_dir: ListDir = list_dir_entries,
    explicit_root: Optional[str] = None,
    max_hops: int = DEFAULT_MAX_ANCESTOR_HOPS
) -> Path:
    """
    Detect the workspace root.

    An explicit root wins. Otherwise the nearest directory (``start`` and up
    to ``max_hops`` ancestors) holding a tier 1 or tier 2 indicator plus
    recognizable source structure is used, then the nearest one with a weak
    tier 3 signal and source structure, else ``start`` itself.
    """
    if explicit_root:
        return Path(os.path.abspath(Path(explicit_root).expanduser()))

    weak_match: Optional[Path] = None
    for candidate in candidate_directories(start, max_hops):
        entries = list_dir(candidate)
        tier = indicator_tier(entries)
        if tier is None or not has_source_structure(entries):
            continue
        if tier in (1, 2):
            return candidate
        if weak_match is None:
            weak_match = candidate
    if weak_match is not None:
        return weak_match
    return start


def default_blocked_paths(root: Path, home: Optional[Path] = None, windows: Optional[bool] = None) -> Tuple[Path, ...]:
    """Build the canonical blocked-path list for a workspace root."""
    is_windows = (os.name == "nt") if windows is None else windows
    raw: List[Path] = []
    raw.extend(Path(item) for item in (_WINDOWS_SYSTEM_DIRS if is_windows else _POSIX_SYSTEM_DIRS))
    home_dir = home if home is not None else Path.home()
    raw.extend(home_dir / item for item in _HOME_CREDENTIAL_DIRS)
    raw.extend(root / item for item in _ROOT_RELATIVE_BLOCKED)

    blocked: List[Path] = []
    for item in raw:
        canonical = _canonical(item)
        if canonical is not None and canonical not in blocked:
            blocked.append(canonical)
    return tuple(blocked)


@dataclass(frozen=True)
class SandboxDecision:
    ok: bool
    resolved: Optional[Path] = None
    reason: str = ""


@dataclass(frozen=True)
class ResolvedPathSet:
    root: Path
    targets: Tuple[Path, ...] = field(default_factory=tuple)


class PathSandbox:
    """Decide whether candidate paths stay inside the workspace root."""

    def __init__(
        self,
        root: Path,
        blocked_paths: Optional[Sequence[Path]] = None,
        max_depth: int = DEFAULT_MAX_DEPTH
    ):
        canonical_root = _canonical(Path(root))
        if canonical_root is None:
            raise ValueError(f"Workspace root cannot be resolved: {root}")
        self.root = canonical_root
        if blocked_paths is None:
            blocked_paths = default_blocked_paths(self.root)
        self.blocked_paths: Tuple[Path, ...] = tuple(blocked_paths)
        self.max_depth = max_depth

    @classmethod
    def from_environment(
        cls,
        explicit_root: Optional[str] = None,
        cwd: Optional[Path] = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_hops: int = DEFAULT_MAX_ANCESTOR_HOPS
    ) -> "PathSandbox":
        start = Path(cwd) if cwd is not None else Path.cwd()
        root = detect_root(start, explicit_root=explicit_root, max_hops=max_hops)
        logger.info("Workspace root: %s", root)
        return cls(root, max_depth=max_depth)

    def validate(self, candidate: str) -> SandboxDecision:
        if candidate is None or not str(candidate).strip():
            return SandboxDecision(False, reason="Empty path")
        if "\x00" in str(candidate):
            return SandboxDecision(False, reason=f"Path contains a NUL byte: {candidate!r}")

        raw = Path(str(candidate)).expanduser()
        if not raw.is_absolute():
            raw = self.root / raw
        resolved = _canonical(raw)
        if resolved is None:
            return SandboxDecision(False, reason=f"Path cannot be resolved: {candidate}")

        try:
            relative = os.path.relpath(resolved, self.root)
        except ValueError:
            # Different drives on Windows.
            return SandboxDecision(False, reason=f"Path is outside the workspace root {self.root}: {candidate}")
        parts = Path(relative).parts
        if relative == os.pardir or (parts and parts[0] == os.pardir) or os.path.isabs(relative):
            return SandboxDecision(False, reason=f"Path is outside the workspace root {self.root}: {candidate}")

        for blocked in self.blocked_paths:
            if resolved == blocked or blocked in resolved.parents:
                return SandboxDecision(False, reason=f"Access to a protected system path is blocked: {candidate}")

        depth = 0 if relative == os.curdir else len(parts)
        if depth > self.max_depth:
            return SandboxDecision(
                False,
                reason=f"Path is {depth} levels below the workspace root (max {self.max_depth}): {candidate}"
            )
        return SandboxDecision(True, resolved=resolved)

    def resolve_paths(self, candidates: Sequence[str]) -> ResolvedPathSet:
        """Validate every candidate, raising SecurityError listing all rejections."""
        targets: List[Path] = []
        reasons: List[str] = []
        for candidate in candidates:
            decision = self.validate(candidate)
            if not decision.ok:
                reasons.append(decision.reason)
                continue
            if decision.resolved not in targets:
                targets.append(decision.resolved)
        if reasons:
            raise SecurityError(
                reasons[0] if len(reasons) == 1 else f"{len(reasons)} paths were rejected by the workspace sandbox",
                details=reasons,
                context={"workspace": str(self.root)}
            )
        return ResolvedPathSet(root=self.root, targets=tuple(targets))

    def resolve_one(self, candidate: str) -> Path:
        return self.resolve_paths([candidate]).targets[0]

    def relativize(self, path: str) -> str:
        """Express ``path`` relative to the root with forward slashes when it lies inside."""
        candidate = Path(path)
        if not candidate.is_absolute():
            return path.replace("\\", "/")
        try:
            return candidate.relative_to(self.root).as_posix()
        except ValueError:
            return path
