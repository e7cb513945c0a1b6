"""
Request pipeline.

validate -> sandbox paths -> resource limits -> build command -> resolve
executable -> (backup) -> run -> normalize. Validation, sandbox and resource
checks fail fast before any subprocess is spawned.
"""

import logging
import re
import threading
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .backup import DEFAULT_BACKUP_DIR, create_backup
from .binary import resolve_executable as default_resolve_executable
from .command_builder import build_replace_command, build_scan_command, build_search_command
from .config import get_config
from .errors import ErrorTranslator, SecurityError, ToolError, ValidationError, translate_exception
from .models import AnyRequest, ExecutionResult, ReplaceRequest, RuleScanRequest, SearchRequest
from .output_parser import OutputNormalizer
from .process_runner import ProcessRunner
from .resource_guard import ResourceCheck, ResourceGuard
from .rule_builder import (
    build_rule_document,
    default_rule_path,
    normalize_rule_target,
    remove_temporary_rule,
    render_rule_yaml,
    save_rule,
    write_temporary_rule
)
from .validator import RequestValidator
from .workspace import PathSandbox


logger = logging.getLogger(__name__)

_FILES_SCANNED_PATTERNS = (
    re.compile(r"(\d+)\s+files?\s+searched", re.IGNORECASE),
    re.compile(r"(\d+)\s+files?\s+scanned", re.IGNORECASE),
    re.compile(r"across\s+(\d+)\s+files?", re.IGNORECASE)
)


def _files_scanned_from_stderr(stderr: str) -> Optional[int]:
    for pattern in _FILES_SCANNED_PATTERNS:
        found = pattern.search(stderr or "")
        if found:
            return int(found.group(1))
    return None


class RequestPipeline:
    """Compose validation, sandboxing, execution and normalization for one workspace."""

    def __init__(
        self,
        sandbox: PathSandbox,
        validator: Optional[RequestValidator] = None,
        resource_guard: Optional[ResourceGuard] = None,
        runner: Optional[ProcessRunner] = None,
        resolve_executable: Callable[[], str] = default_resolve_executable,
        translator: Optional[ErrorTranslator] = None,
        backup_dir: str = DEFAULT_BACKUP_DIR,
        rules_dir: str = ".tree-ast-grep/rules"
    ):
        self.sandbox = sandbox
        self.validator = validator or RequestValidator()
        self.resource_guard = resource_guard or ResourceGuard(max_depth=sandbox.max_depth)
        self.runner = runner or ProcessRunner()
        self.resolve_executable = resolve_executable
        self.translator = translator or ErrorTranslator()
        self.backup_dir = backup_dir
        self.rules_dir = rules_dir

    @property
    def root(self) -> Path:
        return self.sandbox.root

    async def execute(self, kind: str, raw: Any) -> Dict[str, Any]:
        try:
            return await self._execute(kind, raw)
        except ToolError:
            raise
        except Exception as exc:
            logger.exception("Unexpected failure handling %s request", kind)
            raise translate_exception(exc, str(self.root)) from exc

    def validate(self, kind: str, raw: Any) -> Tuple[AnyRequest, List[str]]:
        outcome = self.validator.validate(kind, raw)
        if not outcome.valid or outcome.sanitized is None:
            count = len(outcome.errors)
            raise ValidationError(
                f"Invalid {kind} request: {outcome.errors[0]}" if count == 1 else f"Invalid {kind} request ({count} problems)",
                details=outcome.errors,
                context={"warnings": outcome.warnings} if outcome.warnings else None
            )
        return outcome.sanitized, list(outcome.warnings)

    async def _execute(self, kind: str, raw: Any) -> Dict[str, Any]:
        request, warnings = self.validate(kind, raw)
        targets, check = self._resolve_targets(request)
        warnings.extend(check.warnings)
        location = self._resolve_location(request)

        if isinstance(request, SearchRequest):
            args, options = build_search_command(request, targets, str(self.root), *location)
            result = await self._run(args, options)
            return self._search_response(request, result, check, warnings)

        if isinstance(request, ReplaceRequest):
            args, options = build_replace_command(request, targets, str(self.root), *location)
            executable = self.resolve_executable()
            backup_directory = None
            if not request.dry_run:
                report = create_backup(
                    self.root, targets, self.backup_dir, include=request.include, exclude=request.exclude
                )
                warnings.extend(f"Backup failed: {failure}" for failure in report.failures)
                if report.copied:
                    backup_directory = self.sandbox.relativize(str(report.directory))
            result = await self._run(args, options, executable)
            return self._replace_response(request, result, warnings, backup_directory)

        rule_path, temporary, saved_to = self._materialize_rule(request)
        try:
            args, options = build_scan_command(request, rule_path, targets, str(self.root), *location)
            result = await self._run(args, options)
        finally:
            if temporary:
                remove_temporary_rule(rule_path)
        return self._scan_response(request, result, check, warnings, saved_to)

    def build_rule(self, raw: Any) -> Dict[str, Any]:
        """Render (and save) a structured rule without running the engine."""
        request, warnings = self.validate("scan", raw)
        if request.rule_file:
            raise ValidationError("build_rule needs pattern-based rule fields, not ruleFile")
        yaml_text = render_rule_yaml(build_rule_document(request))
        target = self._rule_target(request) or default_rule_path(self.root, request.id, self.rules_dir)
        saved = save_rule(yaml_text, target)
        return {
            "ruleId": request.id,
            "yaml": yaml_text,
            "savedTo": self.sandbox.relativize(str(saved)),
            "warnings": warnings
        }

    def _resolve_targets(self, request: AnyRequest) -> Tuple[List[Path], ResourceCheck]:
        if request.code is not None:
            return [], ResourceCheck(ok=True, file_count=1)
        resolved = self.sandbox.resolve_paths(request.paths or ["."])
        missing = [str(path) for path in resolved.targets if not _exists(path)]
        if missing:
            raise ValidationError(
                f"Path not found: {missing[0]}" if len(missing) == 1 else f"{len(missing)} paths were not found",
                details=missing,
                hint="Paths are resolved relative to the workspace root; check spelling."
            )
        check = self.resource_guard.enforce(list(resolved.targets))
        return list(resolved.targets), check

    def _resolve_location(self, request: AnyRequest) -> Tuple[Optional[str], Optional[str]]:
        root = str(self.sandbox.resolve_one(request.root)) if request.root else None
        workdir = str(self.sandbox.resolve_one(request.workdir)) if request.workdir else None
        return root, workdir

    def _rule_target(self, request: RuleScanRequest) -> Optional[Path]:
        if not request.save_to:
            return None
        return self.sandbox.resolve_one(normalize_rule_target(request.save_to))

    def _materialize_rule(self, request: RuleScanRequest) -> Tuple[Path, bool, Optional[str]]:
        if request.rule_file:
            path = self.sandbox.resolve_one(request.rule_file)
            if not _exists(path):
                raise ValidationError(f"Rule file not found: {request.rule_file}")
            return path, False, None
        yaml_text = render_rule_yaml(build_rule_document(request))
        target = self._rule_target(request)
        if target is not None:
            saved = save_rule(yaml_text, target)
            return saved, False, self.sandbox.relativize(str(saved))
        return write_temporary_rule(yaml_text), True, None

    async def _run(self, args: List[str], options, executable: Optional[str] = None) -> ExecutionResult:
        executable = executable or self.resolve_executable()
        result = await self.runner.run(executable, args, options)
        stderr = result.stderr.strip()
        if result.returncode != 0 and stderr and not result.stdout.strip():
            raise self.translator.translate(result.stderr, str(self.root), result.returncode)
        if stderr:
            logger.debug("ast-grep stderr (exit %s): %s", result.returncode, stderr)
        return result

    def _normalizer(self) -> OutputNormalizer:
        return OutputNormalizer(read_lines=self._read_lines, relativize=self.sandbox.relativize)

    def _read_lines(self, file: str) -> Optional[List[str]]:
        decision = self.sandbox.validate(file)
        if not decision.ok or decision.resolved is None:
            return None
        try:
            return decision.resolved.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError:
            return None

    def _search_response(
        self,
        request: SearchRequest,
        result: ExecutionResult,
        check: ResourceCheck,
        warnings: List[str]
    ) -> Dict[str, Any]:
        collection = self._normalizer().collect_matches(result.stdout, request)
        matches = collection.matches
        files_scanned = _files_scanned_from_stderr(result.stderr)
        if files_scanned is None:
            files_scanned = check.file_count or len({match.file for match in matches})
        return {
            "matches": [match.to_payload() for match in matches],
            "summary": {
                "totalMatches": len(matches),
                "matchesFound": collection.seen,
                "filesWithMatches": len({match.file for match in matches}),
                "filesScanned": files_scanned,
                "truncated": collection.truncated,
                "language": request.language,
                "executionTime": result.duration_ms,
                "warnings": warnings
            }
        }

    def _replace_response(
        self,
        request: ReplaceRequest,
        result: ExecutionResult,
        warnings: List[str],
        backup_directory: Optional[str]
    ) -> Dict[str, Any]:
        normalizer = self._normalizer()
        changes = normalizer.parse_changes(result.stdout, request)
        warnings.extend(normalizer.warnings)
        summary: Dict[str, Any] = {
            "totalChanges": sum(change.match_count for change in changes),
            "filesModified": len(changes),
            "dryRun": request.dry_run,
            "executionTime": result.duration_ms,
            "warnings": warnings
        }
        if backup_directory:
            summary["backupDirectory"] = backup_directory
        return {"changes": [change.to_payload() for change in changes], "summary": summary}

    def _scan_response(
        self,
        request: RuleScanRequest,
        result: ExecutionResult,
        check: ResourceCheck,
        warnings: List[str],
        saved_to: Optional[str]
    ) -> Dict[str, Any]:
        findings = self._normalizer().parse_findings(result.stdout, request)
        files_scanned = _files_scanned_from_stderr(result.stderr)
        if files_scanned is None:
            files_scanned = check.file_count or len({finding.file for finding in findings})
        summary: Dict[str, Any] = {
            "totalFindings": len(findings),
            "errorCount": sum(1 for finding in findings if finding.severity == "error"),
            "warningCount": sum(1 for finding in findings if finding.severity == "warning"),
            "infoCount": sum(1 for finding in findings if finding.severity == "info"),
            "filesScanned": files_scanned,
            "executionTime": result.duration_ms,
            "warnings": warnings
        }
        if saved_to:
            summary["ruleFile"] = saved_to
        if request.format == "text" and not findings and result.stdout.strip():
            summary["rawOutput"] = result.stdout.strip()
        return {"findings": [finding.to_payload() for finding in findings], "summary": summary}


def _exists(path: Path) -> bool:
    try:
        return path.exists()
    except OSError:
        return False


def build_pipeline(config: Optional[Dict[str, Any]] = None, **overrides: Any) -> RequestPipeline:
    """Build a pipeline from configuration; the sandbox root comes only from config or detection."""
    config = config or get_config()
    workspace = config.get("workspace", {})
    limits = config.get("limits", {})
    sandbox = PathSandbox.from_environment(
        explicit_root=workspace.get("root"),
        max_depth=workspace.get("max_depth", 10),
        max_hops=workspace.get("max_ancestor_hops", 5)
    )
    kwargs: Dict[str, Any] = {
        "validator": RequestValidator(config.get("timeouts")),
        "resource_guard": ResourceGuard(
            max_file_size=limits.get("max_file_size", 10 * 1024 * 1024),
            max_files=limits.get("max_files", 100000),
            max_depth=sandbox.max_depth
        ),
        "backup_dir": config.get("backups", {}).get("dir", DEFAULT_BACKUP_DIR),
        "rules_dir": config.get("rules", {}).get("dir", ".tree-ast-grep/rules")
    }
    kwargs.update(overrides)
    return RequestPipeline(sandbox, **kwargs)


def scoped_pipeline(base: RequestPipeline, root: Path) -> RequestPipeline:
    """A pipeline narrowed to ``root``, sharing everything else with ``base``."""
    sandbox = PathSandbox(root, blocked_paths=base.sandbox.blocked_paths, max_depth=base.sandbox.max_depth)
    return RequestPipeline(
        sandbox,
        validator=base.validator,
        resource_guard=base.resource_guard,
        runner=base.runner,
        resolve_executable=base.resolve_executable,
        translator=base.translator,
        backup_dir=base.backup_dir,
        rules_dir=base.rules_dir
    )


def resolve_work_path(base: RequestPipeline, work_path: str) -> Path:
    """A per-request work path must be an existing directory inside the configured root."""
    resolved = base.sandbox.resolve_one(work_path)
    if not resolved.is_dir():
        raise SecurityError(
            f"Work path must be an existing directory inside the workspace root {base.root}: {work_path}",
            context={"workspace": str(base.root)}
        )
    return resolved


_BASE_PIPELINE: Optional[RequestPipeline] = None
_BASE_LOCK = threading.Lock()


def _base_pipeline() -> RequestPipeline:
    global _BASE_PIPELINE
    with _BASE_LOCK:
        if _BASE_PIPELINE is None:
            _BASE_PIPELINE = build_pipeline()
        return _BASE_PIPELINE


@lru_cache(maxsize=16)
def _cached_scope(root: str) -> RequestPipeline:
    return scoped_pipeline(_base_pipeline(), Path(root))


def get_pipeline(work_path: Optional[str] = None) -> RequestPipeline:
    """
    The configured pipeline, or one narrowed to a validated sub-directory.

    The root itself is fixed at first use; a work path can only narrow it.
    """
    base = _base_pipeline()
    if not work_path:
        return base
    root = resolve_work_path(base, work_path)
    if root == base.root:
        return base
    return _cached_scope(str(root))


def reset_pipelines() -> None:
    """Drop the cached pipelines (mainly for testing)"""
    global _BASE_PIPELINE
    with _BASE_LOCK:
        _BASE_PIPELINE = None
    _cached_scope.cache_clear()
